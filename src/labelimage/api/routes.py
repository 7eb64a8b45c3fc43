"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from labelimage.api.middleware import verify_api_key
from labelimage.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageTag,
    ModelInfo,
    ModelsResponse,
)
from labelimage.ml.model_manager import MODEL_REGISTRY
from labelimage.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from labelimage.config import Settings
    from labelimage.ml.image_classifier import ImageClassifier
    from labelimage.ml.inference import InferencePool
    from labelimage.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        413: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Label an image",
)
async def classify_image(
    request: Request,
    file: UploadFile,
    min_percent: Annotated[float | None, Query(ge=0.0, le=100.0, description="Min probability (%)")] = None,
) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return the labels above the threshold."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    classifier: ImageClassifier = request.app.state.classifier
    if min_percent is None:
        min_percent = settings.min_percent

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        return _error(413, f"File exceeds {settings.max_file_size} bytes")

    try:
        image = decode_image(data, max_pixels=settings.max_image_pixels)
    except ValueError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    try:
        classification = await pool.run(classifier.classify, image, min_percent)
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full, try again later")
    except (FileNotFoundError, KeyError) as exc:
        logger.error("Model %s unavailable: %s", classifier.model_name, exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, f"Model unavailable: {exc}")
    except RuntimeError as exc:
        logger.error("Classification with %s failed: %s", classifier.model_name, exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    return ClassifyImageResponse(
        model=classifier.model_name,
        min_percent=min_percent,
        tags=[ImageTag(label=r.label, confidence=r.confidence) for r in classification.results],
        text=classification.text,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager: ModelManager = request.app.state.model_manager
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=manager.get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and whether they are the configured one."""
    settings = _get_settings(request)
    models = [
        ModelInfo(
            name=spec.name,
            input_size=[spec.height, spec.width],
            status="active" if spec.name == settings.model_name else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
