"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from labelimage.config import Settings
    from labelimage.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from labelimage.api.routes import router
from labelimage.config import get_settings
from labelimage.ml.image_classifier import OnnxImageClassifier
from labelimage.ml.inference import InferencePool
from labelimage.ml.model_manager import OnnxModelManager

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def init_app_state(app: FastAPI, settings: Settings) -> None:
    """Attach settings, model manager, classifier and inference pool to the app."""
    manager = OnnxModelManager(settings)
    app.state.settings = settings
    app.state.model_manager = manager
    app.state.classifier = OnnxImageClassifier(manager, settings.model_name)
    app.state.inference_pool = InferencePool(settings)


async def _evict_idle_models(manager: ModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        manager.unload_idle_models()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    configure_logging(settings.log_level)

    logger.info(
        "Starting LabelImage (device=%s, max_concurrent=%s, model=%s, models_dir=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_name,
        settings.models_dir,
    )
    init_app_state(app, settings)

    evictor = None
    if settings.model_ttl > 0:
        evictor = asyncio.create_task(_evict_idle_models(app.state.model_manager, settings.model_ttl / 2))

    logger.info("LabelImage ready")
    yield

    logger.info("Shutting down LabelImage")
    if evictor is not None:
        evictor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await evictor
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("LabelImage shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="LabelImage",
        description="Labels images with a pre-trained Inception classifier",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
