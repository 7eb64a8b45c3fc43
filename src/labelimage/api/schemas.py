"""Pydantic request/response schemas for the LabelImage API."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class ImageTag(BaseModel):
    """A single label with its probability."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the image classification endpoint."""

    model_config = ConfigDict(protected_namespaces=())

    model: str
    min_percent: float
    tags: list[ImageTag]
    text: str = Field(description="One '<label> (<pp.pp>% likely)' line per tag")


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    input_size: list[int] = Field(description="Model input height and width")
    status: str = Field(description="Model status: 'active' or 'available'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
