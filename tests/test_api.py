"""Tests for the LabelImage API."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
    from pathlib import Path

import httpx
import pytest
from fastapi import FastAPI, status

from labelimage.config import get_settings
from labelimage.main import create_app, init_app_state
from labelimage.ml.inference import InferencePool


def _init_app_state(app: FastAPI, **env_overrides: str) -> None:
    """Manually initialize app state (ASGITransport does not trigger lifespan)."""
    with patch.dict(os.environ, env_overrides):
        settings = get_settings()
    init_app_state(app, settings)


async def _make_client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as ac:
        yield ac
    pool: InferencePool = app.state.inference_pool
    pool.shutdown()


@pytest.fixture()
def app(models_dir: Path) -> FastAPI:
    """Create a fresh app instance backed by the test model."""
    application = create_app()
    _init_app_state(application, LABELIMAGE_MODELS_DIR=str(models_dir))
    return application


@pytest.fixture()
async def client(app: FastAPI) -> AsyncIterator[httpx.AsyncClient]:
    """Async HTTP client for testing the app."""
    async for ac in _make_client(app):
        yield ac


def _upload(data: bytes) -> dict[str, tuple[str, bytes, str]]:
    return {"file": ("test.png", data, "image/png")}


class TestHealthEndpoint:
    async def test_health_returns_ok(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "ok"
        assert data["gpu"] is False
        assert data["models_loaded"] == []
        assert data["concurrent_requests"] == 0
        assert data["queue_depth"] == 0

    async def test_health_lists_loaded_model(self, client: httpx.AsyncClient, png_bytes: Callable[..., bytes]) -> None:
        await client.post("/api/v1/classify-image", files=_upload(png_bytes((255, 0, 0))))
        response = await client.get("/api/v1/health")
        assert response.json()["models_loaded"] == ["inception5h"]

    async def test_health_gpu_true_when_cuda(self) -> None:
        cuda_app = create_app()
        _init_app_state(cuda_app, LABELIMAGE_DEVICE="cuda")
        async for ac in _make_client(cuda_app):
            response = await ac.get("/api/v1/health")
            assert response.status_code == status.HTTP_200_OK
            assert response.json()["gpu"] is True


class TestClassifyImageEndpoint:
    async def test_classifies_red_image(self, client: httpx.AsyncClient, png_bytes: Callable[..., bytes]) -> None:
        response = await client.post("/api/v1/classify-image", files=_upload(png_bytes((255, 0, 0))))
        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["model"] == "inception5h"
        assert data["min_percent"] == 1.0
        assert [t["label"] for t in data["tags"]] == ["red"]
        assert data["text"] == "red (100.00% likely)\n"

    async def test_min_percent_query(self, client: httpx.AsyncClient, png_bytes: Callable[..., bytes]) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            params={"min_percent": 0},
            files=_upload(png_bytes((0, 0, 255))),
        )
        assert response.status_code == status.HTTP_200_OK
        tags = response.json()["tags"]
        assert tags[0]["label"] == "blue"
        assert len(tags) == 3

    async def test_min_percent_out_of_range(self, client: httpx.AsyncClient, png_bytes: Callable[..., bytes]) -> None:
        response = await client.post(
            "/api/v1/classify-image",
            params={"min_percent": 101},
            files=_upload(png_bytes((0, 0, 255))),
        )
        assert response.status_code == 422

    async def test_undecodable_image_returns_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/v1/classify-image", files=_upload(b"fake image data"))
        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "cannot decode" in response.json()["detail"].lower()

    async def test_oversized_file_returns_413(self, models_dir: Path, png_bytes: Callable[..., bytes]) -> None:
        app = create_app()
        _init_app_state(app, LABELIMAGE_MODELS_DIR=str(models_dir), LABELIMAGE_MAX_FILE_SIZE="10")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/classify-image", files=_upload(png_bytes((255, 0, 0))))
            assert response.status_code == 413

    async def test_too_many_pixels_returns_400(self, models_dir: Path, png_bytes: Callable[..., bytes]) -> None:
        app = create_app()
        _init_app_state(app, LABELIMAGE_MODELS_DIR=str(models_dir), LABELIMAGE_MAX_IMAGE_PIXELS="100")
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/classify-image", files=_upload(png_bytes((255, 0, 0))))
            assert response.status_code == status.HTTP_400_BAD_REQUEST

    async def test_missing_model_returns_503(self, tmp_path: Path, png_bytes: Callable[..., bytes]) -> None:
        app = create_app()
        _init_app_state(app, LABELIMAGE_MODELS_DIR=str(tmp_path))
        async for ac in _make_client(app):
            response = await ac.post("/api/v1/classify-image", files=_upload(png_bytes((255, 0, 0))))
            assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
            assert "model unavailable" in response.json()["detail"].lower()

    async def test_queue_timeout_returns_503(
        self, app: FastAPI, client: httpx.AsyncClient, png_bytes: Callable[..., bytes]
    ) -> None:
        pool = MagicMock()
        pool.run.side_effect = TimeoutError
        app.state.inference_pool, real_pool = pool, app.state.inference_pool
        try:
            response = await client.post("/api/v1/classify-image", files=_upload(png_bytes((255, 0, 0))))
        finally:
            app.state.inference_pool = real_pool
        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    async def test_bad_model_output_returns_500(
        self, app: FastAPI, client: httpx.AsyncClient, png_bytes: Callable[..., bytes]
    ) -> None:
        classifier = MagicMock()
        classifier.model_name = "inception5h"
        classifier.classify.side_effect = RuntimeError("Expected model to produce a [1 N] shaped tensor")
        app.state.classifier = classifier
        response = await client.post("/api/v1/classify-image", files=_upload(png_bytes((255, 0, 0))))
        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR


class TestModelsEndpoint:
    async def test_models_returns_list(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/models")
        assert response.status_code == status.HTTP_200_OK
        models = response.json()["models"]
        assert models == [
            {"name": "inception5h", "input_size": [224, 224], "status": "active", "license": "Apache-2.0"},
        ]

    async def test_model_available_when_not_selected(self, app: FastAPI, client: httpx.AsyncClient) -> None:
        app.state.settings = app.state.settings.model_copy(update={"model_name": "other"})
        response = await client.get("/api/v1/models")
        assert response.json()["models"][0]["status"] == "available"


class TestAuthentication:
    async def test_no_auth_required_by_default(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/api/v1/health")
        assert response.status_code == status.HTTP_200_OK

    async def test_auth_required_when_api_key_set(self) -> None:
        app = create_app()
        _init_app_state(app, LABELIMAGE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get("/api/v1/health")
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )

    async def test_auth_passes_with_correct_key(self) -> None:
        app = create_app()
        _init_app_state(app, LABELIMAGE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer test-secret-key"},
            )
            assert response.status_code == status.HTTP_200_OK

    async def test_auth_fails_with_wrong_key(self) -> None:
        app = create_app()
        _init_app_state(app, LABELIMAGE_API_KEY="test-secret-key")
        async for ac in _make_client(app):
            response = await ac.get(
                "/api/v1/health",
                headers={"Authorization": "Bearer wrong-key"},
            )
            assert response.status_code in (
                status.HTTP_401_UNAUTHORIZED,
                status.HTTP_403_FORBIDDEN,
            )
