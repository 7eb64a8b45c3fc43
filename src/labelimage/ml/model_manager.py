"""Model manager: locate, download, load, cache, and evict ONNX models.

Handles the two resources every classifier needs (the serialized model graph
and its newline-delimited label file), optional downloads from HuggingFace,
creating and caching ONNX InferenceSessions, and TTL-based eviction.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from labelimage.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def load_graph_def(self, model_name: str) -> bytes:
        """Return the serialized model graph."""
        ...

    def graph_size(self, model_name: str) -> int:
        """Return the size of the serialized model graph in bytes."""
        ...

    def load_labels(self, model_name: str) -> list[str]:
        """Return the ordered label list of a model."""
        ...

    def create_session(self, model_bytes: bytes) -> InferenceSession:
        """Create an uncached InferenceSession for a serialized graph."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached or newly created InferenceSession."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def unload_idle_models(self) -> None:
        """Unload models that have exceeded their TTL."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classification model."""

    name: str
    filename: str
    labels_filename: str
    input_name: str
    output_name: str
    height: int
    width: int
    mean: float
    scale: float
    license: str


MODEL_REGISTRY: dict[str, ModelSpec] = {
    # Trained on 224x224 images whose 1-byte R, G, B values were converted
    # to float with (value - mean) / scale.
    "inception5h": ModelSpec(
        name="inception5h",
        filename="tensorflow_inception_graph.onnx",
        labels_filename="imagenet_comp_graph_label_strings.txt",
        input_name="input",
        output_name="output",
        height=224,
        width=224,
        mean=117.0,
        scale=1.0,
        license="Apache-2.0",
    ),
}


def get_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry, raising KeyError for unknown names."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


def read_labels(path: Path) -> list[str]:
    """Read a UTF-8 label file, one label per line, preserving order."""
    with path.open(encoding="utf-8") as fh:
        return [line.rstrip("\n") for line in fh]


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _CachedSession:
    session: InferenceSession
    last_used: float


class OnnxModelManager:
    """Locates model resources and loads, caches, and evicts inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, _CachedSession] = {}
        self._resource_paths: dict[tuple[str, str], Path] = {}
        self._labels: dict[str, list[str]] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def ensure_downloaded(self, model_name: str, filename: str) -> Path:
        """Return the local path of a model resource, downloading it if needed.

        Resources live in ``<models_dir>/<model_name>/``. Missing files are
        fetched from HuggingFace when ``model_repo_id`` is configured.

        Raises:
            FileNotFoundError: If the file is absent and no repository is set.
        """
        get_spec(model_name)
        key = (model_name, filename)
        cached = self._resource_paths.get(key)
        if cached is not None and cached.exists():
            return cached

        model_dir = self._models_dir / model_name
        local = model_dir / filename
        if local.exists():
            self._resource_paths[key] = local
            return local

        repo_id = self._settings.model_repo_id
        if repo_id is None:
            raise FileNotFoundError(
                f"Model resource '{filename}' not found in {model_dir} "
                "and LABELIMAGE_MODEL_REPO_ID is not set"
            )

        model_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=repo_id,
                filename=filename,
                subfolder=model_name,
                local_dir=str(self._models_dir),
            )
        )
        self._resource_paths[key] = downloaded
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    def load_graph_def(self, model_name: str) -> bytes:
        """Read the serialized model graph in full."""
        spec = get_spec(model_name)
        path = self.ensure_downloaded(model_name, spec.filename)
        logger.info("Reading %d bytes of the %s model", path.stat().st_size, model_name)
        return path.read_bytes()

    def graph_size(self, model_name: str) -> int:
        """Return the size of the serialized model graph in bytes."""
        spec = get_spec(model_name)
        return self.ensure_downloaded(model_name, spec.filename).stat().st_size

    def create_session(self, model_bytes: bytes) -> InferenceSession:
        """Create an InferenceSession with the configured providers and options."""
        return InferenceSession(
            model_bytes,
            sess_options=self._session_options,
            providers=self._providers,
        )

    def load_labels(self, model_name: str) -> list[str]:
        """Return the model's labels, reading the label file on first use."""
        with self._lock:
            labels = self._labels.get(model_name)
        if labels is not None:
            return labels

        spec = get_spec(model_name)
        labels = read_labels(self.ensure_downloaded(model_name, spec.labels_filename))
        with self._lock:
            self._labels.setdefault(model_name, labels)
            return self._labels[model_name]

    def get_session(self, model_name: str) -> InferenceSession:
        """Return a cached InferenceSession, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                cached.last_used = time.monotonic()
                return cached.session

        graph_def = self.load_graph_def(model_name)
        session = self.create_session(graph_def)

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                existing.last_used = time.monotonic()
                return existing.session
            self._sessions[model_name] = _CachedSession(
                session=session,
                last_used=time.monotonic(),
            )
            logger.info("Loaded session for %s", model_name)
            return session

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def unload_idle_models(self) -> None:
        """Remove sessions that have exceeded the configured TTL."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return

        now = time.monotonic()
        with self._lock:
            expired = [name for name, cached in self._sessions.items() if (now - cached.last_used) > ttl]
            for name in expired:
                del self._sessions[name]
                logger.info("Evicted idle session for %s", name)

    def shutdown(self) -> None:
        """Clear all cached sessions and labels."""
        with self._lock:
            self._sessions.clear()
            self._labels.clear()
            logger.info("All model sessions cleared")

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
