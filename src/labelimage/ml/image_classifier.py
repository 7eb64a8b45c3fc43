"""Image classification with an ONNX model and its label file."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import numpy as np

from labelimage.ml.model_manager import get_spec
from labelimage.ml.preprocessing import ImageNormalizer

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from labelimage.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    confidence: float


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one image."""

    normalized: NDArray[np.float32]
    results: list[ClassificationResult] = field(default_factory=list)

    @property
    def text(self) -> str:
        return format_labels(self.results)


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, image: NDArray[np.uint8], min_percent: float) -> Classification:
        """Classify an image and return ranked labels.

        Args:
            image: HxWx3 RGB uint8 array.
            min_percent: Lowest probability (in percent) to report.

        Returns:
            The normalized input tensor and the results sorted by confidence
            (descending).
        """
        ...


def execute_classifier(
    session: InferenceSession,
    image: NDArray[np.float32],
    input_name: str = "input",
    output_name: str = "output",
) -> NDArray[np.float32]:
    """Feed a normalized image to the classification graph.

    Raises:
        RuntimeError: If the model does not produce a [1 N] shaped tensor.
    """
    (result,) = session.run([output_name], {input_name: image})
    result = np.asarray(result)
    if result.ndim != 2 or result.shape[0] != 1:
        raise RuntimeError(
            "Expected model to produce a [1 N] shaped tensor where N is the number of labels, "
            f"instead it produced one with shape {list(result.shape)}"
        )
    return result[0].astype(np.float32, copy=False)


def rank_labels(
    probabilities: Sequence[float] | NDArray[np.floating],
    labels: Sequence[str],
    min_percent: float,
) -> list[ClassificationResult]:
    """Return labels sorted by probability, keeping those at or above the cutoff.

    Only the first ``min(len(probabilities), len(labels))`` positions are
    considered. Equal probabilities keep their label order.
    """
    if not 0.0 <= min_percent <= 100.0:
        raise ValueError(f"min_percent must be within [0, 100], got {min_percent}")

    probs = np.asarray(probabilities, dtype=np.float64)
    count = min(len(probs), len(labels))
    order = np.argsort(-probs[:count], kind="stable")

    cutoff = min_percent / 100
    results: list[ClassificationResult] = []
    for index in order:
        p = float(probs[index])
        if p < cutoff:
            break
        results.append(ClassificationResult(label=labels[index], confidence=p))
    return results


def format_labels(results: Sequence[ClassificationResult]) -> str:
    """Format results as ``"<label> (<pp.pp>% likely)"`` lines."""
    return "".join(f"{r.label} ({r.confidence * 100:.2f}% likely)\n" for r in results)


class OnnxImageClassifier:
    """Classifies images with a registry model served by a model manager."""

    def __init__(
        self,
        manager: ModelManager,
        model_name: str,
        normalizer: ImageNormalizer | None = None,
    ) -> None:
        self._manager = manager
        self._spec = get_spec(model_name)
        self._normalizer = normalizer
        self._lock = threading.Lock()
        self._announced = False

    @property
    def model_name(self) -> str:
        return self._spec.name

    def classify(self, image: NDArray[np.uint8], min_percent: float) -> Classification:
        """Normalize ``image``, run the model and rank its labels."""
        labels = self._manager.load_labels(self._spec.name)
        session = self._manager.get_session(self._spec.name)
        self._announce(labels)

        normalized = self._get_normalizer().normalize(image)
        probabilities = execute_classifier(
            session,
            normalized,
            input_name=self._spec.input_name,
            output_name=self._spec.output_name,
        )
        if len(probabilities) != len(labels):
            logger.debug(
                "Model %s produced %d probabilities for %d labels",
                self._spec.name,
                len(probabilities),
                len(labels),
            )
        results = rank_labels(probabilities, labels, min_percent)
        return Classification(normalized=normalized, results=results)

    def _get_normalizer(self) -> ImageNormalizer:
        with self._lock:
            if self._normalizer is None:
                spec = self._spec
                self._normalizer = ImageNormalizer(
                    spec.height,
                    spec.width,
                    spec.mean,
                    spec.scale,
                    session_factory=self._manager.create_session,
                )
            return self._normalizer

    def _announce(self, labels: list[str]) -> None:
        with self._lock:
            if self._announced:
                return
            self._announced = True
        graph_size = self._manager.graph_size(self._spec.name)
        logger.info("Loaded GraphDef of %d bytes and %d labels", graph_size, len(labels))
