"""Image preprocessing: decoding, layout conversion and normalization.

Decoding is done with Pillow. Resizing and normalization are expressed as a
small ONNX graph executed by onnxruntime, so the arithmetic matches what the
classification graph was trained with:

    (resize_bilinear(expand_dims(image, 0), [H, W]) - mean) / scale
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
import onnx
from onnx import TensorProto, helper
from onnxruntime import InferenceSession
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

NORMALIZATION_OPSET = 18
NORMALIZATION_IR_VERSION = 8

INPUT_NAME = "input"
OUTPUT_NAME = "normalized"


def decode_image(image_bytes: bytes, max_pixels: int | None = None) -> NDArray[np.uint8]:
    """Decode raw image bytes into an RGB uint8 numpy array.

    Args:
        image_bytes: Raw file bytes (any format Pillow can read).
        max_pixels: Reject images with more pixels than this.

    Returns:
        HxWx3 RGB uint8 numpy array.

    Raises:
        ValueError: If the image cannot be decoded or exceeds size limits.
    """
    if not image_bytes:
        raise ValueError("Empty image data")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            width, height = img.size
            if max_pixels is not None and width * height > max_pixels:
                raise ValueError(f"Image of {width}x{height} pixels exceeds the limit of {max_pixels} pixels")
            oriented = ImageOps.exif_transpose(img)
            return np.asarray(oriented.convert("RGB"), dtype=np.uint8)
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc


def to_model_layout(pixels: NDArray[np.generic], axes: str = "yxc") -> NDArray[np.float32]:
    """Convert a pixel buffer into a height x width x channel float32 array.

    Args:
        pixels: 2-D (grayscale) or 3-D pixel buffer.
        axes: Axis order of ``pixels``. ``"yxc"`` is row-major image order
            (numpy and Pillow); ``"xyc"`` is width x height x channel.

    Raises:
        ValueError: On unsupported rank or axis order.
    """
    if axes not in ("yxc", "xyc"):
        raise ValueError(f"Unsupported axis order: {axes!r}")

    arr = np.asarray(pixels)
    if arr.ndim == 2:
        arr = arr[:, :, np.newaxis]
    if arr.ndim != 3:
        raise ValueError(f"Expected a 2-D or 3-D pixel buffer, got shape {arr.shape}")

    if axes == "xyc":
        arr = arr.transpose(1, 0, 2)
    return np.ascontiguousarray(arr, dtype=np.float32)


def build_normalization_graph(height: int, width: int, mean: float, scale: float) -> onnx.ModelProto:
    """Build the graph that batches, resizes and normalizes one HxWxC image."""
    nodes = [
        helper.make_node("Unsqueeze", [INPUT_NAME, "make_batch"], ["batched"]),
        helper.make_node(
            "Resize",
            ["batched", "", "", "size"],
            ["resized"],
            mode="linear",
            coordinate_transformation_mode="asymmetric",
            axes=[1, 2],
        ),
        helper.make_node("Sub", ["resized", "mean"], ["centered"]),
        helper.make_node("Div", ["centered", "scale"], [OUTPUT_NAME]),
    ]
    initializers = [
        helper.make_tensor("make_batch", TensorProto.INT64, [1], [0]),
        helper.make_tensor("size", TensorProto.INT64, [2], [height, width]),
        helper.make_tensor("mean", TensorProto.FLOAT, [], [mean]),
        helper.make_tensor("scale", TensorProto.FLOAT, [], [scale]),
    ]
    graph = helper.make_graph(
        nodes,
        "normalize",
        [helper.make_tensor_value_info(INPUT_NAME, TensorProto.FLOAT, ["height", "width", "channels"])],
        [helper.make_tensor_value_info(OUTPUT_NAME, TensorProto.FLOAT, [1, height, width, "channels"])],
        initializer=initializers,
    )
    model = helper.make_model(
        graph,
        producer_name="labelimage",
        opset_imports=[helper.make_opsetid("", NORMALIZATION_OPSET)],
    )
    model.ir_version = NORMALIZATION_IR_VERSION
    onnx.checker.check_model(model)
    return model


def _default_session_factory(model_bytes: bytes) -> InferenceSession:
    return InferenceSession(model_bytes, providers=["CPUExecutionProvider"])


class ImageNormalizer:
    """Runs the normalization graph for a fixed target size.

    The graph is built once and fed through a placeholder input, so one
    normalizer serves any number of images.
    """

    def __init__(
        self,
        height: int,
        width: int,
        mean: float,
        scale: float,
        session_factory: Callable[[bytes], InferenceSession] | None = None,
    ) -> None:
        if height < 1 or width < 1:
            raise ValueError(f"Target size must be positive, got {height}x{width}")
        if scale == 0:
            raise ValueError("Normalization scale must be non-zero")

        self.height = height
        self.width = width
        model = build_normalization_graph(height, width, mean, scale)
        factory = session_factory or _default_session_factory
        self._session = factory(model.SerializeToString())
        logger.debug("Built normalization graph for %dx%d (mean=%s, scale=%s)", height, width, mean, scale)

    def normalize(self, image: NDArray[np.generic]) -> NDArray[np.float32]:
        """Normalize an HxWxC image into a [1, height, width, C] float32 tensor."""
        tensor = to_model_layout(image)
        (normalized,) = self._session.run([OUTPUT_NAME], {INPUT_NAME: tensor})
        return np.asarray(normalized, dtype=np.float32)
