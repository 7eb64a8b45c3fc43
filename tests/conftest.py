"""Shared fixtures: a tiny stand-in for the inception5h classifier."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper
from PIL import Image

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

LABELS = ["red", "green", "blue"]


def build_mean_color_classifier() -> onnx.ModelProto:
    """A [1, H, W, 3] -> [1, 3] model: softmax over the mean of each channel."""
    nodes = [
        helper.make_node("ReduceMean", ["input", "axes"], ["pooled"], keepdims=0),
        helper.make_node("Softmax", ["pooled"], ["output"], axis=-1),
    ]
    graph = helper.make_graph(
        nodes,
        "mean_color",
        [helper.make_tensor_value_info("input", TensorProto.FLOAT, [1, "height", "width", 3])],
        [helper.make_tensor_value_info("output", TensorProto.FLOAT, [1, 3])],
        initializer=[helper.make_tensor("axes", TensorProto.INT64, [2], [1, 2])],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 18)])
    model.ir_version = 8
    return model


def _encode_png(color: tuple[int, int, int], size: tuple[int, int] = (32, 24)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def png_bytes() -> Callable[..., bytes]:
    """Encoder for solid-color PNG images: ``png_bytes(color, size=(w, h))``."""
    return _encode_png


@pytest.fixture()
def models_dir(tmp_path: Path) -> Path:
    """A models directory holding inception5h resources backed by the tiny model."""
    model_dir = tmp_path / "inception5h"
    model_dir.mkdir()
    (model_dir / "tensorflow_inception_graph.onnx").write_bytes(build_mean_color_classifier().SerializeToString())
    (model_dir / "imagenet_comp_graph_label_strings.txt").write_text("\n".join(LABELS) + "\n", encoding="utf-8")
    return tmp_path


@pytest.fixture()
def red_image() -> np.ndarray:
    image = np.zeros((24, 32, 3), dtype=np.uint8)
    image[..., 0] = 255
    return image
