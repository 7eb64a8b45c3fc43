"""Command line interface: label an image, list models, or run the API server."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np

from labelimage.config import Settings
from labelimage.main import configure_logging
from labelimage.ml.image_classifier import OnnxImageClassifier
from labelimage.ml.model_manager import MODEL_REGISTRY, OnnxModelManager
from labelimage.ml.preprocessing import decode_image

logger = logging.getLogger(__name__)


def _settings(args: argparse.Namespace) -> Settings:
    """Environment settings, overridden by any flags given on the command line."""
    overrides = {
        name: getattr(args, name)
        for name in ("model_name", "models_dir", "min_percent", "device", "host", "port")
        if getattr(args, name, None) is not None
    }
    return Settings(**overrides)


def _error(msg: str, args: argparse.Namespace) -> None:
    """Print error to stderr."""
    if getattr(args, "json_output", False):
        print(json.dumps({"error": msg}), file=sys.stderr)
    else:
        print(f"error: {msg}", file=sys.stderr)


def cmd_classify(args: argparse.Namespace) -> int:
    """Label one image and print the labels above the threshold."""
    try:
        settings = _settings(args)
        configure_logging("DEBUG" if args.verbose else settings.log_level)

        image = decode_image(Path(args.image).read_bytes(), max_pixels=settings.max_image_pixels)
        manager = OnnxModelManager(settings)
        classifier = OnnxImageClassifier(manager, settings.model_name)
        classification = classifier.classify(image, settings.min_percent)

        if args.save_normalized:
            np.save(args.save_normalized, classification.normalized)
            logger.info("Saved normalized image %s to %s", classification.normalized.shape, args.save_normalized)
    except KeyError as exc:
        _error(exc.args[0], args)
        return 1
    except (OSError, ValueError, RuntimeError) as exc:
        if args.verbose:
            logger.exception("Classification failed")
        _error(str(exc), args)
        return 1

    if args.json_output:
        print(
            json.dumps(
                {
                    "model": classifier.model_name,
                    "min_percent": settings.min_percent,
                    "tags": [{"label": r.label, "confidence": r.confidence} for r in classification.results],
                },
                indent=2,
            )
        )
    else:
        sys.stdout.write(classification.text)
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    """List the models this build knows about."""
    if args.json_output:
        print(
            json.dumps(
                [
                    {"name": s.name, "input_size": [s.height, s.width], "license": s.license}
                    for s in MODEL_REGISTRY.values()
                ],
                indent=2,
            )
        )
    else:
        for spec in MODEL_REGISTRY.values():
            print(f"{spec.name}\t{spec.height}x{spec.width}\t{spec.license}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP API under uvicorn."""
    import uvicorn

    try:
        settings = _settings(args)
    except ValueError as exc:
        _error(str(exc), args)
        return 1
    uvicorn.run("labelimage.main:app", host=settings.host, port=settings.port)
    return 0


def _add_common_options(parser: argparse.ArgumentParser, default: object = False) -> None:
    parser.add_argument("--json", dest="json_output", action="store_true", default=default, help="Output as JSON")
    parser.add_argument("-v", "--verbose", action="store_true", default=default, help="Enable debug logging")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labelimage",
        description="Label images with a pre-trained Inception classifier.",
    )
    _add_common_options(parser)
    common = argparse.ArgumentParser(add_help=False)
    # Subcommand copies only set the flags when given.
    _add_common_options(common, default=argparse.SUPPRESS)
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("classify", parents=[common], help="Label an image")
    p.add_argument("image", help="Path to the image file")
    p.add_argument("--min-percent", type=float, help="Min probability (%%) of reported labels (default: 1)")
    p.add_argument("--model", dest="model_name", help="Model name (default: inception5h)")
    p.add_argument("--models-dir", help="Directory holding <model>/<resource> files")
    p.add_argument("--device", choices=["cpu", "cuda", "openvino"], help="Execution device")
    p.add_argument("--save-normalized", metavar="PATH", help="Save the normalized input tensor as .npy")
    p.set_defaults(func=cmd_classify)

    p = sub.add_parser("models", parents=[common], help="List available models")
    p.set_defaults(func=cmd_models)

    p = sub.add_parser("serve", parents=[common], help="Run the HTTP API")
    p.add_argument("--host", help="Bind address")
    p.add_argument("--port", type=int, help="Bind port")
    p.set_defaults(func=cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
