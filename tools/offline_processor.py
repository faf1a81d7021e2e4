"""
Dehazing - Offline Image Processor
===================================
Command line entry point: read an image from disk, dehaze it, write a PNG.

    python -m tools.offline_processor hazy.jpg clear.png --cpu -v
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from core.errors import DehazingError
from core.pipeline import DehazingPipeline, PipelineConfig, ResultArtifact, SourceImage
from core.progress import ProgressEvent
from logging_utils import add_logging_args, configure_logging

logger = logging.getLogger(__name__)


def dehaze_file(
    input_path: str,
    output_path: str,
    config: Optional[PipelineConfig] = None,
    pipeline: Optional[DehazingPipeline] = None
) -> ResultArtifact:
    """
    Dehaze a single image file.

    Args:
        input_path: Path to input image
        output_path: Path to save the PNG result
        config: Pipeline configuration (ignored when pipeline is given)
        pipeline: Existing pipeline to reuse

    Returns:
        The result artifact that was written
    """
    source = SourceImage.from_path(input_path)
    pipeline = pipeline or DehazingPipeline(config)

    def report(event: ProgressEvent) -> None:
        logger.info("[%3d%%] %s", event.progress, event.stage)

    artifact = pipeline.run_sync(source, on_progress=report)

    output = Path(output_path)
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_bytes(artifact.data)

    logger.info("Saved %d×%d result to %s", artifact.width, artifact.height, output)
    return artifact


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dehaze a single image")
    parser.add_argument("input", help="Input image path")
    parser.add_argument("output", help="Output PNG path")
    parser.add_argument(
        "--max-dimension", type=int, default=None,
        help="Bound for the longest output side (default 1024)"
    )
    parser.add_argument("--model", default=None, help="ONNX model file for the accelerated path")
    parser.add_argument("--cpu", action="store_true", help="Skip the accelerated path")
    parser.add_argument(
        "--workers", type=int, default=None,
        help="Row bands processed in parallel by the fallback transform"
    )
    add_logging_args(parser)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        config = PipelineConfig.from_env()
        if args.max_dimension is not None:
            config.max_dimension = args.max_dimension
        if args.model:
            config.model_path = args.model
        if args.cpu:
            config.use_accelerated = False
        if args.workers is not None:
            config.transform_workers = args.workers
        config.validate()
    except ValueError as e:
        logger.error("Invalid configuration: %s", e)
        return 2

    if not Path(args.input).is_file():
        logger.error("Input image not found: %s", args.input)
        return 1

    try:
        dehaze_file(args.input, args.output, config)
    except DehazingError as e:
        logger.error("%s", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
