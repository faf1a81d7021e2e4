"""Tests for the offline single-image CLI."""

import logging

import pytest
from PIL import Image

from core.pipeline import DehazingPipeline, PipelineConfig
from core.transforms import ProcessingStrategy
from logging_utils import verbosity_level
from tools.offline_processor import build_parser, dehaze_file, main


def test_dehaze_file_writes_png(tmp_path, image_bytes):
    source = tmp_path / "hazy.png"
    source.write_bytes(image_bytes(10, 5, (100, 100, 100, 255)))
    output = tmp_path / "out" / "clear.png"

    artifact = dehaze_file(str(source), str(output), pipeline=DehazingPipeline(PipelineConfig(), probe=None))

    assert artifact.strategy == ProcessingStrategy.FALLBACK
    with Image.open(output) as image:
        assert image.size == (10, 5)
        assert image.convert("RGBA").getpixel((3, 3)) == (130, 130, 117, 255)


def test_main_success(tmp_path, image_bytes):
    source = tmp_path / "hazy.jpg"
    source.write_bytes(image_bytes(300, 100, mode="RGB", fmt="JPEG"))
    output = tmp_path / "clear.png"

    code = main([str(source), str(output), "--cpu", "--max-dimension", "150", "--workers", "2", "-q"])

    assert code == 0
    with Image.open(output) as image:
        assert image.size == (150, 50)


def test_main_undecodable_input(tmp_path):
    source = tmp_path / "broken.png"
    source.write_bytes(b"\x00\x01\x02")
    output = tmp_path / "clear.png"

    assert main([str(source), str(output), "--cpu", "-qq"]) == 1
    assert not output.exists()


def test_main_missing_input(tmp_path):
    assert main([str(tmp_path / "absent.png"), str(tmp_path / "out.png"), "--cpu"]) == 1


def test_main_invalid_config(tmp_path):
    assert main([str(tmp_path / "a.png"), str(tmp_path / "b.png"), "--max-dimension", "0"]) == 2


def test_parser_defaults():
    args = build_parser().parse_args(["in.png", "out.png"])
    assert args.cpu is False
    assert args.max_dimension is None
    assert args.verbose == 0


@pytest.mark.parametrize("verbose, quiet, level", [
    (0, 0, logging.INFO),
    (1, 0, logging.DEBUG),
    (3, 0, logging.DEBUG),
    (0, 1, logging.WARNING),
    (0, 2, logging.ERROR),
    (0, 5, logging.ERROR),
    (1, 1, logging.INFO),
])
def test_verbosity_level(verbose, quiet, level):
    assert verbosity_level(verbose, quiet) == level


def test_quiet_flags_counted():
    args = build_parser().parse_args(["in.png", "out.png", "-qq"])
    assert args.quiet == 2
    assert not hasattr(args, "log_level")
