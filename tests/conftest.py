"""Shared fixtures: in-memory test images and fake accelerated backends."""

import io
import threading

import numpy as np
import pytest
from PIL import Image

from core.transforms import PixelBuffer


def encode_image(image: Image.Image, fmt: str = "PNG") -> bytes:
    output = io.BytesIO()
    image.save(output, format=fmt)
    return output.getvalue()


@pytest.fixture
def image_bytes():
    """Factory for encoded solid-colour images."""

    def make(width=8, height=6, color=(100, 100, 100, 255), mode="RGBA", fmt="PNG"):
        if mode == "RGB":
            color = tuple(color[:3])
        return encode_image(Image.new(mode, (width, height), color), fmt=fmt)

    return make


@pytest.fixture
def random_buffer():
    """Factory for reproducible random RGBA buffers."""

    def make(width=16, height=12, seed=0):
        rng = np.random.default_rng(seed)
        data = rng.integers(0, 256, size=(height, width, 4), dtype=np.uint8)
        return PixelBuffer(width=width, height=height, data=data)

    return make


class FakeBackend:
    """Accelerated backend stand-in that inverts RGB, optionally failing first."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0

    def process(self, buffer):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("device lost")
        data = buffer.data.copy()
        data[..., :3] = 255 - data[..., :3]
        return PixelBuffer(width=buffer.width, height=buffer.height, data=data)


class CountingProbe:
    """Probe returning a backend (or raising) and counting its invocations."""

    def __init__(self, backend=None, error=None, release=None):
        self.backend = backend
        self.error = error
        self.release = release
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.error is not None:
            raise self.error
        return self.backend


@pytest.fixture
def fake_backend():
    return FakeBackend


@pytest.fixture
def counting_probe():
    return CountingProbe


@pytest.fixture
def release_event():
    event = threading.Event()
    yield event
    event.set()
