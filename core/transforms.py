"""
Dehazing - Image Transform Engine
==================================
Pixel buffer type and the per-pixel transforms applied by the pipeline.

Two strategies are supported:
1. Accelerated: delegates to an ONNX model backend (runtime.ai)
2. Fallback: deterministic contrast boost with blue tint reduction

The fallback transform is the compatibility reference:
    R' = min(255, R * 1.3)
    G' = min(255, G * 1.3)
    B' = min(255, B * 1.3 * 0.9)
    A' = A
Fractional results are rounded to nearest (ties to even), the same way a
clamped 8-bit canvas buffer stores them.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

import numpy as np
from PIL import Image

from core.errors import TransformError

CONTRAST_FACTOR = 1.3
BLUE_TINT_FACTOR = 0.9


class ProcessingStrategy(str, Enum):
    """Execution path for the transform step."""
    ACCELERATED = "accelerated"
    FALLBACK = "fallback"


@dataclass
class PixelBuffer:
    """
    Row-major RGBA8 raster.

    ``data`` has shape (height, width, 4) and dtype uint8, so its flat
    length is always ``width * height * 4``.
    """
    width: int
    height: int
    data: np.ndarray

    def __post_init__(self):
        expected = (self.height, self.width, 4)
        if self.data.dtype != np.uint8:
            raise ValueError(f"PixelBuffer data must be uint8, got {self.data.dtype}")
        if self.data.shape != expected:
            raise ValueError(
                f"PixelBuffer data shape {self.data.shape} does not match {expected}"
            )

    def __len__(self) -> int:
        return self.data.size

    @classmethod
    def from_image(cls, image: Image.Image) -> "PixelBuffer":
        """Copy a PIL image into a new RGBA buffer."""
        if image.mode != 'RGBA':
            image = image.convert('RGBA')
        data = np.array(image, dtype=np.uint8)
        return cls(width=image.width, height=image.height, data=data)

    @classmethod
    def from_bytes(cls, raw: bytes, width: int, height: int) -> "PixelBuffer":
        """Build a buffer from flat RGBA bytes."""
        if len(raw) != width * height * 4:
            raise ValueError(
                f"Expected {width * height * 4} bytes for {width}×{height}, got {len(raw)}"
            )
        data = np.frombuffer(raw, dtype=np.uint8).reshape(height, width, 4).copy()
        return cls(width=width, height=height, data=data)

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.data)

    def tobytes(self) -> bytes:
        return self.data.tobytes()


class AcceleratedBackend(Protocol):
    """Anything able to run the accelerated dehazing model."""

    def process(self, buffer: PixelBuffer) -> PixelBuffer:
        ...


def _fallback_rows(src: np.ndarray, dst: np.ndarray) -> None:
    rgb = src[..., :3].astype(np.float64)

    rgb[..., 0] *= CONTRAST_FACTOR
    rgb[..., 1] *= CONTRAST_FACTOR
    rgb[..., 2] = rgb[..., 2] * CONTRAST_FACTOR * BLUE_TINT_FACTOR

    dst[..., :3] = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)
    dst[..., 3] = src[..., 3]


def fallback_dehaze(buffer: PixelBuffer, workers: int = 1) -> PixelBuffer:
    """
    Apply the fallback dehazing transform.

    Args:
        buffer: Input RGBA buffer (never modified)
        workers: Number of row bands processed concurrently

    Returns:
        New buffer of the same size
    """
    output = np.empty_like(buffer.data)

    if workers <= 1 or buffer.height < 2:
        _fallback_rows(buffer.data, output)
    else:
        bands = np.array_split(np.arange(buffer.height), min(workers, buffer.height))
        with ThreadPoolExecutor(max_workers=len(bands)) as pool:
            futures = [
                pool.submit(
                    _fallback_rows,
                    buffer.data[rows[0]:rows[-1] + 1],
                    output[rows[0]:rows[-1] + 1]
                )
                for rows in bands if len(rows)
            ]
            for future in futures:
                future.result()

    return PixelBuffer(width=buffer.width, height=buffer.height, data=output)


def transform(
    buffer: PixelBuffer,
    strategy: ProcessingStrategy,
    backend: Optional[AcceleratedBackend] = None,
    workers: int = 1
) -> PixelBuffer:
    """
    Map an input buffer to a dehazed buffer of identical size.

    Raises:
        TransformError: if the accelerated backend is absent or fails, or
            returns anything but a new buffer of the same size.
    """
    if strategy == ProcessingStrategy.FALLBACK:
        return fallback_dehaze(buffer, workers=workers)

    if backend is None:
        raise TransformError("Accelerated strategy selected without a backend")

    try:
        result = backend.process(buffer)
    except TransformError:
        raise
    except Exception as e:
        raise TransformError(f"Accelerated backend failed: {e}", cause=e) from e

    if not isinstance(result, PixelBuffer):
        raise TransformError(
            f"Accelerated backend returned {type(result).__name__}, expected PixelBuffer"
        )
    if result is buffer:
        raise TransformError("Accelerated backend returned its input buffer")
    if (result.width, result.height) != (buffer.width, buffer.height):
        raise TransformError(
            f"Accelerated backend changed size: {buffer.width}×{buffer.height} "
            f"-> {result.width}×{result.height}"
        )

    return result
