"""
Dehazing - Resize Policy
=========================
Bounded output dimensions with exact aspect ratio preservation.
"""

import math
from typing import Tuple

MAX_IMAGE_DIMENSION = 1024


def _round_nearest(value: float) -> int:
    # Round half up; plain round() would use banker's rounding.
    return int(math.floor(value + 0.5))


def compute_target_size(
    width: int,
    height: int,
    max_dimension: int = MAX_IMAGE_DIMENSION
) -> Tuple[int, int]:
    """
    Compute the size an image should be rasterized at.

    Images already inside the bound are returned unchanged. Larger images
    are scaled by ``min(max_dimension / width, max_dimension / height)``,
    rounded to the nearest pixel, and never collapse below 1×1.

    Args:
        width: Natural image width in pixels (> 0)
        height: Natural image height in pixels (> 0)
        max_dimension: Bound for the longest side (> 0)

    Returns:
        (target_width, target_height)
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"Image dimensions must be positive, got {width}×{height}")
    if max_dimension <= 0:
        raise ValueError(f"max_dimension must be positive, got {max_dimension}")

    if width <= max_dimension and height <= max_dimension:
        return width, height

    ratio = min(max_dimension / width, max_dimension / height)

    target_width = max(1, min(max_dimension, _round_nearest(width * ratio)))
    target_height = max(1, min(max_dimension, _round_nearest(height * ratio)))

    return target_width, target_height
