"""
Square-slice tiling for detection on large or elongated images.

Slices are `min(width, height)` pixels on a side and overlap by a fixed
fraction. The last row/column is shifted back inside the image instead of being
cut short, so every slice has the same size and the model always sees a full
square.
"""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple

from .types import Box, SliceDescriptor


def should_tile(width: int, height: int, aspect_ratio_threshold: Optional[float] = None) -> bool:
    """Without a gate every image is tiled; with one only if long/short > gate."""

    if width <= 0 or height <= 0:
        return False
    if aspect_ratio_threshold is None:
        return True
    ratio = max(width, height) / min(width, height)
    return ratio > aspect_ratio_threshold


def slice_origins(dimension: int, slice_size: int, stride: int) -> List[int]:
    """
    Origins along one axis: ceil((dimension - slice_size) / stride) + 1 of
    them, the last one clamped to dimension - slice_size.
    """

    if dimension <= slice_size:
        return [0]
    count = math.ceil((dimension - slice_size) / stride) + 1
    last = dimension - slice_size
    return [min(i * stride, last) for i in range(count)]


def compute_slices(width: int, height: int, overlap: float, image_index: int = 0) -> List[SliceDescriptor]:
    """Return slices in row-major order covering a (width, height) image."""

    w = int(width)
    h = int(height)
    if w <= 0 or h <= 0:
        raise ValueError(f"width/height must be positive, got {(w, h)}")
    if not (0.0 <= overlap < 1.0):
        raise ValueError(f"overlap must be within [0, 1), got {overlap}")

    size = min(w, h)
    stride = max(1, int(math.floor(size * (1.0 - overlap))))

    return [
        SliceDescriptor(origin_x=x, origin_y=y, width=size, height=size, image_index=image_index)
        for y in slice_origins(h, size, stride)
        for x in slice_origins(w, size, stride)
    ]


def whole_image(width: int, height: int, image_index: int = 0) -> SliceDescriptor:
    return SliceDescriptor(origin_x=0, origin_y=0, width=int(width), height=int(height), image_index=image_index)


def remap_to_image(
    boxes: Sequence[Box],
    sl: SliceDescriptor,
    target_size: Tuple[int, int],
) -> List[Box]:
    """
    Map boxes from slice-local resized pixels (model input space) to original
    image pixels: translate by the slice origin, scale by slice / target size.
    """

    sx = sl.width / float(target_size[0])
    sy = sl.height / float(target_size[1])
    return [
        Box(
            x=sl.origin_x + b.x * sx,
            y=sl.origin_y + b.y * sy,
            width=b.width * sx,
            height=b.height * sy,
            confidence=b.confidence,
            class_id=b.class_id,
        )
        for b in boxes
    ]


def filter_min_area(boxes: Sequence[Box], min_area: Optional[float]) -> List[Box]:
    if not min_area:
        return list(boxes)
    return [b for b in boxes if b.area >= min_area]
