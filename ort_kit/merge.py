from __future__ import annotations

from dataclasses import replace
from typing import Dict, List, Sequence, Tuple

from .types import Box


DEFAULT_CONTAINMENT_THRESHOLD = 0.7


def intersection_area(a: Box, b: Box) -> float:
    ax1, ay1, ax2, ay2 = a.as_xyxy()
    bx1, by1, bx2, by2 = b.as_xyxy()
    w = min(ax2, bx2) - max(ax1, bx1)
    h = min(ay2, by2) - max(ay1, by1)
    if w <= 0 or h <= 0:
        return 0.0
    return w * h


def contains(a: Box, b: Box, threshold: float = DEFAULT_CONTAINMENT_THRESHOLD) -> bool:
    """
    True when at least `threshold` of b's area lies inside a.

    Asymmetric on purpose: a small fragment cut off at a slice border is
    absorbed by the larger box covering the rest of the object even though
    their IoU is low.
    """

    area_b = b.area
    if area_b <= 0:
        return False
    return intersection_area(a, b) / area_b >= threshold


def union_box(a: Box, b: Box) -> Box:
    """Bounding union of a and b; confidence and class come from the stronger box."""

    ax1, ay1, ax2, ay2 = a.as_xyxy()
    bx1, by1, bx2, by2 = b.as_xyxy()
    x1, y1 = min(ax1, bx1), min(ay1, by1)
    x2, y2 = max(ax2, bx2), max(ay2, by2)
    stronger = a if a.confidence >= b.confidence else b
    return Box(
        x=x1,
        y=y1,
        width=x2 - x1,
        height=y2 - y1,
        confidence=max(a.confidence, b.confidence),
        class_id=stronger.class_id,
    )


def merge_boxes(boxes: Sequence[Box], threshold: float = DEFAULT_CONTAINMENT_THRESHOLD) -> List[Box]:
    """
    Single greedy pass: each surviving box absorbs every later box it contains
    or is contained by. The kept box grows as it absorbs, so later comparisons
    use the grown rectangle. Not iterated to a fixed point.
    """

    pool = [replace(b) for b in boxes]
    merged = [False] * len(pool)
    out: List[Box] = []

    for i in range(len(pool)):
        if merged[i]:
            continue
        kept = pool[i]
        for j in range(i + 1, len(pool)):
            if merged[j]:
                continue
            other = pool[j]
            if contains(kept, other, threshold) or contains(other, kept, threshold):
                kept = union_box(kept, other)
                merged[j] = True
        out.append(kept)

    return out


def merge_per_image(
    tagged: Sequence[Tuple[int, Box]],
    threshold: float = DEFAULT_CONTAINMENT_THRESHOLD,
) -> Dict[int, List[Box]]:
    """Group (image_index, box) pairs by image and merge each group on its own."""

    groups: Dict[int, List[Box]] = {}
    for image_index, box in tagged:
        groups.setdefault(image_index, []).append(box)
    return {image_index: merge_boxes(group, threshold) for image_index, group in groups.items()}
