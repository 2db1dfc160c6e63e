from __future__ import annotations

from typing import Callable, List, Sequence, Tuple

import numpy as np

from .types import (
    Box,
    ClassificationItem,
    ClassificationResult,
    DetectionItem,
    DetectionResult,
    EmbeddingResult,
)


LabelFn = Callable[[int], str]


def squareness(width: float, height: float) -> float:
    """1 - |1 - min/max|: 1.0 for a square, towards 0 for thin boxes."""

    longest = max(width, height)
    if longest <= 0:
        return 0.0
    return 1.0 - abs(1.0 - min(width, height) / longest)


def format_detections(boxes: Sequence[Box], label_for: LabelFn) -> DetectionResult:
    items: List[DetectionItem] = []
    for b in boxes:
        items.append(
            DetectionItem(
                label=label_for(b.class_id),
                box=(int(round(b.x)), int(round(b.y)), int(round(b.width)), int(round(b.height))),
                confidence=round(float(b.confidence), 4),
                squareness=round(squareness(b.width, b.height), 4),
            )
        )
    return DetectionResult(detections=items)


def format_classifications(pairs: Sequence[Tuple[int, float]], label_for: LabelFn) -> ClassificationResult:
    return ClassificationResult(
        classifications=[
            ClassificationItem(label=label_for(idx), confidence=round(float(conf), 4)) for idx, conf in pairs
        ]
    )


def format_embedding(vector: np.ndarray) -> EmbeddingResult:
    return EmbeddingResult(vector=[float(v) for v in np.asarray(vector).reshape(-1)])
