from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .types import Box


@dataclass(frozen=True)
class NMSConfig:
    iou_threshold: float = 0.45
    max_detections: Optional[int] = None
    # "hard" drops overlapping boxes, "soft" decays their scores instead.
    mode: str = "hard"
    sigma: float = 0.5
    score_threshold: float = 0.3


def box_iou(a: Sequence[float], b: Sequence[float]) -> float:
    """IoU of two (x, y, w, h) boxes. Zero when they do not overlap."""

    return float(_iou_one_to_many(np.asarray(a, dtype=np.float64), np.asarray([b], dtype=np.float64))[0])


def _iou_one_to_many(box: np.ndarray, others: np.ndarray) -> np.ndarray:
    if others.size == 0:
        return np.empty((0,), dtype=np.float64)

    x1 = np.maximum(box[0], others[:, 0])
    y1 = np.maximum(box[1], others[:, 1])
    x2 = np.minimum(box[0] + box[2], others[:, 0] + others[:, 2])
    y2 = np.minimum(box[1] + box[3], others[:, 1] + others[:, 3])

    inter = np.maximum(0.0, x2 - x1) * np.maximum(0.0, y2 - y1)
    union = box[2] * box[3] + others[:, 2] * others[:, 3] - inter
    return np.divide(inter, union, out=np.zeros_like(inter), where=union > 0)


def nms(boxes: np.ndarray, scores: np.ndarray, cfg: NMSConfig) -> np.ndarray:
    """
    Hard NMS. Expects boxes shape (N,4) in xywh and scores shape (N,).
    Returns indices of boxes to keep, highest score first.

    A box is dropped when its IoU with an already kept box is >= iou_threshold.
    Equal scores keep their original order (stable sort).
    """

    if boxes.size == 0:
        return np.empty((0,), dtype=np.int64)

    boxes = np.asarray(boxes, dtype=np.float64)
    order = np.argsort(-np.asarray(scores, dtype=np.float64), kind="stable")
    keep: List[int] = []

    while order.size > 0:
        if cfg.max_detections is not None and len(keep) >= cfg.max_detections:
            break
        i = order[0]
        keep.append(int(i))

        rest = order[1:]
        iou = _iou_one_to_many(boxes[i], boxes[rest])
        order = rest[iou < cfg.iou_threshold]

    return np.array(keep, dtype=np.int64)


def soft_nms(boxes: np.ndarray, scores: np.ndarray, cfg: NMSConfig) -> Tuple[np.ndarray, np.ndarray]:
    """
    Gaussian Soft-NMS.

    Returns (indices, decayed_scores) for the kept boxes in selection order.
    Every remaining box is decayed by exp(-iou^2 / sigma) against each newly
    kept box; boxes whose running score falls to or below score_threshold leave
    the pool. The first pick is never dropped.
    """

    if boxes.size == 0:
        return np.empty((0,), dtype=np.int64), np.empty((0,), dtype=np.float64)

    boxes = np.asarray(boxes, dtype=np.float64)
    running = np.asarray(scores, dtype=np.float64).copy()
    order = np.argsort(-running, kind="stable")
    keep: List[int] = []
    kept_scores: List[float] = []

    while order.size > 0:
        if cfg.max_detections is not None and len(keep) >= cfg.max_detections:
            break
        i = order[0]
        keep.append(int(i))
        kept_scores.append(float(running[i]))

        rest = order[1:]
        if rest.size == 0:
            break
        iou = _iou_one_to_many(boxes[i], boxes[rest])
        running[rest] *= np.exp(-(iou * iou) / cfg.sigma)

        rest = rest[running[rest] > cfg.score_threshold]
        order = rest[np.argsort(-running[rest], kind="stable")]

    return np.array(keep, dtype=np.int64), np.array(kept_scores, dtype=np.float64)


def suppress(candidates: Sequence[Box], cfg: NMSConfig) -> List[Box]:
    """
    Run the configured suppression over Box objects; returns copies of the kept
    boxes in selection order.

    Soft mode only uses the decayed scores to pick and drop boxes; kept boxes
    report their decoded confidence so the confidence threshold still holds.
    """

    if not candidates:
        return []

    boxes = np.array([c.as_xywh() for c in candidates], dtype=np.float64)
    scores = np.array([c.confidence for c in candidates], dtype=np.float64)

    if cfg.mode == "soft":
        keep, _decayed = soft_nms(boxes, scores, cfg)
    elif cfg.mode == "hard":
        keep = nms(boxes, scores, cfg)
    else:
        raise ValueError(f"Unknown suppression mode: {cfg.mode!r}")
    return [replace(candidates[int(i)]) for i in keep]
