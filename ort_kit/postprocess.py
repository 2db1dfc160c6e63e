from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .errors import InferenceError
from .nms import NMSConfig, suppress
from .tiling import remap_to_image, whole_image
from .types import Box


CLASSIFICATION_TOP_K = 3


@dataclass(frozen=True)
class DetectionPostConfig:
    """
    Settings for turning raw detection output into boxes.
    """

    conf_threshold: float = 0.2
    iou_threshold: float = 0.45
    # "hard" or "soft" (Gaussian Soft-NMS).
    suppression: str = "hard"
    soft_nms_sigma: float = 0.5
    soft_nms_score_threshold: float = 0.3
    max_detections: Optional[int] = None

    def nms_config(self) -> NMSConfig:
        return NMSConfig(
            iou_threshold=self.iou_threshold,
            max_detections=self.max_detections,
            mode=self.suppression,
            sigma=self.soft_nms_sigma,
            score_threshold=self.soft_nms_score_threshold,
        )


def as_batch(data: np.ndarray, dims: Sequence[int]) -> np.ndarray:
    """
    View a flat engine output as an array of shape `dims`.

    Engines hand back either shaped arrays or flat buffers plus dims; both end
    up here so the decoders only ever see shaped data.
    """

    arr = np.asarray(data)
    dims = tuple(int(d) for d in dims)
    expected = int(np.prod(dims)) if dims else 0
    if arr.size != expected:
        raise InferenceError(f"Output has {arr.size} values but dims {dims} need {expected}.")
    return arr.reshape(dims)


class DetectionPostprocessor:
    """
    Post-process for anchor-free detection heads laid out as (C, P) per image:

    - rows 0..3: cx, cy, w, h in model input pixels
    - rows 4..C: one score per class

    e.g. 84 x 8400 for an 80 class export at 640x640.
    """

    def __init__(self, cfg: DetectionPostConfig):
        self.cfg = cfg

    def process(self, preds: np.ndarray, target_size: Tuple[int, int]) -> List[Box]:
        """
        Decode and suppress one image/slice output.

        Returns boxes in model input pixels (the resized image the model saw);
        `tiling.remap_to_image` takes them back to the source image.

        Args:
            preds: output for a single image or slice, shape (C, P) or (1, C, P)
            target_size: (width, height) of the model input
        """

        candidates = self.decode(preds, target_size)
        if not candidates:
            return []
        kept = suppress(candidates, self.cfg.nms_config())
        target_w, target_h = float(target_size[0]), float(target_size[1])
        for b in kept:
            b.x *= target_w
            b.y *= target_h
            b.width *= target_w
            b.height *= target_h
        return kept

    def decode(self, preds: np.ndarray, target_size: Tuple[int, int]) -> List[Box]:
        """
        Decode into boxes normalized by the target size, keeping only scores
        strictly above the confidence threshold.
        """

        p = np.asarray(preds)
        if p.ndim == 3:
            if p.shape[0] != 1:
                raise InferenceError(f"Expected a single image output, got shape {p.shape}.")
            p = p[0]
        if p.ndim != 2:
            raise InferenceError(f"Unsupported detection output shape: {p.shape}")
        if p.shape[0] < 5:
            raise InferenceError(f"Detection output needs >= 5 channels, got {p.shape[0]}.")
        if p.shape[1] == 0:
            return []

        p = p.astype(np.float64, copy=False)
        cx, cy, w_box, h_box = p[0], p[1], p[2], p[3]
        class_scores = p[4:]

        # argmax returns the first index on ties.
        class_ids = np.argmax(class_scores, axis=0)
        scores = class_scores[class_ids, np.arange(class_scores.shape[1])]

        keep = np.nonzero(scores > self.cfg.conf_threshold)[0]
        if keep.size == 0:
            return []

        target_w, target_h = float(target_size[0]), float(target_size[1])
        x = (cx - w_box / 2) / target_w
        y = (cy - h_box / 2) / target_h
        nw = w_box / target_w
        nh = h_box / target_h

        return [
            Box(
                x=float(x[i]),
                y=float(y[i]),
                width=float(nw[i]),
                height=float(nh[i]),
                confidence=float(scores[i]),
                class_id=int(class_ids[i]),
            )
            for i in keep
        ]


def postprocess_detection(
    preds: np.ndarray,
    *,
    target_size: Tuple[int, int],
    original_size: Tuple[int, int],
    cfg: DetectionPostConfig = DetectionPostConfig(),
) -> List[Box]:
    """Whole-image path: boxes in original (width, height) pixel coordinates."""

    kept = DetectionPostprocessor(cfg).process(preds, target_size)
    return remap_to_image(kept, whole_image(original_size[0], original_size[1]), target_size)


def is_logits(values: np.ndarray) -> bool:
    v = np.asarray(values)
    return bool(np.any((v < 0.0) | (v > 1.0)))


def softmax(values: np.ndarray) -> np.ndarray:
    v = np.asarray(values, dtype=np.float64)
    if v.size == 0:
        return v
    e = np.exp(v - np.max(v))
    return e / np.sum(e)


def decode_classification(
    values: np.ndarray,
    conf_threshold: float,
    top_k: int = CLASSIFICATION_TOP_K,
) -> List[Tuple[int, float]]:
    """
    Return up to `top_k` (class_index, confidence) pairs with confidence >=
    threshold, highest first. Values outside [0, 1] are treated as logits.

    An empty list means nothing reached the threshold.
    """

    v = np.asarray(values, dtype=np.float64).reshape(-1)
    probs = softmax(v) if is_logits(v) else v

    order = np.argsort(-probs, kind="stable")
    out: List[Tuple[int, float]] = []
    for idx in order:
        conf = float(probs[idx])
        if conf < conf_threshold:
            continue
        out.append((int(idx), conf))
        if len(out) >= top_k:
            break
    return out


def split_embeddings(output: np.ndarray) -> List[np.ndarray]:
    """Split a (batch, dimension) output into one float64 vector per row."""

    arr = np.asarray(output)
    if arr.ndim == 1:
        arr = arr[None, :]
    if arr.ndim != 2:
        raise InferenceError(f"Expected embedding output (batch, dimension), got shape {arr.shape}.")
    return [np.array(row, dtype=np.float64) for row in arr]
