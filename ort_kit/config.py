from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from .errors import InputError
from .metadata import load_class_names


class TaskType(str, Enum):
    DETECTION = "detection"
    CLASSIFICATION = "classification"
    EMBEDDING = "embedding"


SUPPRESSION_MODES = ("hard", "soft")
INPUT_TYPES = ("image", "text")

DEFAULT_TARGET_SIZE = (384, 384)
DEFAULT_MAX_BATCH_SIZE = 32


@dataclass(frozen=True)
class SahiConfig:
    """
    Tiled (SAHI-style) detection settings.

    - overlap: fraction of the slice side shared by neighbouring slices, in [0, 1)
    - min_area: drop remapped boxes smaller than this many square pixels
    - merge_threshold: containment ratio used when merging slice detections
    - aspect_ratio_threshold: only tile images whose long:short ratio exceeds this
    """

    overlap: float
    min_area: Optional[float] = None
    merge_threshold: float = 0.7
    aspect_ratio_threshold: Optional[float] = None

    def __post_init__(self) -> None:
        if not (0.0 <= self.overlap < 1.0):
            raise InputError("sahi.overlap must be within [0, 1)")
        if self.min_area is not None and self.min_area < 0:
            raise InputError("sahi.min_area must be >= 0")
        if not (0.0 < self.merge_threshold <= 1.0):
            raise InputError("sahi.merge_threshold must be within (0, 1]")
        if self.aspect_ratio_threshold is not None and self.aspect_ratio_threshold < 1.0:
            raise InputError("sahi.aspect_ratio_threshold must be >= 1")


@dataclass(frozen=True)
class TaskConfig:
    """
    Immutable description of one task invocation, validated on construction.

    target_size is (width, height) of the model input.
    """

    task_type: TaskType
    model_path: str
    labels: Tuple[str, ...] = ()
    target_size: Tuple[int, int] = DEFAULT_TARGET_SIZE
    confidence_threshold: float = 0.2
    iou_threshold: float = 0.45
    suppression: str = "hard"
    soft_nms_sigma: float = 0.5
    soft_nms_score_threshold: float = 0.3
    sahi: Optional[SahiConfig] = None
    normalize: bool = False
    merge: bool = False
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE
    input_type: str = "image"

    def __post_init__(self) -> None:
        try:
            task_type = TaskType(self.task_type)
        except ValueError as exc:
            raise InputError(f"Unsupported task type: {self.task_type!r}") from exc
        object.__setattr__(self, "task_type", task_type)
        object.__setattr__(self, "labels", tuple(str(label) for label in self.labels))
        object.__setattr__(self, "target_size", tuple(int(v) for v in self.target_size))

        if not self.model_path or not str(self.model_path).strip():
            raise InputError("model_path is required")
        if len(self.target_size) != 2 or min(self.target_size) <= 0:
            raise InputError("target_size must be two positive integers (width, height)")
        if not (0.0 <= self.confidence_threshold <= 1.0):
            raise InputError("confidence_threshold must be within [0, 1]")
        if not (0.0 < self.iou_threshold <= 1.0):
            raise InputError("iou_threshold must be within (0, 1]")
        if self.suppression not in SUPPRESSION_MODES:
            raise InputError(f"suppression must be one of {SUPPRESSION_MODES}")
        if self.soft_nms_sigma <= 0:
            raise InputError("soft_nms_sigma must be > 0")
        if self.max_batch_size <= 0:
            raise InputError("max_batch_size must be > 0")
        if self.input_type not in INPUT_TYPES:
            raise InputError(f"input_type must be one of {INPUT_TYPES}")
        if self.input_type == "text" and task_type != TaskType.EMBEDDING:
            raise InputError("text inputs are only supported for embedding tasks")

    @property
    def is_tiled(self) -> bool:
        return self.task_type == TaskType.DETECTION and self.sahi is not None

    def label_for(self, class_id: int) -> str:
        if 0 <= class_id < len(self.labels):
            return self.labels[class_id]
        return str(class_id)


def _require(payload: Dict[str, Any], key: str) -> Any:
    if key not in payload:
        raise InputError(f"Missing required key: {key}")
    return payload[key]


def _optional_number(payload: Dict[str, Any], key: str) -> Optional[float]:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InputError(f"{key} must be a number")
    return float(value)


def _optional_bool(payload: Dict[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if not isinstance(value, bool):
        raise InputError(f"{key} must be a boolean")
    return value


def _parse_sahi(raw: Any) -> Optional[SahiConfig]:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise InputError("sahi must be an object")
    unknown = sorted(set(raw.keys()) - {"overlap", "min_area", "merge_threshold", "aspect_ratio_threshold"})
    if unknown:
        raise InputError(f"Unknown sahi keys: {unknown}")
    overlap = _optional_number(raw, "overlap")
    if overlap is None:
        raise InputError("sahi.overlap is required")
    merge_threshold = _optional_number(raw, "merge_threshold")
    return SahiConfig(
        overlap=overlap,
        min_area=_optional_number(raw, "min_area"),
        merge_threshold=0.7 if merge_threshold is None else merge_threshold,
        aspect_ratio_threshold=_optional_number(raw, "aspect_ratio_threshold"),
    )


def _parse_labels(payload: Dict[str, Any], base_dir: Path) -> Sequence[str]:
    labels = payload.get("labels")
    labels_path = payload.get("labels_path")
    if labels is not None and labels_path is not None:
        raise InputError("Use either 'labels' or 'labels_path', not both.")
    if labels_path is not None:
        if not isinstance(labels_path, str) or not labels_path.strip():
            raise InputError("labels_path must be a non-empty string")
        path = Path(labels_path)
        if not path.is_absolute():
            path = base_dir / path
        names = load_class_names(str(path))
        return [names[i] if i in names else str(i) for i in range(max(names) + 1)] if names else []
    if labels is None:
        return []
    if not isinstance(labels, list) or not all(isinstance(item, str) for item in labels):
        raise InputError("labels must be a list of strings")
    return labels


def load_task_config(path: Path) -> TaskConfig:
    """
    Load a `TaskConfig` from a JSON file.

    Relative `model_path` values are kept as written (the pipeline resolves them
    against the project root); relative `labels_path` values resolve against the
    config file's directory.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Task config not found: {path}")
    raw = path.read_text(encoding="utf-8")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise InputError(f"Invalid task config JSON: {path}") from exc
    if not isinstance(payload, dict):
        raise InputError("Task config must be a JSON object")

    allowed = {
        "task_type",
        "model_path",
        "labels",
        "labels_path",
        "target_size",
        "confidence_threshold",
        "iou_threshold",
        "suppression",
        "soft_nms_sigma",
        "soft_nms_score_threshold",
        "sahi",
        "normalize",
        "merge",
        "max_batch_size",
        "input_type",
    }
    unknown = sorted(set(payload.keys()) - allowed)
    if unknown:
        raise InputError(f"Unknown task config keys: {unknown}")

    task_type = _require(payload, "task_type")
    model_path = _require(payload, "model_path")
    if not isinstance(model_path, str):
        raise InputError("model_path must be a string")

    kwargs: Dict[str, Any] = {}
    target_size = payload.get("target_size")
    if target_size is not None:
        if (
            not isinstance(target_size, list)
            or len(target_size) != 2
            or not all(isinstance(v, int) and not isinstance(v, bool) for v in target_size)
        ):
            raise InputError("target_size must be a list of two integers")
        kwargs["target_size"] = tuple(target_size)
    for key in ("confidence_threshold", "iou_threshold", "soft_nms_sigma", "soft_nms_score_threshold"):
        value = _optional_number(payload, key)
        if value is not None:
            kwargs[key] = value
    for key in ("suppression", "input_type"):
        if key in payload:
            if not isinstance(payload[key], str):
                raise InputError(f"{key} must be a string")
            kwargs[key] = payload[key]
    max_batch_size = payload.get("max_batch_size")
    if max_batch_size is not None:
        if isinstance(max_batch_size, bool) or not isinstance(max_batch_size, int):
            raise InputError("max_batch_size must be an integer")
        kwargs["max_batch_size"] = max_batch_size

    return TaskConfig(
        task_type=task_type,
        model_path=model_path,
        labels=tuple(_parse_labels(payload, path.parent)),
        sahi=_parse_sahi(payload.get("sahi")),
        normalize=_optional_bool(payload, "normalize", False),
        merge=_optional_bool(payload, "merge", False),
        **kwargs,
    )
