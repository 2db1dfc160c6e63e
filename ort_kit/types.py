from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Tuple, Union


@dataclass
class Box:
    """
    Candidate box in (x, y, width, height) form, top-left origin.

    Mutable while it moves through decode/suppression/remap; the pipeline
    turns it into a frozen `DetectionItem` once emitted.
    """

    x: float
    y: float
    width: float
    height: float
    confidence: float
    class_id: int = 0

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)

    def as_xywh(self) -> Tuple[float, float, float, float]:
        return self.x, self.y, self.width, self.height

    def as_xyxy(self) -> Tuple[float, float, float, float]:
        return self.x, self.y, self.x + self.width, self.y + self.height


@dataclass(frozen=True)
class SliceDescriptor:
    """
    One rectangle of a source image fed to the model on its own.

    An untiled image is a single descriptor covering the whole frame.
    """

    origin_x: int
    origin_y: int
    width: int
    height: int
    image_index: int

    def as_xywh(self) -> Tuple[int, int, int, int]:
        return self.origin_x, self.origin_y, self.width, self.height


@dataclass(frozen=True)
class DetectionItem:
    label: str
    box: Tuple[int, int, int, int]
    confidence: float
    squareness: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "box": list(self.box),
            "confidence": self.confidence,
            "squareness": self.squareness,
        }


@dataclass(frozen=True)
class ClassificationItem:
    label: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "confidence": self.confidence}


@dataclass(frozen=True)
class DetectionResult:
    kind: ClassVar[str] = "detection"
    detections: List[DetectionItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"detections": [d.to_dict() for d in self.detections]}


@dataclass(frozen=True)
class ClassificationResult:
    kind: ClassVar[str] = "classification"
    classifications: List[ClassificationItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"classifications": [c.to_dict() for c in self.classifications]}


@dataclass(frozen=True)
class EmbeddingResult:
    kind: ClassVar[str] = "embedding"
    vector: List[float] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"embedding": list(self.vector)}


TaskResult = Union[DetectionResult, ClassificationResult, EmbeddingResult]
