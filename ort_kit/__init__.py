"""
Model-serving helpers for detection, classification and embedding models.

Images go through OpenCV, inference through a pluggable backend (ONNX Runtime
by default, TorchScript optional), and every model output is decoded with
NumPy. Large or elongated images can be tiled for detection and the per-slice
boxes merged back together.
"""

from .types import Box, SliceDescriptor, DetectionResult, ClassificationResult, EmbeddingResult
from .errors import CapacityError, DecodeError, InferenceError, InputError, OrtKitError, ResourceError
from .config import SahiConfig, TaskConfig, TaskType, load_task_config
from .nms import NMSConfig, nms, soft_nms, suppress
from .postprocess import DetectionPostConfig, DetectionPostprocessor, decode_classification
from .tiling import compute_slices, remap_to_image, should_tile
from .merge import merge_boxes
from .embedding import l2_normalize, merge_embeddings
from .metadata import load_class_names
from .sessions import SessionManager
from .runtime import TaskPipeline, load_pipeline, find_project_root, resolve_path

__all__ = [
    "Box",
    "SliceDescriptor",
    "DetectionResult",
    "ClassificationResult",
    "EmbeddingResult",
    "OrtKitError",
    "InputError",
    "DecodeError",
    "InferenceError",
    "ResourceError",
    "CapacityError",
    "SahiConfig",
    "TaskConfig",
    "TaskType",
    "load_task_config",
    "NMSConfig",
    "nms",
    "soft_nms",
    "suppress",
    "DetectionPostConfig",
    "DetectionPostprocessor",
    "decode_classification",
    "compute_slices",
    "remap_to_image",
    "should_tile",
    "merge_boxes",
    "l2_normalize",
    "merge_embeddings",
    "load_class_names",
    "SessionManager",
    "TaskPipeline",
    "load_pipeline",
    "find_project_root",
    "resolve_path",
]
