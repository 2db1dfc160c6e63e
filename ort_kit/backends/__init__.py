"""
Inference backends for ort_kit.

Each backend implements the `InferenceBackend` capability interface. Runtime
imports (onnxruntime, torch) happen when a backend is constructed, so the
pre/post-processing code stays usable without any runtime installed.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from .base import InferenceBackend, RuntimeTensor, SessionHandle, SessionOptions

__all__ = [
    "InferenceBackend",
    "RuntimeTensor",
    "SessionHandle",
    "SessionOptions",
    "backend_name_for_path",
    "load_backend",
]


def backend_name_for_path(model_path: Union[str, Path]) -> str:
    suffix = Path(model_path).suffix.lower()
    if suffix == ".onnx":
        return "onnxruntime"
    if suffix in {".torchscript", ".ts", ".pt"}:
        return "torchscript"
    raise ValueError(f"Could not infer backend from extension '{suffix}'. Pass backend=... explicitly.")


def load_backend(name: Optional[str] = None, **kwargs) -> InferenceBackend:
    """
    Construct a backend by name ("onnxruntime" or "torchscript").

    Extra keyword arguments become the backend's config fields.
    """

    chosen = (name or "onnxruntime").lower()
    if chosen == "onnxruntime":
        from .onnxruntime_backend import OnnxRuntimeBackend, OnnxRuntimeBackendConfig

        return OnnxRuntimeBackend(OnnxRuntimeBackendConfig(**kwargs))

    if chosen == "torchscript":
        from .torchscript_backend import TorchScriptBackend, TorchScriptBackendConfig

        return TorchScriptBackend(TorchScriptBackendConfig(**kwargs))

    raise ValueError(f"Unsupported backend: {name!r}")
