from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Sequence, Union

import numpy as np

from .base import RuntimeTensor, SessionHandle, SessionOptions


PathLike = Union[str, Path]

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class OnnxRuntimeBackendConfig:
    """
    Configuration for ONNX Runtime inference.

    - providers: ORT execution providers (e.g., ["CUDAExecutionProvider", "CPUExecutionProvider"]);
      used when the session options do not name any
    """

    providers: Optional[Sequence[str]] = None


class OnnxRuntimeBackend:
    """
    ONNX Runtime backend.

    Inputs are fed as OrtValues and outputs come back as OrtValues, so every
    native buffer is visible to the caller and can be released explicitly.
    """

    name = "onnxruntime"

    def __init__(self, cfg: OnnxRuntimeBackendConfig = OnnxRuntimeBackendConfig()):
        try:
            import onnxruntime as ort  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError(
                "onnxruntime is required for the ONNX backend. Install it with `pip install onnxruntime` "
                "(or `onnxruntime-gpu`)."
            ) from e

        self._ort = ort
        self.cfg = cfg

    def _session_options(self, options: SessionOptions):
        ort = self._ort
        sess_opts = ort.SessionOptions()
        sess_opts.enable_cpu_mem_arena = options.enable_cpu_mem_arena
        sess_opts.enable_mem_pattern = options.enable_mem_pattern
        sess_opts.execution_mode = (
            ort.ExecutionMode.ORT_SEQUENTIAL if options.sequential else ort.ExecutionMode.ORT_PARALLEL
        )
        levels = {
            "disable": ort.GraphOptimizationLevel.ORT_DISABLE_ALL,
            "basic": ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
            "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
            "all": ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
        }
        if options.graph_optimization not in levels:
            raise ValueError(f"Unknown graph optimization level: {options.graph_optimization!r}")
        sess_opts.graph_optimization_level = levels[options.graph_optimization]
        if options.intra_op_num_threads is not None:
            sess_opts.intra_op_num_threads = int(options.intra_op_num_threads)
        return sess_opts

    def create_session(self, model_path: PathLike, options: SessionOptions) -> SessionHandle:
        path = Path(model_path)
        if not path.exists():
            raise FileNotFoundError(str(path))

        providers = options.providers if options.providers is not None else self.cfg.providers
        session = self._ort.InferenceSession(
            str(path),
            sess_options=self._session_options(options),
            providers=list(providers) if providers is not None else None,
        )
        # ORT returns providers in priority order for this session.
        LOGGER.debug("ORT session for %s uses providers %s", path, session.get_providers())
        return SessionHandle(
            model_path=str(path),
            session=session,
            input_names=tuple(i.name for i in session.get_inputs()),
            output_names=tuple(o.name for o in session.get_outputs()),
        )

    def create_tensor(self, dtype: str, data: np.ndarray, dims: Sequence[int]) -> RuntimeTensor:
        arr = np.ascontiguousarray(np.asarray(data, dtype=np.dtype(dtype)).reshape(tuple(dims)))
        value = self._ort.OrtValue.ortvalue_from_numpy(arr)
        return RuntimeTensor(dtype=dtype, dims=tuple(arr.shape), value=value, reader=lambda v: v.numpy())

    def run(self, handle: SessionHandle, feeds: Dict[str, RuntimeTensor]) -> Dict[str, RuntimeTensor]:
        if handle.session is None:
            raise RuntimeError(f"Session for {handle.model_path} has been released.")
        outputs = handle.session.run_with_ort_values(
            list(handle.output_names),
            {name: tensor.value for name, tensor in feeds.items()},
        )
        result: Dict[str, RuntimeTensor] = {}
        for name, value in zip(handle.output_names, outputs):
            shape = tuple(int(d) for d in value.shape())
            result[name] = RuntimeTensor(
                dtype=str(value.data_type()), dims=shape, value=value, reader=lambda v: v.numpy()
            )
        return result

    def release(self, handle: SessionHandle) -> None:
        # The Python API has no explicit close; dropping the last reference frees it.
        handle.session = None
