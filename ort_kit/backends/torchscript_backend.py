from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Sequence, Union

import numpy as np

from .base import RuntimeTensor, SessionHandle, SessionOptions


PathLike = Union[str, Path]


@dataclass(frozen=True)
class TorchScriptBackendConfig:
    """
    Configuration for TorchScript inference.

    - device: "cpu" or "cuda" (if available)
    - half: cast float inputs to float16 (only if the model expects it)
    - output_index: if the model returns multiple outputs, select this index
    """

    device: str = "cpu"
    half: bool = False
    output_index: int = 0


class TorchScriptBackend:
    """
    TorchScript backend using `torch.jit.load`.

    TorchScript modules have no named I/O, so sessions expose a single
    positional input called "input" and a single output called "output".
    """

    name = "torchscript"

    def __init__(self, cfg: TorchScriptBackendConfig = TorchScriptBackendConfig()):
        try:
            import torch  # type: ignore
        except Exception as e:  # pragma: no cover
            raise ImportError("torch is required for the TorchScript backend. Install with `pip install torch`.") from e

        self._torch = torch
        self.cfg = cfg
        self.device = torch.device(cfg.device)

    def create_session(self, model_path: PathLike, options: SessionOptions) -> SessionHandle:
        path = Path(model_path)
        if not path.exists():
            raise FileNotFoundError(str(path))

        if options.intra_op_num_threads is not None:
            self._torch.set_num_threads(int(options.intra_op_num_threads))

        model = self._torch.jit.load(str(path), map_location=self.device)
        model.eval()
        return SessionHandle(model_path=str(path), session=model, input_names=("input",), output_names=("output",))

    def create_tensor(self, dtype: str, data: np.ndarray, dims: Sequence[int]) -> RuntimeTensor:
        torch = self._torch
        arr = np.ascontiguousarray(np.asarray(data, dtype=np.dtype(dtype)).reshape(tuple(dims)))
        x = torch.as_tensor(arr, device=self.device)
        if x.is_floating_point():
            x = x.half() if self.cfg.half else x.float()
        return RuntimeTensor(dtype=dtype, dims=tuple(arr.shape), value=x.contiguous(), reader=_tensor_to_numpy)

    def run(self, handle: SessionHandle, feeds: Dict[str, RuntimeTensor]) -> Dict[str, RuntimeTensor]:
        if handle.session is None:
            raise RuntimeError(f"Session for {handle.model_path} has been released.")
        args = [feeds[name].value for name in handle.input_names]

        with self._torch.no_grad():
            y = handle.session(*args)

        if isinstance(y, (tuple, list)):
            y = y[self.cfg.output_index]

        return {
            handle.output_names[0]: RuntimeTensor(
                dtype=str(y.dtype).replace("torch.", ""),
                dims=tuple(int(d) for d in y.shape),
                value=y,
                reader=_tensor_to_numpy,
            )
        }

    def release(self, handle: SessionHandle) -> None:
        handle.session = None
        if self.device.type == "cuda":
            self._torch.cuda.empty_cache()


def _tensor_to_numpy(y) -> np.ndarray:
    if hasattr(y, "detach"):
        y = y.detach()
    return y.to("cpu").float().numpy() if y.is_floating_point() else y.to("cpu").numpy()
