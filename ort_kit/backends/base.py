from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Sequence, Tuple

import numpy as np


@dataclass(frozen=True)
class SessionOptions:
    """
    Engine session settings.

    Defaults keep memory flat across repeated sessions: no CPU arena, no
    memory pattern planning, sequential execution, full graph optimization.
    """

    enable_cpu_mem_arena: bool = False
    enable_mem_pattern: bool = False
    sequential: bool = True
    graph_optimization: str = "all"
    providers: Optional[Sequence[str]] = None
    intra_op_num_threads: Optional[int] = None


@dataclass(eq=False)
class SessionHandle:
    """
    A loaded model. Owned by the SessionManager that created it.

    `in_use` counts the task invocations currently running on the session; a
    session evicted while in use is only torn down once the count drops to zero.
    """

    model_path: str
    session: Any
    input_names: Tuple[str, ...]
    output_names: Tuple[str, ...]
    estimated_bytes: int = 0
    in_use: int = 0
    release_pending: bool = False


def _as_numpy(value: Any) -> np.ndarray:
    return np.asarray(value)


@dataclass(eq=False)
class RuntimeTensor:
    """
    Backend-native tensor (OrtValue, torch.Tensor, ...) plus a reader that
    copies it into NumPy.

    Use as a context manager, or call `release()`, so the native buffer is
    dropped as soon as the caller is done with it.
    """

    dtype: str
    dims: Tuple[int, ...]
    value: Any
    reader: Callable[[Any], np.ndarray] = field(default=_as_numpy, repr=False)

    @property
    def released(self) -> bool:
        return self.value is None

    def numpy(self) -> np.ndarray:
        if self.value is None:
            raise RuntimeError("Tensor has already been released.")
        return np.array(self.reader(self.value), copy=True)

    def release(self) -> None:
        self.value = None

    def __enter__(self) -> "RuntimeTensor":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


class InferenceBackend(Protocol):
    """Capability interface every runtime backend implements."""

    name: str

    def create_session(self, model_path: str, options: SessionOptions) -> SessionHandle: ...

    def create_tensor(self, dtype: str, data: np.ndarray, dims: Sequence[int]) -> RuntimeTensor: ...

    def run(self, handle: SessionHandle, feeds: Dict[str, RuntimeTensor]) -> Dict[str, RuntimeTensor]: ...

    def release(self, handle: SessionHandle) -> None: ...
