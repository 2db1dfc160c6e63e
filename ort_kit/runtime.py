from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from contextlib import ExitStack
from pathlib import Path
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Sequence, Set, Tuple, TypeVar, Union

import numpy as np

from .backends import SessionHandle, SessionOptions, backend_name_for_path, load_backend
from .config import TaskConfig, TaskType
from .embedding import aggregate_embeddings
from .errors import InferenceError, InputError
from .formatting import format_classifications, format_detections, format_embedding
from .imaging import EMBEDDING_MEAN, EMBEDDING_STD, Geometry, ImageCodec, OpenCvImageCodec
from .merge import merge_boxes
from .postprocess import (
    DetectionPostConfig,
    DetectionPostprocessor,
    decode_classification,
    split_embeddings,
)
from .sessions import SessionManager
from .tiling import compute_slices, filter_min_area, remap_to_image, should_tile, whole_image
from .types import Box, SliceDescriptor, TaskResult


PathLike = Union[str, Path]
T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


PROJECT_MARKERS = ("pyproject.toml", "setup.py", ".git", "requirements.txt")


def find_project_root(start: Optional[PathLike] = None, markers: Sequence[str] = PROJECT_MARKERS) -> Path:
    """
    Nearest directory at or above `start` (default: the working directory)
    holding one of `markers`. Falls back to `start` itself.

    Task configs name models relative to this root, e.g. `models/det.onnx`.
    """

    here = Path.cwd() if start is None else Path(start)
    here = here.resolve()
    if here.is_file():
        here = here.parent

    for candidate in (here, *here.parents):
        if any((candidate / marker).exists() for marker in markers):
            return candidate
    return here


def resolve_path(path: PathLike, root: Optional[PathLike] = "auto") -> Path:
    """
    Absolute model path. Relative paths are joined onto `root`, or onto the
    project root when `root` is "auto" or None.
    """

    candidate = Path(path)
    if candidate.is_absolute():
        return candidate
    base = find_project_root() if root in ("auto", None) else Path(root).resolve()
    return (base / candidate).resolve()


def _chunks(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def tokenize_texts(texts: Sequence[str]) -> np.ndarray:
    """Unicode code points, zero padded to the longest text: int64 (batch, max_len)."""

    max_len = max([len(t) for t in texts] + [1])
    tokens = np.zeros((len(texts), max_len), dtype=np.int64)
    for i, text in enumerate(texts):
        if text:
            tokens[i, : len(text)] = [ord(ch) for ch in text]
    return tokens


class TaskPipeline:
    """
    Runs detection, classification or embedding tasks:
    decode images -> (tile) -> resize -> inference -> decode output -> suppress
    -> (remap + merge) -> format.

    Inputs go through the engine in ordered sub-batches of at most
    `config.max_batch_size`; results come back in input order. Image decode and
    resize run on a thread pool, the engine calls do not.
    """

    def __init__(
        self,
        sessions: SessionManager,
        *,
        codec: Optional[ImageCodec] = None,
        model_root: Optional[PathLike] = "auto",
        session_options: Optional[SessionOptions] = None,
        max_workers: Optional[int] = None,
    ):
        self.sessions = sessions
        self.backend = sessions.backend
        self.codec = codec if codec is not None else OpenCvImageCodec()
        self.model_root = model_root
        self.session_options = session_options
        self.max_workers = max_workers

    def run(self, inputs: Sequence[Any], config: TaskConfig) -> List[TaskResult]:
        items = list(inputs) if inputs is not None else []
        if not items:
            raise InputError("No inputs provided.")

        if config.input_type == "text":
            if not all(isinstance(item, str) for item in items):
                raise InputError("Text embedding inputs must all be strings.")
            with self._session(config) as handle:
                return self._run_text_embedding(handle, items, config)

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            # Any unreadable image aborts the whole batch.
            images = list(pool.map(self.codec.load, items))
            with self._session(config) as handle:
                if config.task_type == TaskType.DETECTION:
                    return self._run_detection(handle, images, config, pool)
                if config.task_type == TaskType.CLASSIFICATION:
                    return self._run_classification(handle, images, config, pool)
                return self._run_image_embedding(handle, images, config, pool)

    # ------------------------------------------------------------------ #
    # Engine access
    # ------------------------------------------------------------------ #
    def _session(self, config: TaskConfig) -> ContextManager[SessionHandle]:
        """Lease the model session for one invocation; it stays alive until the lease ends."""

        model_path = resolve_path(config.model_path, root=self.model_root)
        return self.sessions.lease(model_path, self.session_options)

    def _infer(self, handle: SessionHandle, data: np.ndarray, dtype: str = "float32") -> np.ndarray:
        """
        One engine call. Input and output tensors are released on every exit
        path; the returned array is a copy owned by the caller.
        """

        if not handle.input_names or not handle.output_names:
            raise InferenceError(f"Model {handle.model_path} has no inputs or outputs.")
        input_name = handle.input_names[0]
        output_name = handle.output_names[0]

        with ExitStack() as stack:
            feed = stack.enter_context(self.backend.create_tensor(dtype, data, data.shape))
            outputs = self.backend.run(handle, {input_name: feed})
            for tensor in outputs.values():
                stack.callback(tensor.release)
            if output_name not in outputs:
                raise InferenceError(f"Engine returned no '{output_name}' output.")
            return outputs[output_name].numpy()

    def _transform_batch(
        self,
        pool: ThreadPoolExecutor,
        images: List[np.ndarray],
        regions: Sequence[SliceDescriptor],
        geometry_fn: Callable[[SliceDescriptor], Geometry],
    ) -> np.ndarray:
        blobs = pool.map(lambda sl: self.codec.transform(images[sl.image_index], geometry_fn(sl)), regions)
        return np.stack(list(blobs), axis=0)

    @staticmethod
    def _check_batch(output: np.ndarray, expected: int, ndim: int) -> np.ndarray:
        out = np.asarray(output)
        if out.ndim != ndim or out.shape[0] != expected:
            raise InferenceError(f"Expected output with {ndim} dims and batch {expected}, got shape {out.shape}.")
        return out

    # ------------------------------------------------------------------ #
    # Tasks
    # ------------------------------------------------------------------ #
    @staticmethod
    def _slices_for(images: List[np.ndarray], config: TaskConfig) -> Tuple[List[SliceDescriptor], Set[int]]:
        """Model inputs for every image, plus the indices of the images that were tiled."""

        units: List[SliceDescriptor] = []
        tiled: Set[int] = set()
        sahi = config.sahi if config.is_tiled else None
        for i, img in enumerate(images):
            h, w = int(img.shape[0]), int(img.shape[1])
            if sahi is not None and should_tile(w, h, sahi.aspect_ratio_threshold):
                units.extend(compute_slices(w, h, sahi.overlap, image_index=i))
                tiled.add(i)
            else:
                units.append(whole_image(w, h, image_index=i))
        return units, tiled

    def _run_detection(
        self,
        handle: SessionHandle,
        images: List[np.ndarray],
        config: TaskConfig,
        pool: ThreadPoolExecutor,
    ) -> List[TaskResult]:
        target = config.target_size
        post = DetectionPostprocessor(
            DetectionPostConfig(
                conf_threshold=config.confidence_threshold,
                iou_threshold=config.iou_threshold,
                suppression=config.suppression,
                soft_nms_sigma=config.soft_nms_sigma,
                soft_nms_score_threshold=config.soft_nms_score_threshold,
            )
        )

        units, tiled = self._slices_for(images, config)
        LOGGER.debug("Detection over %d images -> %d model inputs (%d tiled)", len(images), len(units), len(tiled))

        per_image: Dict[int, List[Box]] = {i: [] for i in range(len(images))}
        for chunk in _chunks(units, config.max_batch_size):
            batch = self._transform_batch(
                pool,
                images,
                chunk,
                lambda sl: Geometry(region=sl.as_xywh(), target_size=target, interpolation="lanczos"),
            )
            output = self._check_batch(self._infer(handle, batch), len(chunk), 3)
            for sl, preds in zip(chunk, output):
                boxes = remap_to_image(post.process(preds, target), sl, target)
                if sl.image_index in tiled:
                    boxes = filter_min_area(boxes, config.sahi.min_area)
                per_image[sl.image_index].extend(boxes)

        results: List[TaskResult] = []
        for i in range(len(images)):
            boxes = per_image[i]
            if i in tiled:
                boxes = merge_boxes(boxes, config.sahi.merge_threshold)
            results.append(format_detections(boxes, config.label_for))
        return results

    def _run_classification(
        self,
        handle: SessionHandle,
        images: List[np.ndarray],
        config: TaskConfig,
        pool: ThreadPoolExecutor,
    ) -> List[TaskResult]:
        target = config.target_size
        results: List[TaskResult] = []
        indices = list(range(len(images)))
        for chunk in _chunks(indices, config.max_batch_size):
            batch = self._transform_batch(
                pool,
                images,
                [whole_image(images[i].shape[1], images[i].shape[0], i) for i in chunk],
                lambda sl: Geometry(region=sl.as_xywh(), target_size=target, interpolation="lanczos"),
            )
            output = self._check_batch(self._infer(handle, batch), len(chunk), 2)
            for row in output:
                pairs = decode_classification(row, config.confidence_threshold)
                results.append(format_classifications(pairs, config.label_for))
        return results

    def _run_image_embedding(
        self,
        handle: SessionHandle,
        images: List[np.ndarray],
        config: TaskConfig,
        pool: ThreadPoolExecutor,
    ) -> List[TaskResult]:
        target = config.target_size
        vectors: List[np.ndarray] = []
        indices = list(range(len(images)))
        for chunk in _chunks(indices, config.max_batch_size):
            batch = self._transform_batch(
                pool,
                images,
                [whole_image(images[i].shape[1], images[i].shape[0], i) for i in chunk],
                lambda sl: Geometry(
                    region=sl.as_xywh(),
                    target_size=target,
                    interpolation="linear",
                    mean=EMBEDDING_MEAN,
                    std=EMBEDDING_STD,
                ),
            )
            output = self._check_batch(self._infer(handle, batch), len(chunk), 2)
            vectors.extend(split_embeddings(output))
        return self._format_embeddings(vectors, config)

    def _run_text_embedding(self, handle: SessionHandle, texts: List[str], config: TaskConfig) -> List[TaskResult]:
        tokens = tokenize_texts(texts)
        vectors: List[np.ndarray] = []
        for start in range(0, len(texts), config.max_batch_size):
            chunk = tokens[start : start + config.max_batch_size]
            output = self._check_batch(self._infer(handle, chunk, dtype="int64"), len(chunk), 2)
            vectors.extend(split_embeddings(output))
        return self._format_embeddings(vectors, config)

    @staticmethod
    def _format_embeddings(vectors: List[np.ndarray], config: TaskConfig) -> List[TaskResult]:
        merged = aggregate_embeddings(vectors, normalize=config.normalize, merge=config.merge)
        return [format_embedding(v) for v in merged]


def load_pipeline(
    *,
    backend: Optional[str] = None,
    model_path: Optional[PathLike] = None,
    max_sessions: int = 4,
    max_memory_bytes: Optional[int] = 4 * 1024 ** 3,
    root: Optional[PathLike] = "auto",
    session_options: Optional[SessionOptions] = None,
    onnx_providers: Optional[Sequence[str]] = None,
    torch_device: str = "cpu",
    torch_half: bool = False,
    torch_output_index: int = 0,
) -> TaskPipeline:
    """
    Create a pipeline with its own backend and session manager.

    Typical usage:
        pipe = load_pipeline()
        results = pipe.run([image_bytes], TaskConfig(task_type="detection", model_path="models/det.onnx"))

    Args:
        backend: "onnxruntime" or "torchscript"; when omitted it is picked from the
            suffix of `model_path` (".onnx", ".torchscript", ".ts", ".pt"), else "onnxruntime"
        model_path: a model the pipeline will serve, used only to pick the backend
        root: base directory for resolving relative model paths ("auto" uses best-effort project root)
    """

    if backend is not None:
        chosen = backend.lower()
    elif model_path is not None:
        chosen = backend_name_for_path(model_path)
    else:
        chosen = "onnxruntime"
    LOGGER.debug("Using %s backend", chosen)

    if chosen == "onnxruntime":
        engine = load_backend(chosen, providers=onnx_providers)
    elif chosen == "torchscript":
        engine = load_backend(chosen, device=torch_device, half=torch_half, output_index=torch_output_index)
    else:
        raise ValueError(f"Unsupported backend: {backend!r}")

    sessions = SessionManager(engine, max_sessions=max_sessions, max_memory_bytes=max_memory_bytes)
    return TaskPipeline(sessions, model_root=root, session_options=session_options)
