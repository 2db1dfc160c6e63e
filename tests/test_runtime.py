import tempfile
import threading
import unittest
from pathlib import Path
from typing import Callable, Dict, List

import numpy as np

from ort_kit.backends.base import RuntimeTensor, SessionHandle, SessionOptions
from ort_kit.config import SahiConfig, TaskConfig
from ort_kit.errors import DecodeError, InferenceError, InputError
from ort_kit.imaging import EMBEDDING_MEAN, Geometry, ImageMetadata
from ort_kit.runtime import TaskPipeline, tokenize_texts
from ort_kit.sessions import SessionManager
from ort_kit.types import ClassificationResult, DetectionResult, EmbeddingResult


class FakeCodec:
    """Arrays pass straight through; transform fills the blob with the region's top-left pixel value."""

    def __init__(self) -> None:
        self.geometries: List[Geometry] = []
        self._lock = threading.Lock()

    def decode_metadata(self, data) -> ImageMetadata:
        img = self.load(data)
        return ImageMetadata(width=img.shape[1], height=img.shape[0], channels=3)

    def load(self, data) -> np.ndarray:
        if not isinstance(data, np.ndarray):
            raise DecodeError("not an image")
        return data

    def transform(self, image: np.ndarray, geometry: Geometry) -> np.ndarray:
        with self._lock:
            self.geometries.append(geometry)
        x, y, _, _ = geometry.region
        tw, th = geometry.target_size
        return np.full((3, th, tw), float(image[y, x, 0]), dtype=np.float32)


class FakeBackend:
    name = "fake"

    def __init__(self, responder: Callable[[np.ndarray], np.ndarray]) -> None:
        self.responder = responder
        self.created: List[str] = []
        self.released: List[str] = []
        self.tensors: List[RuntimeTensor] = []
        self.batches: List[int] = []
        self.dtypes: List[str] = []

    def create_session(self, model_path: str, options: SessionOptions) -> SessionHandle:
        self.created.append(model_path)
        return SessionHandle(
            model_path=model_path, session=object(), input_names=("images",), output_names=("output0",)
        )

    def create_tensor(self, dtype: str, data: np.ndarray, dims) -> RuntimeTensor:
        tensor = RuntimeTensor(dtype=dtype, dims=tuple(dims), value=np.asarray(data, dtype=dtype))
        self.tensors.append(tensor)
        return tensor

    def run(self, handle: SessionHandle, feeds: Dict[str, RuntimeTensor]) -> Dict[str, RuntimeTensor]:
        if handle.session is None:
            raise RuntimeError(f"Session for {handle.model_path} has been released.")
        x = feeds["images"].numpy()
        self.batches.append(int(x.shape[0]))
        self.dtypes.append(str(x.dtype))
        y = np.asarray(self.responder(x))
        out = RuntimeTensor(dtype=str(y.dtype), dims=tuple(y.shape), value=y)
        self.tensors.append(out)
        return {"output0": out}

    def release(self, handle: SessionHandle) -> None:
        self.released.append(handle.model_path)
        handle.session = None


def _single_box(batch: np.ndarray) -> np.ndarray:
    # One class, one candidate centred at (100, 100), 50x50, confidence 0.9.
    preds = np.array([[100.0], [100.0], [50.0], [50.0], [0.9]], dtype=np.float32)
    return np.repeat(preds[None, ...], batch.shape[0], axis=0)


def _one_hot_by_pixel(batch: np.ndarray) -> np.ndarray:
    out = np.zeros((batch.shape[0], 5), dtype=np.float32)
    for k in range(batch.shape[0]):
        out[k, int(batch[k, 0, 0, 0])] = 1.0
    return out


class PipelineTestCase(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.model = Path(tmpdir.name).resolve() / "model.onnx"
        self.model.write_bytes(b"\0" * 64)
        self.codec = FakeCodec()

    def _pipeline(self, responder) -> TaskPipeline:
        self.backend = FakeBackend(responder)
        return TaskPipeline(SessionManager(self.backend), codec=self.codec, max_workers=2)

    def _config(self, task_type: str, **kwargs) -> TaskConfig:
        return TaskConfig(task_type=task_type, model_path=str(self.model), **kwargs)


class TestDetection(PipelineTestCase):
    def test_single_image(self) -> None:
        pipe = self._pipeline(_single_box)
        image = np.zeros((384, 384, 3), dtype=np.uint8)
        results = pipe.run([image], self._config("detection", labels=("person",)))

        self.assertEqual(len(results), 1)
        self.assertIsInstance(results[0], DetectionResult)
        self.assertEqual(
            results[0].to_dict(),
            {"detections": [{"label": "person", "box": [75, 75, 50, 50], "confidence": 0.9, "squareness": 1.0}]},
        )
        self.assertEqual(self.codec.geometries[0].interpolation, "lanczos")
        self.assertEqual(self.codec.geometries[0].target_size, (384, 384))

    def test_boxes_scaled_to_original_size(self) -> None:
        pipe = self._pipeline(_single_box)
        image = np.zeros((384, 768, 3), dtype=np.uint8)
        results = pipe.run([image], self._config("detection"))
        item = results[0].detections[0]
        self.assertEqual(item.box, (150, 75, 100, 50))
        self.assertEqual(item.label, "0")

    def test_tiled_image(self) -> None:
        pipe = self._pipeline(_single_box)
        image = np.zeros((384, 768, 3), dtype=np.uint8)
        results = pipe.run([image], self._config("detection", sahi=SahiConfig(overlap=0.0)))

        boxes = sorted(d.box for d in results[0].detections)
        self.assertEqual(boxes, [(75, 75, 50, 50), (459, 75, 50, 50)])
        regions = sorted(g.region for g in self.codec.geometries)
        self.assertEqual(regions, [(0, 0, 384, 384), (384, 0, 384, 384)])

    def test_aspect_gate_skips_tiling(self) -> None:
        pipe = self._pipeline(_single_box)
        image = np.zeros((384, 768, 3), dtype=np.uint8)
        sahi = SahiConfig(overlap=0.0, aspect_ratio_threshold=3.0)
        results = pipe.run([image], self._config("detection", sahi=sahi))
        self.assertEqual([d.box for d in results[0].detections], [(150, 75, 100, 50)])

    def test_min_area_on_tiled_images(self) -> None:
        pipe = self._pipeline(_single_box)
        image = np.zeros((384, 768, 3), dtype=np.uint8)
        results = pipe.run([image], self._config("detection", sahi=SahiConfig(overlap=0.0, min_area=3000)))
        self.assertEqual(results[0].detections, [])

    def test_sub_batches(self) -> None:
        pipe = self._pipeline(_single_box)
        images = [np.zeros((384, 384, 3), dtype=np.uint8) for _ in range(5)]
        results = pipe.run(images, self._config("detection", max_batch_size=2))
        self.assertEqual(self.backend.batches, [2, 2, 1])
        self.assertEqual(len(results), 5)

    def test_tensors_released(self) -> None:
        pipe = self._pipeline(_single_box)
        pipe.run([np.zeros((384, 384, 3), dtype=np.uint8)], self._config("detection"))
        self.assertTrue(self.backend.tensors)
        self.assertTrue(all(t.released for t in self.backend.tensors))

    def test_bad_output_releases_tensors(self) -> None:
        pipe = self._pipeline(lambda batch: np.zeros((batch.shape[0], 3), dtype=np.float32))
        with self.assertRaises(InferenceError):
            pipe.run([np.zeros((384, 384, 3), dtype=np.uint8)], self._config("detection"))
        self.assertTrue(all(t.released for t in self.backend.tensors))


class TestClassification(PipelineTestCase):
    def test_order_preserved_across_sub_batches(self) -> None:
        pipe = self._pipeline(_one_hot_by_pixel)
        images = [np.full((8, 8, 3), i, dtype=np.uint8) for i in range(5)]
        results = pipe.run(images, self._config("classification", max_batch_size=2))

        self.assertEqual(self.backend.batches, [2, 2, 1])
        self.assertTrue(all(isinstance(r, ClassificationResult) for r in results))
        self.assertEqual(
            [r.to_dict() for r in results],
            [{"classifications": [{"label": str(i), "confidence": 1.0}]} for i in range(5)],
        )

    def test_labels(self) -> None:
        pipe = self._pipeline(_one_hot_by_pixel)
        labels = ("a", "b", "c", "d", "e")
        results = pipe.run([np.full((8, 8, 3), 3, dtype=np.uint8)], self._config("classification", labels=labels))
        self.assertEqual(results[0].classifications[0].label, "d")


class TestEmbedding(PipelineTestCase):
    @staticmethod
    def _pixel_vector(batch: np.ndarray) -> np.ndarray:
        return np.stack([batch[:, 0, 0, 0], np.ones(batch.shape[0], dtype=np.float32)], axis=1)

    def test_image_embeddings(self) -> None:
        pipe = self._pipeline(self._pixel_vector)
        images = [np.full((8, 8, 3), v, dtype=np.uint8) for v in (1, 2)]
        results = pipe.run(images, self._config("embedding"))

        self.assertTrue(all(isinstance(r, EmbeddingResult) for r in results))
        self.assertEqual([r.vector for r in results], [[1.0, 1.0], [2.0, 1.0]])
        geometry = self.codec.geometries[0]
        self.assertEqual(geometry.interpolation, "linear")
        self.assertEqual(geometry.mean, EMBEDDING_MEAN)

    def test_normalize_and_merge(self) -> None:
        pipe = self._pipeline(self._pixel_vector)
        images = [np.full((8, 8, 3), v, dtype=np.uint8) for v in (1, 2, 3)]
        results = pipe.run(images, self._config("embedding", normalize=True, merge=True))
        self.assertEqual(len(results), 1)
        self.assertAlmostEqual(float(np.linalg.norm(results[0].vector)), 1.0)

    def test_text_embeddings(self) -> None:
        pipe = self._pipeline(lambda tokens: np.stack([np.count_nonzero(tokens, axis=1), tokens[:, 0]], axis=1))
        results = pipe.run(["ab", "c"], self._config("embedding", input_type="text"))
        self.assertEqual([r.vector for r in results], [[2.0, 97.0], [1.0, 99.0]])
        self.assertEqual(self.backend.dtypes, ["int64"])

    def test_text_inputs_must_be_strings(self) -> None:
        pipe = self._pipeline(self._pixel_vector)
        with self.assertRaises(InputError):
            pipe.run(["ok", 3], self._config("embedding", input_type="text"))


class TestInputs(PipelineTestCase):
    def test_empty_inputs_before_session(self) -> None:
        pipe = self._pipeline(_single_box)
        with self.assertRaises(InputError):
            pipe.run([], self._config("detection"))
        self.assertEqual(self.backend.created, [])

    def test_unreadable_image_aborts_batch(self) -> None:
        pipe = self._pipeline(_single_box)
        with self.assertRaises(DecodeError):
            pipe.run([np.zeros((8, 8, 3), dtype=np.uint8), b"garbage"], self._config("detection"))
        self.assertEqual(self.backend.created, [])

    def test_session_reused(self) -> None:
        pipe = self._pipeline(_single_box)
        image = np.zeros((384, 384, 3), dtype=np.uint8)
        pipe.run([image], self._config("detection"))
        pipe.run([image], self._config("detection"))
        self.assertEqual(len(self.backend.created), 1)

    def test_session_evicted_mid_run_stays_alive(self) -> None:
        other = self.model.parent / "other.onnx"
        other.write_bytes(b"\0" * 64)
        engine_calls: List[int] = []

        def responder(batch: np.ndarray) -> np.ndarray:
            if not engine_calls:
                # Another caller needs room while this run is between sub-batches.
                t = threading.Thread(target=pipe.sessions.get_or_create, args=(str(other),))
                t.start()
                t.join()
            engine_calls.append(int(batch.shape[0]))
            return _single_box(batch)

        self.backend = FakeBackend(responder)
        pipe = TaskPipeline(SessionManager(self.backend, max_sessions=1), codec=self.codec, max_workers=2)
        images = [np.zeros((384, 384, 3), dtype=np.uint8) for _ in range(4)]
        results = pipe.run(images, self._config("detection", max_batch_size=2))

        self.assertEqual(len(results), 4)
        self.assertEqual(engine_calls, [2, 2])
        self.assertEqual(pipe.sessions.cached_paths(), [str(other)])
        self.assertEqual(self.backend.released, [str(self.model)])

    def test_session_kept_after_run(self) -> None:
        pipe = self._pipeline(_single_box)
        pipe.run([np.zeros((384, 384, 3), dtype=np.uint8)], self._config("detection"))
        self.assertIn(str(self.model), pipe.sessions)
        self.assertEqual(self.backend.released, [])

    def test_tokenize_texts(self) -> None:
        tokens = tokenize_texts(["ab", ""])
        self.assertEqual(tokens.dtype, np.int64)
        self.assertEqual(tokens.tolist(), [[97, 98], [0, 0]])


if __name__ == "__main__":
    unittest.main()
