from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Tuple, Union

import numpy as np

from .errors import DecodeError


ImageInput = Union[bytes, bytearray, memoryview, str, Path, np.ndarray]

# CLIP preprocessing statistics, applied to embedding inputs.
EMBEDDING_MEAN = (0.48145466, 0.4578275, 0.40821073)
EMBEDDING_STD = (0.26862954, 0.26130258, 0.27577711)


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    channels: int


@dataclass(frozen=True)
class Geometry:
    """
    How to turn one image region into a model input.

    - region: (x, y, width, height) crop in source pixels
    - target_size: (width, height) after a stretch resize (no letterboxing)
    - interpolation: "lanczos" or "linear"
    - mean/std: optional per-channel normalization applied after /255
    """

    region: Tuple[int, int, int, int]
    target_size: Tuple[int, int]
    interpolation: str = "lanczos"
    mean: Optional[Tuple[float, float, float]] = None
    std: Optional[Tuple[float, float, float]] = None


class ImageCodec(Protocol):
    def decode_metadata(self, data: ImageInput) -> ImageMetadata: ...

    def load(self, data: ImageInput) -> np.ndarray: ...

    def transform(self, image: np.ndarray, geometry: Geometry) -> np.ndarray: ...


def _cv2():
    try:
        import cv2  # type: ignore
    except Exception as e:  # pragma: no cover
        raise ImportError("OpenCV is required for image decoding. Install with `pip install opencv-python`.") from e
    return cv2


class OpenCvImageCodec:
    """
    Image decode/crop/resize on top of OpenCV.

    Accepts encoded bytes, file paths, or already decoded arrays. Arrays are
    taken as OpenCV-style BGR (or BGRA / grayscale); `load` always returns an
    (H, W, 3) RGB uint8 array with any alpha channel dropped.
    """

    def _decode(self, data: ImageInput) -> np.ndarray:
        if isinstance(data, np.ndarray):
            img = data
        else:
            if isinstance(data, (str, Path)):
                try:
                    raw = Path(data).read_bytes()
                except OSError as exc:
                    raise DecodeError(f"Could not read image file: {data}") from exc
            elif isinstance(data, (bytes, bytearray, memoryview)):
                raw = bytes(data)
            else:
                raise DecodeError(f"Unsupported image input type: {type(data).__name__}")
            if not raw:
                raise DecodeError("Image data is empty.")
            cv2 = _cv2()
            img = cv2.imdecode(np.frombuffer(raw, dtype=np.uint8), cv2.IMREAD_UNCHANGED)
            if img is None:
                raise DecodeError("Could not decode image data.")

        if img.ndim not in (2, 3) or img.shape[0] == 0 or img.shape[1] == 0:
            raise DecodeError(f"Unsupported image shape: {img.shape}")
        if img.ndim == 3 and img.shape[2] not in (1, 3, 4):
            raise DecodeError(f"Unsupported channel count: {img.shape[2]}")
        if img.dtype != np.uint8:
            raise DecodeError(f"Expected an 8-bit image, got dtype {img.dtype}")
        return img

    def decode_metadata(self, data: ImageInput) -> ImageMetadata:
        img = self._decode(data)
        channels = 1 if img.ndim == 2 else int(img.shape[2])
        return ImageMetadata(width=int(img.shape[1]), height=int(img.shape[0]), channels=channels)

    def load(self, data: ImageInput) -> np.ndarray:
        img = self._decode(data)
        cv2 = _cv2()
        if img.ndim == 2 or img.shape[2] == 1:
            return cv2.cvtColor(img, cv2.COLOR_GRAY2RGB)
        if img.shape[2] == 4:
            return cv2.cvtColor(img, cv2.COLOR_BGRA2RGB)
        return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)

    def transform(self, image: np.ndarray, geometry: Geometry) -> np.ndarray:
        """Crop, resize and convert to a float32 CHW buffer."""

        cv2 = _cv2()
        x, y, w, h = (int(v) for v in geometry.region)
        img_h, img_w = image.shape[:2]
        if x < 0 or y < 0 or w <= 0 or h <= 0 or x + w > img_w or y + h > img_h:
            raise ValueError(f"Region {geometry.region} is outside the image ({img_w}x{img_h}).")

        crop = image[y : y + h, x : x + w]
        target_w, target_h = (int(v) for v in geometry.target_size)
        interp = cv2.INTER_LANCZOS4 if geometry.interpolation == "lanczos" else cv2.INTER_LINEAR
        if (w, h) != (target_w, target_h):
            crop = cv2.resize(crop, (target_w, target_h), interpolation=interp)

        blob = crop.astype(np.float32) / 255.0
        if geometry.mean is not None and geometry.std is not None:
            blob = (blob - np.asarray(geometry.mean, dtype=np.float32)) / np.asarray(geometry.std, dtype=np.float32)
        return np.ascontiguousarray(np.transpose(blob, (2, 0, 1)), dtype=np.float32)
