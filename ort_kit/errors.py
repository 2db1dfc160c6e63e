"""
Error taxonomy for ort_kit.

Every failure surfaces as one exception for the whole task invocation; nothing
returns a partial result. The classes also derive from the closest builtin so
callers that only catch ValueError/RuntimeError/OSError keep working.
"""

from __future__ import annotations


class OrtKitError(Exception):
    """Base class for all ort_kit errors."""


class InputError(OrtKitError, ValueError):
    """Invalid caller input (no images, no model path, bad config values)."""


class DecodeError(OrtKitError, ValueError):
    """An input image could not be read or its metadata is unusable."""


class InferenceError(OrtKitError, RuntimeError):
    """Engine output that cannot be interpreted (missing output, wrong shape)."""


class ResourceError(OrtKitError, OSError):
    """Model file stat failure while updating session memory accounting."""


class CapacityError(OrtKitError, MemoryError):
    """A single model is larger than the whole session memory budget."""
