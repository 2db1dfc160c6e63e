from __future__ import annotations

from typing import List, Sequence

import numpy as np


def l2_normalize(vector: np.ndarray) -> np.ndarray:
    """Divide by the L2 norm. A zero vector is returned unchanged."""

    v = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(v))
    if norm == 0.0:
        return v.copy()
    return v / norm


def merge_embeddings(vectors: Sequence[np.ndarray]) -> np.ndarray:
    """
    Merge several embeddings of one subject into one vector.

    Direction: mean of the unit vectors, re-normalized.
    Magnitude: mean of the original L2 norms.
    """

    if len(vectors) == 0:
        raise ValueError("vectors must be non-empty")

    stacked = np.stack([np.asarray(v, dtype=np.float64) for v in vectors], axis=0)
    if stacked.ndim != 2:
        raise ValueError(f"Expected 1D vectors, got shape {stacked.shape[1:]}")

    norms = np.linalg.norm(stacked, axis=1)
    unit = np.stack([l2_normalize(v) for v in stacked], axis=0)
    mean_direction = l2_normalize(unit.sum(axis=0) / len(vectors))
    return mean_direction * float(norms.mean())


def aggregate_embeddings(
    vectors: Sequence[np.ndarray],
    *,
    normalize: bool = False,
    merge: bool = False,
) -> List[np.ndarray]:
    """
    Apply the requested embedding post-processing.

    normalize: L2-normalize each vector first.
    merge: collapse all vectors into exactly one.
    """

    out = [l2_normalize(v) if normalize else np.asarray(v, dtype=np.float64) for v in vectors]
    if merge and out:
        return [merge_embeddings(out)]
    return out
