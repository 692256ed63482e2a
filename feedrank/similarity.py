"""Vector helpers shared by clustering and ranking."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Optional

import numpy as np
from numpy.typing import NDArray
from sklearn.metrics.pairwise import cosine_similarity as sk_cosine

Vector = Sequence[float] | NDArray[np.float32]


def _as_array(v: Vector) -> NDArray[np.float32]:
    return np.asarray(v, dtype=np.float32).ravel()


def cosine_similarity(a: Optional[Vector], b: Optional[Vector]) -> float:
    """Cosine similarity mapped from [-1, 1] into [0, 1].

    Empty vectors, mismatched dimensions and zero norms give 0.0.
    """
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    if np.array_equal(va, vb):
        return 1.0
    cos = float(np.dot(va, vb)) / denom
    return min(1.0, max(0.0, (cos + 1.0) / 2.0))


def average_embeddings(vectors: Sequence[Vector]) -> Optional[NDArray[np.float32]]:
    """Element-wise mean; vectors whose dimension differs from the first are skipped."""
    arrays = [_as_array(v) for v in vectors if v is not None]
    arrays = [a for a in arrays if a.size]
    if not arrays:
        return None
    dim = arrays[0].shape
    same = [a for a in arrays if a.shape == dim]
    return np.mean(np.stack(same), axis=0).astype(np.float32)


def similarity_to_many(
    v: Optional[Vector], matrix: Sequence[Vector] | NDArray[np.float32]
) -> NDArray[np.float32]:
    """Vectorised ``cosine_similarity`` of ``v`` against each row of ``matrix``.

    Rows with the wrong dimension (or zero norm) score 0.
    """
    rows = [_as_array(r) for r in matrix]
    out = np.zeros(len(rows), dtype=np.float32)
    if v is None or not rows:
        return out
    query = _as_array(v)
    if query.size == 0 or not np.any(query):
        return out
    idx = [i for i, r in enumerate(rows) if r.shape == query.shape and np.any(r)]
    if not idx:
        return out
    matrix64 = np.stack([rows[i] for i in idx]).astype(np.float64)
    sims = sk_cosine(query.astype(np.float64).reshape(1, -1), matrix64)[0]
    out[idx] = np.clip((sims + 1.0) / 2.0, 0.0, 1.0)
    return out
