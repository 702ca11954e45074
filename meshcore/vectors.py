"""Shared vector math for routing, gossip and absorption.

Embeddings are opaque fixed-length numeric vectors supplied by a caller. They
may arrive as lists, tuples or numpy arrays; every helper here accepts any of
them and returns plain Python floats/lists so results stay JSON-friendly.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from meshcore.errors import DimensionMismatchError

#: Dimension of semantic embeddings used across the mesh.
EMBEDDING_DIM = 768

Vector = Sequence[float]

_INT32_MASK = 0xFFFFFFFF
_LCG_MASK = 0x7FFFFFFF


def as_array(vec: Vector) -> np.ndarray:
    """Return *vec* as a 1-D float64 array (no copy if already one)."""
    return np.asarray(vec, dtype=np.float64).reshape(-1)


def cosine_similarity(a: Vector, b: Vector) -> float:
    """Cosine similarity in ``[-1, 1]``.

    Raises :class:`DimensionMismatchError` when the vectors differ in length.
    A zero-norm vector on either side yields ``0.0``.
    """
    va = as_array(a)
    vb = as_array(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatchError(va.shape[0], vb.shape[0])

    denominator = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denominator == 0.0:
        return 0.0
    similarity = float(np.dot(va, vb)) / denominator
    # rounding can push |v·v| / |v|² a hair past 1
    return max(-1.0, min(1.0, similarity))


def normalize(vec: Vector) -> list[float]:
    """Scale *vec* to unit length. A zero vector is returned unchanged."""
    arr = as_array(vec)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm).tolist()


def weighted_mean(a: Vector, weight_a: float, b: Vector, weight_b: float) -> list[float]:
    """Weighted average of two equal-length vectors."""
    va = as_array(a)
    vb = as_array(b)
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatchError(va.shape[0], vb.shape[0])
    total = weight_a + weight_b
    if total == 0:
        return ((va + vb) / 2.0).tolist()
    return ((va * weight_a + vb * weight_b) / total).tolist()


def zeros(dim: int = EMBEDDING_DIM) -> list[float]:
    return [0.0] * dim


def _string_hash(seed: str) -> int:
    """32-bit signed rolling hash (``h = h * 31 + ord(c)``)."""
    h = 0
    for ch in seed:
        h = (h * 31 + ord(ch)) & _INT32_MASK
    if h >= 0x80000000:
        h -= 0x100000000
    return h


def deterministic_embedding(seed: str, dim: int = EMBEDDING_DIM) -> list[float]:
    """Unit-norm pseudo-embedding derived from *seed*.

    Stand-in for a real embedding service: the same seed always produces the
    same vector. Values come from a linear congruential generator seeded with
    a string hash.
    """
    state = _string_hash(seed)
    values = np.empty(dim, dtype=np.float64)
    for i in range(dim):
        state = (state * 1103515245 + 12345) & _LCG_MASK
        values[i] = (state / _LCG_MASK) * 2 - 1
    return normalize(values)


def topic_embedding(topic: str, dim: int = EMBEDDING_DIM) -> list[float]:
    """Pseudo-embedding used to seed attractor basins for named topics.

    Components are uniform in ``[-1, 1)`` and are not normalised.
    """
    state = _string_hash(topic) & _INT32_MASK
    values = np.empty(dim, dtype=np.float64)
    for i in range(dim):
        state = (state * 1664525 + 1013904223) % 2**32
        values[i] = (state / 2**32 - 0.5) * 2
    return values.tolist()
