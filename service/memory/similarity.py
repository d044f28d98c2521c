"""Cosine similarity and ranking for the brute-force fallback path."""
from __future__ import annotations

from typing import Iterable, Sequence, TypeVar

import numpy as np

T = TypeVar("T")


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``.

    Returns 0.0 when the lengths differ, either vector is empty, or either
    has zero magnitude.
    """
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    sim = float(np.dot(va, vb) / denom)
    return max(-1.0, min(1.0, sim))


def rank_by_similarity(
    candidates: Iterable[tuple[T, float]], limit: int
) -> list[tuple[T, float]]:
    """Sort (item, similarity) pairs best-first and keep the top ``limit``.

    Ties keep their enumeration order.
    """
    if limit <= 0:
        return []
    return sorted(candidates, key=lambda pair: pair[1], reverse=True)[:limit]
