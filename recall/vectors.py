"""
Vector helpers shared by ingestion and retrieval.
"""

import math
import time
from typing import Iterable, Optional, Sequence

# Recency decay window: weight = exp(-age / window)
RECENCY_WINDOW_MS = 30 * 24 * 60 * 60 * 1000


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """
    Cosine similarity over the common prefix of two vectors.

    Returns 0 for missing, empty or zero-norm input. Never raises.
    """
    if not a or not b:
        return 0.0
    n = min(len(a), len(b))
    dot = na = nb = 0.0
    for i in range(n):
        try:
            x = float(a[i])
            y = float(b[i])
        except (TypeError, ValueError):
            x = y = 0.0
        if x != x:
            x = 0.0
        if y != y:
            y = 0.0
        dot += x * y
        na += x * x
        nb += y * y
    if na == 0 or nb == 0:
        return 0.0
    return dot / (math.sqrt(na) * math.sqrt(nb))


def recency_weight(
    ts_ms: Optional[float],
    *,
    now: Optional[float] = None,
    window_ms: float = RECENCY_WINDOW_MS,
) -> float:
    """Exponential recency decay; 1.0 for missing or non-finite timestamps."""
    if ts_ms is None:
        return 1.0
    try:
        ts = float(ts_ms)
    except (TypeError, ValueError):
        return 1.0
    if not math.isfinite(ts):
        return 1.0
    if now is None:
        now = time.time() * 1000
    age = max(0.0, now - ts)
    return math.exp(-age / window_ms)


def compute_centroid(embeddings: Iterable[Optional[Sequence[float]]]) -> Optional[list[float]]:
    """
    Component-wise mean of the vectors sharing the first vector's dimension.

    Vectors with another dimension are ignored. Returns None when the first
    vector is missing or nothing qualifies.
    """
    vectors = list(embeddings)
    if not vectors or not vectors[0]:
        return None
    dim = len(vectors[0])
    acc = [0.0] * dim
    count = 0
    for vec in vectors:
        if not vec or len(vec) != dim:
            continue
        for i in range(dim):
            acc[i] += float(vec[i] or 0.0)
        count += 1
    if count == 0:
        return None
    return [v / count for v in acc]


def item_centroid(items) -> Optional[list[float]]:
    """compute_centroid() over the embeddings of chunk items."""
    return compute_centroid(it.embedding for it in items)
