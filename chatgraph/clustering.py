from __future__ import annotations

import asyncio
import logging
import math
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
from sklearn.metrics import silhouette_score

from .errors import DimensionMismatch, InvalidInput
from .utils import notify


# ------------------------------
# k selection
# ------------------------------
def choose_k(n: int, k_min: int = 3, k_max: int = 20) -> int:
    """Heuristic cluster count for visualisation: clamp(floor(sqrt(n/2)), k_min, k_max).

    Never exceeds `n`. This keeps the graph readable at any dataset size; it
    is not a statistically optimal choice of k.
    """
    if n <= 0:
        return 0
    k = min(max(k_min, math.floor(math.sqrt(n / 2))), k_max)
    return min(k, n)


# ------------------------------
# Lloyd's k-means
# ------------------------------
def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> Union[float, np.ndarray]:
    """Distance between two vectors, or from each row of `a` to vector `b`."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape[-1] != vb.shape[-1]:
        raise DimensionMismatch(f"Vectors must have same length ({va.shape[-1]} != {vb.shape[-1]})")
    d = np.sqrt(np.sum((va - vb) ** 2, axis=-1))
    return float(d) if d.ndim == 0 else d


def as_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    if len(vectors) == 0:
        raise InvalidInput("Cannot cluster an empty vector list")
    dims = {len(v) for v in vectors}
    if len(dims) > 1:
        raise DimensionMismatch(f"Vectors must have same length (found lengths {sorted(dims)})")
    return np.asarray(vectors, dtype=np.float64)


def assign_points(X: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Index of the nearest centroid per row; ties go to the lowest index."""
    dists = np.empty((X.shape[0], centroids.shape[0]), dtype=np.float64)
    for j, c in enumerate(centroids):
        dists[:, j] = euclidean_distance(X, c)
    return np.argmin(dists, axis=1)


def update_centroids(X: np.ndarray, assignments: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    """Mean of each cluster's points. Empty clusters keep their previous centroid."""
    new = centroids.copy()
    for j in range(centroids.shape[0]):
        members = X[assignments == j]
        if len(members):
            new[j] = members.mean(axis=0)
    return new


def init_centroids(X: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    # uniform draw WITH replacement; duplicate starting centroids are allowed
    idx = rng.integers(0, X.shape[0], size=k)
    return X[idx].copy()


async def kmeans(
    vectors: Sequence[Sequence[float]],
    k: int,
    max_iterations: int = 10,
    on_progress: Optional[Callable[[Dict[str, Any]], Any]] = None,
    yield_delay: float = 0.01,
    rng: Optional[np.random.Generator] = None,
) -> Tuple[List[int], np.ndarray]:
    """Partition `vectors` into `k` groups.

    Returns (assignments, centroids); each assignment is an int in [0, k).
    Stops early on the first iteration where no point changes cluster,
    otherwise after `max_iterations`. Emits one ``clustering`` progress
    payload per iteration.
    """
    X = as_matrix(vectors)
    if k < 1:
        raise InvalidInput(f"k must be >= 1, got {k}")
    if max_iterations < 1:
        raise InvalidInput(f"max_iterations must be >= 1, got {max_iterations}")
    rng = rng or np.random.default_rng()

    centroids = init_centroids(X, k, rng)
    assignments = np.zeros(X.shape[0], dtype=int)

    for it in range(max_iterations):
        new_assignments = await asyncio.to_thread(assign_points, X, centroids)
        changed = bool(np.any(new_assignments != assignments))
        assignments = new_assignments
        centroids = update_centroids(X, assignments, centroids)

        await notify(
            on_progress,
            {
                "step": "clustering",
                "current": it + 1,
                "total": max_iterations,
                "message": f"K-means iteration {it + 1}/{max_iterations}",
            },
        )
        if not changed:
            logging.info("K-means converged after %d iterations", it + 1)
            break
        if yield_delay > 0:
            await asyncio.sleep(yield_delay)

    return [int(a) for a in assignments], centroids


# ------------------------------
# Diagnostics
# ------------------------------
def cluster_quality(X: np.ndarray, labels: Sequence[int]) -> Optional[float]:
    """Silhouette score, or None when it is undefined for this labelling."""
    n_labels = len(set(labels))
    if n_labels < 2 or n_labels > X.shape[0] - 1:
        return None
    return float(silhouette_score(X, np.asarray(labels)))
