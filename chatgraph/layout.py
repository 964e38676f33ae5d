from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
from sklearn.decomposition import PCA

from .clustering import as_matrix

# below this many points UMAP's neighbour graph is degenerate
MIN_UMAP_SAMPLES = 4


def neighbor_count(n_samples: int, max_neighbors: int = 10) -> int:
    return max(0, min(max_neighbors, n_samples - 1))


def _linear_projection(X: np.ndarray) -> np.ndarray:
    n, d = X.shape
    n_comp = min(2, n - 1, d)
    coords = np.zeros((n, 2), dtype=np.float64)
    if n_comp >= 1:
        coords[:, :n_comp] = PCA(n_components=n_comp).fit_transform(X)
    return coords


def project(
    vectors: Sequence[Sequence[float]],
    n_neighbors: int = 10,
    n_epochs: int = 250,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Map vectors to 2-D points (one row per input) with UMAP.

    Inputs too small for a neighbour graph fall back to PCA; a single
    vector lands on the origin.
    """
    if len(vectors) == 0:
        return np.zeros((0, 2), dtype=np.float64)
    X = as_matrix(vectors)
    n = X.shape[0]
    if n == 1:
        return np.zeros((1, 2), dtype=np.float64)

    k = neighbor_count(n, n_neighbors)
    if n < MIN_UMAP_SAMPLES or k < 2:
        logging.info("Only %d points; using PCA layout instead of UMAP", n)
        return _linear_projection(X)

    from umap import UMAP

    logging.info("Running UMAP with n_neighbors=%d on %d points", k, n)
    reducer = UMAP(n_components=2, n_neighbors=k, n_epochs=n_epochs, random_state=seed)
    return np.asarray(reducer.fit_transform(X), dtype=np.float64)


def cluster_positions(coords: np.ndarray, assignments: Sequence[int]) -> Dict[int, Tuple[float, float]]:
    """Mean projected position of each cluster's members."""
    labels = np.asarray(assignments)
    out: Dict[int, Tuple[float, float]] = {}
    for c in sorted(set(int(a) for a in labels.tolist())):
        pts = coords[labels == c]
        out[c] = (float(pts[:, 0].mean()), float(pts[:, 1].mean()))
    return out
