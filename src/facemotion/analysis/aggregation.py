from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.spatial import cKDTree

from facemotion.analysis.grid import Grid

TIE_CANDIDATES = 4
TIE_TOLERANCE = 1e-9


@dataclass(frozen=True)
class LandmarkIndex:
    tree: cKDTree
    points: np.ndarray

    @property
    def size(self) -> int:
        return int(self.points.shape[0])


def build_index(grid_points: np.ndarray) -> LandmarkIndex:
    points = np.asarray(grid_points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 2:
        raise ValueError(f"grid_points must have shape (N, 2), got {points.shape}")
    if points.shape[0] == 0:
        raise ValueError("Cannot build a nearest-neighbor index over zero points")
    if not np.isfinite(points).all():
        raise ValueError("grid_points must be finite")
    return LandmarkIndex(tree=cKDTree(points), points=points)


def nearest_indices(index: LandmarkIndex, queries: np.ndarray) -> np.ndarray:
    """Index of the nearest sample for each query; exact ties go to the lowest index."""
    queries = np.asarray(queries, dtype=np.float64).reshape(-1, 2)
    if queries.shape[0] == 0:
        return np.empty((0,), dtype=np.int64)

    k = min(TIE_CANDIDATES, index.size)
    dists, idxs = index.tree.query(queries, k=k)
    if k == 1:
        return np.asarray(idxs, dtype=np.int64).reshape(-1)

    dists = np.asarray(dists).reshape(-1, k)
    idxs = np.asarray(idxs, dtype=np.int64).reshape(-1, k)
    tied = dists <= (dists[:, :1] + TIE_TOLERANCE)
    candidates = np.where(tied, idxs, np.iinfo(np.int64).max)
    return candidates.min(axis=1)


def nearest(index: LandmarkIndex, query: tuple[float, float] | np.ndarray) -> np.ndarray:
    idx = nearest_indices(index, np.asarray(query, dtype=np.float64).reshape(1, 2))[0]
    return index.points[idx].copy()


class LandmarkAggregator:
    """Resolve query points to the displacement magnitude of their nearest grid sample."""

    def __init__(self, grid_points: np.ndarray, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=np.float64).reshape(-1)
        self.index = build_index(grid_points)
        if values.shape[0] != self.index.size:
            raise ValueError(
                f"values length ({values.shape[0]}) must match grid point count ({self.index.size})"
            )
        self.values = values

    @classmethod
    def from_grid(cls, grid: Grid) -> "LandmarkAggregator":
        return cls(grid.points(), grid.disp_magnitude.ravel())

    def nearest_point(self, query: tuple[float, float] | np.ndarray) -> np.ndarray:
        return nearest(self.index, query)

    def values_at(self, queries: np.ndarray) -> np.ndarray:
        idxs = nearest_indices(self.index, queries)
        return self.values[idxs].copy()
