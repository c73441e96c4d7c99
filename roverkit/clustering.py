"""Density-based clustering of heatmaps into centroids."""

from __future__ import annotations

from typing import Callable, Iterator, List, Sequence, Tuple

import numpy as np
from scipy.spatial import cKDTree

__all__ = ["Clusterer"]


def _dbscan(points: np.ndarray, tolerance: float, min_points: int) -> np.ndarray:
    """Label each point with its cluster id, or -1 for noise."""
    labels = np.full(len(points), -1, dtype=np.int64)
    if len(points) == 0:
        return labels
    neighbours = cKDTree(points).query_ball_point(points, r=tolerance)
    cluster = 0
    for start, around in enumerate(neighbours):
        if labels[start] != -1 or len(around) < min_points:
            continue
        labels[start] = cluster
        stack = [start]
        while stack:
            current = stack.pop()
            if len(neighbours[current]) < min_points:
                continue
            for other in neighbours[current]:
                if labels[other] == -1:
                    labels[other] = cluster
                    stack.append(other)
        cluster += 1
    return labels


class Clusterer:
    """Finds clusters in a row-major heatmap.

    Each cell becomes ``density(value)`` points at its scaled position, the
    points are clustered with DBSCAN (``tolerance`` as the neighbourhood
    radius, ``min_points`` as the core size) and the centroid of every
    cluster is returned.
    """

    def __init__(
        self,
        tolerance: float,
        heatmap_scale: float,
        heatmap_width: int,
        min_points: int,
        density: Callable[[float], int],
    ) -> None:
        self.tolerance = tolerance
        self.heatmap_scale = heatmap_scale
        self.heatmap_width = heatmap_width
        self.min_points = min_points
        self.density = density

    def _validate(self) -> None:
        if self.min_points <= 1:
            raise ValueError("min_points must be greater than 1")
        if not self.tolerance > 0:
            raise ValueError("tolerance must be positive")
        if self.heatmap_width < 1:
            raise ValueError("heatmap_width must be positive")

    def cluster(self, heatmap: Sequence[float]) -> Iterator[Tuple[float, float]]:
        """Return an iterator over the ``(x, y)`` centroids of the clusters."""
        self._validate()
        values = np.asarray(heatmap, dtype=np.float64).ravel()
        counts = np.array([int(self.density(float(value))) for value in values], dtype=np.int64)
        if (counts < 0).any():
            raise ValueError("density must not be negative")
        cells = np.arange(values.size)
        xs = (cells % self.heatmap_width) * self.heatmap_scale
        ys = (cells // self.heatmap_width) * self.heatmap_scale
        points = np.repeat(np.stack([xs, ys], axis=1), counts, axis=0)

        labels = _dbscan(points, self.tolerance, self.min_points)
        centroids: List[Tuple[float, float]] = []
        for label in range(int(labels.max(initial=-1)) + 1):
            mean = points[labels == label].mean(axis=0)
            centroids.append((float(mean[0]), float(mean[1])))
        return iter(centroids)