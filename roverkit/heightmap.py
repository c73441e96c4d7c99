"""Heightmaps from point clouds and obstacle grids from heightmap gradients."""

from __future__ import annotations

from typing import Sequence, Tuple

import numpy as np

__all__ = [
    "height_to_gradient",
    "gradient_to_obstacles",
    "points_to_sum",
    "sum_to_height",
    "points_to_height",
]


def _as_map(values: Sequence) -> np.ndarray:
    array = np.array(values, dtype=np.float64)
    if array.ndim != 2:
        raise ValueError("map must be a two-dimensional array")
    return array


def _as_points(points: Sequence, columns: int) -> np.ndarray:
    array = np.asarray(points, dtype=np.float64)
    if array.ndim != 2 or array.shape[1] < columns:
        raise ValueError(f"points must have shape (n, {columns})")
    return array


def _check_size(width: int, height: int) -> None:
    if width < 1 or height < 1:
        raise ValueError("heightmap dimensions must be positive")


def height_to_gradient(heightmap: np.ndarray, cell_size: float) -> np.ndarray:
    """Return the slope angle (radians) at each cell from its 3x3 neighbourhood.

    Heights of exactly 0.0 are unset and ignored. The slope is taken between
    the lowest and highest heights found, searching from the window's corner
    cell. Border cells are 0.
    """
    heights = _as_map(heightmap)
    gradient = np.zeros_like(heights)
    height, width = heights.shape
    if height < 3 or width < 3:
        return gradient
    rows, cols = height - 2, width - 2

    min_h = heights[:rows, :cols].copy()
    max_h = min_h.copy()
    min_x = np.zeros_like(min_h)
    min_y = np.zeros_like(min_h)
    max_x = np.zeros_like(min_h)
    max_y = np.zeros_like(min_h)

    for dy in range(3):
        for dx in range(3):
            window = heights[dy : dy + rows, dx : dx + cols]
            present = window != 0.0
            lower = present & (window < min_h)
            higher = present & ~lower & (window > max_h)
            min_h = np.where(lower, window, min_h)
            min_x = np.where(lower, dx, min_x)
            min_y = np.where(lower, dy, min_y)
            max_h = np.where(higher, window, max_h)
            max_x = np.where(higher, dx, max_x)
            max_y = np.where(higher, dy, max_y)

    run = np.hypot(max_x - min_x, max_y - min_y) * cell_size
    rise = max_h - min_h
    with np.errstate(divide="ignore", invalid="ignore"):
        slope = np.where(run == 0.0, 0.0, np.arctan(rise / run))
    gradient[1:-1, 1:-1] = slope
    return gradient


def gradient_to_obstacles(
    gradient_map: np.ndarray, heightmap: np.ndarray, max_gradient: float
) -> np.ndarray:
    """Return 1 for obstacle cells and 0 for traversable ones.

    Border cells are obstacles; cells next to an unset height are not; the
    rest are obstacles iff their gradient exceeds ``max_gradient``.
    """
    gradients = _as_map(gradient_map)
    heights = _as_map(heightmap)
    if gradients.shape != heights.shape:
        raise ValueError("gradient map and heightmap must have the same shape")
    height, width = heights.shape
    result = np.ones((height, width), dtype=np.uint32)
    if height < 3 or width < 3:
        return result
    rows, cols = height - 2, width - 2

    unset = np.zeros((rows, cols), dtype=bool)
    for dy in range(3):
        for dx in range(3):
            unset |= heights[dy : dy + rows, dx : dx + cols] == 0.0

    steep = gradients[1:-1, 1:-1] > max_gradient
    result[1:-1, 1:-1] = np.where(unset, 0, np.where(steep, 1, 0))
    return result


def points_to_sum(
    points: np.ndarray, heightmap_width: int, heightmap_height: int, cell_size: float
) -> np.ndarray:
    """Count and sum the heights of the points near each cell.

    A valid point (``w`` not 0) counts for every cell whose corner lies within
    ``cell_size`` of it along both axes. The result has shape
    ``(height, width, 2)`` holding ``(count, height_sum)``; add results to
    accumulate over several clouds.
    """
    _check_size(heightmap_width, heightmap_height)
    pts = _as_points(points, 4)
    pts = pts[pts[:, 3] != 0.0]
    xs = np.arange(heightmap_width) * cell_size
    ys = np.arange(heightmap_height) * cell_size
    near_x = (np.abs(xs[:, None] - pts[None, :, 0]) <= cell_size).astype(np.float64)
    near_y = (np.abs(ys[:, None] - pts[None, :, 1]) <= cell_size).astype(np.float64)
    counts = near_y @ near_x.T
    sums = (near_y * pts[None, :, 2]) @ near_x.T
    return np.stack([counts, sums], axis=-1)


def sum_to_height(
    sums: np.ndarray, heightmap: np.ndarray, min_count: float
) -> Tuple[np.ndarray, np.ndarray]:
    """Turn accumulated sums into mean heights.

    Cells with more than ``min_count`` points get their mean height and have
    their sums cleared; others are left alone. Returns the new heightmap and
    the new sums.
    """
    new_sums = np.array(sums, dtype=np.float64)
    heights = _as_map(heightmap)
    if new_sums.ndim != 3 or new_sums.shape[2] != 2 or new_sums.shape[:2] != heights.shape:
        raise ValueError("sums must have shape (height, width, 2) matching the heightmap")
    ready = new_sums[..., 0] > min_count
    with np.errstate(divide="ignore", invalid="ignore"):
        heights[ready] = new_sums[..., 1][ready] / new_sums[..., 0][ready]
    new_sums[ready] = 0.0
    return heights, new_sums


def _barycentric(px, py, a, b, c) -> np.ndarray:
    v0 = b[:2] - a[:2]
    v1 = c[:2] - a[:2]
    v2x = px - a[0]
    v2y = py - a[1]
    d00 = v0 @ v0
    d01 = v0 @ v1
    d11 = v1 @ v1
    d20 = v2x * v0[0] + v2y * v0[1]
    d21 = v2x * v1[0] + v2y * v1[1]
    denom = d00 * d11 - d01 * d01
    v = (d11 * d20 - d01 * d21) / denom
    w = (d00 * d21 - d01 * d20) / denom
    return np.stack([1.0 - v - w, v, w])


def points_to_height(
    points: np.ndarray,
    triangles: np.ndarray,
    heightmap_width: int,
    heightmap_height: int,
    cell_size: float,
) -> np.ndarray:
    """Rasterise a triangle mesh into a heightmap.

    Cell ``(x, y)`` samples the mesh at ``(-x * cell_size, -y * cell_size)``;
    the first triangle in order that contains the sample gives its height by
    barycentric interpolation. Cells no triangle covers are 0.
    """
    _check_size(heightmap_width, heightmap_height)
    pts = _as_points(points, 3)
    tris = np.asarray(triangles, dtype=np.int64)
    if tris.ndim != 2 or tris.shape[1] != 3:
        raise ValueError("triangles must have shape (n, 3)")
    if tris.size and (tris.min() < 0 or tris.max() >= len(pts)):
        raise IndexError("triangle refers to a missing point")

    heights = np.zeros((heightmap_height, heightmap_width))
    flat = heights.reshape(-1)
    grid_y, grid_x = np.mgrid[0:heightmap_height, 0:heightmap_width]
    sample_x = (-grid_x * cell_size).ravel().astype(np.float64)
    sample_y = (-grid_y * cell_size).ravel().astype(np.float64)
    pending = np.ones(flat.size, dtype=bool)

    for a, b, c in pts[tris][..., :3]:
        cells = np.flatnonzero(pending)
        if cells.size == 0:
            break
        with np.errstate(divide="ignore", invalid="ignore"):
            weights = _barycentric(sample_x[cells], sample_y[cells], a, b, c)
            inside = ~(weights < 0.0).any(axis=0)
            hit = cells[inside]
            flat[hit] = weights[:, inside].T @ np.array([a[2], b[2], c[2]])
        pending[hit] = False
    return heights