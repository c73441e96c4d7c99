"""Occupancy grids built from point clouds, then filtered and expanded."""

from __future__ import annotations

from enum import IntEnum
from typing import Sequence

import numpy as np
from scipy import ndimage

__all__ = ["Occupancy", "points_to_obstacles", "filter_obstacles", "expand_obstacles"]

_WORKGROUP = 8

# Neighbours of a pixel as (dx, dy), in angular order around it.
_NEIGHBOURS = ((1, 0), (1, -1), (0, -1), (-1, -1), (-1, 0), (-1, 1), (0, 1), (1, 1))


class Occupancy(IntEnum):
    """State of one cell of an occupancy grid."""

    UNKNOWN = 0
    FREE = 1
    OCCUPIED = 2

    def occupied(self) -> bool:
        """True iff the cell is occupied."""
        return self is Occupancy.OCCUPIED


def _covered(extent: int) -> int:
    return (extent // _WORKGROUP) * _WORKGROUP


def _as_grid(grid: Sequence) -> np.ndarray:
    array = np.array(grid, dtype=np.uint32)
    if array.ndim != 2 or array.size == 0:
        raise ValueError("grid must be a non-empty two-dimensional array")
    return array


def _covered_cells(height: int, width: int):
    ys, xs = np.meshgrid(
        np.arange(_covered(height), dtype=np.int64),
        np.arange(_covered(width), dtype=np.int64),
        indexing="ij",
    )
    return ys, xs


def points_to_obstacles(
    points: np.ndarray,
    image_width: int,
    image_height: int,
    cell_size: float,
    max_safe_gradient: float,
    obstacle_map: np.ndarray,
) -> np.ndarray:
    """Mark the cells under an organised point cloud as free or occupied.

    ``points`` holds one ``(x, y, z, w)`` row per image pixel. For every
    interior pixel with a valid, non-negative point, the surface normals
    towards its eight neighbours are compared with their mean; the cell
    under the point becomes occupied if the largest deviation exceeds
    ``max_safe_gradient`` (radians) and free otherwise. Cells not touched keep
    their value from ``obstacle_map``. A new grid is returned.
    """
    result = _as_grid(obstacle_map)
    grid_h, grid_w = result.shape
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim != 2 or pts.shape[1] != 4:
        raise ValueError("points must have shape (n, 4)")
    if pts.shape[0] < image_width * image_height:
        raise ValueError("fewer points than image pixels")

    xs = np.arange(1, min(image_width - 1, _covered(image_width)), dtype=np.int64)
    ys = np.arange(1, min(image_height - 1, _covered(image_height)), dtype=np.int64)
    if xs.size == 0 or ys.size == 0:
        return result

    grid_y, grid_x = np.meshgrid(ys, xs, indexing="ij")
    index = (grid_x + grid_y * image_width).ravel()
    origin = pts[index]

    with np.errstate(invalid="ignore", divide="ignore", over="ignore"):
        fx = origin[:, 0] / cell_size
        fy = origin[:, 1] / cell_size
        keep = (
            (origin[:, 0] >= 0)
            & (origin[:, 1] >= 0)
            & (origin[:, 3] != 0)
            & (fx < grid_w)
            & (fy < grid_h)
        )
        index = index[keep]
        origin = origin[keep]
        cell_x = fx[keep].astype(np.int64)
        cell_y = fy[keep].astype(np.int64)

        offsets = np.array([dx + dy * image_width for dx, dy in _NEIGHBOURS], dtype=np.int64)
        around = pts[index[:, None] + offsets[None, :]]
        following = np.roll(around, -1, axis=1)
        pair_ok = (around[..., 3] != 0) & (following[..., 3] != 0)

        first = around[..., :3] - origin[:, None, :3]
        second = following[..., :3] - origin[:, None, :3]
        crosses = np.cross(first, second)
        crosses = crosses / np.linalg.norm(crosses, axis=-1, keepdims=True)
        crosses = np.where(pair_ok[..., None], crosses, 0.0)

        count = pair_ok.sum(axis=1)
        total = crosses.sum(axis=1)
        normal = total / np.linalg.norm(total, axis=-1, keepdims=True)
        dots = np.clip((crosses * normal[:, None, :]).sum(axis=-1), -1.0, 1.0)
        gradients = np.arccos(dots)

    gradients = np.where(pair_ok & ~np.isnan(gradients), gradients, -1.0)
    steepest = gradients.max(axis=1) if gradients.size else np.empty(0)
    marked = count >= 3
    values = np.where(steepest > max_safe_gradient, Occupancy.OCCUPIED, Occupancy.FREE)
    result[cell_y[marked], cell_x[marked]] = values[marked]
    return result


def filter_obstacles(obstacles: np.ndarray, feature_size_cells: int, min_count: int) -> np.ndarray:
    """Keep only obstacles backed by enough occupied cells nearby.

    A known cell becomes occupied if it lies on the grid border, or if the
    square of radius ``feature_size_cells`` around it holds at least one and
    at least ``min_count`` occupied cells; otherwise it becomes free. Unknown
    cells stay unknown.
    """
    if feature_size_cells < 0 or min_count < 0:
        raise ValueError("feature_size_cells and min_count must not be negative")
    grid = _as_grid(obstacles)
    height, width = grid.shape
    result = np.zeros_like(grid)
    ys, xs = _covered_cells(height, width)
    if ys.size == 0:
        return result

    integral = np.zeros((height + 1, width + 1), dtype=np.int64)
    integral[1:, 1:] = (grid == Occupancy.OCCUPIED).cumsum(axis=0).cumsum(axis=1)

    r = feature_size_cells
    x0 = np.maximum(xs - r, 0)
    x1 = np.minimum(xs + r, width - 1)
    y0 = np.maximum(ys - r, 0)
    y1 = np.minimum(ys + r, height - 1)
    count = integral[y1 + 1, x1 + 1] - integral[y0, x1 + 1] - integral[y1 + 1, x0] + integral[y0, x0]

    values = grid[ys, xs]
    border = (xs >= width - 1) | (xs == 0) | (ys == 0) | (ys >= height - 1)
    dense = (count >= 1) & (count >= min_count)
    result[ys, xs] = np.where(
        values == Occupancy.UNKNOWN,
        Occupancy.UNKNOWN,
        np.where(border | dense, Occupancy.OCCUPIED, Occupancy.FREE),
    )
    return result


def expand_obstacles(filtered: np.ndarray, radius_in_cells: int) -> np.ndarray:
    """Grow occupied cells by a Manhattan radius to account for the robot's size.

    Cells within ``radius_in_cells`` of the grid border are always occupied.
    """
    if radius_in_cells < 0:
        raise ValueError("radius_in_cells must not be negative")
    grid = _as_grid(filtered)
    height, width = grid.shape
    result = np.zeros_like(grid)
    ys, xs = _covered_cells(height, width)
    if ys.size == 0:
        return result

    r = radius_in_cells
    border = (xs >= width - r) | (xs <= r) | (ys <= r) | (ys >= height - r)
    base = np.where(
        grid == Occupancy.UNKNOWN,
        Occupancy.UNKNOWN,
        np.where(grid == Occupancy.OCCUPIED, Occupancy.OCCUPIED, Occupancy.FREE),
    ).astype(np.uint32)

    near = np.zeros_like(grid, dtype=bool)
    if (~border).any():
        offsets = np.abs(np.arange(-r, r + 1))
        diamond = offsets[:, None] + offsets[None, :] <= r
        near = ndimage.binary_dilation(grid == Occupancy.OCCUPIED, structure=diamond)

    result[ys, xs] = np.where(border | near[ys, xs], Occupancy.OCCUPIED, base[ys, xs])
    return result