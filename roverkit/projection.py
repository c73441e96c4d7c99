"""Projection of depth images into point clouds."""

from __future__ import annotations

from typing import Optional, Sequence

import numpy as np

__all__ = ["depth_to_points"]

_WORKGROUP = 8


def _covered(extent: int) -> int:
    """Number of invocations along one axis when dispatching ``extent / 8`` workgroups."""
    return (extent // _WORKGROUP) * _WORKGROUP


def depth_to_points(
    depths: Sequence[int],
    image_width: int,
    image_height: int,
    focal_length_px: float,
    principal_point_px: Sequence[float],
    max_depth: float,
    depth_scale: float,
    transform: Optional[np.ndarray] = None,
    stride: int = 4,
) -> np.ndarray:
    """Project a row-major depth image into homogeneous points.

    Every ``stride``-th pixel in both directions is projected with a pinhole
    model into a frame where x points forward, y left and z up, and is then
    multiplied by the 4x4 ``transform``. The result has one row ``(x, y, z, w)``
    per pixel of the image; the sampled points are packed at the front, row by
    row, and ``w`` is 1 for a valid point and 0 otherwise. Pixels with a depth
    of zero or beyond ``max_depth`` (after scaling) are invalid.
    """
    if image_width < 1 or image_height < 1:
        raise ValueError("image dimensions must be positive")
    if stride < 1:
        raise ValueError("stride must be at least 1")
    pixel_count = image_width * image_height
    raw_depths = np.asarray(depths).ravel()
    if raw_depths.size != pixel_count:
        raise ValueError(f"expected {pixel_count} depths, got {raw_depths.size}")
    principal = np.asarray(principal_point_px, dtype=np.float64)
    if principal.shape != (2,):
        raise ValueError("principal_point_px must hold two values")
    matrix = np.eye(4) if transform is None else np.asarray(transform, dtype=np.float64)
    if matrix.shape != (4, 4):
        raise ValueError("transform must be a 4x4 matrix")

    points = np.zeros((pixel_count, 4), dtype=np.float32)

    gx = np.arange(_covered(image_width), dtype=np.int64)
    gy = np.arange(_covered(image_height), dtype=np.int64)
    gx = gx[gx * stride < image_width]
    gy = gy[gy * stride < image_height]
    if gx.size == 0 or gy.size == 0:
        return points

    grid_y, grid_x = np.meshgrid(gy, gx, indexing="ij")
    grid_x = grid_x.ravel()
    grid_y = grid_y.ravel()
    strided_x = grid_x * stride
    strided_y = grid_y * stride
    source = strided_x + strided_y * image_width
    target = grid_x + grid_y * (image_width // stride)

    in_bounds = target < pixel_count
    strided_x = strided_x[in_bounds]
    strided_y = strided_y[in_bounds]
    source = source[in_bounds]
    target = target[in_bounds]

    raw = raw_depths[source].astype(np.float64)
    depth = raw * depth_scale
    valid = (raw != 0) & ~(depth > max_depth)

    depth = depth[valid]
    scale = depth / focal_length_px
    right = (strided_x[valid] - principal[0]) * scale
    down = (strided_y[valid] - principal[1]) * scale
    local = np.stack([depth, -right, -down, np.ones_like(depth)], axis=1)
    world = local @ matrix.T
    world[:, 3] = 1.0
    points[target[valid]] = world
    return points