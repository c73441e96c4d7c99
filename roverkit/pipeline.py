"""The obstacle-mapping pipeline: depth images in, occupancy grids out.

A :class:`DepthProjector` turns depth images into a point cloud and hands it
to a :class:`ThalassicPipeline` through a shared :class:`PipelineRef`. The
pipeline then turns the latest cloud into an expanded occupancy grid.
"""

from __future__ import annotations

import math
import os
import threading
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from roverkit.obstacles import expand_obstacles, filter_obstacles, points_to_obstacles
from roverkit.projection import depth_to_points

__all__ = [
    "PipelineRef",
    "DepthProjectorBuilder",
    "DepthProjector",
    "ThalassicBuilder",
    "ThalassicPipeline",
]

_U32_MAX = 2**32 - 1
_DEFAULT_RADIUS = 0.25
_DEFAULT_MAX_GRADIENT = math.radians(45.0)


@dataclass
class _Shared:
    points: np.ndarray
    image_dimensions: Tuple[int, int]


class PipelineRef:
    """Shared slot through which a projector hands point clouds to a pipeline."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._shared: Optional[_Shared] = None
        self._pending = False

    @classmethod
    def noop(cls) -> "PipelineRef":
        """Return a reference that is connected to no pipeline."""
        return cls()


def _check_size(size: Sequence[int], what: str) -> Tuple[int, int]:
    width, height = (int(value) for value in size)
    if width < 1 or height < 1:
        raise ValueError(f"{what} must be positive")
    return width, height


def _stride_from_env() -> int:
    raw = os.environ.get("STRIDE", "4")
    if not (raw.isascii() and raw.isdigit()) or int(raw) > _U32_MAX:
        raise ValueError("STRIDE must be an unsigned 32-bit integer")
    stride = int(raw)
    if stride == 0:
        raise ValueError("STRIDE must not be zero")
    return stride


@dataclass(frozen=True)
class DepthProjectorBuilder:
    """Camera parameters for a :class:`DepthProjector`.

    ``image_size`` is ``(width, height)`` in pixels. The sampling stride is
    read from the ``STRIDE`` environment variable (default 4) when built.
    """

    image_size: Tuple[int, int]
    focal_length_px: float
    principal_point_px: Tuple[float, float]
    max_depth: float

    def build(self, pipeline_ref: PipelineRef) -> "DepthProjector":
        """Create a projector that feeds the pipeline behind ``pipeline_ref``."""
        width, height = _check_size(self.image_size, "image size")
        stride = _stride_from_env()
        pixel_count = width * height
        with pipeline_ref._lock:
            pipeline_ref._shared = _Shared(
                points=np.zeros((pixel_count, 4), dtype=np.float32),
                image_dimensions=(width, height),
            )
        return DepthProjector(self, stride, pipeline_ref)


class DepthProjector:
    """Projects depth images into point clouds for a pipeline."""

    def __init__(self, builder: DepthProjectorBuilder, stride: int, pipeline_ref: PipelineRef) -> None:
        self._builder = builder
        self._size = _check_size(builder.image_size, "image size")
        self._stride = stride
        self._ref = pipeline_ref

    def project(
        self, depths: Sequence[int], camera_transform: np.ndarray, depth_scale: float
    ) -> np.ndarray:
        """Project ``depths`` and queue the resulting cloud for processing.

        ``camera_transform`` is the camera's 4x4 global transform and
        ``depth_scale`` the number of metres per depth unit. Returns a copy
        of the point cloud.
        """
        width, height = self._size
        points = depth_to_points(
            depths,
            width,
            height,
            self._builder.focal_length_px,
            self._builder.principal_point_px,
            self._builder.max_depth,
            depth_scale,
            camera_transform,
            self._stride,
        )
        with self._ref._lock:
            if self._ref._shared is None:
                raise RuntimeError("the pipeline has no point cloud storage")
            self._ref._shared.points = points
            self._ref._pending = True
        return points.copy()

    @property
    def image_size(self) -> Tuple[int, int]:
        """The image size as ``(width, height)``."""
        return self._size

    @property
    def pixel_count(self) -> int:
        """The number of pixels in one image."""
        width, height = self._size
        return width * height


@dataclass(frozen=True)
class ThalassicBuilder:
    """Grid parameters for a :class:`ThalassicPipeline`.

    ``heightmap_dimensions`` is ``(width, height)`` in cells of
    ``cell_size`` metres.
    """

    heightmap_dimensions: Tuple[int, int]
    cell_size: float
    max_point_count: int
    feature_size_cells: int
    min_feature_count: int

    def build(self) -> "ThalassicPipeline":
        """Create the pipeline."""
        _check_size(self.heightmap_dimensions, "heightmap dimensions")
        if self.max_point_count < 1:
            raise ValueError("max_point_count must be positive")
        if not self.cell_size > 0:
            raise ValueError("cell_size must be positive")
        return ThalassicPipeline(self)


class ThalassicPipeline:
    """Turns the latest point cloud into an expanded occupancy grid."""

    def __init__(self, builder: ThalassicBuilder) -> None:
        self._width, self._height = _check_size(builder.heightmap_dimensions, "heightmap dimensions")
        self._cell_size = float(builder.cell_size)
        self._feature_size_cells = int(builder.feature_size_cells)
        self._min_feature_count = int(builder.min_feature_count)
        self._unfiltered = self._empty_grid()
        self._radius_in_cells = 0
        self._max_gradient = 0.0
        self._new_radius: Optional[float] = _DEFAULT_RADIUS
        self._new_max_gradient: Optional[float] = _DEFAULT_MAX_GRADIENT
        self._ref = PipelineRef()

    def _empty_grid(self) -> np.ndarray:
        return np.zeros((self._height, self._width), dtype=np.uint32)

    def will_process(self) -> bool:
        """True iff a new point cloud is waiting to be processed."""
        with self._ref._lock:
            return self._ref._pending

    def process(self) -> Optional[np.ndarray]:
        """Process the waiting point cloud.

        Returns the expanded occupancy grid of shape ``(height, width)``
        holding :class:`~roverkit.obstacles.Occupancy` values, or None if no
        new cloud was waiting.
        """
        with self._ref._lock:
            if not self._ref._pending:
                return None
            shared = self._ref._shared
            if shared is None:
                raise RuntimeError("no point cloud has been provided")
            if self._new_radius is not None:
                cells = math.ceil(self._new_radius / self._cell_size)
                self._radius_in_cells = min(max(cells, 0), _U32_MAX)
                self._new_radius = None
            if self._new_max_gradient is not None:
                self._max_gradient = self._new_max_gradient
                self._new_max_gradient = None
            image_width, image_height = shared.image_dimensions
            self._unfiltered = points_to_obstacles(
                shared.points,
                image_width,
                image_height,
                self._cell_size,
                self._max_gradient,
                self._unfiltered,
            )
            filtered = filter_obstacles(
                self._unfiltered, self._feature_size_cells, self._min_feature_count
            )
            expanded = expand_obstacles(filtered, self._radius_in_cells)
            self._ref._pending = False
        return expanded

    def reset_heightmap(self) -> None:
        """Forget every cell observed so far."""
        self._unfiltered = self._empty_grid()

    def set_radius(self, radius: float) -> None:
        """Set the robot radius in metres used from the next processing on."""
        self._new_radius = float(radius)

    def get_ref(self) -> PipelineRef:
        """Return the reference that projectors use to feed this pipeline."""
        return self._ref