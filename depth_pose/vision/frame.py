"""
Point-cloud frame container.

A Frame is one snapshot from the depth sensor: an (N, 3) float array where a
missing depth reading is stored as NaN in all three coordinates. Organized
frames keep the sensor grid (row-major, index = row * width + col), unorganized
frames are a flat list with height 1.

Open3D drops the grid layout, so conversions only carry the valid samples.

Reference:
- https://www.open3d.org/docs/release/tutorial/geometry/pointcloud.html
- PCL organized clouds: https://pointclouds.org/documentation/tutorials/basic_structures.html
"""

from dataclasses import dataclass, field, replace
from typing import Optional

import numpy as np
import open3d as o3d


def _identity_orientation() -> np.ndarray:
    # quaternion [w, x, y, z]
    return np.array([1.0, 0.0, 0.0, 0.0])


def _zero_origin() -> np.ndarray:
    return np.zeros(4)


@dataclass(frozen=True, eq=False)
class Frame:
    """
    Attributes:
        points: (N, 3) float64 array, NaN rows are invalid samples
        width: Grid width (N for unorganized frames)
        height: Grid height (1 for unorganized frames)
        is_dense: True if the frame is guaranteed to hold no invalid sample
        sensor_origin: (4,) sensor acquisition origin
        sensor_orientation: (4,) quaternion [w, x, y, z]
        stamp: Acquisition time in seconds
    """
    points: np.ndarray
    width: int
    height: int = 1
    is_dense: bool = False
    sensor_origin: np.ndarray = field(default_factory=_zero_origin)
    sensor_orientation: np.ndarray = field(default_factory=_identity_orientation)
    stamp: float = 0.0

    def __post_init__(self):
        points = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        object.__setattr__(self, 'points', points)

    # -------------------------------------------------------------------------
    # Constructors
    # -------------------------------------------------------------------------

    @classmethod
    def from_points(cls, points, is_dense: bool = False, **header) -> 'Frame':
        """Unorganized frame from an (N, 3) array."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        return cls(points=points, width=len(points), height=1, is_dense=is_dense, **header)

    @classmethod
    def from_grid(cls, grid, is_dense: bool = False, **header) -> 'Frame':
        """Organized frame from an (H, W, 3) array."""
        grid = np.asarray(grid, dtype=np.float64)
        if grid.ndim != 3 or grid.shape[2] != 3:
            raise ValueError(f"Expected (H, W, 3) grid, got shape {grid.shape}")
        height, width = grid.shape[:2]
        return cls(points=grid.reshape(-1, 3), width=width, height=height,
                   is_dense=is_dense, **header)

    @classmethod
    def from_point_cloud(cls, pcd: o3d.geometry.PointCloud, **header) -> 'Frame':
        """Unorganized, non-dense frame from an Open3D point cloud."""
        return cls.from_points(np.asarray(pcd.points), is_dense=False, **header)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def size(self) -> int:
        return len(self.points)

    @property
    def is_organized(self) -> bool:
        return self.height > 1 and self.width * self.height == self.size

    def valid_mask(self) -> np.ndarray:
        """Boolean mask of samples with all three coordinates finite."""
        return np.all(np.isfinite(self.points), axis=1)

    def valid_count(self) -> int:
        return int(np.count_nonzero(self.valid_mask()))

    def valid_points(self) -> np.ndarray:
        return self.points[self.valid_mask()]

    def as_grid(self) -> np.ndarray:
        """(H, W, 3) view of an organized frame."""
        return self.points.reshape(self.height, self.width, 3)

    # -------------------------------------------------------------------------
    # Derivation
    # -------------------------------------------------------------------------

    def copy_with(self, points: Optional[np.ndarray] = None, **changes) -> 'Frame':
        """
        New frame carrying this frame's header (origin, orientation, stamp).

        Args:
            points: Replacement samples (copied from this frame if None)
            **changes: Any other field to override (width, height, is_dense)
        """
        if points is None:
            points = self.points.copy()
        return replace(self, points=np.asarray(points, dtype=np.float64), **changes)

    def to_point_cloud(self) -> o3d.geometry.PointCloud:
        """Open3D cloud built from the valid samples only."""
        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(self.valid_points())
        return pcd
