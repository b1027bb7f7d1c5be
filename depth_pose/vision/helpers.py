"""
Evaluation helpers for detector runs against known poses.

- Synthetic organized frames of a box seen from above
- Gaussian sensor noise on frames / clouds
- 4x4 array -> SE3
- Rotation (deg) / position (mm) error, heading error
- Error filtering for success-rate reports

Reference:
- https://petercorke.github.io/spatialmath-python/
- https://www.open3d.org/docs/release/tutorial/geometry/pointcloud.html
"""

import copy
import math
from typing import List, Tuple

import numpy as np
import open3d as o3d
from spatialmath import SE3
from spatialmath.base import trnorm

from depth_pose.vision.frame import Frame


def synthetic_box_frame(center=(0.02, -0.01), yaw=math.radians(30), size=61, spacing=0.01,
                        box_z=1.0, floor_z=2.0, width=0.2, length=0.3) -> Frame:
    """
    Organized size x size frame seen from above: a box top at box_z over a
    floor at floor_z. The box length runs along its local x axis, rotated by
    yaw about the vertical.
    """
    half = (size - 1) / 2 * spacing
    xs, ys = np.meshgrid(np.linspace(-half, half, size), np.linspace(-half, half, size))
    dx, dy = xs - center[0], ys - center[1]
    lx = np.cos(yaw) * dx + np.sin(yaw) * dy
    ly = -np.sin(yaw) * dx + np.cos(yaw) * dy
    inside = (np.abs(lx) <= length / 2) & (np.abs(ly) <= width / 2)
    z = np.where(inside, box_z, floor_z)
    return Frame.from_grid(np.dstack([xs, ys, z]))


def add_noise(cloud, mu, sigma, rng=None):
    """
    Gaussian noise on every coordinate of a Frame or an Open3D cloud.

    NaN samples of a Frame stay NaN. The input is not modified.
    """
    rng = rng if rng is not None else np.random.default_rng()
    if isinstance(cloud, Frame):
        return cloud.copy_with(points=cloud.points + rng.normal(mu, sigma, size=cloud.points.shape))

    noisy = copy.deepcopy(cloud)
    noisy.points = o3d.utility.Vector3dVector(np.asarray(noisy.points) + rng.normal(mu, sigma, size=(len(noisy.points), 3)))
    return noisy


def to_se3(T) -> SE3:
    T = np.asarray(T, dtype=np.float64)
    if T.shape != (4, 4):
        raise ValueError(f"Expected a 4x4 transform, got shape {T.shape}")
    # nearest valid SE(3)
    return SE3(trnorm(T))


def pose_error(ground_truth, estimate) -> Tuple[float, float]:
    """
    Returns:
        tuple: (rotation error in degrees, position error in mm)
    """
    gt = to_se3(ground_truth)
    est = to_se3(estimate)
    rotation_deg = math.degrees(gt.angdist(est))
    position_mm = float(np.linalg.norm(gt.t - est.t)) * 1000
    return float(rotation_deg), position_mm


def yaw_error(yaw_true, yaw_estimate, period=2 * math.pi):
    """
    Absolute heading error in degrees, wrapped to [0, period / 2].

    period=pi compares headings of a footprint that looks the same when
    turned half a revolution (a rectangle).
    """
    delta = (yaw_estimate - yaw_true + period / 2) % period - period / 2
    return abs(math.degrees(delta))


def filter_errors(errors: List[Tuple[float, float]], max_rotation_error, max_position_error):
    """Keep (rotation, position) errors inside both limits."""
    return [e for e in errors if e[0] <= max_rotation_error and e[1] <= max_position_error]
