"""
Centroid / covariance statistics and plane fitting over non-dense frames.

Only valid (finite) samples contribute. The routines here exist to skip
invalid entries, so a frame flagged dense is rejected as a usage error.

IMPORTANT:
compute_mean_and_covariance keeps the single-pass raw-moment formulation
(E[xx] - E[x]E[x]). It matches the centroid-then-covariance result within
floating point tolerance for clouds near the origin, but loses digits to
cancellation when the cloud sits far from the origin.

Reference:
- PCL centroid.hpp (computeMeanAndCovarianceMatrix)
- https://www.open3d.org/docs/release/tutorial/geometry/pointcloud.html#Vertex-normal-estimation
- Rusu 2009, "Semantic 3D Object Maps", Section 4.3 (surface curvature)
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.frame import Frame


@dataclass(eq=False)
class PlaneModel:
    """
    Attributes:
        normal: (3,) unit normal (eigenvector of the smallest eigenvalue)
        curvature: lambda_min / trace(covariance), 0 if the trace is 0
        centroid: (4,) homogeneous centroid
        offset: Hessian form d, so that normal . p + d = 0 on the plane
    """
    normal: np.ndarray
    curvature: float
    centroid: np.ndarray
    offset: float = float('nan')

    def is_valid(self) -> bool:
        return bool(np.all(np.isfinite(self.normal)) and np.isfinite(self.curvature))

    @property
    def coefficients(self) -> np.ndarray:
        """(a, b, c, d) plane coefficients."""
        return np.append(self.normal, self.offset)


def _check_input(frame: Frame, name: str) -> bool:
    logger = ProjectLogger.get_instance()
    if frame.size == 0:
        logger.error(f"[{name}] Input point cloud is empty")
        return False
    if frame.is_dense:
        logger.error(f"[{name}] Dense cloud is not acceptable")
        return False
    return True


# =============================================================================
# CENTROID AND COVARIANCE
# =============================================================================

def compute_centroid(frame: Frame) -> np.ndarray:
    """
    Homogeneous mean (x, y, z, 1) of the valid samples.

    Returns:
        (4,) centroid. Zero vector on empty or dense input; NaN xyz if the
        frame holds no valid sample.
    """
    if not _check_input(frame, "CENTROID"):
        return np.zeros(4)

    valid = frame.valid_points()
    centroid = np.ones(4)
    if len(valid) == 0:
        centroid[:3] = np.nan
    else:
        centroid[:3] = valid.sum(axis=0) / len(valid)

    ProjectLogger.get_instance().debug(f"[CENTROID] Calculated points: {len(valid)}")
    return centroid


def compute_covariance(frame: Frame, centroid: np.ndarray) -> Tuple[np.ndarray, int]:
    """
    Unnormalized 3x3 covariance of the valid samples about a given centroid.

    Returns:
        tuple: (covariance, valid_count); (zeros, 0) on empty or dense input
    """
    if not _check_input(frame, "COVARIANCE"):
        return np.zeros((3, 3)), 0

    demeaned = frame.valid_points() - np.asarray(centroid)[:3]
    covariance = demeaned.T @ demeaned

    ProjectLogger.get_instance().debug(f"[COVARIANCE] Calculated points: {len(demeaned)}")
    return covariance, len(demeaned)


def compute_covariance_normalized(frame: Frame, centroid: np.ndarray) -> Tuple[np.ndarray, int]:
    """Covariance divided by the number of valid samples."""
    covariance, count = compute_covariance(frame, centroid)
    if count != 0:
        covariance = covariance / count
    return covariance, count


def compute_mean_and_covariance(frame: Frame) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Centroid and normalized covariance in a single accumulation pass.

    Accumulates [xx, xy, xz, yy, yz, zz, x, y, z], divides by the count and
    subtracts the mean products.

    Returns:
        tuple: (covariance, centroid, valid_count); zeros and 0 when there is
        no valid sample or the input is rejected
    """
    covariance = np.zeros((3, 3))
    centroid = np.zeros(4)
    if not _check_input(frame, "MEAN-COVARIANCE"):
        return covariance, centroid, 0

    valid = frame.valid_points()
    count = len(valid)
    if count == 0:
        return covariance, centroid, 0

    x, y, z = valid[:, 0], valid[:, 1], valid[:, 2]
    accu = np.array([
        np.sum(x * x), np.sum(x * y), np.sum(x * z),
        np.sum(y * y), np.sum(y * z), np.sum(z * z),
        np.sum(x), np.sum(y), np.sum(z),
    ]) / count

    centroid[:3] = accu[6:9]
    centroid[3] = 1.0

    covariance[0, 0] = accu[0] - accu[6] * accu[6]
    covariance[0, 1] = accu[1] - accu[6] * accu[7]
    covariance[0, 2] = accu[2] - accu[6] * accu[8]
    covariance[1, 1] = accu[3] - accu[7] * accu[7]
    covariance[1, 2] = accu[4] - accu[7] * accu[8]
    covariance[2, 2] = accu[5] - accu[8] * accu[8]
    covariance[1, 0] = covariance[0, 1]
    covariance[2, 0] = covariance[0, 2]
    covariance[2, 1] = covariance[1, 2]

    ProjectLogger.get_instance().debug(f"[MEAN-COVARIANCE] Calculated points: {count}")
    return covariance, centroid, count


# =============================================================================
# PLANE
# =============================================================================

def solve_plane_parameters(covariance: np.ndarray, centroid: np.ndarray):
    """
    Plane normal and surface curvature from a covariance matrix.

    The normal is the eigenvector of the smallest eigenvalue. The sign is the
    one returned by the eigen solver (no orientation is enforced).

    Returns:
        tuple: (normal (3,), curvature, offset)
    """
    eigen_values, eigen_vectors = np.linalg.eigh(covariance)  # ascending order
    normal = eigen_vectors[:, 0]

    trace = covariance[0, 0] + covariance[1, 1] + covariance[2, 2]
    curvature = abs(eigen_values[0] / trace) if trace != 0 else 0.0

    # Hessian form: d = -n . c
    offset = -float(np.dot(normal, np.asarray(centroid)[:3]))
    return normal, float(curvature), offset


def estimate_plane(frame: Frame) -> PlaneModel:
    """
    Least-squares plane through the valid samples.

    Returns:
        PlaneModel; normal, curvature and offset are NaN when the frame has
        fewer than 3 samples or no valid sample (check is_valid())
    """
    if frame.size < 3:
        return PlaneModel(normal=np.full(3, np.nan), curvature=float('nan'), centroid=np.zeros(4))

    covariance, centroid, count = compute_mean_and_covariance(frame)
    if count == 0:
        return PlaneModel(normal=np.full(3, np.nan), curvature=float('nan'), centroid=centroid)

    normal, curvature, offset = solve_plane_parameters(covariance, centroid)
    return PlaneModel(normal=normal, curvature=curvature, centroid=centroid, offset=offset)
