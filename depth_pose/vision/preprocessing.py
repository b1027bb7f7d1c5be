"""
Frame preprocessing for the box pipeline.

- range_filter: invalidate samples outside a depth window
- roi_crop: cut the border bands of an organized frame
- ground_truth_diff: keep only samples that differ from a recorded background

All functions return a new Frame and never modify their input. Bad input is
logged and reported through the return value (unmodified frame or None).

Reference:
- PCL PassThrough filter: https://pointclouds.org/documentation/tutorials/passthrough.html
- https://www.open3d.org/docs/release/tutorial/geometry/pointcloud.html#Crop-point-cloud
"""

import os
from typing import Optional

import numpy as np

from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.frame import Frame


# =============================================================================
# RANGE FILTER
# =============================================================================

def range_filter(frame: Frame, z_min: float, z_max: float) -> Frame:
    """
    Mark every sample whose z is outside [z_min, z_max] as invalid.

    Size and ordering are preserved so an organized frame stays organized.

    Args:
        frame: Input frame
        z_min: Lower depth bound (inclusive)
        z_max: Upper depth bound (inclusive)

    Returns:
        Filtered frame, or the input frame unchanged if it is empty
    """
    logger = ProjectLogger.get_instance()

    if frame.size == 0:
        logger.error("[RANGE] Input point cloud is empty")
        return frame

    points = frame.points.copy()
    z = points[:, 2]
    with np.errstate(invalid='ignore'):
        inside = (z >= z_min) & (z <= z_max)
    points[~inside] = np.nan

    logger.debug(f"[RANGE] z in [{z_min}, {z_max}]: kept {int(np.count_nonzero(inside))}/{frame.size}")
    return frame.copy_with(points=points, is_dense=bool(frame.is_dense and inside.all()))


# =============================================================================
# REGION OF INTEREST
# =============================================================================

def crop_margins(width: int, height: int, margin_frac_w: float, margin_frac_h: float):
    """
    Integer margin bounds of the region of interest.

    Each margin is dim * frac / 2 truncated toward zero, so a band of 3.5
    cells becomes 3.

    Returns:
        tuple: (w_lower, w_upper, h_lower, h_upper)
    """
    h_lower = int(height * margin_frac_h / 2)
    w_lower = int(width * margin_frac_w / 2)
    return w_lower, width - w_lower, h_lower, height - h_lower


def roi_crop(frame: Frame, width: int, height: int,
             margin_frac_w: float, margin_frac_h: float) -> Optional[Frame]:
    """
    Drop the border bands of an organized frame.

    The bands are margin_frac/2 of the grid on each side. Samples in the bands
    are removed (not invalidated) and the result is unorganized.

    Args:
        frame: Organized input frame (row-major)
        width: Grid width
        height: Grid height
        margin_frac_w: Fraction of the width removed in total
        margin_frac_h: Fraction of the height removed in total

    Returns:
        Unorganized frame (width = kept count, height = 1) or None on bad layout
    """
    logger = ProjectLogger.get_instance()

    if frame.size == 0:
        logger.error("[ROI] Input point cloud is empty")
        return None
    if frame.size != width * height:
        logger.error(f"[ROI] Frame has {frame.size} points, expected {width}x{height}")
        return None

    w_lower, w_upper, h_lower, h_upper = crop_margins(width, height, margin_frac_w, margin_frac_h)

    rows = np.arange(height)
    cols = np.arange(width)
    row_keep = (rows >= h_lower) & (rows < h_upper)
    col_keep = (cols >= w_lower) & (cols < w_upper)
    keep = np.outer(row_keep, col_keep).ravel()

    cropped = frame.points[keep]
    logger.debug(f"[ROI] rows [{h_lower}, {h_upper}), cols [{w_lower}, {w_upper}): {len(cropped)}/{frame.size} pts")
    return frame.copy_with(points=cropped, width=len(cropped), height=1)


# =============================================================================
# GROUND TRUTH DIFFERENCE
# =============================================================================

def ground_truth_diff(reference: Frame, raw: Frame, tolerance: float) -> Optional[Frame]:
    """
    Isolate foreground samples by differencing against a background frame.

    A raw sample is kept when both it and the reference sample at the same
    index have a valid z and |reference.z - raw.z| > tolerance.

    Args:
        reference: Background frame recorded without the object
        raw: Current frame
        tolerance: Depth difference threshold

    Returns:
        Frame with the raw layout, or None if the sizes differ
    """
    logger = ProjectLogger.get_instance()

    if reference.size != raw.size:
        logger.error("[GT-DIFF] Size of ground truth and raw point cloud is not matching "
                     f"({reference.size} vs {raw.size})")
        return None

    ref_z = reference.points[:, 2]
    raw_z = raw.points[:, 2]
    both_valid = np.isfinite(ref_z) & np.isfinite(raw_z)

    diff = np.full(raw.size, np.nan)
    diff[both_valid] = np.abs(ref_z[both_valid] - raw_z[both_valid])
    with np.errstate(invalid='ignore'):
        foreground = both_valid & (diff > tolerance)

    points = np.full_like(raw.points, np.nan)
    points[foreground] = raw.points[foreground]

    logger.debug(f"[GT-DIFF] tolerance={tolerance}: {int(np.count_nonzero(foreground))}/{raw.size} foreground pts")
    return raw.copy_with(points=points, is_dense=False)


class ReferenceStore:
    """
    File-backed background frame used by ground_truth_diff.

    The grid is stored as an (H, W, 3) .npy array. When the stored frame no
    longer matches the sensor layout the file is discarded so that a new
    background is recorded.

    Args:
        path: .npy file location
    """

    def __init__(self, path):
        self.path = str(path)
        self.logger = ProjectLogger.get_instance()

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> Optional[Frame]:
        """Return the stored background frame, or None if there is none."""
        if not self.exists():
            return None
        grid = np.load(self.path)
        if grid.ndim == 2:
            return Frame.from_points(grid)
        return Frame.from_grid(grid)

    def save(self, frame: Frame):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if frame.is_organized:
            np.save(self.path, frame.as_grid())
        else:
            np.save(self.path, frame.points)
        self.logger.info(f"[GT-DIFF] Background frame saved to {self.path}")

    def discard(self):
        """Delete the backing file (inconsistent with the current sensor frames)."""
        if self.exists():
            os.remove(self.path)
            self.logger.warning(f"[GT-DIFF] Deleting the current file {self.path}")
