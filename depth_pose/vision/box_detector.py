"""
Box pipeline: heading of a rectangular object of known footprint.

Per frame:
- STEP 1: Range filter (depth window)
- STEP 2: Region of interest crop and/or background difference
- STEP 3: Centroid of the remaining samples
- STEP 4: Corner extraction + temporal averaging (N+1 frames)
- STEP 5: Yaw resolution

Only position and heading are recovered; roll and pitch are taken as zero
(object lying flat, sensor looking down).
"""

import math
from dataclasses import dataclass
from typing import Optional

import numpy as np
from spatialmath import SE3

from depth_pose.utils.config_utils import get_box_detector_config, get_box_dimension
from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.corner_tracker import CornerId, CornerTracker
from depth_pose.vision.frame import Frame
from depth_pose.vision.plane_statistics import PlaneModel, compute_centroid, estimate_plane
from depth_pose.vision.preprocessing import ReferenceStore, ground_truth_diff, range_filter, roi_crop
from depth_pose.vision.yaw_resolver import BoxDimension, Side, YawResolver


@dataclass(eq=False)
class BoxPose:
    """
    Attributes:
        centroid: (4,) homogeneous centroid of the object samples
        yaw: Heading about the vertical axis (radians)
        corner: Corner the heading was resolved from
        side: Side classification used by the correction table
        dimension: Known box footprint
    """
    centroid: np.ndarray
    yaw: float
    corner: CornerId
    side: Side
    dimension: BoxDimension

    def as_se3(self) -> SE3:
        return SE3.Rt(SE3.Rz(self.yaw).R, self.centroid[:3], check=False)

    def as_matrix(self) -> np.ndarray:
        """4x4 pose: Rz(yaw) rotation, centroid translation."""
        return self.as_se3().A


class BoxDetector:
    """
    Owns the per-detector state (corner window, background store).

    Args:
        dimension: Known box footprint
        z_min, z_max: Depth window in meters
        corner_window: N, the corners of N+1 frames are averaged
        roi_margins: (margin_w, margin_h) fractions, None disables the crop
        reference_store: Background store, None disables differencing
        tolerance: Depth difference threshold for the background difference

    Usage:
        detector = BoxDetector.from_config(load_config())
        for frame in frames:
            pose = detector.process(frame)
            if pose is not None:
                ...
    """

    def __init__(self, dimension: BoxDimension, z_min: float = 0.5, z_max: float = 1.5,
                 corner_window: int = 5, roi_margins=None,
                 reference_store: Optional[ReferenceStore] = None, tolerance: float = 0.01):
        self.dimension = dimension
        self.z_min = z_min
        self.z_max = z_max
        self.roi_margins = roi_margins
        self.reference_store = reference_store
        self.tolerance = tolerance
        self.tracker = CornerTracker(corner_window)
        self.resolver = YawResolver(dimension)
        self.logger = ProjectLogger.get_instance()

    @classmethod
    def from_config(cls, config) -> 'BoxDetector':
        """Build a detector from the box_detector section of config.yaml."""
        section = get_box_detector_config(config)
        width, length = get_box_dimension(config)

        roi = section.get('roi', {})
        roi_margins = None
        if roi.get('enabled', False):
            roi_margins = (float(roi.get('margin_w', 0.0)), float(roi.get('margin_h', 0.0)))

        gt = section.get('ground_truth', {})
        store = ReferenceStore(gt['path']) if gt.get('enabled', False) and gt.get('path') else None

        return cls(
            dimension=BoxDimension(width=width, length=length),
            z_min=float(section.get('z_min', 0.5)),
            z_max=float(section.get('z_max', 1.5)),
            corner_window=int(section.get('corner_window', 5)),
            roi_margins=roi_margins,
            reference_store=store,
            tolerance=float(gt.get('tolerance', 0.01)),
        )

    # =========================================================================
    # PREPROCESSING
    # =========================================================================

    def preprocess(self, frame: Frame) -> Optional[Frame]:
        """
        Range filter, background difference and region of interest crop.

        Returns:
            Object samples as a non-dense frame, or None if a stage failed
        """
        filtered = range_filter(frame, self.z_min, self.z_max)

        if self.reference_store is not None:
            reference = self.reference_store.load()
            if reference is None:
                self.reference_store.save(filtered)
                self.logger.info("[BOX] No background frame stored, recorded the current frame")
                return None
            diff = ground_truth_diff(reference, filtered, self.tolerance)
            if diff is None:
                self.reference_store.discard()
                return None
            filtered = diff

        if self.roi_margins is not None:
            if not filtered.is_organized:
                self.logger.error("[BOX] Region of interest needs an organized frame")
                return None
            filtered = roi_crop(filtered, filtered.width, filtered.height, *self.roi_margins)
            if filtered is None:
                return None

        # statistics below skip invalid samples and reject dense frames
        return filtered.copy_with(is_dense=False)

    # =========================================================================
    # MAIN FUNCTION
    # =========================================================================

    def process(self, frame: Frame) -> Optional[BoxPose]:
        """
        Run the box pipeline on one frame.

        Returns:
            BoxPose once per N+1 usable frames, None otherwise
        """
        if frame.size == 0:
            self.logger.error("[BOX] Input point cloud is empty")
            return None

        cloud = self.preprocess(frame)
        if cloud is None:
            return None

        centroid = compute_centroid(cloud)
        if not np.all(np.isfinite(centroid[:3])) or cloud.valid_count() == 0:
            self.logger.warning("[BOX] No object samples left after preprocessing")
            return None

        corners = self.tracker.update(cloud)
        if corners is None:
            self.logger.debug(f"[BOX] Corner window {self.tracker.accumulator.count}/"
                              f"{self.tracker.accumulator.window + 1}")
            return None

        result = self.resolver.resolve(corners, centroid)
        if math.isnan(result.yaw):
            self.logger.warning("[BOX] Yaw could not be resolved (degenerate corners)")
            return None

        pose = BoxPose(centroid=centroid, yaw=result.yaw, corner=result.corner,
                       side=result.side, dimension=self.dimension)
        self.logger.log_box_pose(pose)
        return pose

    def estimate_plane(self, frame: Frame) -> PlaneModel:
        """Plane through the preprocessed object samples (optional stage)."""
        cloud = self.preprocess(frame)
        if cloud is None:
            return PlaneModel(normal=np.full(3, np.nan), curvature=float('nan'), centroid=np.zeros(4))
        plane = estimate_plane(cloud)
        self.logger.log_plane_result(plane)
        return plane

    def reset(self):
        self.tracker.reset()
