#!/usr/bin/env python3
"""
Heading trial: run the box pipeline on synthetic scenes of known heading and
report how far the resolved yaw is from the truth.

The yaw correction table was tuned in the field; this trial is the
ground-truth run it has to pass before the heading is relied on.

Usage:
    python -m depth_pose.vision.trial_run
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np
from spatialmath import SE3

from depth_pose.utils.config_utils import get_box_detector_config, get_box_dimension, load_config
from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.box_detector import BoxDetector
from depth_pose.vision.corner_tracker import CornerId
from depth_pose.vision.helpers import add_noise, filter_errors, pose_error, synthetic_box_frame, yaw_error
from depth_pose.vision.yaw_resolver import BoxDimension, Side

HEADINGS_DEG = list(range(-80, 90, 10))
CENTER = (0.02, -0.01)
BOX_Z = 1.0
NOISE_LEVEL = 0.0

YAW_THRESHOLD = 5.0        # deg
POSITION_THRESHOLD = 5.0   # mm


@dataclass
class HeadingTrial:
    """
    Attributes:
        heading: True heading (radians)
        yaw: Resolved yaw (radians), NaN if the pipeline gave no pose
        corner: Corner the yaw was resolved from
        side: Side classification used by the correction table
        yaw_error: Heading error in degrees, modulo half a revolution
        position_error: Centroid error in mm
    """
    heading: float
    yaw: float
    corner: Optional[CornerId]
    side: Optional[Side]
    yaw_error: float
    position_error: float

    @property
    def resolved(self) -> bool:
        return math.isfinite(self.yaw)


def run_heading_trial(dimension: BoxDimension, headings: Sequence[float], corner_window: int = 1,
                      z_min: float = 0.5, z_max: float = 1.5, noise: float = 0.0,
                      rng=None) -> List[HeadingTrial]:
    """
    One fresh detector per heading, fed corner_window + 1 frames.

    Args:
        dimension: Box footprint used both for the scene and the detector
        headings: True headings in radians
        noise: Gaussian sigma (m) added to every frame, 0 disables

    Returns:
        One HeadingTrial per heading, in order
    """
    logger = ProjectLogger.get_instance()
    rng = rng if rng is not None else np.random.default_rng(0)
    trials = []

    for heading in headings:
        detector = BoxDetector(dimension, z_min=z_min, z_max=z_max, corner_window=corner_window)
        scene = synthetic_box_frame(center=CENTER, yaw=heading, box_z=BOX_Z,
                                    width=dimension.width, length=dimension.length)

        pose = None
        for _ in range(corner_window + 1):
            frame = add_noise(scene, 0.0, noise, rng) if noise > 0 else scene
            pose = detector.process(frame)

        if pose is None:
            logger.warning(f"[TRIAL] No pose for heading {math.degrees(heading):.1f} deg")
            trials.append(HeadingTrial(heading, float('nan'), None, None, float('nan'), float('nan')))
            continue

        ground_truth = SE3.Rt(SE3.Rz(heading).R, [CENTER[0], CENTER[1], BOX_Z], check=False).A
        _, position_mm = pose_error(ground_truth, pose.as_matrix())
        trials.append(HeadingTrial(
            heading=heading,
            yaw=pose.yaw,
            corner=pose.corner,
            side=pose.side,
            yaw_error=yaw_error(heading, pose.yaw, period=math.pi),
            position_error=position_mm,
        ))

    return trials


def report(trials: List[HeadingTrial], yaw_threshold=YAW_THRESHOLD,
           position_threshold=POSITION_THRESHOLD) -> int:
    """
    Log one line per heading and the success rate.

    Returns:
        int: Number of headings inside both thresholds
    """
    logger = ProjectLogger.get_instance()
    logger.info("=" * 60)
    logger.info(f"HEADING TRIAL: {len(trials)} headings")

    for t in trials:
        if not t.resolved:
            logger.error(f"  {math.degrees(t.heading):7.1f} deg -> no pose")
            continue
        result = "PASS" if t.yaw_error <= yaw_threshold and t.position_error <= position_threshold else "FAIL"
        line = (f"  {math.degrees(t.heading):7.1f} deg -> {math.degrees(t.yaw):7.1f} deg "
                f"({t.corner.name}/{t.side.name}) yaw err {t.yaw_error:.2f} deg, "
                f"pos err {t.position_error:.2f} mm [{result}]")
        if result == "PASS":
            logger.info(line)
        else:
            logger.warning(line)

    errors = [(t.yaw_error, t.position_error) for t in trials if t.resolved]
    passed = len(filter_errors(errors, yaw_threshold, position_threshold))
    logger.info(f"  passed: {passed}/{len(trials)} "
                f"(yaw <= {yaw_threshold} deg, position <= {position_threshold} mm)")
    logger.info("=" * 60)
    return passed


def main(config=None) -> List[HeadingTrial]:
    config = config if config is not None else load_config()
    ProjectLogger.get_instance(config)

    section = get_box_detector_config(config)
    width, length = get_box_dimension(config)
    trials = run_heading_trial(
        BoxDimension(width=width, length=length),
        [math.radians(h) for h in HEADINGS_DEG],
        corner_window=int(section.get('corner_window', 5)),
        z_min=float(section.get('z_min', 0.5)),
        z_max=float(section.get('z_max', 1.5)),
        noise=NOISE_LEVEL,
    )
    report(trials)
    return trials


if __name__ == "__main__":
    main()
