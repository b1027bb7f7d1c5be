"""
Box heading (yaw) from the smoothed corner set.

Steps:
1. Pick the corner whose distance to the centroid is closest to the half
   diagonal of the known box (least likely to be an occlusion artifact).
2. angle = atan(slope of the line corner -> centroid).
3. Classify the side between that corner and its reference corner as the
   box LENGTH or WIDTH.
4. Map (corner, side, sign of angle) to the yaw with the correction table.

IMPORTANT:
The correction table is reproduced branch by branch from the field-tuned
detector. It is not symmetric across the four corners, and Ymin/WIDTH uses the
same formula for both signs. It has to be validated against ground-truth
headings before the yaw is relied on; do not "fix" individual branches
without that data (depth_pose.vision.trial_run produces it).

Reference:
- Bounding rectangle from extreme points: https://en.wikipedia.org/wiki/Minimum_bounding_rectangle
"""

import math
from dataclasses import dataclass
from enum import Enum

import numpy as np

from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.corner_tracker import CornerId, CornerSet


class Side(Enum):
    LENGTH = 0
    WIDTH = 1


@dataclass(frozen=True)
class BoxDimension:
    width: float
    length: float

    @property
    def diagonal(self) -> float:
        return math.sqrt(self.width * self.width + self.length * self.length)


@dataclass(frozen=True)
class YawResult:
    """
    Attributes:
        yaw: Heading about the vertical axis (radians)
        corner: Corner the heading was resolved from
        side: Classification of the side corner -> reference corner
        slope_angle: atan(slope) of the line corner -> centroid, after the
            pi shift applied by the Xmin branches
    """
    yaw: float
    corner: CornerId
    side: Side
    slope_angle: float


# Side measured from each corner: Xmin/Xmax against Ymin, Ymin/Ymax against Xmin
REFERENCE_CORNER = {
    CornerId.X_MIN: CornerId.Y_MIN,
    CornerId.X_MAX: CornerId.Y_MIN,
    CornerId.Y_MIN: CornerId.X_MIN,
    CornerId.Y_MAX: CornerId.X_MIN,
}


def slope(x1: float, y1: float, x2: float, y2: float) -> float:
    """Slope of the line (x1, y1) -> (x2, y2); +-inf for a vertical line."""
    dx = x2 - x1
    dy = y2 - y1
    if dx == 0:
        if dy == 0:
            return float('nan')
        return math.copysign(math.inf, dy)
    return dy / dx


class YawResolver:
    """
    Resolves the heading of a rectangular object of known footprint.

    Args:
        dimension: BoxDimension (width, length), constant for the lifetime
    """

    def __init__(self, dimension: BoxDimension):
        self.dimension = dimension
        self.logger = ProjectLogger.get_instance()

    @property
    def expected_half_diagonal(self) -> float:
        return self.dimension.diagonal / 2

    def select_best_corner(self, corners: CornerSet, centroid) -> CornerId:
        """
        Corner whose distance to the centroid deviates least from the
        expected half diagonal. The lowest index wins a tie.
        """
        pts = corners.as_array()
        c = np.asarray(centroid, dtype=np.float64)[:2]
        half_d = np.hypot(c[0] - pts[:, 0], c[1] - pts[:, 1])
        deviation = np.abs(self.expected_half_diagonal - half_d)

        best = 0
        for i in range(1, 4):
            if deviation[best] > deviation[i]:
                best = i
        return CornerId(best)

    def select_side(self, corner_a, corner_b) -> Side:
        """
        LENGTH if the distance between the two corners is closer to the box
        length than to its width, WIDTH otherwise (LENGTH on a tie).
        """
        measured = math.hypot(corner_b[0] - corner_a[0], corner_b[1] - corner_a[1])
        l_correction = abs(self.dimension.length - measured)
        w_correction = abs(self.dimension.width - measured)
        if w_correction < l_correction:
            return Side.WIDTH
        return Side.LENGTH

    def resolve(self, corners: CornerSet, centroid) -> YawResult:
        """
        Resolve the yaw from a smoothed corner set.

        Args:
            corners: Temporally averaged CornerSet
            centroid: (4,) or (3,) centroid of the object points

        Returns:
            YawResult; yaw is NaN when the best corner coincides with the centroid
        """
        best = self.select_best_corner(corners, centroid)
        pts = corners.as_array()
        corner = pts[best]

        angle = math.atan(slope(corner[0], corner[1], centroid[0], centroid[1]))
        self.logger.debug(f"[YAW] Actual slope: {math.degrees(angle):.2f} deg")

        side = self.select_side(corner, pts[REFERENCE_CORNER[best]])
        yaw, angle = self._correct(best, side, angle)

        self.logger.debug(f"[YAW] {best.name} - {side.name} side, slope angle: "
                          f"{math.degrees(angle):.2f} deg, yaw: {math.degrees(yaw):.2f} deg")
        return YawResult(yaw=yaw, corner=best, side=side, slope_angle=angle)

    # =========================================================================
    # CORRECTION TABLE
    # =========================================================================

    def _correct(self, corner: CornerId, side: Side, angle: float):
        """
        Correction table. a = angle, min = atan(w/l), max = atan(l/w).

            corner  side    a < 0                       a >= 0
            Xmin    LENGTH  a' = pi + a;                a + max
                            -pi/2 + a' - min
            Xmin    WIDTH   a' = pi + a; -a' + min      a - max
            Xmax    LENGTH  a + max                     a - max
            Xmax    WIDTH   pi/2 + a - min              a + pi/2 - min
            Ymin    LENGTH  a - min                     a - max
            Ymin    WIDTH   a - max                     a - max
            Ymax    LENGTH  a + min + pi/2              a - min + pi/2
            Ymax    WIDTH   max + a                     a - max

        Returns:
            tuple: (yaw, angle) where angle includes the Xmin pi shift
        """
        box_min_angle = math.atan(self.dimension.width / self.dimension.length)
        box_max_angle = math.atan(self.dimension.length / self.dimension.width)
        negative = angle < 0

        if corner == CornerId.X_MIN:
            if side == Side.LENGTH:
                if negative:
                    angle = math.pi + angle
                    yaw = -(math.pi / 2) + angle - box_min_angle
                else:
                    yaw = angle + box_max_angle
            else:
                if negative:
                    angle = math.pi + angle
                    yaw = -angle + box_min_angle
                else:
                    yaw = angle - box_max_angle

        elif corner == CornerId.X_MAX:
            if side == Side.LENGTH:
                if negative:
                    yaw = angle + box_max_angle
                else:
                    yaw = angle - box_max_angle
            else:
                if negative:
                    yaw = (math.pi / 2) + angle - box_min_angle
                else:
                    yaw = angle + (math.pi / 2) - box_min_angle

        elif corner == CornerId.Y_MIN:
            if side == Side.LENGTH:
                if negative:
                    yaw = angle - box_min_angle
                else:
                    yaw = angle - box_max_angle
            else:
                # TODO: both signs share one formula; settle it with depth_pose.vision.trial_run
                yaw = angle - box_max_angle

        else:
            if side == Side.LENGTH:
                if negative:
                    yaw = angle + box_min_angle + (math.pi / 2)
                else:
                    yaw = angle - box_min_angle + (math.pi / 2)
            else:
                if negative:
                    yaw = box_max_angle + angle
                else:
                    yaw = angle - box_max_angle

        return yaw, angle
