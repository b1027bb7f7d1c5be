"""
Extreme-point (corner) extraction and temporal corner averaging.

The visible top face of a box seen from above has its corners at (or close
to) the samples with the smallest/largest x and y. A single frame is noisy,
so the corners of N+1 consecutive frames are averaged before the yaw is
resolved.
"""

from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

import numpy as np

from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.frame import Frame


class CornerId(IntEnum):
    """Row index of each corner in CornerSet.as_array()."""
    X_MIN = 0
    X_MAX = 1
    Y_MIN = 2
    Y_MAX = 3


@dataclass(eq=False)
class CornerSet:
    """
    Four 2D points, each the (x, y) of the sample holding one extreme.
    """
    x_min: np.ndarray
    x_max: np.ndarray
    y_min: np.ndarray
    y_max: np.ndarray

    def as_array(self) -> np.ndarray:
        """(4, 2) matrix in CornerId order."""
        return np.vstack([self.x_min, self.x_max, self.y_min, self.y_max]).astype(np.float64)

    @classmethod
    def from_array(cls, corners) -> 'CornerSet':
        corners = np.asarray(corners, dtype=np.float64).reshape(4, 2)
        return cls(x_min=corners[0].copy(), x_max=corners[1].copy(),
                   y_min=corners[2].copy(), y_max=corners[3].copy())

    def __getitem__(self, corner: CornerId) -> np.ndarray:
        return self.as_array()[int(corner)]


def extract_corners(frame: Frame) -> Optional[CornerSet]:
    """
    Find the (x, y) of the samples with min-x, max-x, min-y and max-y.

    The running extrema are seeded with the first valid sample; leading
    invalid samples are skipped. On ties the earliest sample wins.

    Returns:
        CornerSet, or None if the frame has no valid sample
    """
    valid = frame.valid_points()
    if len(valid) == 0:
        ProjectLogger.get_instance().warning("[CORNERS] No valid sample to seed the extrema")
        return None

    xy = valid[:, :2]
    return CornerSet(
        x_min=xy[np.argmin(xy[:, 0])].copy(),
        x_max=xy[np.argmax(xy[:, 0])].copy(),
        y_min=xy[np.argmin(xy[:, 1])].copy(),
        y_max=xy[np.argmax(xy[:, 1])].copy(),
    )


class CornerAccumulator:
    """
    Rolling sum of corner sets over a window of N+1 frames.

    accumulate() returns None until it has been fed N+1 corner sets; that
    call returns their element-wise mean and empties the accumulator.

    One instance per detector. Not thread safe.

    Args:
        window: N (frames averaged = N + 1)
    """

    def __init__(self, window: int = 5):
        if window < 1:
            raise ValueError(f"window must be >= 1, got {window}")
        self.window = int(window)
        self._sum = np.zeros((4, 2))
        self.count = 0

    @property
    def is_ready(self) -> bool:
        """True when the next accumulate() call completes the window."""
        return self.count >= self.window

    def accumulate(self, corners: CornerSet) -> Optional[CornerSet]:
        """
        Add a corner set.

        Returns:
            Averaged CornerSet when the window is full, otherwise None
        """
        self._sum += corners.as_array()
        self.count += 1

        if self.count <= self.window:
            return None

        mean = self._sum / self.count
        self.reset()
        return CornerSet.from_array(mean)

    def reset(self):
        self._sum = np.zeros((4, 2))
        self.count = 0


class CornerTracker:
    """
    Corner extraction plus temporal averaging for one detector.

    Usage:
        tracker = CornerTracker(window=5)
        for frame in frames:
            corners = tracker.update(frame)
            if corners is not None:
                ...
    """

    def __init__(self, window: int = 5):
        self.accumulator = CornerAccumulator(window)

    def update(self, frame: Frame) -> Optional[CornerSet]:
        """
        Returns:
            Averaged corners once per N+1 frames, None otherwise
        """
        corners = extract_corners(frame)
        if corners is None:
            return None
        return self.accumulator.accumulate(corners)

    def reset(self):
        self.accumulator.reset()
