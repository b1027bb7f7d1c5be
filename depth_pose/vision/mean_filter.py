"""
Per-cell temporal mean of a queue of organized frames.

Producers enqueue completed frames into a FrameQueue; the filter drains the
whole queue in one step and averages each cell over the frames where that
cell is valid.
"""

import queue
import threading
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.frame import Frame


@dataclass(eq=False)
class MeanFrameResult:
    """
    Attributes:
        frame: Mean frame (NaN where no frame had a valid sample), non-dense
        low_confidence: (N,) bool, True where at least one frame was invalid
        counts: (N,) number of valid contributions per cell
    """
    frame: Frame
    low_confidence: np.ndarray
    counts: np.ndarray


class FrameQueue:
    """
    FIFO of frames shared between producers and the mean filter.

    put() and drain() are mutually exclusive, so a drain never observes a
    partially enqueued batch.
    """

    def __init__(self, maxsize: int = 0):
        self._queue = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()

    def put(self, frame: Frame):
        with self._lock:
            self._queue.put_nowait(frame)

    def drain(self) -> List[Frame]:
        """Remove and return every queued frame in FIFO order."""
        frames = []
        with self._lock:
            while True:
                try:
                    frames.append(self._queue.get_nowait())
                except queue.Empty:
                    break
        return frames

    def empty(self) -> bool:
        return self._queue.empty()

    def __len__(self):
        return self._queue.qsize()


def temporal_mean(frames: List[Frame]) -> Optional[MeanFrameResult]:
    """
    Average a list of frames cell by cell.

    All frames must share the layout of the first one; frames with another
    size are skipped.

    Returns:
        MeanFrameResult, or None if the list is empty
    """
    if not frames:
        return None

    logger = ProjectLogger.get_instance()
    first = frames[0]
    n = first.size

    sums = np.zeros((n, 3))
    counts = np.zeros(n, dtype=np.int64)
    low_confidence = np.zeros(n, dtype=bool)

    used = 0
    for frame in frames:
        if frame.size != n:
            logger.warning(f"[MEAN] Skipping frame with {frame.size} points (expected {n})")
            continue
        valid = frame.valid_mask()
        sums[valid] += frame.points[valid]
        counts[valid] += 1
        low_confidence |= ~valid
        used += 1

    mean = np.full((n, 3), np.nan)
    has_data = counts > 0
    mean[has_data] = sums[has_data] / counts[has_data, None]

    logger.debug(f"[MEAN] Averaged {used} frames, {int(np.count_nonzero(low_confidence))} low-confidence cells")
    return MeanFrameResult(
        frame=first.copy_with(points=mean, is_dense=False),
        low_confidence=low_confidence,
        counts=counts,
    )


class TemporalMeanFilter:
    """
    Drains a FrameQueue and returns the per-cell mean frame.

    Args:
        frame_queue: Shared queue (a new one is created if None)
    """

    def __init__(self, frame_queue: Optional[FrameQueue] = None):
        self.queue = frame_queue if frame_queue is not None else FrameQueue()

    def push(self, frame: Frame):
        self.queue.put(frame)

    def apply(self) -> Optional[MeanFrameResult]:
        """
        Returns:
            MeanFrameResult, or None if the queue was empty
        """
        if self.queue.empty():
            return None
        return temporal_mean(self.queue.drain())
