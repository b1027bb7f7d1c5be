"""
Fire-and-forget pose publication.

publish() only records the pose; a daemon worker thread forwards poses to the
broadcaster and keeps at least min_interval seconds between two sends, so
the detection loop is never blocked by the transport.

Only the latest pending pose per child frame is kept. A pose published while
an older one for the same child is still waiting replaces it, so a burst of
detections never builds up a backlog of stale poses.
"""

import threading
import time
from collections import OrderedDict
from typing import List, Optional

import numpy as np
from scipy.spatial.transform import Rotation

from depth_pose.recognition.collaborators import LoggingBroadcaster, TransformBroadcaster
from depth_pose.utils.config_utils import get_publication_config
from depth_pose.utils.logger import ProjectLogger


def _r2q(rot):
    """Rotation matrix -> quaternion [x, y, z, w] (scipy convention)."""
    return Rotation.from_matrix(rot).as_quat()


class PosePublisher:
    """
    Args:
        broadcaster: Transport (LoggingBroadcaster if None)
        min_interval: Minimum seconds between two consecutive sends
        parent_frame: Frame the poses are expressed in
        child_prefix: Child frame name prefix, suffixed with the pose index
    """

    def __init__(self, broadcaster: Optional[TransformBroadcaster] = None, min_interval: float = 0.5,
                 parent_frame: str = "camera", child_prefix: str = "object_"):
        self.broadcaster = broadcaster if broadcaster is not None else LoggingBroadcaster()
        self.min_interval = min_interval
        self.parent_frame = parent_frame
        self.child_prefix = child_prefix
        self.logger = ProjectLogger.get_instance()

        # child_frame -> (T, stamp), oldest child first
        self._pending = OrderedDict()
        self._cond = threading.Condition()
        self._in_flight = False
        self._stopping = False
        self._last_send = None
        self._sent = 0
        self._superseded = 0
        self._worker = threading.Thread(target=self._run, name="pose-publisher", daemon=True)
        self._worker.start()

    @classmethod
    def from_config(cls, config, broadcaster: Optional[TransformBroadcaster] = None) -> 'PosePublisher':
        pub = get_publication_config(config)
        return cls(broadcaster, pub['min_interval'], pub['parent_frame'], pub['child_prefix'])

    @property
    def sent(self) -> int:
        """Number of poses handed to the broadcaster so far."""
        return self._sent

    @property
    def superseded(self) -> int:
        """Number of pending poses replaced by a newer one before being sent."""
        return self._superseded

    def publish(self, transform, child_frame: Optional[str] = None, stamp: Optional[float] = None):
        """
        Record a 4x4 pose for sending; returns immediately.

        Args:
            transform: 4x4 pose in the parent frame
            child_frame: Child frame name (child_prefix + "0" if None)
            stamp: Time stamp in seconds (publish time if None)
        """
        T = np.asarray(transform, dtype=np.float64)
        if T.shape != (4, 4):
            self.logger.error(f"[PUBLISH] Expected a 4x4 transform, got shape {T.shape}")
            return
        child_frame = child_frame if child_frame is not None else f"{self.child_prefix}0"
        stamp = stamp if stamp is not None else time.time()

        with self._cond:
            if self._stopping:
                self.logger.warning(f"[PUBLISH] Publisher closed, pose for {child_frame} dropped")
                return
            if child_frame in self._pending:
                self._superseded += 1
                self.logger.debug(f"[PUBLISH] Pending pose for {child_frame} replaced by a newer one")
            # replacing keeps the child's place in the send order
            self._pending[child_frame] = (T, stamp)
            self._cond.notify_all()

    def publish_box(self, box_pose, stamp: Optional[float] = None):
        self.publish(box_pose.as_matrix(), f"{self.child_prefix}0", stamp)

    def publish_verified(self, poses: List, stamp: Optional[float] = None) -> int:
        """
        Publish the accepted poses only.

        Returns:
            int: Number of poses published
        """
        n = 0
        for i, pose in enumerate(poses):
            if not pose.accepted:
                continue
            self.publish(pose.transform, f"{self.child_prefix}{i}", stamp)
            n += 1
        return n

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every pending pose has been sent.

        Returns:
            bool: False if the timeout expired first
        """
        with self._cond:
            return self._cond.wait_for(lambda: not self._pending and not self._in_flight, timeout)

    def close(self, timeout: Optional[float] = None):
        """Stop the worker after the pending poses are sent."""
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
        if self._worker.is_alive():
            self._worker.join(timeout)

    # =========================================================================
    # WORKER
    # =========================================================================

    def _run(self):
        while True:
            with self._cond:
                self._cond.wait_for(lambda: self._pending or self._stopping)
                if not self._pending:
                    return
            self._wait_interval()
            # taken after the wait, so the newest pose for the child goes out
            with self._cond:
                child_frame, (T, stamp) = self._pending.popitem(last=False)
                self._in_flight = True
            try:
                self._send(T, child_frame, stamp)
            finally:
                with self._cond:
                    self._in_flight = False
                    self._cond.notify_all()

    def _wait_interval(self):
        if self._last_send is None:
            return
        remaining = self.min_interval - (time.monotonic() - self._last_send)
        if remaining > 0:
            time.sleep(remaining)

    def _send(self, T, child_frame, stamp):
        try:
            self.broadcaster.send(T[:3, 3].copy(), _r2q(T[:3, :3]), self.parent_frame, child_frame, stamp)
        except Exception as e:
            # the worker must survive a failing transport
            self.logger.error(f"[PUBLISH] Broadcast to {child_frame} failed: {e}")
        finally:
            self._last_send = time.monotonic()
        self._sent += 1
