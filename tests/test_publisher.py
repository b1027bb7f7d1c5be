"""
Tests for asynchronous pose publication.
"""

import threading
import time
import unittest

import numpy as np

from depth_pose.recognition.orchestrator import VerifiedPose
from depth_pose.recognition.publisher import PosePublisher
from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.box_detector import BoxPose
from depth_pose.vision.corner_tracker import CornerId
from depth_pose.vision.yaw_resolver import BoxDimension, Side

TEST_CONFIG = {'debug': {'enabled': True, 'log_to_file': False, 'log_level': 'CRITICAL'}}


def setUpModule():
    ProjectLogger.reset()
    ProjectLogger.get_instance(TEST_CONFIG)


class RecordingBroadcaster:
    """Collects every send() call with its arrival time."""

    def __init__(self, delay=0.0, fail_first=False):
        self.calls = []
        self.times = []
        self.delay = delay
        self.fail_first = fail_first
        self.lock = threading.Lock()

    def send(self, translation, rotation, parent_frame, child_frame, stamp):
        if self.delay:
            time.sleep(self.delay)
        with self.lock:
            if self.fail_first and not self.calls:
                self.calls.append(None)
                raise ConnectionError("transport down")
            self.calls.append((np.asarray(translation), np.asarray(rotation), parent_frame, child_frame, stamp))
            self.times.append(time.monotonic())


def verified(accepted, tx):
    T = np.eye(4)
    T[0, 3] = tx
    return VerifiedPose(model_index=0, identity="box_0", transform=T, candidate_transform=T,
                        refined_transform=np.eye(4), accepted=accepted)


class TestPosePublisher(unittest.TestCase):
    """Test queueing, rate limiting and quaternion conversion."""

    def test_identity_pose(self):
        broadcaster = RecordingBroadcaster()
        publisher = PosePublisher(broadcaster, min_interval=0.0, parent_frame="camera", child_prefix="obj_")
        T = np.eye(4)
        T[:3, 3] = [0.1, 0.2, 0.3]
        publisher.publish(T, stamp=4.0)
        self.assertTrue(publisher.flush(timeout=2.0))
        publisher.close()

        translation, rotation, parent, child, stamp = broadcaster.calls[0]
        np.testing.assert_allclose(translation, [0.1, 0.2, 0.3])
        np.testing.assert_allclose(rotation, [0, 0, 0, 1])
        self.assertEqual((parent, child, stamp), ("camera", "obj_0", 4.0))

    def test_box_pose_quaternion(self):
        broadcaster = RecordingBroadcaster()
        publisher = PosePublisher(broadcaster, min_interval=0.0)
        pose = BoxPose(centroid=np.array([0.0, 0.0, 1.0, 1.0]), yaw=np.pi / 2, corner=CornerId.X_MAX,
                       side=Side.LENGTH, dimension=BoxDimension(0.2, 0.3))
        publisher.publish_box(pose)
        publisher.flush(timeout=2.0)
        publisher.close()

        _, rotation, _, _, _ = broadcaster.calls[0]
        # [x, y, z, w]
        np.testing.assert_allclose(rotation, [0, 0, np.sqrt(0.5), np.sqrt(0.5)], atol=1e-9)

    def test_min_interval(self):
        broadcaster = RecordingBroadcaster()
        publisher = PosePublisher(broadcaster, min_interval=0.05)
        for i in range(3):
            publisher.publish(np.eye(4), child_frame=f"object_{i}")
        self.assertTrue(publisher.flush(timeout=5.0))
        publisher.close()

        self.assertEqual(len(broadcaster.times), 3)
        gaps = np.diff(broadcaster.times)
        self.assertTrue(np.all(gaps >= 0.045), gaps)

    def test_publish_does_not_block(self):
        broadcaster = RecordingBroadcaster(delay=0.2)
        publisher = PosePublisher(broadcaster, min_interval=0.0)
        t_start = time.monotonic()
        for i in range(3):
            publisher.publish(np.eye(4), child_frame=f"object_{i}")
        self.assertLess(time.monotonic() - t_start, 0.1)
        publisher.close(timeout=5.0)
        self.assertEqual(len(broadcaster.calls), 3)

    def test_burst_sends_latest_pose_only(self):
        broadcaster = RecordingBroadcaster()
        publisher = PosePublisher(broadcaster, min_interval=0.05)
        for i in range(40):
            T = np.eye(4)
            T[0, 3] = i
            publisher.publish(T, child_frame="object_0", stamp=time.monotonic())
        self.assertTrue(publisher.flush(timeout=5.0))
        publisher.close()

        self.assertLessEqual(len(broadcaster.calls), 5)
        self.assertGreater(publisher.superseded, 30)
        self.assertAlmostEqual(broadcaster.calls[-1][0][0], 39.0)
        # no pose waits much longer than one interval
        ages = [t - call[4] for call, t in zip(broadcaster.calls, broadcaster.times)]
        self.assertLess(max(ages), 0.15, ages)

    def test_latest_pose_per_child_kept(self):
        broadcaster = RecordingBroadcaster(delay=0.3)
        publisher = PosePublisher(broadcaster, min_interval=0.0)
        publisher.publish(np.eye(4), child_frame="object_0")
        time.sleep(0.05)
        for i in range(3):
            for child in ("object_0", "object_1"):
                T = np.eye(4)
                T[1, 3] = i
                publisher.publish(T, child_frame=child)
        self.assertTrue(publisher.flush(timeout=5.0))
        publisher.close()

        children = [c[3] for c in broadcaster.calls]
        self.assertEqual(children, ["object_0", "object_0", "object_1"])
        self.assertAlmostEqual(broadcaster.calls[1][0][1], 2.0)
        self.assertAlmostEqual(broadcaster.calls[2][0][1], 2.0)

    def test_publish_after_close_dropped(self):
        broadcaster = RecordingBroadcaster()
        publisher = PosePublisher(broadcaster, min_interval=0.0)
        publisher.close(timeout=2.0)
        with self.assertLogs('depth_pose', level='WARNING'):
            publisher.publish(np.eye(4))
        self.assertEqual(broadcaster.calls, [])

    def test_publish_verified_accepted_only(self):
        broadcaster = RecordingBroadcaster()
        publisher = PosePublisher(broadcaster, min_interval=0.0, child_prefix="object_")
        n = publisher.publish_verified([verified(True, 0.1), verified(False, 0.2), verified(True, 0.3)])
        publisher.flush(timeout=2.0)
        publisher.close()

        self.assertEqual(n, 2)
        self.assertEqual([c[3] for c in broadcaster.calls], ["object_0", "object_2"])
        self.assertAlmostEqual(broadcaster.calls[1][0][0], 0.3)

    def test_bad_transform_rejected(self):
        broadcaster = RecordingBroadcaster()
        publisher = PosePublisher(broadcaster, min_interval=0.0)
        with self.assertLogs('depth_pose', level='ERROR'):
            publisher.publish(np.eye(3))
        publisher.close()
        self.assertEqual(broadcaster.calls, [])

    def test_worker_survives_transport_error(self):
        broadcaster = RecordingBroadcaster(fail_first=True)
        publisher = PosePublisher(broadcaster, min_interval=0.0)
        with self.assertLogs('depth_pose', level='ERROR'):
            publisher.publish(np.eye(4), child_frame="object_0")
            publisher.publish(np.eye(4), child_frame="object_1")
            publisher.flush(timeout=2.0)
        publisher.close()
        self.assertEqual(len(broadcaster.calls), 2)
        self.assertEqual(publisher.sent, 2)

    def test_default_broadcaster_logs(self):
        publisher = PosePublisher(min_interval=0.0)
        with self.assertLogs('depth_pose', level='INFO') as captured:
            publisher.publish(np.eye(4), child_frame="object_7", stamp=1.0)
            publisher.flush(timeout=2.0)
        publisher.close()
        self.assertTrue(any("[TF] camera -> object_7" in line for line in captured.output))

    def test_from_config(self):
        config = {'publication': {'min_interval': 0.25, 'parent_frame': 'world'}}
        publisher = PosePublisher.from_config(config, RecordingBroadcaster())
        self.assertEqual(publisher.min_interval, 0.25)
        self.assertEqual(publisher.parent_frame, 'world')
        self.assertEqual(publisher.child_prefix, 'object_')
        publisher.close()


if __name__ == "__main__":
    unittest.main()
