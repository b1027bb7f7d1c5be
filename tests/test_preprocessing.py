"""
Tests for frame container and preprocessing (range filter, ROI, background diff).
"""

import os
import tempfile
import unittest

import numpy as np

from depth_pose.utils.logger import ProjectLogger
from depth_pose.vision.frame import Frame
from depth_pose.vision.preprocessing import (
    ReferenceStore,
    crop_margins,
    ground_truth_diff,
    range_filter,
    roi_crop,
)

TEST_CONFIG = {'debug': {'enabled': True, 'log_to_file': False, 'log_level': 'CRITICAL'}}


def setUpModule():
    ProjectLogger.reset()
    ProjectLogger.get_instance(TEST_CONFIG)


def flat_grid(height, width, z=1.0):
    """Organized frame of a flat surface at depth z, 1 mm spacing."""
    rows, cols = np.mgrid[0:height, 0:width]
    grid = np.dstack([cols * 0.001, rows * 0.001, np.full((height, width), z)])
    return Frame.from_grid(grid)


class TestFrame(unittest.TestCase):
    """Test the Frame container."""

    def test_from_grid_layout(self):
        frame = flat_grid(4, 5)
        self.assertEqual(frame.size, 20)
        self.assertEqual((frame.width, frame.height), (5, 4))
        self.assertTrue(frame.is_organized)
        # row-major: index = row * width + col
        np.testing.assert_allclose(frame.points[7], [0.002, 0.001, 1.0])

    def test_from_grid_bad_shape(self):
        with self.assertRaises(ValueError):
            Frame.from_grid(np.zeros((4, 5)))

    def test_valid_mask(self):
        points = np.array([[0, 0, 1], [np.nan, np.nan, np.nan], [0, np.inf, 1]], dtype=float)
        frame = Frame.from_points(points)
        np.testing.assert_array_equal(frame.valid_mask(), [True, False, False])
        self.assertEqual(frame.valid_count(), 1)
        self.assertFalse(frame.is_organized)

    def test_copy_with_keeps_header(self):
        frame = Frame.from_points(np.zeros((3, 3)), stamp=12.5)
        copy = frame.copy_with(points=np.ones((3, 3)))
        self.assertEqual(copy.stamp, 12.5)
        np.testing.assert_array_equal(frame.points, np.zeros((3, 3)))

    def test_point_cloud_conversion_drops_invalid(self):
        points = np.array([[0, 0, 1], [np.nan, np.nan, np.nan], [1, 1, 1]], dtype=float)
        pcd = Frame.from_points(points).to_point_cloud()
        self.assertEqual(len(pcd.points), 2)
        back = Frame.from_point_cloud(pcd)
        self.assertEqual(back.size, 2)
        self.assertFalse(back.is_dense)


class TestRangeFilter(unittest.TestCase):
    """Test depth window filtering."""

    def test_flat_surface_inside_window(self):
        """100x100 grid at z=1.0 with window [0.5, 1.5] keeps every sample."""
        frame = flat_grid(100, 100, z=1.0)
        out = range_filter(frame, 0.5, 1.5)
        self.assertEqual(out.size, 10000)
        self.assertEqual(out.size - out.valid_count(), 0)

    def test_outside_window_invalidated(self):
        points = np.array([[0, 0, 0.2], [0, 0, 1.0], [0, 0, 2.0], [0, 0, 1.5]])
        out = range_filter(Frame.from_points(points, is_dense=True), 0.5, 1.5)
        self.assertEqual(out.size, 4)
        np.testing.assert_array_equal(out.valid_mask(), [False, True, False, True])
        # invalid in all three coordinates
        self.assertTrue(np.all(np.isnan(out.points[0])))
        self.assertFalse(out.is_dense)

    def test_input_not_modified(self):
        frame = flat_grid(3, 3, z=3.0)
        range_filter(frame, 0.5, 1.5)
        self.assertEqual(frame.valid_count(), 9)

    def test_empty_frame(self):
        frame = Frame.from_points(np.zeros((0, 3)))
        with self.assertLogs('depth_pose', level='ERROR'):
            out = range_filter(frame, 0.5, 1.5)
        self.assertIs(out, frame)


class TestRoiCrop(unittest.TestCase):
    """Test region of interest cropping."""

    def test_crop_margins(self):
        self.assertEqual(crop_margins(100, 50, 0.2, 0.4), (10, 90, 10, 40))

    def test_crop_margins_truncate_half_cells(self):
        # 3.5 and 2.5 cells both truncate
        self.assertEqual(crop_margins(28, 14, 0.25, 0.5), (3, 25, 3, 11))
        self.assertEqual(crop_margins(20, 10, 0.25, 0.5), (2, 18, 2, 8))

    def test_zero_margin_keeps_everything(self):
        frame = flat_grid(6, 8)
        out = roi_crop(frame, 8, 6, 0.0, 0.0)
        self.assertEqual(out.size, 48)
        np.testing.assert_array_equal(out.points, frame.points)
        self.assertFalse(out.is_organized)

    def test_crop_keeps_center(self):
        frame = flat_grid(10, 10)
        out = roi_crop(frame, 10, 10, 0.2, 0.4)
        # cols [1, 9), rows [2, 8)
        self.assertEqual(out.size, 8 * 6)
        xs = out.points[:, 0] / 0.001
        ys = out.points[:, 1] / 0.001
        self.assertAlmostEqual(xs.min(), 1)
        self.assertAlmostEqual(xs.max(), 8)
        self.assertAlmostEqual(ys.min(), 2)
        self.assertAlmostEqual(ys.max(), 7)

    def test_size_mismatch(self):
        frame = flat_grid(4, 4)
        with self.assertLogs('depth_pose', level='ERROR'):
            self.assertIsNone(roi_crop(frame, 5, 4, 0.1, 0.1))

    def test_empty_frame(self):
        with self.assertLogs('depth_pose', level='ERROR'):
            self.assertIsNone(roi_crop(Frame.from_points(np.zeros((0, 3))), 0, 0, 0.1, 0.1))


class TestGroundTruthDiff(unittest.TestCase):
    """Test background differencing."""

    def test_foreground_isolated(self):
        reference = flat_grid(4, 4, z=1.0)
        raw_points = reference.points.copy()
        raw_points[5, 2] = 0.9      # object
        raw_points[6, 2] = 0.995    # within tolerance
        raw = reference.copy_with(points=raw_points)

        out = ground_truth_diff(reference, raw, 0.01)
        np.testing.assert_array_equal(np.flatnonzero(out.valid_mask()), [5])
        np.testing.assert_allclose(out.points[5], raw_points[5])
        self.assertEqual(out.size, raw.size)
        self.assertFalse(out.is_dense)

    def test_invalid_samples_never_kept(self):
        reference = flat_grid(2, 2, z=1.0)
        raw_points = reference.points.copy()
        raw_points[0] = np.nan
        raw_points[1, 2] = 0.5
        ref_points = reference.points.copy()
        ref_points[1] = np.nan
        out = ground_truth_diff(reference.copy_with(points=ref_points), reference.copy_with(points=raw_points), 0.01)
        self.assertEqual(out.valid_count(), 0)

    def test_size_mismatch(self):
        with self.assertLogs('depth_pose', level='ERROR'):
            self.assertIsNone(ground_truth_diff(flat_grid(2, 2), flat_grid(3, 3), 0.01))


class TestReferenceStore(unittest.TestCase):
    """Test the file-backed background frame."""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = ReferenceStore(os.path.join(self.tmp.name, 'bg', 'ground_truth.npy'))

    def tearDown(self):
        self.tmp.cleanup()

    def test_save_load_discard(self):
        self.assertFalse(self.store.exists())
        self.assertIsNone(self.store.load())

        frame = flat_grid(3, 4)
        self.store.save(frame)
        self.assertTrue(self.store.exists())

        loaded = self.store.load()
        self.assertEqual((loaded.width, loaded.height), (4, 3))
        np.testing.assert_allclose(loaded.points, frame.points)

        with self.assertLogs('depth_pose', level='WARNING'):
            self.store.discard()
        self.assertFalse(self.store.exists())

    def test_unorganized_frame(self):
        frame = Frame.from_points(np.arange(9, dtype=float).reshape(3, 3))
        self.store.save(frame)
        loaded = self.store.load()
        self.assertFalse(loaded.is_organized)
        np.testing.assert_allclose(loaded.points, frame.points)


if __name__ == "__main__":
    unittest.main()
