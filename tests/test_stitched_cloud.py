#!/usr/bin/env python3
"""
Tests for the fused model: construction, scan-by-scan fusion, failure
isolation and ordering guards.
"""

import threading
import unittest

import numpy as np

from cloudstitch.errors import AlignmentDegenerateError, SequenceError
from cloudstitch.filters import bounding_extent
from cloudstitch.pose import Pose, invert_transform, pose_matrix, transform_points
from cloudstitch.scans import Scan
from cloudstitch.stitched_cloud import LEAF_SIZE, StitchedCloud, TimeBreakdown
from tests.helpers import CUBE_CENTER, CUBE_SIZE, cube_cloud, cube_surface_points, make_cloud, points_of

CUBE_LO = np.asarray(CUBE_CENTER) - CUBE_SIZE / 2
CUBE_HI = np.asarray(CUBE_CENTER) + CUBE_SIZE / 2


class TestTimeBreakdown(unittest.TestCase):

    def test_add_and_report(self):
        tb = TimeBreakdown()
        tb.add("merge", 0.5)
        tb.add("merge", 0.25)
        self.assertEqual(tb.merge, 0.75)
        self.assertEqual(tb.as_dict()["merge"], 0.75)
        self.assertIn("merge", tb.report(echo=False))


class TestStitchedCloudInit(unittest.TestCase):

    def test_first_scan_is_cleaned_and_compacted(self):
        cloud = cube_cloud(seed=1)
        model = StitchedCloud(cloud, verbose=False, index=0)
        self.assertEqual(model.scans_fused, 1)
        self.assertEqual(model.last_index, 0)
        self.assertGreater(len(model), 0)
        self.assertLess(len(model), len(cloud.points))
        z = points_of(model.stitched_cloud)[:, 2]
        self.assertTrue(np.all((z >= 0) & (z <= 10000)))
        self.assertGreater(model.time_breakdown.total, 0.0)

    def test_short_first_scan(self):
        with self.assertRaises(AlignmentDegenerateError):
            StitchedCloud(cube_cloud(n=120, seed=1), verbose=False)

    def test_first_scan_outside_band(self):
        far = cube_cloud(seed=1, center=(0.0, 0.0, 20000.0))
        with self.assertRaises(AlignmentDegenerateError):
            StitchedCloud(far, verbose=False)

    def test_from_scan_takes_index(self):
        model = StitchedCloud.from_scan(Scan(index=4, cloud=cube_cloud(seed=1)), verbose=False)
        self.assertEqual(model.last_index, 4)


class TestStitchedCloudFusion(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.a = cube_cloud(seed=1)
        cls.b = cube_cloud(seed=2)
        cls.c = cube_cloud(seed=3)

    def model(self, **kwargs):
        kwargs.setdefault("seed", 0)
        kwargs.setdefault("verbose", False)
        return StitchedCloud(self.a, index=0, **kwargs)

    def assertCoversCube(self, pcd, slack=1.5 * LEAF_SIZE):
        lo, hi = bounding_extent(pcd)
        np.testing.assert_allclose(lo, CUBE_LO, atol=slack)
        np.testing.assert_allclose(hi, CUBE_HI, atol=slack)

    def test_two_views_fuse_into_one_cube(self):
        model = self.model()
        n_a = len(model)
        report = model.add_cloud(self.b, index=1)

        self.assertEqual(model.scans_fused, 2)
        self.assertEqual(model.last_index, 1)
        self.assertEqual(report.model_points_before, n_a)
        self.assertEqual(report.model_points, len(model))
        self.assertLess(len(model), n_a + report.after_range)
        self.assertLessEqual(report.after_outliers, report.input_points)
        self.assertLessEqual(report.after_downsample, report.after_outliers)
        self.assertLessEqual(report.coarse.error, report.coarse.initial_error)
        self.assertLessEqual(report.fine.iterations, model.fine_iterations)
        self.assertCoversCube(model.stitched_cloud)

    def test_partially_overlapping_views(self):
        # side walls vs front/back + top/bottom: only the y walls are shared
        a_pts = cube_surface_points(n=4000, seed=1, faces=[0, 1, 2, 3])
        b_pts = cube_surface_points(n=4000, seed=2, faces=[2, 3, 4, 5])
        model = StitchedCloud(make_cloud(a_pts), index=0, verbose=False)
        model.add_cloud(make_cloud(b_pts), index=1)

        self.assertLess(len(model), len(a_pts) + len(b_pts))
        both = np.vstack([a_pts, b_pts])
        lo, hi = bounding_extent(model.stitched_cloud)
        np.testing.assert_allclose(lo, both.min(axis=0), atol=1.5 * LEAF_SIZE)
        np.testing.assert_allclose(hi, both.max(axis=0), atol=1.5 * LEAF_SIZE)

    def test_default_arguments_repeat(self):
        runs = []
        for _ in range(2):
            model = StitchedCloud(self.a, verbose=False)
            model.add_cloud(self.b)
            runs.append(points_of(model.stitched_cloud))
        self.assertEqual(len(runs[0]), len(runs[1]))
        np.testing.assert_array_equal(runs[0], runs[1])

    def test_short_scan_is_degenerate(self):
        model = self.model()
        before = points_of(model.stitched_cloud)
        sor_time = model.time_breakdown.outlier_removal
        for n in (60, 200):
            short = make_cloud(cube_surface_points(n=n, seed=7))
            with self.assertRaises(AlignmentDegenerateError):
                model.add_cloud(short)
        np.testing.assert_array_equal(points_of(model.stitched_cloud), before)
        # rejected before the outlier stage ran
        self.assertEqual(model.time_breakdown.outlier_removal, sor_time)
        self.assertEqual(model.scans_fused, 1)

    def test_same_seed_same_model(self):
        runs = []
        for _ in range(2):
            model = self.model()
            model.add_cloud(self.b, index=1)
            model.add_cloud(self.c, index=2)
            runs.append(points_of(model.stitched_cloud))
        np.testing.assert_array_equal(runs[0], runs[1])

    def test_failed_scan_leaves_model_untouched(self):
        model = self.model()
        model.add_cloud(self.b, index=1)
        before = points_of(model.stitched_cloud)
        tiny = make_cloud(cube_surface_points(n=200, seed=7))

        with self.assertRaises(AlignmentDegenerateError):
            model.add_cloud(tiny, index=2)

        self.assertTrue(np.array_equal(points_of(model.stitched_cloud), before))
        self.assertEqual(model.scans_fused, 2)
        self.assertEqual(model.last_index, 1)

        # the model keeps accepting scans afterwards
        model.add_cloud(self.c, index=3)
        self.assertEqual(model.scans_fused, 3)

    def test_scan_outside_band_is_rejected(self):
        model = self.model()
        far = cube_cloud(seed=2, center=(0.0, 0.0, -5000.0))
        with self.assertRaises(AlignmentDegenerateError):
            model.add_cloud(far, index=1)
        self.assertEqual(model.scans_fused, 1)

    def test_out_of_order_index(self):
        model = self.model()
        model.add_cloud(self.b, index=3)
        before = points_of(model.stitched_cloud)
        for idx in (3, 2):
            with self.assertRaises(SequenceError):
                model.add_cloud(self.c, index=idx)
        np.testing.assert_array_equal(points_of(model.stitched_cloud), before)

    def test_concurrent_call_is_rejected(self):
        model = self.model()
        self.assertTrue(model._lock.acquire(blocking=False))
        try:
            with self.assertRaises(SequenceError):
                model.add_cloud(self.b, index=1)
        finally:
            model._lock.release()
        self.assertEqual(model.scans_fused, 1)

    def test_concurrent_threads(self):
        model = self.model(coarse_iterations=2, fine_iterations=2)
        errors = []
        start = threading.Barrier(2)

        def worker(cloud):
            start.wait()
            try:
                model.add_cloud(cloud)
            except SequenceError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(c,)) for c in (self.b, self.c)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        # each call either fused or was rejected, never both half-way
        self.assertEqual(model.scans_fused + len(errors), 3)

    def test_identity_prior_is_skipped(self):
        model = self.model()
        model.add_cloud(self.b, Pose.identity(), index=1)
        model.add_cloud(self.c, None, index=2)
        self.assertEqual(model.time_breakdown.transformation, 0.0)

    def test_prior_pose_is_applied(self):
        pose = Pose(dx=300.0, dy=-200.0, dz=100.0, rotz=0.3, confidence=1.0)
        # scan as the sensor saw it: the prior maps it back into the model frame
        raw = transform_points(cube_surface_points(seed=2), invert_transform(pose_matrix(pose)))
        model = self.model()
        model.add_cloud(make_cloud(raw), pose, index=1)
        self.assertGreater(model.time_breakdown.transformation, 0.0)
        self.assertCoversCube(model.stitched_cloud)

    def test_add_scan_uses_metadata(self):
        model = self.model()
        report = model.add_scan(Scan(index=9, cloud=self.b))
        self.assertEqual(report.index, 9)
        self.assertEqual(model.last_index, 9)


if __name__ == "__main__":
    unittest.main()
