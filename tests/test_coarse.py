#!/usr/bin/env python3
"""
Unit tests for SAC-IA coarse alignment.
"""

import unittest

import numpy as np

from cloudstitch.coarse import alignment_error, estimate_normals, register_sac_ia
from cloudstitch.errors import AlignmentDegenerateError, ConfigurationError
from cloudstitch.pose import transform_points
from tests.helpers import cube_surface_points, make_cloud, points_of, rigid, rotation_z


class TestRegisterSacIa(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.target_pts = cube_surface_points(n=1800, seed=1)
        cls.target = make_cloud(cls.target_pts)
        T = rigid(rotation_z(20), [150.0, -80.0, 40.0])
        cls.source = make_cloud(transform_points(cube_surface_points(n=1800, seed=2), T))

    def test_runs_full_trial_budget(self):
        _aligned, result = register_sac_ia(self.source, self.target, max_iterations=7, seed=0)
        self.assertEqual(result.trials, 7)

    def test_never_worse_than_identity(self):
        aligned, result = register_sac_ia(self.source, self.target, max_iterations=10, seed=0)
        self.assertLessEqual(result.error, result.initial_error)
        self.assertAlmostEqual(
            alignment_error(aligned, self.target, np.eye(4)), result.error, delta=1e-6 * result.error + 1e-9
        )

    def test_same_seed_same_result(self):
        _a, r1 = register_sac_ia(self.source, self.target, max_iterations=10, seed=42)
        _b, r2 = register_sac_ia(self.source, self.target, max_iterations=10, seed=42)
        np.testing.assert_array_equal(r1.transformation, r2.transformation)
        self.assertEqual(r1.error, r2.error)

    def test_default_seed_repeats(self):
        results = [register_sac_ia(self.source, self.target, max_iterations=10)[1] for _ in range(3)]
        for r in results[1:]:
            np.testing.assert_array_equal(r.transformation, results[0].transformation)
            self.assertEqual(r.error, results[0].error)

    def test_zero_trials_keeps_source(self):
        aligned, result = register_sac_ia(self.source, self.target, max_iterations=0)
        np.testing.assert_array_equal(result.transformation, np.eye(4))
        np.testing.assert_allclose(points_of(aligned), points_of(self.source))
        self.assertEqual(result.error, result.initial_error)

    def test_too_few_points(self):
        small = make_cloud(self.target_pts[:200])
        with self.assertRaises(AlignmentDegenerateError):
            register_sac_ia(small, self.target)
        with self.assertRaises(AlignmentDegenerateError):
            register_sac_ia(self.source, small)

    def test_bad_configuration(self):
        with self.assertRaises(ConfigurationError):
            register_sac_ia(self.source, self.target, normal_k=100, feature_k=100)
        with self.assertRaises(ConfigurationError):
            register_sac_ia(self.source, self.target, num_samples=2)
        with self.assertRaises(ConfigurationError):
            register_sac_ia(self.source, self.target, max_iterations=-1)


class TestEstimateNormals(unittest.TestCase):

    def test_normals_face_the_origin(self):
        # top face of the cube, well above the origin
        pts = cube_surface_points(n=600, seed=3, faces=[5])
        out = estimate_normals(make_cloud(pts), k=20)
        normals = np.asarray(out.normals)
        self.assertEqual(len(normals), len(pts))
        self.assertTrue(np.all(normals[:, 2] < 0))


if __name__ == "__main__":
    unittest.main()
