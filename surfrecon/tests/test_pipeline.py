# SPDX-FileCopyrightText: Copyright (c) 2025 The Newton Developers
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Tests for the end-to-end reconstruction pipeline.

This test suite validates:
1. A sampled sphere reconstructs to a closed surface close to the samples,
   and a 1000-point sphere solves to convergence
2. Failed quality checks retry at most max_retries times with adapted parameters
3. Metrics land in the cache, and only an owned cache is closed
4. Cancellation between stages
5. Input validation and error propagation
6. Samples without normals are oriented by local PCA before assembly
"""

import threading
import unittest
import warnings

import numpy as np
import warp as wp

from surfrecon.reconstruction import (
    MAX_RECONSTRUCTION_DEPTH,
    CameraView,
    DepthMap,
    InitializationFailed,
    InsufficientData,
    InvalidInput,
    IssueType,
    MetricsCache,
    MVSOptions,
    NonConvergence,
    OrientedPointCloud,
    ProcessingParameters,
    QualityMetrics,
    QualityReport,
    QualityThresholds,
    ReconstructionCancelled,
    ReconstructionParameters,
    ReconstructionPipeline,
    adapt_parameters,
)


def create_sphere_cloud(count=3000, radius=1.0):
    """Fibonacci sphere with outward normals."""
    i = np.arange(count) + 0.5
    phi = np.arccos(1.0 - 2.0 * i / count)
    theta = np.pi * (1.0 + 5.0**0.5) * i
    normals = np.stack([np.cos(theta) * np.sin(phi), np.sin(theta) * np.sin(phi), np.cos(phi)], axis=1)
    return OrientedPointCloud(radius * normals, normals)


class CountdownEvent(threading.Event):
    """Event that reports itself set after a number of checks."""

    def __init__(self, checks):
        super().__init__()
        self.remaining = checks

    def is_set(self):
        self.remaining -= 1
        return self.remaining < 0 or super().is_set()


UNREACHABLE = QualityThresholds(minimum_point_density=1.0e12)


class TestPipeline(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def setUp(self):
        # Approximate solves are reported on the result, not raised
        catcher = warnings.catch_warnings()
        catcher.__enter__()
        self.addCleanup(catcher.__exit__, None, None, None)
        warnings.simplefilter("ignore", NonConvergence)

    def test_sphere_reconstruction(self):
        cloud = create_sphere_cloud()
        with ReconstructionPipeline(ReconstructionParameters(depth=6), device="cpu") as pipeline:
            result = pipeline.run(cloud, artifact_id="sphere")

        mesh = result.mesh
        mesh.validate()
        self.assertGreater(mesh.num_triangles, 1000)
        radii = np.linalg.norm(mesh.vertices, axis=1)
        self.assertLess(float(np.mean(np.abs(radii - 1.0))), 0.05)

        # Vertex normals point away from the center
        outward = np.sum(mesh.normals * mesh.vertices, axis=1) > 0.0
        self.assertGreater(outward.mean(), 0.95)

        self.assertGreaterEqual(result.report.metrics.feature_preservation, 0.9)
        self.assertTrue(result.validation.topology.is_closed_manifold)
        self.assertLess(result.validation.feature_accuracy.mean_distance, 0.05)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(len(result.solver_results), 1)
        self.assertEqual(
            set(result.stage_seconds), {"preprocess", "index", "assemble", "solve", "extract", "analyze"}
        )
        self.assertGreater(result.point_density, 0.0)

    def test_thousand_point_sphere_converges(self):
        cloud = create_sphere_cloud(1000)
        with ReconstructionPipeline(ReconstructionParameters(depth=6), device="cpu") as pipeline:
            result = pipeline.run(cloud, artifact_id="sphere-1000", validate=False)

        self.assertTrue(result.solver_results[0].converged)
        radii = np.linalg.norm(result.mesh.vertices, axis=1)
        self.assertLess(float(np.max(np.abs(radii - 1.0))), 0.05)

    def test_unoriented_samples_get_estimated_normals(self):
        positions = create_sphere_cloud().positions
        pipeline = ReconstructionPipeline(
            ReconstructionParameters(depth=5), ProcessingParameters(spatial_sigma=0.05), device="cpu"
        )
        with pipeline:
            result = pipeline.run(OrientedPointCloud(positions), validate=False)

        radii = np.linalg.norm(result.mesh.vertices, axis=1)
        self.assertLess(float(np.mean(np.abs(radii - 1.0))), 0.05)
        outward = np.sum(result.mesh.normals * result.mesh.vertices, axis=1) > 0.0
        self.assertGreater(outward.mean(), 0.95)

    def test_bounded_retries(self):
        cloud = create_sphere_cloud(1500)
        params = ReconstructionParameters(depth=4)
        cache = MetricsCache()

        with ReconstructionPipeline(params, thresholds=UNREACHABLE, metrics_cache=cache, device="cpu") as pipeline:
            result = pipeline.run(cloud, artifact_id="retry", validate=False)

        self.assertEqual(result.attempts, 2)
        self.assertEqual(len(result.solver_results), 2)
        self.assertEqual(result.parameters.depth, 5)
        self.assertIn(IssueType.LOW_DENSITY, {issue.kind for issue in result.issues})
        self.assertIsNone(result.validation)

        # The injected cache stays open and holds one record set per attempt
        self.assertFalse(cache.closed)
        self.assertEqual(cache.latest("retry", "attempt"), 2)
        attempts = [e.value for e in cache.snapshot()["retry"] if e.name == "attempt"]
        self.assertEqual(attempts, [1, 2])

    def test_no_retries(self):
        cloud = create_sphere_cloud(1500)
        pipeline = ReconstructionPipeline(
            ReconstructionParameters(depth=4), thresholds=UNREACHABLE, max_retries=0, device="cpu"
        )
        with pipeline:
            result = pipeline.run(cloud, validate=False)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(result.parameters.depth, 4)
        self.assertTrue(pipeline.metrics_cache.closed)

    def test_stereo_stage(self):
        size = 16
        views = [
            CameraView(np.full((size, size), 0.5), (20.0, 20.0, 8.0, 8.0), translation=(-x, 0.0, 0.0))
            for x in (0.0, 0.3)
        ]
        depths = [DepthMap(np.full((size, size), 3.0, dtype=np.float32))] * 2
        pipeline = ReconstructionPipeline(
            ReconstructionParameters(depth=4),
            mvs_options=MVSOptions(num_photometric_consistency_steps=2),
            device="cpu",
        )
        with pipeline:
            result = pipeline.run(create_sphere_cloud(1500), views=views, initial_depth_maps=depths, validate=False)

        self.assertIsNotNone(result.mvs)
        self.assertEqual(result.mvs.points.num_points, 0)
        self.assertIn("mvs", result.stage_seconds)

        with self.assertRaises(InitializationFailed):
            with ReconstructionPipeline(ReconstructionParameters(depth=4), device="cpu") as pipeline:
                pipeline.run(create_sphere_cloud(1500), views=views[:1], initial_depth_maps=depths[:1])

    def test_cancellation(self):
        cloud = create_sphere_cloud(500)
        with ReconstructionPipeline(ReconstructionParameters(depth=4), device="cpu") as pipeline:
            cancelled = threading.Event()
            cancelled.set()
            with self.assertRaises(ReconstructionCancelled):
                pipeline.run(cloud, cancel_event=cancelled)

            # Cancelled after the octree is built, before assembly
            with self.assertRaises(ReconstructionCancelled):
                pipeline.run(cloud, cancel_event=CountdownEvent(3))

    def test_input_errors(self):
        with ReconstructionPipeline(ReconstructionParameters(depth=4), device="cpu") as pipeline:
            with self.assertRaises(InvalidInput):
                pipeline.run((np.array([[0.0, 0.0, np.nan]]), np.array([[0.0, 0.0, 1.0]])))
            with self.assertRaises(InsufficientData):
                # Too sparse for any sample to get an estimated normal
                pipeline.run(OrientedPointCloud(create_sphere_cloud(200).positions))
            with self.assertRaises(InsufficientData):
                pipeline.run(create_sphere_cloud(3))

        cloud = ReconstructionPipeline.validate_input((np.zeros((2, 3)), np.tile([0.0, 0.0, 1.0], (2, 1))))
        self.assertEqual(cloud.num_oriented, 2)

    def test_unavailable_device(self):
        with self.assertRaises(InitializationFailed):
            ReconstructionPipeline(device="no-such-device")
        with self.assertRaises(ValueError):
            ReconstructionPipeline(max_retries=-1, device="cpu")


class TestAdaptParameters(unittest.TestCase):
    def _report(self, density, completeness, noise, features):
        return QualityReport(QualityMetrics(density, completeness, noise, features), (np.zeros(3), np.ones(3)), 1, 1)

    def test_each_issue_adapts_its_parameters(self):
        thresholds = QualityThresholds()
        recon = ReconstructionParameters(depth=5, point_weight=4.0, smoothing_factor=0.5)
        proc = ProcessingParameters(spatial_sigma=0.01, feature_weight=0.8)

        r, p = adapt_parameters(self._report(1000.0, 1.0, 0.0, 1.0), recon, proc, thresholds)
        self.assertEqual((r, p), (recon, proc))

        r, p = adapt_parameters(self._report(10.0, 1.0, 0.0, 1.0), recon, proc, thresholds)
        self.assertEqual(r.depth, 6)
        self.assertEqual(p, proc)

        r, p = adapt_parameters(self._report(1000.0, 1.0, 0.5, 1.0), recon, proc, thresholds)
        self.assertAlmostEqual(p.spatial_sigma, 0.012)
        self.assertAlmostEqual(r.smoothing_factor, 0.6)
        self.assertEqual(r.depth, 5)

        r, p = adapt_parameters(self._report(1000.0, 1.0, 0.0, 0.1), recon, proc, thresholds)
        self.assertAlmostEqual(p.feature_weight, 0.96)
        self.assertAlmostEqual(r.point_weight, 4.8)

    def test_limits(self):
        thresholds = QualityThresholds()
        recon = ReconstructionParameters(depth=MAX_RECONSTRUCTION_DEPTH)
        proc = ProcessingParameters(feature_weight=0.95)
        r, p = adapt_parameters(self._report(0.0, 0.0, 0.0, 0.0), recon, proc, thresholds)
        self.assertEqual(r.depth, MAX_RECONSTRUCTION_DEPTH)
        self.assertEqual(p.feature_weight, 1.0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
