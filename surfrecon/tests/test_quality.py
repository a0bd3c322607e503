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
Tests for mesh quality analysis.

This test suite validates:
1. Local metrics on flat, noisy and folded meshes
2. Global reduction, including meshes without features
3. Quality trends over the report history
4. Threshold validation and the resulting issues
"""

import math
import unittest

import numpy as np
import warp as wp

from surfrecon.reconstruction import (
    IssueType,
    Mesh,
    MeshQualityAnalyzer,
    ProcessingParameters,
    QualityMetrics,
    QualityReport,
    QualityThresholds,
    QualityTrend,
    Severity,
)
from surfrecon._src.reconstruction.quality import HISTOGRAM_BINS, LocalQualityMetrics, surface_continuity


def create_grid_mesh(resolution=10, spacing=0.01):
    """Flat square grid in the z=0 plane with upward normals."""
    xs = np.arange(resolution) * spacing
    gx, gy = np.meshgrid(xs, xs, indexing="ij")
    vertices = np.stack([gx.ravel(), gy.ravel(), np.zeros(gx.size)], axis=1).astype(np.float32)
    normals = np.tile(np.array([0.0, 0.0, 1.0], dtype=np.float32), (len(vertices), 1))
    indices = []
    for i in range(resolution - 1):
        for j in range(resolution - 1):
            a = i * resolution + j
            b = (i + 1) * resolution + j
            c = i * resolution + j + 1
            d = (i + 1) * resolution + j + 1
            indices.extend([a, b, d, a, d, c])
    return Mesh(vertices, normals, np.array(indices, dtype=np.uint32))


def create_report(average, degraded=False):
    """Report whose metrics average to roughly average."""
    metrics = QualityMetrics(
        point_density=average * 1000.0,
        surface_completeness=average,
        noise_level=1.0 - average,
        feature_preservation=average,
    )
    return QualityReport(metrics, (np.zeros(3), np.ones(3)), 10, 10, degraded=degraded)


class TestLocalMetrics(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def setUp(self):
        self.params = ProcessingParameters(spatial_sigma=0.01)
        self.analyzer = MeshQualityAnalyzer(self.params, device="cpu")

    def test_flat_mesh(self):
        mesh = create_grid_mesh()
        local = self.analyzer.compute_local(mesh)

        self.assertEqual(local.num_vertices, 100)
        self.assertAlmostEqual(local.radius, 0.03)
        np.testing.assert_allclose(local.normal_consistency, 1.0, atol=1e-6)
        np.testing.assert_allclose(local.feature_strength, 0.0, atol=1e-6)
        self.assertEqual(local.histogram.shape, (HISTOGRAM_BINS,))
        self.assertEqual(int(local.histogram[0]), 100)

        # An interior vertex sees the lattice points within three spacings
        center = 5 * 10 + 5
        area = math.pi * 0.03**2
        self.assertGreaterEqual(local.density[center], 25 / area * 0.999)
        self.assertLessEqual(local.density[center], 29 / area * 1.001)
        self.assertLess(local.density[0], local.density[center])

        metrics = self.analyzer.compute_global(local)
        self.assertAlmostEqual(metrics.noise_level, 0.0, places=5)
        self.assertEqual(metrics.feature_preservation, 1.0)
        self.assertGreater(metrics.surface_completeness, 0.5)
        self.assertLess(metrics.surface_completeness, 1.0)

    def test_noisy_normals_raise_noise_level(self):
        mesh = create_grid_mesh()
        rng = np.random.default_rng(4)
        normals = mesh.normals + rng.normal(0.0, 0.15, size=mesh.normals.shape).astype(np.float32)
        normals /= np.linalg.norm(normals, axis=1, keepdims=True)
        noisy = Mesh(mesh.vertices, normals.astype(np.float32), mesh.indices)

        clean_metrics = self.analyzer.compute_global(self.analyzer.compute_local(mesh))
        noisy_metrics = self.analyzer.compute_global(self.analyzer.compute_local(noisy))
        self.assertGreater(noisy_metrics.noise_level, clean_metrics.noise_level + 0.005)

    def test_fold_is_a_feature(self):
        mesh = create_grid_mesh()
        normals = mesh.normals.copy()
        # Vertices with x above the middle face +x instead of +z
        normals[mesh.vertices[:, 0] > 0.045] = [1.0, 0.0, 0.0]
        folded = Mesh(mesh.vertices, normals, mesh.indices)

        local = self.analyzer.compute_local(folded)
        features = local.feature_strength > 0.5
        self.assertTrue(np.any(features))
        self.assertGreater(int(local.histogram[HISTOGRAM_BINS - 1]), 0)
        self.assertEqual(int(local.histogram.sum()), folded.num_vertices)

        metrics = self.analyzer.compute_global(local)
        self.assertGreater(metrics.feature_preservation, 0.0)
        self.assertLess(metrics.feature_preservation, 1.0)
        self.assertAlmostEqual(metrics.noise_level, 0.0, places=5)

        stronger = self.analyzer.compute_global(local, params=self.params.replace(feature_weight=1.0))
        self.assertGreater(stronger.feature_preservation, metrics.feature_preservation)

    def test_continuous_features_score_one(self):
        count = 20
        histogram = np.zeros(HISTOGRAM_BINS, dtype=np.int32)
        histogram[[6, 9]] = count // 2
        local = LocalQualityMetrics(
            density=np.ones(count),
            normal_consistency=np.ones(count),
            surface_continuity=np.ones(count),
            feature_strength=np.repeat([0.6, 1.0], count // 2),
            histogram=histogram,
            radius=0.1,
        )
        for weight in (0.2, 0.8, 1.0, 2.0):
            metrics = self.analyzer.compute_global(local, params=self.params.replace(feature_weight=weight))
            self.assertEqual(metrics.feature_preservation, 1.0)

        # Breaking the weaker half leaves the strength share of the stronger half
        local.surface_continuity[: count // 2] = 0.0
        metrics = self.analyzer.compute_global(local)
        self.assertAlmostEqual(metrics.feature_preservation, 1.0 / 1.6)

    def test_surface_continuity(self):
        vertices = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [1, 1, 0], [5, 5, 5]], dtype=np.float32)
        mesh = Mesh(vertices, np.zeros_like(vertices), np.array([0, 1, 2, 1, 3, 2], dtype=np.uint32))
        continuity = surface_continuity(mesh)
        # Only edge (1, 2) is shared; vertex 4 has no edges
        np.testing.assert_allclose(continuity, [0.0, 1.0 / 3.0, 1.0 / 3.0, 0.0, 0.0], atol=1e-6)

    def test_empty_mesh(self):
        empty = Mesh(np.zeros((0, 3), np.float32), np.zeros((0, 3), np.float32), np.zeros(0, np.uint32))
        report = self.analyzer.analyze(empty)
        self.assertEqual(report.metrics, QualityMetrics(0.0, 0.0, 0.0, 1.0))
        self.assertEqual(report.vertex_count, 0)
        self.assertTrue(report.needs_reconstruction)


class TestQualityReports(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_average_quality(self):
        self.assertAlmostEqual(create_report(1.0).average_quality, 1.0)
        self.assertAlmostEqual(create_report(0.0).average_quality, 0.0)
        saturated = QualityReport(QualityMetrics(5000.0, 1.0, 0.0, 1.0), (np.zeros(3), np.ones(3)), 1, 1)
        self.assertAlmostEqual(saturated.average_quality, 1.0)

    def test_trend(self):
        analyzer = MeshQualityAnalyzer(device="cpu")
        self.assertEqual(analyzer.quality_trend(), QualityTrend.STABLE)

        analyzer._history.extend([create_report(0.5), create_report(0.6), create_report(0.7)])
        self.assertEqual(analyzer.quality_trend(), QualityTrend.IMPROVING)

        analyzer._history.extend([create_report(0.6), create_report(0.4)])
        self.assertEqual(analyzer.quality_trend(), QualityTrend.DEGRADING)

        analyzer._history.extend([create_report(0.41), create_report(0.42)])
        self.assertEqual(analyzer.quality_trend(), QualityTrend.STABLE)

    def test_history_is_bounded(self):
        analyzer = MeshQualityAnalyzer(history_size=2, device="cpu")
        mesh = create_grid_mesh(resolution=4)
        for _ in range(3):
            analyzer.analyze(mesh)
        self.assertEqual(len(analyzer.history), 2)
        with self.assertRaises(ValueError):
            MeshQualityAnalyzer(history_size=0)

    def test_validate(self):
        analyzer = MeshQualityAnalyzer(device="cpu")
        thresholds = QualityThresholds()

        self.assertEqual(analyzer.validate(create_report(1.0), thresholds), [])
        self.assertTrue(analyzer.passes(create_report(1.0), thresholds))

        issues = analyzer.validate(create_report(0.0, degraded=True), thresholds)
        by_kind = {issue.kind: issue for issue in issues}
        self.assertEqual(set(by_kind), set(IssueType))
        self.assertEqual(by_kind[IssueType.LOW_DENSITY].severity, Severity.ERROR)
        self.assertEqual(by_kind[IssueType.INCOMPLETE_SURFACE].severity, Severity.ERROR)
        self.assertEqual(by_kind[IssueType.HIGH_NOISE].severity, Severity.WARNING)
        self.assertEqual(by_kind[IssueType.POOR_FEATURES].severity, Severity.WARNING)
        self.assertEqual(by_kind[IssueType.SOLVER_NON_CONVERGENCE].severity, Severity.WARNING)
        self.assertEqual(by_kind[IssueType.LOW_DENSITY].threshold, thresholds.minimum_point_density)
        for issue in issues:
            self.assertTrue(issue.description)
            self.assertTrue(issue.recommendation)

        # Degradation alone does not fail the thresholds
        self.assertTrue(analyzer.passes(create_report(1.0, degraded=True), thresholds))

    def test_presets_order_strictness(self):
        analyzer = MeshQualityAnalyzer(device="cpu")
        report = create_report(0.9)
        self.assertTrue(analyzer.passes(report, QualityThresholds.draft()))
        self.assertFalse(analyzer.passes(report, QualityThresholds.high_quality()))

    def test_needs_reconstruction(self):
        self.assertFalse(create_report(1.0).needs_reconstruction)
        self.assertTrue(create_report(0.8).needs_reconstruction)
        sparse = QualityReport(QualityMetrics(50.0, 1.0, 0.0, 1.0), (np.zeros(3), np.ones(3)), 1, 1)
        self.assertTrue(sparse.needs_reconstruction)


if __name__ == "__main__":
    unittest.main(verbosity=2)
