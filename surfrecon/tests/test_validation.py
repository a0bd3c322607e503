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
Tests for concurrent reconstruction validation.

This test suite validates:
1. Point-to-surface distances from the mesh BVH
2. Topology of closed and open meshes
3. Performance totals and throughput
4. The joined report of all validation tasks
"""

import unittest

import numpy as np
import warp as wp

from surfrecon.reconstruction import (
    MarchingCubesExtractor,
    Mesh,
    OrientedPointCloud,
    ProcessingParameters,
    validate_reconstruction,
)
from surfrecon._src.reconstruction.validation import (
    compute_feature_accuracy,
    compute_performance,
    compute_topology,
    surface_distances,
)


def create_tetrahedron():
    vertices = np.array([[0, 0, 0], [1, 0, 0], [0, 1, 0], [0, 0, 1]], dtype=np.float32)
    indices = np.array([0, 2, 1, 0, 1, 3, 0, 3, 2, 1, 2, 3], dtype=np.uint32)
    return Mesh(vertices, vertices.copy(), indices)


class TestValidationTasks(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_surface_distances(self):
        mesh = create_tetrahedron()
        rng = np.random.default_rng(5)

        # Samples on the faces lie on the surface
        tris = mesh.vertices[mesh.triangles].astype(np.float64)
        weights = rng.dirichlet(np.ones(3), size=len(tris))
        on_surface = np.einsum("tk,tkj->tj", weights, tris)
        np.testing.assert_allclose(surface_distances(on_surface, mesh, device="cpu"), 0.0, atol=1e-5)

        # Lifting the slanted face's centroid along its normal
        lifted = np.full((1, 3), 1.0 / 3.0) + 0.25 / np.sqrt(3.0)
        np.testing.assert_allclose(surface_distances(lifted, mesh, device="cpu"), [0.25], atol=1e-5)

        # The surface is never farther than its closest vertex
        points = rng.normal(size=(50, 3))
        vertex_distances = np.linalg.norm(points[:, None, :] - mesh.vertices[None, :, :], axis=2).min(axis=1)
        distances = surface_distances(points, mesh, device="cpu")
        self.assertTrue(np.all(distances <= vertex_distances + 1e-5))

        points_only = Mesh(mesh.vertices, mesh.normals, np.zeros(0, dtype=np.uint32))
        self.assertTrue(np.all(np.isinf(surface_distances(points, points_only, device="cpu"))))
        self.assertEqual(len(surface_distances(np.zeros((0, 3)), mesh, device="cpu")), 0)

    def test_feature_accuracy(self):
        mesh = create_tetrahedron()
        cloud = OrientedPointCloud([[0.0, 0.0, 0.0], [1.0, 0.0, 0.1], [0.0, 2.0, 0.0]])
        accuracy = compute_feature_accuracy(cloud, mesh, tolerance=0.2, device="cpu")
        # The second sample is closest to the edge between (1, 0, 0) and (0, 0, 1)
        edge_distance = 0.1 / np.sqrt(2.0)
        self.assertAlmostEqual(accuracy.max_distance, 1.0, places=5)
        self.assertAlmostEqual(accuracy.mean_distance, (1.0 + edge_distance) / 3.0, places=5)
        self.assertAlmostEqual(accuracy.within_tolerance, 2.0 / 3.0)

    def test_closed_topology(self):
        topology = compute_topology(create_tetrahedron())
        self.assertEqual((topology.num_vertices, topology.num_edges, topology.num_faces), (4, 6, 4))
        self.assertEqual(topology.euler_characteristic, 2)
        self.assertTrue(topology.is_closed_manifold)
        self.assertEqual(topology.manifold_score, 1.0)

    def test_open_topology(self):
        mesh = create_tetrahedron()
        open_mesh = Mesh(mesh.vertices, mesh.normals, mesh.indices[:9])
        topology = compute_topology(open_mesh)
        self.assertEqual(topology.boundary_edges, 3)
        self.assertFalse(topology.is_closed_manifold)
        self.assertAlmostEqual(topology.manifold_score, 0.5)

    def test_performance(self):
        performance = compute_performance({"solve": 1.5, "extract": 0.5}, 1000)
        self.assertEqual(performance.total_seconds, 2.0)
        self.assertEqual(performance.points_per_second, 500.0)
        self.assertEqual(compute_performance({}, 10).points_per_second, 0.0)


class TestValidateReconstruction(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_report_joins_all_tasks(self):
        grid_size = 20
        coords = np.linspace(-1.0, 1.0, grid_size)
        x, y, z = np.meshgrid(coords, coords, coords, indexing="ij")
        field = (np.sqrt(x * x + y * y + z * z) - 0.6).astype(np.float32)
        spacing = 2.0 / (grid_size - 1)
        mesh = MarchingCubesExtractor(device="cpu").extract(field, origin=(-1.0, -1.0, -1.0), spacing=spacing)

        rng = np.random.default_rng(6)
        directions = rng.normal(size=(200, 3))
        directions /= np.linalg.norm(directions, axis=1, keepdims=True)
        cloud = OrientedPointCloud(0.6 * directions, directions)

        report = validate_reconstruction(
            cloud,
            mesh,
            ProcessingParameters(spatial_sigma=0.1),
            stage_seconds={"solve": 0.2, "extract": 0.1},
            max_workers=2,
            device="cpu",
        )

        self.assertLess(report.feature_accuracy.max_distance, 2.0 * spacing)
        self.assertEqual(report.feature_accuracy.within_tolerance, 1.0)
        self.assertTrue(report.topology.is_closed_manifold)
        self.assertEqual(report.topology.euler_characteristic, 2)
        self.assertEqual(report.surface_quality.surface_completeness, 1.0)
        self.assertAlmostEqual(report.performance.total_seconds, 0.3)
        self.assertEqual(set(report.task_seconds), {"feature_accuracy", "surface_quality", "topology", "performance"})


if __name__ == "__main__":
    unittest.main(verbosity=2)
