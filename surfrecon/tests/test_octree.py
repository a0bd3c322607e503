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
Tests for the point octree and its basis lattice.

This test suite validates:
1. Every point lands in exactly one leaf and inside that leaf's cube
2. Leaf count grows monotonically with depth for a fixed root cube
3. Depth limits and leaf capacity
4. Support-radius neighborhood queries against brute force
5. Field evaluation of single lattice bases
"""

import unittest

import numpy as np
import warp as wp

from surfrecon.reconstruction import InvalidInput, Octree
from surfrecon._src.reconstruction.octree import bounding_cube


def create_random_points(count=500, seed=1):
    rng = np.random.default_rng(seed)
    return rng.uniform(-1.0, 1.0, size=(count, 3)).astype(np.float32)


class TestOctreeBuild(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_points_partitioned_by_leaves(self):
        points = create_random_points()
        tree = Octree.build(points, max_depth=4, device="cpu")

        leaf_of = tree.leaf_of_points()
        self.assertTrue(np.all(leaf_of >= 0))
        self.assertEqual(int(tree.point_count[tree.leaves()].sum()), len(points))
        self.assertEqual(sorted(tree.sorted_index.tolist()), list(range(len(points))))

        for leaf in tree.leaves():
            members = points[tree.points_of_node(leaf)]
            if len(members) == 0:
                continue
            node_size = tree.size / (1 << int(tree.node_depth[leaf]))
            lo = tree.node_origin[leaf]
            self.assertTrue(np.all(members >= lo - 1e-5))
            self.assertTrue(np.all(members <= lo + node_size + 1e-5))

    def test_children_partition_parent(self):
        tree = Octree.build(create_random_points(200), max_depth=3, device="cpu")
        for node in range(tree.num_nodes):
            child = tree.first_child[node]
            if child < 0:
                continue
            counts = tree.point_count[child : child + 8]
            self.assertEqual(int(counts.sum()), int(tree.point_count[node]))
            self.assertTrue(np.all(tree.node_depth[child : child + 8] == tree.node_depth[node] + 1))
            self.assertEqual(int(tree.point_start[child]), int(tree.point_start[node]))

    def test_leaf_count_monotone_in_depth(self):
        points = create_random_points()
        origin, size = bounding_cube(points)
        previous = 0
        for depth in range(6):
            tree = Octree.build(points, max_depth=depth, origin=origin, size=size, device="cpu")
            self.assertGreaterEqual(tree.num_leaves, previous)
            self.assertLessEqual(tree.max_depth_reached, depth)
            previous = tree.num_leaves
        self.assertGreater(previous, 1)

    def test_leaf_capacity(self):
        points = create_random_points()
        tree = Octree.build(points, max_depth=6, leaf_capacity=8, device="cpu")
        for leaf in tree.leaves():
            if tree.node_depth[leaf] < 6:
                self.assertLessEqual(int(tree.point_count[leaf]), 8)

    def test_invalid_depth(self):
        points = create_random_points(10)
        with self.assertRaises(InvalidInput):
            Octree.build(points, max_depth=9, device="cpu")
        with self.assertRaises(InvalidInput):
            Octree.build(points, max_depth=-1, device="cpu")
        with self.assertRaises(ValueError):
            Octree.build(points, max_depth=3, leaf_capacity=0, device="cpu")

    def test_empty_and_degenerate_input(self):
        tree = Octree.build(np.zeros((0, 3)), max_depth=3, device="cpu")
        self.assertEqual(tree.num_nodes, 1)
        self.assertEqual(tree.num_leaves, 1)

        origin, size = bounding_cube(np.ones((4, 3), dtype=np.float32))
        self.assertEqual(size, 1.0)
        np.testing.assert_allclose(origin, [0.5, 0.5, 0.5])

        # Identical points cannot be separated; subdivision stops at max_depth
        tree = Octree.build(np.ones((4, 3)), max_depth=3, device="cpu")
        self.assertEqual(tree.max_depth_reached, 3)
        self.assertEqual(int(tree.point_count[tree.leaf_of_points()[0]]), 4)


class TestOctreeQueries(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_find_nodes_near_matches_brute_force(self):
        points = create_random_points(300)
        tree = Octree.build(points, max_depth=4, device="cpu")
        query = np.array([0.1, -0.2, 0.3])
        radius = 0.05

        found = tree.find_nodes_near(query, radius)

        # A node is reachable only if all its ancestors intersect too
        expected = []
        for node in range(tree.num_nodes):
            node_size = tree.size / (1 << int(tree.node_depth[node]))
            center = tree.node_origin[node] + 0.5 * node_size
            if np.linalg.norm(center - query) < tree.support_radius * node_size + radius:
                expected.append(node)
        self.assertTrue(set(found.tolist()) <= set(expected))
        self.assertIn(0, found.tolist())
        self.assertGreater(len(found), 1)

    def test_find_lattice_nodes_near(self):
        tree = Octree.build(create_random_points(50), max_depth=2, origin=(0.0, 0.0, 0.0), size=1.0, device="cpu")
        query = np.array([0.3, 0.6, 0.2])
        radius = 0.0

        found = tree.find_nodes_near(query, radius, depth=2)

        grid = 4
        h = 0.25
        expected = []
        for k in range(grid):
            for j in range(grid):
                for i in range(grid):
                    center = (np.array([i, j, k]) + 0.5) * h
                    if np.linalg.norm(center - query) < tree.support_radius * h:
                        expected.append(i + grid * (j + grid * k))
        self.assertEqual(found.tolist(), sorted(expected))

        with self.assertRaises(InvalidInput):
            tree.find_nodes_near(query, radius, depth=3)

    def test_single_basis_evaluation(self):
        tree = Octree.build(create_random_points(50), max_depth=2, origin=(0.0, 0.0, 0.0), size=1.0, device="cpu")
        h = tree.lattice_spacing
        support = tree.support_radius * h
        coefficients = np.zeros(tree.num_lattice_nodes)
        i, j, k = 1, 2, 1
        coefficients[i + 4 * (j + 4 * k)] = 1.0
        center = (np.array([i, j, k]) + 0.5) * h

        values = tree.evaluate_at(coefficients, [center, center + [0.5 * support, 0.0, 0.0], [0.99, 0.99, 0.01]])
        peak = 0.75 / support
        self.assertAlmostEqual(float(values[0]), peak, places=4)
        self.assertAlmostEqual(float(values[1]), peak * 0.75**2, places=4)
        self.assertEqual(float(values[2]), 0.0)

        field = tree.evaluate_field(coefficients)
        self.assertEqual(field.shape, (4, 4, 4))
        self.assertAlmostEqual(float(field[i, j, k]), peak, places=4)
        self.assertAlmostEqual(float(field.max()), peak, places=4)

        fine = tree.evaluate_field(coefficients, grid_size=8)
        self.assertEqual(fine.shape, (8, 8, 8))

    def test_coefficient_length_mismatch(self):
        tree = Octree.build(create_random_points(50), max_depth=2, device="cpu")
        with self.assertRaises(InvalidInput):
            tree.evaluate_field(np.zeros(10))
        with self.assertRaises(ValueError):
            tree.evaluate_field(np.zeros(tree.num_lattice_nodes), grid_size=1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
