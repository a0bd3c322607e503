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

"""Tests for the hash table and the point hash grid built on it."""

import unittest

import numpy as np
import warp as wp

from surfrecon._src.core.hashtable import HashTable
from surfrecon._src.core.point_grid import PointGrid, PointGridData, point_grid_cell, point_grid_coords


@wp.kernel
def _count_neighbors_kernel(
    grid: PointGridData,
    points: wp.array(dtype=wp.vec3),
    radius: float,
    out_counts: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    p = points[tid]
    count = int(0)
    c = point_grid_coords(grid, p)
    for dz in range(-1, 2):
        for dy in range(-1, 2):
            for dx in range(-1, 2):
                cell = point_grid_cell(grid, c[0] + dx, c[1] + dy, c[2] + dz)
                if cell >= 0:
                    start = grid.cell_start[cell]
                    for k in range(start, start + grid.cell_count[cell]):
                        d = points[grid.sorted_index[k]] - p
                        if wp.dot(d, d) <= radius * radius:
                            count += 1
    out_counts[tid] = count


class TestHashTable(unittest.TestCase):
    """Test cases for the HashTable class."""

    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_basic_creation(self):
        """Test creating an empty hash table."""
        ht = HashTable(capacity=64, device="cpu")
        self.assertGreaterEqual(ht.capacity, 64)
        keys_np = ht.keys.numpy()
        self.assertTrue(np.all(keys_np == 0xFFFFFFFFFFFFFFFF))
        self.assertEqual(ht.get_active_count(), 0)

    def test_power_of_two_rounding(self):
        """Test that capacity is rounded to power of two."""
        self.assertEqual(HashTable(capacity=100, device="cpu").capacity, 128)
        self.assertEqual(HashTable(capacity=64, device="cpu").capacity, 64)
        self.assertEqual(HashTable(capacity=1, device="cpu").capacity, 1)

    def test_numpy_integer_capacity(self):
        """Sizes computed with numpy, e.g. from count_nonzero, are accepted."""
        ht = HashTable(capacity=np.int64(100), device="cpu")
        self.assertEqual(ht.capacity, 128)
        self.assertIsInstance(ht.capacity, int)
        keys = wp.array(np.arange(10, dtype=np.uint64), dtype=wp.uint64, device="cpu")
        self.assertEqual(len(ht.insert(keys).numpy()), 10)

    def test_invalid_capacity(self):
        with self.assertRaises(ValueError):
            HashTable(capacity=0, device="cpu")

    def test_duplicate_keys_share_slot(self):
        """Equal keys inserted from different threads receive the same slot."""
        ht = HashTable(capacity=64, device="cpu")
        keys = wp.array(np.array([7, 11, 7, 7, 11, 42], dtype=np.uint64), dtype=wp.uint64, device="cpu")
        slots = ht.insert(keys).numpy()

        self.assertEqual(slots[0], slots[2])
        self.assertEqual(slots[0], slots[3])
        self.assertEqual(slots[1], slots[4])
        self.assertEqual(len({slots[0], slots[1], slots[5]}), 3)
        self.assertEqual(ht.get_active_count(), 3)
        self.assertEqual(sorted(ht.get_keys().tolist()), [7, 11, 42])

    def test_find(self):
        """Lookups return the inserted slot or -1 for absent keys."""
        ht = HashTable(capacity=32, device="cpu")
        inserted = ht.insert(wp.array(np.array([3, 5], dtype=np.uint64), dtype=wp.uint64, device="cpu")).numpy()
        found = ht.find(wp.array(np.array([5, 3, 9], dtype=np.uint64), dtype=wp.uint64, device="cpu")).numpy()

        self.assertEqual(found[0], inserted[1])
        self.assertEqual(found[1], inserted[0])
        self.assertEqual(found[2], -1)

    def test_clear(self):
        ht = HashTable(capacity=16, device="cpu")
        ht.insert(wp.array(np.arange(5, dtype=np.uint64), dtype=wp.uint64, device="cpu"))
        self.assertEqual(ht.get_active_count(), 5)
        ht.clear()
        self.assertEqual(ht.get_active_count(), 0)
        found = ht.find(wp.array(np.arange(5, dtype=np.uint64), dtype=wp.uint64, device="cpu")).numpy()
        self.assertTrue(np.all(found == -1))

    def test_full_table_returns_minus_one(self):
        """Inserting more unique keys than the capacity marks the overflow with -1."""
        ht = HashTable(capacity=4, device="cpu")
        slots = ht.insert(wp.array(np.arange(6, dtype=np.uint64), dtype=wp.uint64, device="cpu")).numpy()
        self.assertEqual(np.count_nonzero(slots >= 0), 4)
        self.assertEqual(np.count_nonzero(slots == -1), 2)


class TestPointGrid(unittest.TestCase):
    """Test cases for radius queries through the point hash grid."""

    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_neighbor_counts_match_brute_force(self):
        rng = np.random.default_rng(3)
        points = rng.uniform(-1.0, 1.0, size=(300, 3)).astype(np.float32)
        radius = 0.25

        grid = PointGrid(points, radius, device="cpu")
        counts = wp.zeros(len(points), dtype=wp.int32, device="cpu")
        wp.launch(
            _count_neighbors_kernel,
            dim=len(points),
            inputs=[grid.get_data_struct(), grid.points, radius, counts],
            device="cpu",
        )

        d2 = ((points[:, None, :] - points[None, :, :]) ** 2).sum(axis=2)
        expected = (d2 <= radius * radius).sum(axis=1)
        # Points exactly on the radius may round either way in float32
        np.testing.assert_allclose(counts.numpy(), expected, atol=1)
        self.assertGreater(expected.mean(), 1.0)

    def test_cells_partition_points(self):
        points = np.array([[0.0, 0.0, 0.0], [0.05, 0.0, 0.0], [1.0, 1.0, 1.0]], dtype=np.float32)
        grid = PointGrid(points, 0.1, device="cpu")
        self.assertEqual(grid.num_cells, 2)
        self.assertEqual(int(grid.cell_count.numpy().sum()), 3)
        self.assertEqual(sorted(grid.sorted_index.numpy().tolist()), [0, 1, 2])

    def test_invalid_cell_size(self):
        with self.assertRaises(ValueError):
            PointGrid(np.zeros((1, 3), dtype=np.float32), 0.0, device="cpu")


if __name__ == "__main__":
    unittest.main(verbosity=2)
