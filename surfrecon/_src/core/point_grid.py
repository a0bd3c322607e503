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

"""Sparse uniform hash grid for fixed-radius neighbor queries in kernels.

Points are bucketed into cubic cells of size ``cell_size`` (at least the query
radius). Cell keys are Morton codes; each occupied cell owns a contiguous range
of the key-sorted point order, and the ``HashTable`` maps a cell key to that
range. Kernels visit the 27 cells around a query point with
:func:`point_grid_coords` and :func:`point_grid_cell`.

Typical kernel loop::

    c = point_grid_coords(grid, p)
    for dz in range(-1, 2):
        for dy in range(-1, 2):
            for dx in range(-1, 2):
                cell = point_grid_cell(grid, c[0] + dx, c[1] + dy, c[2] + dz)
                if cell >= 0:
                    start = grid.cell_start[cell]
                    for k in range(start, start + grid.cell_count[cell]):
                        j = grid.sorted_index[k]
                        ...
"""

from __future__ import annotations

import numpy as np
import warp as wp

from .hashtable import HashTable, hashtable_find
from .morton import cell_coords, compute_cell_keys, morton_encode_3d


@wp.struct
class PointGridData:
    """Device view of a :class:`PointGrid` for use inside kernels."""

    keys: wp.array(dtype=wp.uint64)
    slot_cell: wp.array(dtype=wp.int32)
    cell_start: wp.array(dtype=wp.int32)
    cell_count: wp.array(dtype=wp.int32)
    sorted_index: wp.array(dtype=wp.int32)
    inv_cell_size: float


@wp.func
def point_grid_coords(grid: PointGridData, p: wp.vec3) -> wp.vec3i:
    """Integer coordinates of the grid cell containing ``p``."""
    return cell_coords(p, wp.vec3(0.0, 0.0, 0.0), grid.inv_cell_size)


@wp.func
def point_grid_cell(grid: PointGridData, ix: wp.int32, iy: wp.int32, iz: wp.int32) -> int:
    """Index of the occupied cell at (ix, iy, iz), or -1 if the cell is empty."""
    slot = hashtable_find(morton_encode_3d(ix, iy, iz), grid.keys)
    if slot < 0:
        return -1
    return grid.slot_cell[slot]


@wp.kernel
def _scatter_cell_slots_kernel(
    slots: wp.array(dtype=wp.int32),
    slot_cell: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    slot = slots[tid]
    if slot >= 0:
        slot_cell[slot] = tid


class PointGrid:
    """Bucket a point set for radius queries.

    Args:
        points: (N, 3) positions.
        cell_size: Edge length of a cell. Must be >= the largest query radius
            used with the 27-cell loop.
        device: Warp device for computation.
    """

    def __init__(self, points: np.ndarray, cell_size: float, device: str | None = None):
        if not (cell_size > 0 and np.isfinite(cell_size)):
            raise ValueError(f"cell_size must be positive and finite, got {cell_size}")

        self.device = device
        self.cell_size = float(cell_size)
        self.num_points = len(points)

        points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
        self.points = wp.array(points, dtype=wp.vec3, device=device)

        keys = compute_cell_keys(self.points, (0.0, 0.0, 0.0), self.cell_size, device=device)
        order = np.argsort(keys, kind="stable").astype(np.int32)
        sorted_keys = keys[order]
        unique_keys, cell_start, cell_count = np.unique(sorted_keys, return_index=True, return_counts=True)
        self.num_cells = len(unique_keys)

        self._hashtable = HashTable(max(2 * self.num_cells, 1), device=device)
        self.slot_cell = wp.full(self._hashtable.capacity, -1, dtype=wp.int32, device=device)
        if self.num_cells > 0:
            slots = self._hashtable.insert(wp.array(unique_keys, dtype=wp.uint64, device=device))
            wp.launch(
                _scatter_cell_slots_kernel,
                dim=self.num_cells,
                inputs=[slots, self.slot_cell],
                device=device,
            )

        self.cell_start = wp.array(cell_start.astype(np.int32), dtype=wp.int32, device=device)
        self.cell_count = wp.array(cell_count.astype(np.int32), dtype=wp.int32, device=device)
        self.sorted_index = wp.array(order, dtype=wp.int32, device=device)

    def get_data_struct(self) -> PointGridData:
        """Bundle the grid arrays for passing into kernels."""
        data = PointGridData()
        data.keys = self._hashtable.keys
        data.slot_cell = self.slot_cell
        data.cell_start = self.cell_start
        data.cell_count = self.cell_count
        data.sorted_index = self.sorted_index
        data.inv_cell_size = 1.0 / self.cell_size
        return data
