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

"""Assembly of the linear system for the implicit indicator function.

Every oriented sample ``p`` with normal ``n`` and weight ``w`` asks the field
gradient to match its normal. For each finest-lattice basis ``B_j`` whose
support holds ``p`` this contributes::

    A[j, j] += w * dot(grad B_j(p), grad B_j(p))
    b[j]    += w * dot(grad B_j(p), n)

so coefficients of nodes just inside the surface become negative and those
just outside positive. A graph Laplacian over the 6-neighborhood of the
lattice, scaled by ``smoothing_factor`` times the mean data diagonal, couples
the nodes and carries the sign into the interior and exterior.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
import warp as wp

from .config import MAX_RECONSTRUCTION_DEPTH, MIN_USABLE_POINTS, ReconstructionParameters
from .errors import InsufficientData, InvalidInput
from .octree import Octree, basis_gradient, lattice_base, lattice_center
from .types import OrientedPointCloud

logger = logging.getLogger(__name__)

# Relative Tikhonov term keeping nodes without data or coupling solvable
_REGULARIZATION = 1.0e-6


@wp.kernel
def _count_entries_kernel(
    positions: wp.array(dtype=wp.vec3),
    origin: wp.vec3,
    h: float,
    radius: float,
    lattice_size: int,
    reach: int,
    counts: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    q = positions[tid]
    base = lattice_base(q, origin, h)
    radius_sq = radius * radius
    count = int(0)
    for dk in range(-reach, reach + 1):
        k = base[2] + dk
        for dj in range(-reach, reach + 1):
            j = base[1] + dj
            for di in range(-reach, reach + 1):
                i = base[0] + di
                if i >= 0 and i < lattice_size and j >= 0 and j < lattice_size and k >= 0 and k < lattice_size:
                    d = q - lattice_center(origin, h, i, j, k)
                    if wp.dot(d, d) < radius_sq:
                        count += 1
    counts[tid] = count


@wp.kernel
def _fill_entries_kernel(
    positions: wp.array(dtype=wp.vec3),
    normals: wp.array(dtype=wp.vec3),
    weights: wp.array(dtype=float),
    offsets: wp.array(dtype=wp.int32),
    origin: wp.vec3,
    h: float,
    radius: float,
    lattice_size: int,
    reach: int,
    out_rows: wp.array(dtype=wp.int32),
    out_values: wp.array(dtype=wp.float64),
    rhs: wp.array(dtype=wp.float64),
):
    tid = wp.tid()
    q = positions[tid]
    n = normals[tid]
    w = weights[tid]
    base = lattice_base(q, origin, h)
    radius_sq = radius * radius
    slot = offsets[tid]
    for dk in range(-reach, reach + 1):
        k = base[2] + dk
        for dj in range(-reach, reach + 1):
            j = base[1] + dj
            for di in range(-reach, reach + 1):
                i = base[0] + di
                if i >= 0 and i < lattice_size and j >= 0 and j < lattice_size and k >= 0 and k < lattice_size:
                    c = lattice_center(origin, h, i, j, k)
                    d = q - c
                    if wp.dot(d, d) < radius_sq:
                        node = i + lattice_size * (j + lattice_size * k)
                        g = basis_gradient(q, c, radius)
                        out_rows[slot] = node
                        out_values[slot] = wp.float64(w * wp.dot(g, g))
                        wp.atomic_add(rhs, node, wp.float64(w * wp.dot(g, n)))
                        slot += 1


@dataclass
class SparseMatrix:
    """Square sparse matrix in triplet form.

    Duplicate ``(row, col)`` entries are allowed and add up.

    Attributes:
        num_rows: Matrix dimension.
        rows: (nnz,) int32 row indices.
        cols: (nnz,) int32 column indices.
        values: (nnz,) float64 values.
    """

    num_rows: int
    rows: np.ndarray
    cols: np.ndarray
    values: np.ndarray

    @property
    def nnz(self) -> int:
        return len(self.values)

    def to_csr(self) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Compress to CSR, summing duplicates.

        Returns:
            ``(row_ptr, cols, values)`` with int32 indices and float64 values,
            columns sorted within each row.
        """
        n = self.num_rows
        keys = self.rows.astype(np.int64) * n + self.cols.astype(np.int64)
        unique_keys, inverse = np.unique(keys, return_inverse=True)
        values = np.bincount(inverse.reshape(-1), weights=self.values, minlength=len(unique_keys))
        rows = unique_keys // n
        cols = (unique_keys % n).astype(np.int32)
        row_ptr = np.zeros(n + 1, dtype=np.int32)
        np.cumsum(np.bincount(rows, minlength=n), out=row_ptr[1:])
        return row_ptr, cols, values.astype(np.float64)

    def diagonal(self) -> np.ndarray:
        mask = self.rows == self.cols
        return np.bincount(self.rows[mask], weights=self.values[mask], minlength=self.num_rows)

    def to_dense(self) -> np.ndarray:
        dense = np.zeros((self.num_rows, self.num_rows), dtype=np.float64)
        np.add.at(dense, (self.rows, self.cols), self.values)
        return dense


def lattice_laplacian(lattice_size: int, weight: float) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Triplets of ``weight * L`` for the 6-neighborhood graph Laplacian of a cubic lattice."""
    g = lattice_size
    index = np.arange(g**3, dtype=np.int64).reshape(g, g, g)
    # index[k, j, i] = i + g * (j + g * k)
    pairs = [
        (index[:, :, :-1].ravel(), index[:, :, 1:].ravel()),
        (index[:, :-1, :].ravel(), index[:, 1:, :].ravel()),
        (index[:-1, :, :].ravel(), index[1:, :, :].ravel()),
    ]
    first = np.concatenate([p[0] for p in pairs])
    second = np.concatenate([p[1] for p in pairs])
    degree = np.bincount(first, minlength=g**3) + np.bincount(second, minlength=g**3)

    rows = np.concatenate([first, second, np.arange(g**3)]).astype(np.int32)
    cols = np.concatenate([second, first, np.arange(g**3)]).astype(np.int32)
    values = np.concatenate(
        [np.full(2 * len(first), -weight), weight * degree.astype(np.float64)]
    )
    return rows, cols, values


class PoissonSystemBuilder:
    """Assemble ``A x = b`` for the basis coefficients of an :class:`Octree`.

    Args:
        device: Warp device for computation.
    """

    def __init__(self, device: str | None = None):
        self.device = device

    def build(
        self,
        points: OrientedPointCloud,
        octree: Octree,
        params: ReconstructionParameters,
    ) -> tuple[SparseMatrix, np.ndarray]:
        """Build the system over the finest lattice of ``octree``.

        Samples without a normal are skipped. The nodes a sample touches are
        those ``octree.find_nodes_near(sample, 0.0, depth=octree.max_depth)``
        returns, found on the device by scanning the lattice cells within the
        support reach.

        Returns:
            ``(A, b)`` with ``A`` symmetric positive definite of dimension
            ``octree.num_lattice_nodes`` and ``b`` a float64 vector.

        Raises:
            InvalidInput: If the octree is deeper than ``MAX_RECONSTRUCTION_DEPTH``.
            InsufficientData: If fewer than ``MIN_USABLE_POINTS`` samples carry a
                normal, or their data term vanishes.
        """
        if octree.max_depth > MAX_RECONSTRUCTION_DEPTH:
            raise InvalidInput(
                f"octree depth {octree.max_depth} exceeds the reconstruction limit {MAX_RECONSTRUCTION_DEPTH}"
            )
        usable = points.subset(points.normal_mask)
        if usable.num_points < MIN_USABLE_POINTS:
            raise InsufficientData(
                f"need at least {MIN_USABLE_POINTS} oriented points, got {usable.num_points}"
            )

        device = self.device
        num_nodes = octree.num_lattice_nodes
        h = octree.lattice_spacing
        radius = octree.support_radius * h
        inputs = [
            wp.vec3(*[float(v) for v in octree.origin]),
            float(h),
            float(radius),
            octree.lattice_size,
            math.ceil(octree.support_radius),
        ]

        normals = usable.normals / np.linalg.norm(usable.normals, axis=1, keepdims=True)
        positions = wp.array(usable.positions, dtype=wp.vec3, device=device)
        counts = wp.zeros(usable.num_points, dtype=wp.int32, device=device)
        wp.launch(
            _count_entries_kernel,
            dim=usable.num_points,
            inputs=[positions, *inputs, counts],
            device=device,
        )
        offsets = wp.empty_like(counts)
        wp.utils.array_scan(counts, offsets, False)
        total = int(offsets.numpy()[-1] + counts.numpy()[-1])

        data_rows = wp.zeros(max(total, 1), dtype=wp.int32, device=device)
        data_values = wp.zeros(max(total, 1), dtype=wp.float64, device=device)
        rhs = wp.zeros(num_nodes, dtype=wp.float64, device=device)
        if total > 0:
            wp.launch(
                _fill_entries_kernel,
                dim=usable.num_points,
                inputs=[
                    positions,
                    wp.array(normals.astype(np.float32), dtype=wp.vec3, device=device),
                    wp.array(usable.confidence * np.float32(params.point_weight), dtype=float, device=device),
                    offsets,
                    *inputs,
                    data_rows,
                    data_values,
                    rhs,
                ],
                device=device,
            )

        rows = data_rows.numpy()[:total]
        values = data_values.numpy()[:total]
        b = rhs.numpy()
        if total == 0 or not np.any(values > 0.0) or not np.any(b != 0.0):
            raise InsufficientData("oriented points produced an empty data term")

        diagonal = np.bincount(rows, weights=values, minlength=num_nodes)
        mean_diagonal = float(diagonal[diagonal > 0.0].mean())

        all_rows = [rows, np.arange(num_nodes, dtype=np.int32)]
        all_cols = [rows, np.arange(num_nodes, dtype=np.int32)]
        all_values = [values, np.full(num_nodes, _REGULARIZATION * mean_diagonal)]
        if params.smoothing_factor > 0.0:
            l_rows, l_cols, l_values = lattice_laplacian(octree.lattice_size, params.smoothing_factor * mean_diagonal)
            all_rows.append(l_rows)
            all_cols.append(l_cols)
            all_values.append(l_values)

        matrix = SparseMatrix(
            num_rows=num_nodes,
            rows=np.concatenate(all_rows).astype(np.int32),
            cols=np.concatenate(all_cols).astype(np.int32),
            values=np.concatenate(all_values).astype(np.float64),
        )
        logger.debug(
            "Assembled system: %d unknowns, %d triplets from %d oriented points",
            num_nodes,
            matrix.nnz,
            usable.num_points,
        )
        return matrix, b
