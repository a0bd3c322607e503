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

"""Adaptive octree over a point set and the compact basis attached to its nodes.

The tree lives in flat arrays. Points are sorted by the Morton key of their
finest-level cell, so the points of any node form one contiguous range and
the eight children of a node partition that range in octant order
(x -> bit 0, y -> bit 1, z -> bit 2).

Each node carries a radial basis function centered on the node with support
radius ``support_radius * node_size``::

    B(q) = 3 / (4 R) * (1 - r^2)^2,   r = |q - c| / R

The implicit function of the reconstruction is a linear combination of the
bases of the finest lattice, ``f(q) = sum_j x_j B_j(q)``. The lattice has
``2**max_depth`` nodes per axis whether or not the adaptive tree reached that
depth; :meth:`Octree.find_nodes_near` with an explicit ``depth`` enumerates it.
"""

from __future__ import annotations

import logging
import math

import numpy as np
import warp as wp

from ..core.morton import compute_cell_keys
from .config import MAX_DEPTH
from .errors import InvalidInput

logger = logging.getLogger(__name__)


@wp.func
def basis_value(q: wp.vec3, c: wp.vec3, radius: float) -> float:
    """Value of the basis centered at ``c`` with support ``radius`` at ``q``."""
    d = q - c
    r2 = wp.dot(d, d) / (radius * radius)
    if r2 >= 1.0:
        return 0.0
    t = 1.0 - r2
    return 0.75 / radius * t * t


@wp.func
def basis_gradient(q: wp.vec3, c: wp.vec3, radius: float) -> wp.vec3:
    """Gradient of :func:`basis_value` with respect to ``q``."""
    d = q - c
    r2 = wp.dot(d, d) / (radius * radius)
    if r2 >= 1.0:
        return wp.vec3(0.0, 0.0, 0.0)
    return d * (-3.0 * (1.0 - r2) / (radius * radius * radius))


@wp.func
def lattice_center(origin: wp.vec3, h: float, i: int, j: int, k: int) -> wp.vec3:
    return origin + wp.vec3((float(i) + 0.5) * h, (float(j) + 0.5) * h, (float(k) + 0.5) * h)


@wp.func
def lattice_base(q: wp.vec3, origin: wp.vec3, h: float) -> wp.vec3i:
    """Lattice cell containing ``q`` (may lie outside the lattice)."""
    local = (q - origin) / h
    return wp.vec3i(wp.int32(wp.floor(local[0])), wp.int32(wp.floor(local[1])), wp.int32(wp.floor(local[2])))


@wp.func
def lattice_sum(
    q: wp.vec3,
    coefficients: wp.array(dtype=float),
    origin: wp.vec3,
    h: float,
    radius: float,
    lattice_size: int,
    reach: int,
) -> float:
    """Evaluate ``sum_j x_j B_j(q)`` over the lattice nodes whose support holds ``q``."""
    base = lattice_base(q, origin, h)
    total = float(0.0)
    for dk in range(-reach, reach + 1):
        k = base[2] + dk
        if k >= 0 and k < lattice_size:
            for dj in range(-reach, reach + 1):
                j = base[1] + dj
                if j >= 0 and j < lattice_size:
                    for di in range(-reach, reach + 1):
                        i = base[0] + di
                        if i >= 0 and i < lattice_size:
                            b = basis_value(q, lattice_center(origin, h, i, j, k), radius)
                            if b > 0.0:
                                total += coefficients[i + lattice_size * (j + lattice_size * k)] * b
    return total


@wp.kernel
def _evaluate_grid_kernel(
    coefficients: wp.array(dtype=float),
    origin: wp.vec3,
    h: float,
    radius: float,
    lattice_size: int,
    reach: int,
    sample_spacing: float,
    field: wp.array3d(dtype=float),
):
    i, j, k = wp.tid()
    q = lattice_center(origin, sample_spacing, i, j, k)
    field[i, j, k] = lattice_sum(q, coefficients, origin, h, radius, lattice_size, reach)


@wp.kernel
def _evaluate_points_kernel(
    coefficients: wp.array(dtype=float),
    origin: wp.vec3,
    h: float,
    radius: float,
    lattice_size: int,
    reach: int,
    positions: wp.array(dtype=wp.vec3),
    values: wp.array(dtype=float),
):
    tid = wp.tid()
    values[tid] = lattice_sum(positions[tid], coefficients, origin, h, radius, lattice_size, reach)


def _compact_by_3(x: np.ndarray) -> np.ndarray:
    x = x & np.uint64(0x1249249249249249)
    x = (x ^ (x >> np.uint64(2))) & np.uint64(0x10C30C30C30C30C3)
    x = (x ^ (x >> np.uint64(4))) & np.uint64(0x100F00F00F00F00F)
    x = (x ^ (x >> np.uint64(8))) & np.uint64(0x1F0000FF0000FF)
    x = (x ^ (x >> np.uint64(16))) & np.uint64(0x1F00000000FFFF)
    x = (x ^ (x >> np.uint64(32))) & np.uint64(0x1FFFFF)
    return x


def _decode_cell_keys(keys: np.ndarray) -> np.ndarray:
    """Inverse of ``morton_encode_3d`` for non-negative coordinates. Returns (N, 3) int64."""
    keys = keys.astype(np.uint64)
    offset = 1 << 20
    coords = [_compact_by_3(keys >> np.uint64(axis)).astype(np.int64) - offset for axis in range(3)]
    return np.stack(coords, axis=1)


def bounding_cube(points: np.ndarray, scale: float = 1.1) -> tuple[np.ndarray, float]:
    """Cube enclosing ``points`` enlarged by ``scale`` about its center.

    Returns:
        ``(origin, size)`` with ``origin`` the min corner. An empty or
        single-point set yields a unit cube around the points.
    """
    if len(points) == 0:
        return np.zeros(3, dtype=np.float32), 1.0
    lo = points.min(axis=0).astype(np.float64)
    hi = points.max(axis=0).astype(np.float64)
    extent = float(np.max(hi - lo))
    size = extent * scale if extent > 0.0 else 1.0
    center = 0.5 * (lo + hi)
    return (center - 0.5 * size).astype(np.float32), size


class Octree:
    """Flat-array octree over a point set.

    Use :meth:`build` to construct one.

    Attributes:
        origin: (3,) min corner of the root cube.
        size: Edge length of the root cube.
        max_depth: Subdivision limit; the basis lattice has ``2**max_depth`` nodes per axis.
        support_radius: Basis support radius in node widths.
        node_origin: (M, 3) min corner of each node.
        node_depth: (M,) level of each node (root is 0).
        first_child: (M,) index of the first of 8 children, -1 for leaves.
        point_start: (M,) start of the node's range in ``sorted_index``.
        point_count: (M,) number of points in the node.
        sorted_index: (N,) point indices in Morton order.
    """

    def __init__(self, origin, size, max_depth, support_radius, nodes, sorted_index, device=None):
        self.origin = np.asarray(origin, dtype=np.float32)
        self.size = float(size)
        self.max_depth = int(max_depth)
        self.support_radius = float(support_radius)
        self.device = device

        self.node_origin = np.asarray(nodes["origin"], dtype=np.float32).reshape(-1, 3)
        self.node_depth = np.asarray(nodes["depth"], dtype=np.int32)
        self.first_child = np.asarray(nodes["first_child"], dtype=np.int32)
        self.point_start = np.asarray(nodes["point_start"], dtype=np.int32)
        self.point_count = np.asarray(nodes["point_count"], dtype=np.int32)
        self.sorted_index = sorted_index

    @classmethod
    def build(
        cls,
        points: np.ndarray,
        max_depth: int,
        leaf_capacity: int = 1,
        origin=None,
        size: float | None = None,
        scale: float = 1.1,
        support_radius: float = 2.0,
        device: str | None = None,
    ) -> Octree:
        """Subdivide the root cube around ``points``.

        A node is split into 8 children when it holds more than
        ``leaf_capacity`` points and is shallower than ``max_depth``. Points
        outside an explicit root cube are clamped into its boundary cells.

        Args:
            points: (N, 3) positions.
            max_depth: Deepest level, in ``[0, MAX_DEPTH]``.
            leaf_capacity: Largest point count a leaf may hold above ``max_depth``.
            origin: Min corner of the root cube. Computed from the points if None.
            size: Edge length of the root cube. Computed from the points if None.
            scale: Enlargement of the computed bounding cube.
            support_radius: Basis support radius in node widths.
            device: Warp device for computation.

        Raises:
            InvalidInput: If ``max_depth`` is outside ``[0, MAX_DEPTH]``.
        """
        if not (0 <= max_depth <= MAX_DEPTH):
            raise InvalidInput(f"max_depth must be in [0, {MAX_DEPTH}], got {max_depth}")
        if leaf_capacity < 1:
            raise ValueError(f"leaf_capacity must be >= 1, got {leaf_capacity}")

        points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
        if origin is None or size is None:
            auto_origin, auto_size = bounding_cube(points, scale)
            origin = auto_origin if origin is None else origin
            size = auto_size if size is None else size
        origin = np.asarray(origin, dtype=np.float32)
        if not (size > 0.0 and math.isfinite(size)):
            raise InvalidInput(f"size must be positive and finite, got {size}")

        n = len(points)
        lattice_size = 1 << max_depth
        if n > 0:
            wp_points = wp.array(points, dtype=wp.vec3, device=device)
            keys = compute_cell_keys(
                wp_points, origin, size / lattice_size, max_coord=lattice_size - 1, device=device
            )
            sorted_index = np.argsort(keys, kind="stable").astype(np.int32)
            cell = _decode_cell_keys(keys[sorted_index])
        else:
            sorted_index = np.zeros(0, dtype=np.int32)
            cell = np.zeros((0, 3), dtype=np.int64)

        nodes = {
            "origin": [origin.copy()],
            "depth": [0],
            "first_child": [-1],
            "point_start": [0],
            "point_count": [n],
        }
        queue = [0]
        while queue:
            node = queue.pop(0)
            depth = nodes["depth"][node]
            count = nodes["point_count"][node]
            if count <= leaf_capacity or depth >= max_depth:
                continue

            start = nodes["point_start"][node]
            shift = max_depth - depth - 1
            c = cell[start : start + count] >> shift
            octant = (c[:, 0] & 1) | ((c[:, 1] & 1) << 1) | ((c[:, 2] & 1) << 2)
            bounds = np.searchsorted(octant, np.arange(9))
            child_size = size / (1 << (depth + 1))

            nodes["first_child"][node] = len(nodes["depth"])
            for o in range(8):
                offset = np.array([o & 1, (o >> 1) & 1, (o >> 2) & 1], dtype=np.float32) * child_size
                nodes["origin"].append(nodes["origin"][node] + offset)
                nodes["depth"].append(depth + 1)
                nodes["first_child"].append(-1)
                nodes["point_start"].append(start + int(bounds[o]))
                nodes["point_count"].append(int(bounds[o + 1] - bounds[o]))
                queue.append(len(nodes["depth"]) - 1)

        tree = cls(origin, size, max_depth, support_radius, nodes, sorted_index, device=device)
        logger.debug(
            "Built octree: %d points, %d nodes, %d leaves, depth %d",
            n,
            tree.num_nodes,
            tree.num_leaves,
            tree.max_depth_reached,
        )
        return tree

    @property
    def num_nodes(self) -> int:
        return len(self.node_depth)

    @property
    def num_leaves(self) -> int:
        return int(np.count_nonzero(self.first_child < 0))

    @property
    def max_depth_reached(self) -> int:
        return int(self.node_depth.max())

    @property
    def lattice_size(self) -> int:
        """Basis lattice nodes per axis, ``2**max_depth``."""
        return 1 << self.max_depth

    @property
    def lattice_spacing(self) -> float:
        return self.size / self.lattice_size

    @property
    def num_lattice_nodes(self) -> int:
        return self.lattice_size**3

    def leaves(self) -> np.ndarray:
        """Indices of all leaf nodes."""
        return np.nonzero(self.first_child < 0)[0].astype(np.int32)

    def leaf_of_points(self) -> np.ndarray:
        """(N,) index of the leaf holding each input point."""
        result = np.full(len(self.sorted_index), -1, dtype=np.int32)
        for leaf in self.leaves():
            start = self.point_start[leaf]
            result[self.sorted_index[start : start + self.point_count[leaf]]] = leaf
        return result

    def points_of_node(self, node: int) -> np.ndarray:
        start = self.point_start[node]
        return self.sorted_index[start : start + self.point_count[node]]

    def find_nodes_near(self, point, radius: float, depth: int | None = None) -> np.ndarray:
        """Nodes whose basis support intersects the sphere ``(point, radius)``.

        Args:
            point: (3,) query center.
            radius: Query radius. Zero returns the nodes whose support holds ``point``.
            depth: If None, walk the built tree and return node indices. Otherwise
                walk the complete tree down to level ``depth`` and return flat
                lattice indices ``i + G * (j + G * k)`` with ``G = 2**depth``.
        """
        p = np.asarray(point, dtype=np.float64)
        if depth is not None:
            if not (0 <= depth <= self.max_depth):
                raise InvalidInput(f"depth must be in [0, {self.max_depth}], got {depth}")
            return self._find_lattice_nodes_near(p, float(radius), depth)

        found = []
        stack = [0]
        while stack:
            node = stack.pop()
            node_size = self.size / (1 << int(self.node_depth[node]))
            center = self.node_origin[node] + 0.5 * node_size
            if np.linalg.norm(center - p) >= self.support_radius * node_size + radius:
                continue
            found.append(node)
            child = self.first_child[node]
            if child >= 0:
                stack.extend(range(child, child + 8))
        return np.array(sorted(found), dtype=np.int64)

    def _find_lattice_nodes_near(self, p: np.ndarray, radius: float, depth: int) -> np.ndarray:
        grid = 1 << depth
        found = []
        # (level, i, j, k)
        stack = [(0, 0, 0, 0)]
        while stack:
            level, i, j, k = stack.pop()
            node_size = self.size / (1 << level)
            center = self.origin + (np.array([i, j, k], dtype=np.float64) + 0.5) * node_size
            if np.linalg.norm(center - p) >= self.support_radius * node_size + radius:
                continue
            if level == depth:
                found.append(i + grid * (j + grid * k))
                continue
            for o in range(8):
                stack.append((level + 1, 2 * i + (o & 1), 2 * j + ((o >> 1) & 1), 2 * k + ((o >> 2) & 1)))
        return np.array(sorted(found), dtype=np.int64)

    def _lattice_inputs(self, coefficients: np.ndarray):
        coefficients = np.asarray(coefficients).reshape(-1)
        if len(coefficients) != self.num_lattice_nodes:
            raise InvalidInput(
                f"expected {self.num_lattice_nodes} coefficients for depth {self.max_depth}, got {len(coefficients)}"
            )
        h = self.lattice_spacing
        return [
            wp.array(coefficients.astype(np.float32), dtype=float, device=self.device),
            wp.vec3(*[float(v) for v in self.origin]),
            float(h),
            float(self.support_radius * h),
            self.lattice_size,
            math.ceil(self.support_radius),
        ]

    def evaluate_field(self, coefficients: np.ndarray, grid_size: int | None = None) -> np.ndarray:
        """Sample ``f = sum_j x_j B_j`` on a regular grid.

        Samples sit at cell centers of a ``grid_size**3`` grid over the root cube,
        so sample ``(i, j, k)`` is at ``origin + (i + 0.5, j + 0.5, k + 0.5) * size / grid_size``.

        Args:
            coefficients: One coefficient per lattice node, in lattice order.
            grid_size: Samples per axis. Defaults to ``2**max_depth``.

        Returns:
            (grid_size, grid_size, grid_size) float32 array indexed ``[i, j, k]``.
        """
        if grid_size is None:
            grid_size = self.lattice_size
        if grid_size < 2:
            raise ValueError(f"grid_size must be >= 2, got {grid_size}")

        inputs = self._lattice_inputs(coefficients)
        field = wp.zeros((grid_size, grid_size, grid_size), dtype=float, device=self.device)
        wp.launch(
            _evaluate_grid_kernel,
            dim=(grid_size, grid_size, grid_size),
            inputs=[*inputs, float(self.size / grid_size), field],
            device=self.device,
        )
        return field.numpy()

    def evaluate_at(self, coefficients: np.ndarray, positions: np.ndarray) -> np.ndarray:
        """Evaluate ``f`` at arbitrary positions. Returns (N,) float32."""
        positions = np.asarray(positions, dtype=np.float32).reshape(-1, 3)
        inputs = self._lattice_inputs(coefficients)
        values = wp.zeros(len(positions), dtype=float, device=self.device)
        if len(positions) > 0:
            wp.launch(
                _evaluate_points_kernel,
                dim=len(positions),
                inputs=[*inputs, wp.array(positions, dtype=wp.vec3, device=self.device), values],
                device=self.device,
            )
        return values.numpy()
