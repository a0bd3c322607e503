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

"""Iso-surface extraction from a dense scalar grid with marching cubes.

Extraction runs in four launches:

1. Every grid edge whose end points straddle the iso level inserts its global
   key ``(x + G * (y + G * z)) * 3 + axis`` into a :class:`HashTable`, so each
   cut edge owns exactly one slot no matter how many cells share it.
2. One thread per claimed slot places the vertex on its edge by linear
   interpolation and interpolates the finite-difference gradient for the
   normal.
3. One thread per cell looks its triangles up in the standard table and
   resolves each edge to the welded vertex.
4. One thread per triangle flips the winding when the face normal disagrees
   with its vertex normals.

Samples below the iso level are inside, so gradients and normals point out.
"""

from __future__ import annotations

import logging

import numpy as np
import warp as wp

from ..core.hashtable import HashTable, hashtable_find, hashtable_find_or_insert
from .errors import InvalidInput, SurfaceExtractionFailed
from .mc_tables import TRI_TABLE, get_mc_tables
from .types import Mesh

logger = logging.getLogger(__name__)


@wp.func
def _edge_key(x: int, y: int, z: int, axis: int, grid_size: int) -> wp.uint64:
    return wp.uint64((x + grid_size * (y + grid_size * z)) * 3 + axis)


@wp.func
def _field_gradient(field: wp.array3d(dtype=float), x: int, y: int, z: int, grid_size: int) -> wp.vec3:
    last = grid_size - 1
    xm = wp.max(x - 1, 0)
    xp = wp.min(x + 1, last)
    ym = wp.max(y - 1, 0)
    yp = wp.min(y + 1, last)
    zm = wp.max(z - 1, 0)
    zp = wp.min(z + 1, last)
    return wp.vec3(
        (field[xp, y, z] - field[xm, y, z]) / float(xp - xm),
        (field[x, yp, z] - field[x, ym, z]) / float(yp - ym),
        (field[x, y, zp] - field[x, y, zm]) / float(zp - zm),
    )


@wp.func
def _is_inside(value: float, iso_level: float) -> int:
    if value < iso_level:
        return 1
    return 0


@wp.kernel
def _insert_cut_edges_kernel(
    field: wp.array3d(dtype=float),
    iso_level: float,
    grid_size: int,
    keys: wp.array(dtype=wp.uint64),
    active_slots: wp.array(dtype=wp.int32),
):
    x, y, z = wp.tid()
    inside = _is_inside(field[x, y, z], iso_level)
    if x + 1 < grid_size:
        if _is_inside(field[x + 1, y, z], iso_level) != inside:
            hashtable_find_or_insert(_edge_key(x, y, z, 0, grid_size), keys, active_slots)
    if y + 1 < grid_size:
        if _is_inside(field[x, y + 1, z], iso_level) != inside:
            hashtable_find_or_insert(_edge_key(x, y, z, 1, grid_size), keys, active_slots)
    if z + 1 < grid_size:
        if _is_inside(field[x, y, z + 1], iso_level) != inside:
            hashtable_find_or_insert(_edge_key(x, y, z, 2, grid_size), keys, active_slots)


@wp.kernel
def _place_vertices_kernel(
    field: wp.array3d(dtype=float),
    iso_level: float,
    grid_size: int,
    origin: wp.vec3,
    spacing: float,
    keys: wp.array(dtype=wp.uint64),
    active_slots: wp.array(dtype=wp.int32),
    vertex_of_slot: wp.array(dtype=wp.int32),
    out_vertices: wp.array(dtype=wp.vec3),
    out_normals: wp.array(dtype=wp.vec3),
):
    tid = wp.tid()
    slot = active_slots[tid]
    vertex_of_slot[slot] = tid

    key = int(keys[slot])
    axis = key % 3
    linear = key // 3
    x0 = linear % grid_size
    y0 = (linear // grid_size) % grid_size
    z0 = linear // (grid_size * grid_size)
    x1 = x0
    y1 = y0
    z1 = z0
    if axis == 0:
        x1 = x0 + 1
    elif axis == 1:
        y1 = y0 + 1
    else:
        z1 = z0 + 1

    v0 = field[x0, y0, z0]
    v1 = field[x1, y1, z1]
    t = float(0.5)
    if wp.abs(v1 - v0) > 1.0e-12:
        t = wp.clamp((iso_level - v0) / (v1 - v0), 0.0, 1.0)

    p0 = wp.vec3(float(x0), float(y0), float(z0))
    p1 = wp.vec3(float(x1), float(y1), float(z1))
    out_vertices[tid] = origin + wp.lerp(p0, p1, t) * spacing

    g = wp.lerp(_field_gradient(field, x0, y0, z0, grid_size), _field_gradient(field, x1, y1, z1, grid_size), t)
    length = wp.length(g)
    if length > 1.0e-12:
        out_normals[tid] = g / length
    else:
        out_normals[tid] = wp.normalize(p1 - p0) * wp.sign(v1 - v0)


@wp.func
def _cube_index(
    field: wp.array3d(dtype=float), x: int, y: int, z: int, corners: wp.array(dtype=wp.vec3i), iso_level: float
) -> int:
    cube = int(0)
    for c in range(8):
        o = corners[c]
        if field[x + o[0], y + o[1], z + o[2]] < iso_level:
            cube = cube | (1 << c)
    return cube


@wp.kernel
def _count_triangles_kernel(
    field: wp.array3d(dtype=float),
    iso_level: float,
    corners: wp.array(dtype=wp.vec3i),
    edge_table: wp.array(dtype=wp.int32),
    num_triangles: wp.array(dtype=wp.int32),
    out_counts: wp.array3d(dtype=wp.int32),
):
    x, y, z = wp.tid()
    cube = _cube_index(field, x, y, z, corners, iso_level)
    if edge_table[cube] == 0:
        out_counts[x, y, z] = 0
    else:
        out_counts[x, y, z] = num_triangles[cube]


@wp.kernel
def _emit_triangles_kernel(
    field: wp.array3d(dtype=float),
    iso_level: float,
    grid_size: int,
    corners: wp.array(dtype=wp.vec3i),
    edge_origins: wp.array(dtype=wp.vec4i),
    tri_table: wp.array(dtype=wp.int32),
    offsets: wp.array3d(dtype=wp.int32),
    counts: wp.array3d(dtype=wp.int32),
    keys: wp.array(dtype=wp.uint64),
    vertex_of_slot: wp.array(dtype=wp.int32),
    out_indices: wp.array(dtype=wp.int32),
):
    x, y, z = wp.tid()
    count = counts[x, y, z]
    if count == 0:
        return
    cube = _cube_index(field, x, y, z, corners, iso_level)
    base = offsets[x, y, z] * 3
    for k in range(count * 3):
        e = edge_origins[tri_table[cube * 16 + k]]
        slot = hashtable_find(_edge_key(x + e[0], y + e[1], z + e[2], e[3], grid_size), keys)
        vertex = int(-1)
        if slot >= 0:
            vertex = vertex_of_slot[slot]
        out_indices[base + k] = vertex


@wp.kernel
def _orient_triangles_kernel(
    vertices: wp.array(dtype=wp.vec3),
    normals: wp.array(dtype=wp.vec3),
    indices: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    a = indices[3 * tid + 0]
    b = indices[3 * tid + 1]
    c = indices[3 * tid + 2]
    if a < 0 or b < 0 or c < 0:
        return
    face = wp.cross(vertices[b] - vertices[a], vertices[c] - vertices[a])
    if wp.dot(face, normals[a] + normals[b] + normals[c]) < 0.0:
        indices[3 * tid + 1] = c
        indices[3 * tid + 2] = b


_NUM_TRIANGLES = ((TRI_TABLE >= 0).sum(axis=1) // 3).astype(np.int32)


class MarchingCubesExtractor:
    """Extract a welded triangle mesh from a dense scalar field.

    Args:
        device: Warp device for computation.
    """

    def __init__(self, device: str | None = None):
        self.device = device
        self._corners, self._edge_origins, self._edge_table, self._tri_table = get_mc_tables(device)
        self._num_triangles = wp.array(_NUM_TRIANGLES, dtype=wp.int32, device=device)

    def extract(
        self,
        field: np.ndarray,
        grid_size: int | None = None,
        iso_level: float = 0.0,
        origin=(0.0, 0.0, 0.0),
        spacing: float = 1.0,
    ) -> Mesh:
        """Triangulate the ``iso_level`` surface of ``field``.

        Args:
            field: (G, G, G) samples indexed ``[x, y, z]``.
            grid_size: Expected ``G``; checked against ``field`` when given.
            iso_level: Surface value. Samples below it are inside.
            origin: World position of sample ``(0, 0, 0)``.
            spacing: Distance between neighboring samples.

        Raises:
            InvalidInput: On a malformed or non-finite field.
            SurfaceExtractionFailed: If the field does not cross ``iso_level``
                or the triangulation is inconsistent.
        """
        field = np.asarray(field, dtype=np.float32)
        if field.ndim != 3 or len(set(field.shape)) != 1:
            raise InvalidInput(f"field must be a cubic (G, G, G) grid, got shape {field.shape}")
        g = field.shape[0]
        if grid_size is not None and grid_size != g:
            raise InvalidInput(f"field has {g} samples per axis, expected {grid_size}")
        if g < 2:
            raise InvalidInput(f"field needs at least 2 samples per axis, got {g}")
        if not np.all(np.isfinite(field)):
            raise InvalidInput("field contains NaN or inf")
        if not np.isfinite(iso_level):
            raise InvalidInput(f"iso_level must be finite, got {iso_level}")

        inside = field < iso_level
        num_cut_edges = int(
            np.count_nonzero(inside[1:, :, :] != inside[:-1, :, :])
            + np.count_nonzero(inside[:, 1:, :] != inside[:, :-1, :])
            + np.count_nonzero(inside[:, :, 1:] != inside[:, :, :-1])
        )
        if num_cut_edges == 0:
            raise SurfaceExtractionFailed(
                f"field range [{field.min():.4g}, {field.max():.4g}] does not cross iso level {iso_level:.4g}"
            )

        device = self.device
        wp_field = wp.array(field, dtype=float, device=device)
        iso = float(iso_level)

        table = HashTable(2 * num_cut_edges, device=device)
        wp.launch(
            _insert_cut_edges_kernel,
            dim=(g, g, g),
            inputs=[wp_field, iso, g, table.keys, table.active_slots],
            device=device,
        )
        num_vertices = table.get_active_count()
        if num_vertices != num_cut_edges:
            raise SurfaceExtractionFailed(f"welded {num_vertices} vertices for {num_cut_edges} cut edges")

        vertex_of_slot = wp.full(table.capacity, -1, dtype=wp.int32, device=device)
        vertices = wp.zeros(num_vertices, dtype=wp.vec3, device=device)
        normals = wp.zeros(num_vertices, dtype=wp.vec3, device=device)
        wp.launch(
            _place_vertices_kernel,
            dim=num_vertices,
            inputs=[
                wp_field,
                iso,
                g,
                wp.vec3(*[float(v) for v in origin]),
                float(spacing),
                table.keys,
                table.active_slots,
                vertex_of_slot,
                vertices,
                normals,
            ],
            device=device,
        )

        cells = g - 1
        counts = wp.zeros((cells, cells, cells), dtype=wp.int32, device=device)
        wp.launch(
            _count_triangles_kernel,
            dim=(cells, cells, cells),
            inputs=[wp_field, iso, self._corners, self._edge_table, self._num_triangles, counts],
            device=device,
        )
        flat_counts = counts.reshape(-1)
        flat_offsets = wp.empty_like(flat_counts)
        wp.utils.array_scan(flat_counts, flat_offsets, False)
        num_triangles = int(flat_offsets.numpy()[-1] + flat_counts.numpy()[-1])
        if num_triangles == 0:
            raise SurfaceExtractionFailed("no cell produced a triangle")

        offsets = flat_offsets.reshape((cells, cells, cells))
        indices = wp.zeros(3 * num_triangles, dtype=wp.int32, device=device)
        wp.launch(
            _emit_triangles_kernel,
            dim=(cells, cells, cells),
            inputs=[
                wp_field,
                iso,
                g,
                self._corners,
                self._edge_origins,
                self._tri_table,
                offsets,
                counts,
                table.keys,
                vertex_of_slot,
                indices,
            ],
            device=device,
        )
        wp.launch(_orient_triangles_kernel, dim=num_triangles, inputs=[vertices, normals, indices], device=device)

        indices_np = indices.numpy()
        if indices_np.min() < 0 or indices_np.max() >= num_vertices:
            raise SurfaceExtractionFailed("triangle references a vertex that was not welded")

        mesh = Mesh(
            vertices=vertices.numpy().astype(np.float32),
            normals=normals.numpy().astype(np.float32),
            indices=indices_np.astype(np.uint32),
        )
        logger.debug("Extracted %d vertices, %d triangles from %d^3 grid", mesh.num_vertices, num_triangles, g)
        return mesh
