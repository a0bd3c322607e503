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

"""Morton (Z-order) encoding of integer cell coordinates.

Codes interleave 21 bits per axis: x takes bits 0,3,6,..., y takes 1,4,7,...
and z takes 2,5,8,.... Coordinates are shifted by ``CELL_COORD_OFFSET`` so that
negative cells encode too. The shift adds the same high bits to every code, so
for coordinates in ``[0, 2**d)`` the code ordering is the octree ordering and
``(code >> 3 * (d - k)) & 7`` is the octant (x→1, y→2, z→4) taken at level ``k``.
"""

import numpy as np
import warp as wp

# Shift by 2^20 so range [-2^20, 2^20) maps to [0, 2^21)
CELL_COORD_OFFSET = wp.constant(wp.int32(1 << 20))
CELL_COORD_MASK = wp.constant(wp.uint64(0x1FFFFF))


@wp.func
def _split_by_3(x: wp.uint64) -> wp.uint64:
    """Spread a 21-bit integer into 63 bits with 2 zeros between each bit."""
    x = x & wp.uint64(0x1FFFFF)
    x = (x | (x << wp.uint64(32))) & wp.uint64(0x1F00000000FFFF)
    x = (x | (x << wp.uint64(16))) & wp.uint64(0x1F0000FF0000FF)
    x = (x | (x << wp.uint64(8))) & wp.uint64(0x100F00F00F00F00F)
    x = (x | (x << wp.uint64(4))) & wp.uint64(0x10C30C30C30C30C3)
    x = (x | (x << wp.uint64(2))) & wp.uint64(0x1249249249249249)
    return x


@wp.func
def morton_encode_3d(ix: wp.int32, iy: wp.int32, iz: wp.int32) -> wp.uint64:
    """Encode 3 signed cell coordinates into a 63-bit Morton code."""
    ux = wp.uint64(ix + CELL_COORD_OFFSET) & CELL_COORD_MASK
    uy = wp.uint64(iy + CELL_COORD_OFFSET) & CELL_COORD_MASK
    uz = wp.uint64(iz + CELL_COORD_OFFSET) & CELL_COORD_MASK
    return _split_by_3(ux) | (_split_by_3(uy) << wp.uint64(1)) | (_split_by_3(uz) << wp.uint64(2))


@wp.func
def cell_coords(point: wp.vec3, origin: wp.vec3, inv_cell_size: float) -> wp.vec3i:
    """Integer coordinates of the cell containing ``point``."""
    local = (point - origin) * inv_cell_size
    return wp.vec3i(
        wp.int32(wp.floor(local[0])),
        wp.int32(wp.floor(local[1])),
        wp.int32(wp.floor(local[2])),
    )


@wp.kernel
def compute_cell_keys_kernel(
    points: wp.array(dtype=wp.vec3),
    origin: wp.vec3,
    inv_cell_size: float,
    max_coord: wp.int32,
    out_keys: wp.array(dtype=wp.uint64),
):
    """Morton key of the cell holding each point.

    When ``max_coord`` is positive, coordinates are clamped to ``[0, max_coord]``
    so points on the upper boundary of a bounded grid land in the last cell.
    """
    tid = wp.tid()
    c = cell_coords(points[tid], origin, inv_cell_size)
    ix = c[0]
    iy = c[1]
    iz = c[2]
    if max_coord > 0:
        ix = wp.clamp(ix, 0, max_coord)
        iy = wp.clamp(iy, 0, max_coord)
        iz = wp.clamp(iz, 0, max_coord)
    out_keys[tid] = morton_encode_3d(ix, iy, iz)


def compute_cell_keys(
    points: wp.array,
    origin,
    cell_size: float,
    max_coord: int = 0,
    device: str | None = None,
) -> np.ndarray:
    """Host wrapper around :func:`compute_cell_keys_kernel`.

    Returns:
        (N,) uint64 numpy array of Morton keys.
    """
    n = points.shape[0]
    keys = wp.zeros(n, dtype=wp.uint64, device=device)
    if n > 0:
        wp.launch(
            compute_cell_keys_kernel,
            dim=n,
            inputs=[points, wp.vec3(*[float(v) for v in origin]), float(1.0 / cell_size), int(max_coord), keys],
            device=device,
        )
    return keys.numpy()
