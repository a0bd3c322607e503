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

"""Point cloud, mesh and metric records exchanged between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import InvalidInput

# Normals shorter than this are treated as missing
NORMAL_EPSILON = 1e-6


def _readonly(array: np.ndarray) -> np.ndarray:
    array.setflags(write=False)
    return array


@dataclass(frozen=True)
class OrientedPointCloud:
    """Oriented surface samples.

    Arrays are copied to float32 (bool for the mask) and frozen on construction,
    so a cloud never changes after it is built; every processing step returns a
    new cloud.

    Attributes:
        positions: (N, 3) sample positions.
        normals: (N, 3) outward normals, or None when no sample has one.
        confidence: (N,) confidence in [0, 1]. Defaults to 1.
        normal_mask: (N,) True where the sample carries a normal. Defaults to
            True wherever ``normals`` is given.
    """

    positions: np.ndarray
    normals: np.ndarray | None = None
    confidence: np.ndarray | None = None
    normal_mask: np.ndarray | None = None

    def __post_init__(self):
        positions = np.array(self.positions, dtype=np.float32, copy=True)
        if positions.size == 0:
            positions = positions.reshape(0, 3)
        if positions.ndim != 2 or positions.shape[1] != 3:
            raise InvalidInput(f"positions must have shape (N, 3), got {positions.shape}")
        if not np.all(np.isfinite(positions)):
            raise InvalidInput("positions contain NaN or inf")
        n = len(positions)

        normals = None
        if self.normals is not None:
            normals = np.array(self.normals, dtype=np.float32, copy=True)
            if normals.size == 0:
                normals = normals.reshape(0, 3)
            if normals.shape != (n, 3):
                raise InvalidInput(f"normals must have shape ({n}, 3), got {normals.shape}")
            if not np.all(np.isfinite(normals)):
                raise InvalidInput("normals contain NaN or inf")

        if self.confidence is None:
            confidence = np.ones(n, dtype=np.float32)
        else:
            confidence = np.array(self.confidence, dtype=np.float32, copy=True).reshape(-1)
            if confidence.shape != (n,):
                raise InvalidInput(f"confidence must have shape ({n},), got {confidence.shape}")
            if not np.all(np.isfinite(confidence)):
                raise InvalidInput("confidence contains NaN or inf")
            if n > 0 and (confidence.min() < 0.0 or confidence.max() > 1.0):
                raise InvalidInput(
                    f"confidence must be in [0, 1], got range [{confidence.min()}, {confidence.max()}]"
                )

        if normals is None:
            normal_mask = np.zeros(n, dtype=bool)
        elif self.normal_mask is None:
            normal_mask = np.ones(n, dtype=bool)
        else:
            normal_mask = np.array(self.normal_mask, dtype=bool, copy=True).reshape(-1)
            if normal_mask.shape != (n,):
                raise InvalidInput(f"normal_mask must have shape ({n},), got {normal_mask.shape}")
        if normals is not None:
            normal_mask &= np.linalg.norm(normals, axis=1) > NORMAL_EPSILON

        object.__setattr__(self, "positions", _readonly(positions))
        object.__setattr__(self, "normals", None if normals is None else _readonly(normals))
        object.__setattr__(self, "confidence", _readonly(confidence))
        object.__setattr__(self, "normal_mask", _readonly(normal_mask))

    @classmethod
    def empty(cls) -> OrientedPointCloud:
        return cls(np.zeros((0, 3), dtype=np.float32))

    @property
    def num_points(self) -> int:
        return len(self.positions)

    @property
    def num_oriented(self) -> int:
        """Number of samples carrying a usable normal."""
        return int(self.normal_mask.sum())

    def normals_or_zeros(self) -> np.ndarray:
        """Normals with zero rows where a sample has none."""
        if self.normals is None:
            return np.zeros_like(self.positions)
        return np.where(self.normal_mask[:, None], self.normals, 0.0).astype(np.float32)

    def subset(self, selection) -> OrientedPointCloud:
        """New cloud holding the samples picked by a boolean mask or index array."""
        return OrientedPointCloud(
            positions=self.positions[selection],
            normals=None if self.normals is None else self.normals[selection],
            confidence=self.confidence[selection],
            normal_mask=self.normal_mask[selection],
        )

    def concatenate(self, other: OrientedPointCloud) -> OrientedPointCloud:
        if self.normals is None and other.normals is None:
            normals = None
        else:
            normals = np.concatenate([self.normals_or_zeros(), other.normals_or_zeros()])
        return OrientedPointCloud(
            positions=np.concatenate([self.positions, other.positions]),
            normals=normals,
            confidence=np.concatenate([self.confidence, other.confidence]),
            normal_mask=np.concatenate([self.normal_mask, other.normal_mask]),
        )


@dataclass
class Mesh:
    """Triangle mesh produced by iso-surface extraction.

    Attributes:
        vertices: (V, 3) float32 vertex positions.
        normals: (V, 3) float32 unit vertex normals.
        indices: (3T,) uint32 flattened triangle indices.
    """

    vertices: np.ndarray
    normals: np.ndarray
    indices: np.ndarray

    @property
    def num_vertices(self) -> int:
        return len(self.vertices)

    @property
    def num_triangles(self) -> int:
        return len(self.indices) // 3

    @property
    def triangles(self) -> np.ndarray:
        """(T, 3) view of the index buffer."""
        return self.indices.reshape(-1, 3)

    def validate(self):
        """Raise :class:`InvalidInput` if the buffers do not describe a mesh."""
        if self.vertices.ndim != 2 or self.vertices.shape[1] != 3:
            raise InvalidInput(f"vertices must have shape (V, 3), got {self.vertices.shape}")
        if self.normals.shape != self.vertices.shape:
            raise InvalidInput(f"normals must have shape {self.vertices.shape}, got {self.normals.shape}")
        if self.indices.ndim != 1 or len(self.indices) % 3 != 0:
            raise InvalidInput(f"index count must be a multiple of 3, got {self.indices.shape}")
        if len(self.indices) > 0 and int(self.indices.max()) >= self.num_vertices:
            raise InvalidInput(
                f"triangle index {int(self.indices.max())} out of range for {self.num_vertices} vertices"
            )
        if not np.all(np.isfinite(self.vertices)):
            raise InvalidInput("vertices contain NaN or inf")


@dataclass(frozen=True)
class QualityMetrics:
    """Global mesh quality summary.

    Attributes:
        point_density: Mean vertex density per unit area (absolute).
        surface_completeness: Share of manifold interior edges, in [0, 1].
        noise_level: Normal disagreement on smooth regions, in [0, 1].
        feature_preservation: Retained sharpness on feature vertices, in [0, 1].
    """

    point_density: float
    surface_completeness: float
    noise_level: float
    feature_preservation: float
