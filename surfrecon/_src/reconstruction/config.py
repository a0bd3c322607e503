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

"""Parameter records for the reconstruction pipeline.

All records are plain dataclasses with defaults, validated on construction.
Use ``replace()`` to derive adjusted copies (the pipeline does this when it
adapts parameters for a retry).
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass

MAX_DEPTH = 8
"""Deepest octree level supported. The finest lattice has ``2**depth`` cells per axis."""

MAX_RECONSTRUCTION_DEPTH = 7
"""Deepest level the reconstruction assembles and solves on. The system spans the
dense ``(2**depth)**3`` lattice of the octree, which at ``MAX_DEPTH`` would hold
16.7M unknowns and over 100M triplets."""

MIN_USABLE_POINTS = 4
"""Minimum number of oriented points needed to assemble a solvable system."""

_MIN_SUPPORT_RADIUS = math.sqrt(3.0)


class _Replaceable:
    def replace(self, **changes):
        """Return a copy with the given fields changed (validated again)."""
        return dataclasses.replace(self, **changes)


@dataclass(frozen=True)
class ReconstructionParameters(_Replaceable):
    """
    Controls octree depth and the implicit-surface system.
    """

    depth: int = 6
    """Octree depth. The scalar field has ``2**depth`` samples per axis. Range: [1, MAX_RECONSTRUCTION_DEPTH]."""
    samples_per_node: int = 1
    """Leaf capacity of the octree: a node holding more points is subdivided."""
    point_weight: float = 4.0
    """Weight of each sample in the data term, multiplied by its confidence."""
    scale: float = 1.1
    """Ratio between the reconstruction cube and the bounding cube of the samples."""
    support_radius: float = 2.0
    """Basis support radius in finest-cell widths. Must be >= sqrt(3) so a child's
    support lies inside its parent's."""
    smoothing_factor: float = 0.5
    """Weight of the neighbor coupling term relative to the mean data diagonal.
    Zero gives the uncoupled diagonal system."""

    def __post_init__(self):
        if not (1 <= self.depth <= MAX_RECONSTRUCTION_DEPTH):
            raise ValueError(f"depth must be in [1, {MAX_RECONSTRUCTION_DEPTH}], got {self.depth}")
        if self.samples_per_node < 1:
            raise ValueError(f"samples_per_node must be >= 1, got {self.samples_per_node}")
        if self.point_weight <= 0:
            raise ValueError(f"point_weight must be > 0, got {self.point_weight}")
        if self.scale < 1.0:
            raise ValueError(f"scale must be >= 1, got {self.scale}")
        if self.support_radius < _MIN_SUPPORT_RADIUS:
            raise ValueError(f"support_radius must be >= sqrt(3), got {self.support_radius}")
        if self.smoothing_factor < 0:
            raise ValueError(f"smoothing_factor must be >= 0, got {self.smoothing_factor}")

    @classmethod
    def draft(cls) -> ReconstructionParameters:
        return cls(depth=5, samples_per_node=1, point_weight=3.0, smoothing_factor=0.7)

    @classmethod
    def standard(cls) -> ReconstructionParameters:
        return cls()

    @classmethod
    def high_quality(cls) -> ReconstructionParameters:
        return cls(depth=7, samples_per_node=4, point_weight=6.0, smoothing_factor=0.2)


@dataclass(frozen=True)
class ProcessingParameters(_Replaceable):
    """
    Controls point preprocessing and local quality analysis.
    """

    spatial_sigma: float = 0.01
    """Spatial standard deviation of the bilateral filter. The neighborhood radius
    for denoising and local quality metrics is ``3 * spatial_sigma``."""
    range_sigma: float = 0.1
    """Standard deviation of the bilateral range kernel on confidence differences."""
    confidence_threshold: float = 0.7
    """Samples below this confidence are dropped before reconstruction."""
    feature_weight: float = 0.8
    """Tolerance of the feature preservation score: broken feature continuity is
    raised to ``1 / feature_weight``, so lower weights penalize it harder."""
    normal_planarity: float = 0.85
    """Planarity a neighborhood needs before an unoriented sample gets an
    estimated normal."""

    def __post_init__(self):
        if self.spatial_sigma <= 0:
            raise ValueError(f"spatial_sigma must be > 0, got {self.spatial_sigma}")
        if self.range_sigma <= 0:
            raise ValueError(f"range_sigma must be > 0, got {self.range_sigma}")
        if not (0.0 <= self.confidence_threshold <= 1.0):
            raise ValueError(f"confidence_threshold must be in [0, 1], got {self.confidence_threshold}")
        if self.feature_weight <= 0:
            raise ValueError(f"feature_weight must be > 0, got {self.feature_weight}")
        if not (0.0 <= self.normal_planarity <= 1.0):
            raise ValueError(f"normal_planarity must be in [0, 1], got {self.normal_planarity}")

    @property
    def neighborhood_radius(self) -> float:
        return 3.0 * self.spatial_sigma


@dataclass(frozen=True)
class MVSOptions(_Replaceable):
    """
    Controls PatchMatch multi-view stereo refinement and fusion.
    """

    num_photometric_consistency_steps: int = 5
    """Maximum number of PatchMatch iterations."""
    min_photometric_consistency: float = 0.7
    """Fused samples must score strictly above this consistency."""
    max_depth_deviation: float = 0.05
    """Largest depth disagreement with another view before a sample is rejected."""
    convergence_epsilon: float = 1e-4
    """Iteration stops once no pixel depth changes by this much or more."""
    patch_radius: int = 2
    """Half size of the square matching window."""
    random_search_range: float = 0.05
    """Relative depth perturbation of the first random search; halves every step."""
    min_score_gain: float = 1e-3
    """A candidate depth replaces the current one only if it raises the photometric
    score by more than this. Keeps float noise in the NCC from moving pixels that
    already sit at their optimum."""
    seed: int = 42
    """Seed of the per-pixel random streams."""

    def __post_init__(self):
        if self.num_photometric_consistency_steps < 1:
            raise ValueError(
                f"num_photometric_consistency_steps must be >= 1, got {self.num_photometric_consistency_steps}"
            )
        if not (0.0 <= self.min_photometric_consistency < 1.0):
            raise ValueError(
                f"min_photometric_consistency must be in [0, 1), got {self.min_photometric_consistency}"
            )
        if self.max_depth_deviation <= 0:
            raise ValueError(f"max_depth_deviation must be > 0, got {self.max_depth_deviation}")
        if self.convergence_epsilon < 0:
            raise ValueError(f"convergence_epsilon must be >= 0, got {self.convergence_epsilon}")
        if self.patch_radius < 1:
            raise ValueError(f"patch_radius must be >= 1, got {self.patch_radius}")
        if self.random_search_range < 0:
            raise ValueError(f"random_search_range must be >= 0, got {self.random_search_range}")
        if not (0.0 <= self.min_score_gain < 1.0):
            raise ValueError(f"min_score_gain must be in [0, 1), got {self.min_score_gain}")


@dataclass(frozen=True)
class SolverConfig(_Replaceable):
    """
    Controls the conjugate gradient solver.
    """

    max_iterations: int = 1000
    """Hard cap on iterations."""
    tolerance: float = 1e-6
    """Stop when the relative residual ``|r| / |b|`` drops below this value."""
    divergence_window: int = 5
    """Abort after this many consecutive iterations with the residual above
    ``divergence_growth`` times its lowest value."""
    divergence_growth: float = 100.0
    """Residual blow-up factor, relative to the best residual, that counts toward divergence."""
    use_preconditioner: bool = True
    """Apply Jacobi (diagonal) preconditioning."""

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be >= 1, got {self.max_iterations}")
        if self.tolerance <= 0:
            raise ValueError(f"tolerance must be > 0, got {self.tolerance}")
        if self.divergence_window < 1:
            raise ValueError(f"divergence_window must be >= 1, got {self.divergence_window}")
        if self.divergence_growth <= 1.0:
            raise ValueError(f"divergence_growth must be > 1, got {self.divergence_growth}")


@dataclass(frozen=True)
class QualityThresholds(_Replaceable):
    """
    Acceptance thresholds for a reconstructed mesh.
    """

    minimum_point_density: float = 100.0
    """Minimum mean vertex density (vertices per unit area)."""
    maximum_noise_level: float = 0.05
    """Maximum noise level."""
    minimum_surface_completeness: float = 0.95
    """Minimum share of manifold interior edges."""
    minimum_feature_preservation: float = 0.8
    """Minimum feature preservation score."""

    @classmethod
    def draft(cls) -> QualityThresholds:
        return cls(50.0, 0.1, 0.85, 0.6)

    @classmethod
    def standard(cls) -> QualityThresholds:
        return cls()

    @classmethod
    def high_quality(cls) -> QualityThresholds:
        return cls(200.0, 0.03, 0.98, 0.9)
