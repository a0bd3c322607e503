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

"""Local and global quality metrics of reconstructed meshes.

Local metrics are computed per vertex over the vertices within
``3 * spatial_sigma``; a 10-bin histogram of feature strength is accumulated
in the same launch. Global metrics reduce the local ones. The analyzer also
keeps a short history of reports to tell whether successive reconstructions
are getting better or worse.
"""

from __future__ import annotations

import enum
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field

import numpy as np
import warp as wp

from ..core.point_grid import PointGrid, PointGridData, point_grid_cell, point_grid_coords
from .config import ProcessingParameters, QualityThresholds
from .errors import Severity
from .types import Mesh, QualityMetrics

logger = logging.getLogger(__name__)

HISTOGRAM_BINS = wp.constant(10)

FEATURE_THRESHOLD = 0.5
"""Vertices with a feature strength above this count as sharp features."""

OPTIMAL_VERTEX_DENSITY = 1000.0
"""Vertex density at which the density term of ``average_quality`` saturates."""

RECONSTRUCTION_COMPLETENESS = 0.85
RECONSTRUCTION_DENSITY = 100.0

TREND_THRESHOLD = 0.05
TREND_WINDOW = 3


@wp.kernel
def _local_metrics_kernel(
    grid: PointGridData,
    vertices: wp.array(dtype=wp.vec3),
    normals: wp.array(dtype=wp.vec3),
    radius: float,
    inv_area: float,
    out_density: wp.array(dtype=float),
    out_consistency: wp.array(dtype=float),
    out_feature: wp.array(dtype=float),
    histogram: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    p = vertices[tid]
    n = normals[tid]
    radius_sq = radius * radius

    count = int(0)
    agreement = float(0.0)
    min_dot = float(1.0)

    cell = point_grid_coords(grid, p)
    for dz in range(-1, 2):
        for dy in range(-1, 2):
            for dx in range(-1, 2):
                cell_idx = point_grid_cell(grid, cell[0] + dx, cell[1] + dy, cell[2] + dz)
                if cell_idx >= 0:
                    start = grid.cell_start[cell_idx]
                    for k in range(start, start + grid.cell_count[cell_idx]):
                        j = grid.sorted_index[k]
                        if j != tid:
                            diff = vertices[j] - p
                            if wp.dot(diff, diff) <= radius_sq:
                                d = wp.dot(n, normals[j])
                                agreement += 0.5 * (1.0 + d)
                                min_dot = wp.min(min_dot, d)
                                count += 1

    out_density[tid] = float(count + 1) * inv_area
    if count > 0:
        out_consistency[tid] = agreement / float(count)
    else:
        out_consistency[tid] = 1.0
    strength = wp.clamp(1.0 - min_dot, 0.0, 1.0)
    out_feature[tid] = strength
    b = wp.min(int(strength * float(HISTOGRAM_BINS)), HISTOGRAM_BINS - 1)
    wp.atomic_add(histogram, b, 1)


def surface_continuity(mesh: Mesh) -> np.ndarray:
    """Per-vertex share of incident edges that are shared by exactly two triangles.

    Vertices without edges get 0.
    """
    tris = mesh.triangles.astype(np.int64)
    continuity = np.zeros(mesh.num_vertices, dtype=np.float32)
    if len(tris) == 0:
        return continuity
    edges = np.sort(np.concatenate([tris[:, [0, 1]], tris[:, [1, 2]], tris[:, [2, 0]]]), axis=1)
    unique_edges, counts = np.unique(edges, axis=0, return_counts=True)
    manifold = (counts == 2).astype(np.float64)
    incident = np.bincount(unique_edges.ravel(), minlength=mesh.num_vertices)
    shared = np.bincount(unique_edges.ravel(), weights=np.repeat(manifold, 2), minlength=mesh.num_vertices)
    has_edges = incident > 0
    continuity[has_edges] = shared[has_edges] / incident[has_edges]
    return continuity


@dataclass
class LocalQualityMetrics:
    """Per-vertex quality arrays.

    Attributes:
        density: Vertices per unit area around each vertex.
        normal_consistency: Mean agreement ``(1 + n_i . n_j) / 2`` with neighbors, in [0, 1].
        surface_continuity: Share of incident manifold edges, in [0, 1].
        feature_strength: ``1 - min(n_i . n_j)`` clamped to [0, 1].
        histogram: (10,) counts of feature strength.
        radius: Neighborhood radius used.
    """

    density: np.ndarray
    normal_consistency: np.ndarray
    surface_continuity: np.ndarray
    feature_strength: np.ndarray
    histogram: np.ndarray
    radius: float

    @property
    def num_vertices(self) -> int:
        return len(self.density)


class IssueType(enum.Enum):
    LOW_DENSITY = "low_density"
    HIGH_NOISE = "high_noise"
    INCOMPLETE_SURFACE = "incomplete_surface"
    POOR_FEATURES = "poor_features"
    SOLVER_NON_CONVERGENCE = "solver_non_convergence"


@dataclass
class QualityIssue:
    kind: IssueType
    severity: Severity
    description: str
    recommendation: str
    value: float = math.nan
    threshold: float = math.nan


class QualityTrend(enum.Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


@dataclass
class QualityReport:
    """Summary of one analyzed mesh.

    Attributes:
        metrics: Global quality metrics.
        bounding_box: ``(min, max)`` corners of the mesh.
        vertex_count: Number of vertices.
        triangle_count: Number of triangles.
        degraded: True if the mesh came from an approximate (non-converged) solve.
        timestamp: Seconds since the epoch when the report was made.
    """

    metrics: QualityMetrics
    bounding_box: tuple[np.ndarray, np.ndarray]
    vertex_count: int
    triangle_count: int
    degraded: bool = False
    timestamp: float = field(default_factory=time.time)

    @property
    def average_quality(self) -> float:
        """Mean of the four normalized metrics, in [0, 1]."""
        m = self.metrics
        density_score = min(m.point_density / OPTIMAL_VERTEX_DENSITY, 1.0)
        return (density_score + m.surface_completeness + (1.0 - m.noise_level) + m.feature_preservation) / 4.0

    @property
    def needs_reconstruction(self) -> bool:
        m = self.metrics
        return m.surface_completeness < RECONSTRUCTION_COMPLETENESS or m.point_density < RECONSTRUCTION_DENSITY


class MeshQualityAnalyzer:
    """Measure mesh quality and track it across reconstructions.

    Args:
        params: Default processing parameters (neighborhood and feature weight).
        history_size: Number of reports kept for :meth:`quality_trend`.
        device: Warp device for computation.
    """

    def __init__(
        self,
        params: ProcessingParameters | None = None,
        history_size: int = 10,
        device: str | None = None,
    ):
        if history_size < 1:
            raise ValueError(f"history_size must be >= 1, got {history_size}")
        self.params = params if params is not None else ProcessingParameters()
        self.device = device
        self._history: deque[QualityReport] = deque(maxlen=history_size)

    @property
    def history(self) -> list[QualityReport]:
        return list(self._history)

    def compute_local(self, mesh: Mesh, params: ProcessingParameters | None = None) -> LocalQualityMetrics:
        """Per-vertex metrics over neighbors within ``3 * spatial_sigma``."""
        params = params if params is not None else self.params
        radius = params.neighborhood_radius
        n = mesh.num_vertices
        histogram = np.zeros(HISTOGRAM_BINS, dtype=np.int32)
        if n == 0:
            empty = np.zeros(0, dtype=np.float32)
            return LocalQualityMetrics(empty, empty, empty, empty, histogram, radius)

        device = self.device
        grid = PointGrid(mesh.vertices, radius, device=device)
        density = wp.zeros(n, dtype=float, device=device)
        consistency = wp.zeros(n, dtype=float, device=device)
        feature = wp.zeros(n, dtype=float, device=device)
        wp_histogram = wp.zeros(HISTOGRAM_BINS, dtype=wp.int32, device=device)
        wp.launch(
            _local_metrics_kernel,
            dim=n,
            inputs=[
                grid.get_data_struct(),
                grid.points,
                wp.array(mesh.normals, dtype=wp.vec3, device=device),
                float(radius),
                float(1.0 / (math.pi * radius * radius)),
                density,
                consistency,
                feature,
                wp_histogram,
            ],
            device=device,
        )
        return LocalQualityMetrics(
            density=density.numpy(),
            normal_consistency=consistency.numpy(),
            surface_continuity=surface_continuity(mesh),
            feature_strength=feature.numpy(),
            histogram=wp_histogram.numpy(),
            radius=radius,
        )

    def compute_global(
        self,
        local: LocalQualityMetrics,
        histogram: np.ndarray | None = None,
        params: ProcessingParameters | None = None,
    ) -> QualityMetrics:
        """Reduce local metrics.

        Feature preservation is the strength-weighted mean of
        ``continuity ** (1 / feature_weight)`` over vertices with strength above
        ``FEATURE_THRESHOLD``. Perfectly continuous features score 1.0 for any
        weight; a lower weight penalizes broken features harder. A mesh without
        features has nothing to lose and also scores 1.0.
        """
        params = params if params is not None else self.params
        histogram = local.histogram if histogram is None else np.asarray(histogram)
        if local.num_vertices == 0:
            return QualityMetrics(0.0, 0.0, 0.0, 1.0)

        strength = local.feature_strength.astype(np.float64)
        features = strength > FEATURE_THRESHOLD
        smooth = ~features

        if np.any(smooth):
            noise = float(np.clip(2.0 * np.mean(1.0 - local.normal_consistency[smooth]), 0.0, 1.0))
        else:
            noise = 0.0

        significant = int(histogram[int(FEATURE_THRESHOLD * HISTOGRAM_BINS) :].sum())
        if significant == 0 or not np.any(features):
            feature_preservation = 1.0
        else:
            continuity = np.clip(local.surface_continuity[features].astype(np.float64), 0.0, 1.0)
            retained = continuity ** (1.0 / params.feature_weight)
            feature_preservation = float(np.clip(np.average(retained, weights=strength[features]), 0.0, 1.0))

        return QualityMetrics(
            point_density=float(np.mean(local.density)),
            surface_completeness=float(np.clip(np.mean(local.surface_continuity), 0.0, 1.0)),
            noise_level=noise,
            feature_preservation=feature_preservation,
        )

    def analyze(
        self,
        mesh: Mesh,
        params: ProcessingParameters | None = None,
        degraded: bool = False,
    ) -> QualityReport:
        """Compute metrics for ``mesh``, record the report and return it."""
        local = self.compute_local(mesh, params)
        metrics = self.compute_global(local, params=params)
        if mesh.num_vertices > 0:
            bounds = (mesh.vertices.min(axis=0), mesh.vertices.max(axis=0))
        else:
            bounds = (np.zeros(3, dtype=np.float32), np.zeros(3, dtype=np.float32))
        report = QualityReport(
            metrics=metrics,
            bounding_box=bounds,
            vertex_count=mesh.num_vertices,
            triangle_count=mesh.num_triangles,
            degraded=degraded,
        )
        self._history.append(report)
        logger.info(
            "Mesh quality: density=%.1f completeness=%.3f noise=%.3f features=%.3f",
            metrics.point_density,
            metrics.surface_completeness,
            metrics.noise_level,
            metrics.feature_preservation,
        )
        return report

    def quality_trend(self) -> QualityTrend:
        """Direction of ``average_quality`` over the last three reports."""
        recent = [r.average_quality for r in list(self._history)[-TREND_WINDOW:]]
        if len(recent) < 2:
            return QualityTrend.STABLE
        delta = float(np.mean(np.diff(recent)))
        if delta > TREND_THRESHOLD:
            return QualityTrend.IMPROVING
        if delta < -TREND_THRESHOLD:
            return QualityTrend.DEGRADING
        return QualityTrend.STABLE

    def validate(self, report: QualityReport, thresholds: QualityThresholds | None = None) -> list[QualityIssue]:
        """List every threshold the report fails, with a suggested remedy."""
        thresholds = thresholds if thresholds is not None else QualityThresholds()
        m = report.metrics
        issues = []
        if m.point_density < thresholds.minimum_point_density:
            issues.append(
                QualityIssue(
                    IssueType.LOW_DENSITY,
                    Severity.ERROR,
                    f"Vertex density {m.point_density:.1f} is below {thresholds.minimum_point_density:.1f}",
                    "Increase the octree depth or capture more points",
                    m.point_density,
                    thresholds.minimum_point_density,
                )
            )
        if m.surface_completeness < thresholds.minimum_surface_completeness:
            issues.append(
                QualityIssue(
                    IssueType.INCOMPLETE_SURFACE,
                    Severity.ERROR,
                    f"Surface completeness {m.surface_completeness:.3f} is below "
                    f"{thresholds.minimum_surface_completeness:.3f}",
                    "Scan the missing regions or increase the octree depth",
                    m.surface_completeness,
                    thresholds.minimum_surface_completeness,
                )
            )
        if m.noise_level > thresholds.maximum_noise_level:
            issues.append(
                QualityIssue(
                    IssueType.HIGH_NOISE,
                    Severity.WARNING,
                    f"Noise level {m.noise_level:.3f} exceeds {thresholds.maximum_noise_level:.3f}",
                    "Increase smoothing or hold the scanner steadier",
                    m.noise_level,
                    thresholds.maximum_noise_level,
                )
            )
        if m.feature_preservation < thresholds.minimum_feature_preservation:
            issues.append(
                QualityIssue(
                    IssueType.POOR_FEATURES,
                    Severity.WARNING,
                    f"Feature preservation {m.feature_preservation:.3f} is below "
                    f"{thresholds.minimum_feature_preservation:.3f}",
                    "Raise the feature weight or scan sharp regions more closely",
                    m.feature_preservation,
                    thresholds.minimum_feature_preservation,
                )
            )
        if report.degraded:
            issues.append(
                QualityIssue(
                    IssueType.SOLVER_NON_CONVERGENCE,
                    Severity.WARNING,
                    "The surface comes from an approximate solution",
                    "Increase solver iterations or reduce the octree depth",
                )
            )
        return issues

    def passes(self, report: QualityReport, thresholds: QualityThresholds | None = None) -> bool:
        """True if the report meets every threshold (degradation alone does not fail it)."""
        return not any(i.kind != IssueType.SOLVER_NON_CONVERGENCE for i in self.validate(report, thresholds))
