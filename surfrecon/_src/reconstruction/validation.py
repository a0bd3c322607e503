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

"""Independent validation metrics computed concurrently.

:func:`validate_reconstruction` submits four tasks to a thread pool and joins
them into a :class:`ValidationReport`. The tasks share no state; only the
feature-accuracy and surface-quality tasks launch Warp kernels.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

import numpy as np
import warp as wp

from .config import ProcessingParameters
from .quality import MeshQualityAnalyzer
from .types import Mesh, OrientedPointCloud, QualityMetrics

logger = logging.getLogger(__name__)


@dataclass
class FeatureAccuracy:
    """Distance from input samples to the reconstructed surface."""

    mean_distance: float
    max_distance: float
    rms_distance: float
    within_tolerance: float
    """Share of samples closer than the tolerance."""


@dataclass
class TopologyScore:
    num_vertices: int
    num_edges: int
    num_faces: int
    boundary_edges: int
    non_manifold_edges: int
    euler_characteristic: int

    @property
    def manifold_score(self) -> float:
        """Share of edges shared by exactly two triangles."""
        if self.num_edges == 0:
            return 0.0
        return (self.num_edges - self.boundary_edges - self.non_manifold_edges) / self.num_edges

    @property
    def is_closed_manifold(self) -> bool:
        return self.num_edges > 0 and self.boundary_edges == 0 and self.non_manifold_edges == 0


@dataclass
class PerformanceMetrics:
    stage_seconds: dict[str, float]
    total_seconds: float
    points_per_second: float


@dataclass
class ValidationReport:
    feature_accuracy: FeatureAccuracy
    surface_quality: QualityMetrics
    topology: TopologyScore
    performance: PerformanceMetrics
    task_seconds: dict[str, float] = field(default_factory=dict)


@wp.kernel
def _surface_distance_kernel(
    mesh: wp.uint64,
    points: wp.array(dtype=wp.vec3),
    max_dist: float,
    distances: wp.array(dtype=float),
):
    tid = wp.tid()
    p = points[tid]
    d = max_dist
    res = wp.mesh_query_point_no_sign(mesh, p, max_dist)
    if res.result:
        closest = wp.mesh_eval_position(mesh, res.face, res.u, res.v)
        d = wp.length(closest - p)
    distances[tid] = d


def surface_distances(points: np.ndarray, mesh: Mesh, device: str | None = None) -> np.ndarray:
    """Distance from each point to the closest point on the mesh surface.

    Queries a BVH over the triangles. A mesh without triangles is infinitely
    far from everything.
    """
    points = np.asarray(points, dtype=np.float32).reshape(-1, 3)
    if len(points) == 0:
        return np.zeros(0)
    if mesh.num_triangles == 0:
        return np.full(len(points), np.inf)

    lower = np.minimum(points.min(axis=0), mesh.vertices.min(axis=0))
    upper = np.maximum(points.max(axis=0), mesh.vertices.max(axis=0))
    max_dist = 2.0 * float(np.linalg.norm(upper - lower)) + 1.0

    wp_mesh = wp.Mesh(
        points=wp.array(mesh.vertices, dtype=wp.vec3, device=device),
        indices=wp.array(mesh.indices.astype(np.int32), dtype=wp.int32, device=device),
    )
    wp_points = wp.array(points, dtype=wp.vec3, device=device)
    distances = wp.empty(len(points), dtype=float, device=device)
    wp.launch(
        _surface_distance_kernel,
        dim=len(points),
        inputs=[wp_mesh.id, wp_points, max_dist, distances],
        device=device,
    )
    return distances.numpy().astype(np.float64)


def compute_feature_accuracy(
    points: OrientedPointCloud, mesh: Mesh, tolerance: float, device: str | None = None
) -> FeatureAccuracy:
    distances = surface_distances(points.positions, mesh, device=device)
    if len(distances) == 0:
        return FeatureAccuracy(0.0, 0.0, 0.0, 1.0)
    return FeatureAccuracy(
        mean_distance=float(distances.mean()),
        max_distance=float(distances.max()),
        rms_distance=float(np.sqrt(np.mean(distances**2))),
        within_tolerance=float(np.mean(distances <= tolerance)),
    )


def compute_topology(mesh: Mesh) -> TopologyScore:
    tris = mesh.triangles.astype(np.int64)
    if len(tris) == 0:
        return TopologyScore(mesh.num_vertices, 0, 0, 0, 0, mesh.num_vertices)
    edges = np.sort(np.concatenate([tris[:, [0, 1]], tris[:, [1, 2]], tris[:, [2, 0]]]), axis=1)
    _, counts = np.unique(edges, axis=0, return_counts=True)
    num_edges = len(counts)
    return TopologyScore(
        num_vertices=mesh.num_vertices,
        num_edges=num_edges,
        num_faces=len(tris),
        boundary_edges=int(np.count_nonzero(counts == 1)),
        non_manifold_edges=int(np.count_nonzero(counts > 2)),
        euler_characteristic=mesh.num_vertices - num_edges + len(tris),
    )


def compute_performance(stage_seconds: dict[str, float], num_points: int) -> PerformanceMetrics:
    total = float(sum(stage_seconds.values()))
    throughput = num_points / total if total > 0.0 else 0.0
    return PerformanceMetrics(dict(stage_seconds), total, throughput)


def validate_reconstruction(
    points: OrientedPointCloud,
    mesh: Mesh,
    params: ProcessingParameters | None = None,
    stage_seconds: dict[str, float] | None = None,
    tolerance: float | None = None,
    max_workers: int = 4,
    device: str | None = None,
) -> ValidationReport:
    """Compute all validation metrics concurrently and join them.

    Args:
        points: Samples the mesh was reconstructed from.
        mesh: The reconstruction.
        params: Neighborhood settings for the surface-quality metrics.
        stage_seconds: Wall time per pipeline stage.
        tolerance: Distance counted as accurate. Defaults to ``3 * spatial_sigma``.
        max_workers: Thread pool size.
        device: Warp device for the kernel-backed tasks.
    """
    params = params if params is not None else ProcessingParameters()
    tolerance = params.neighborhood_radius if tolerance is None else tolerance
    stage_seconds = stage_seconds if stage_seconds is not None else {}
    analyzer = MeshQualityAnalyzer(params, device=device)

    def timed(fn, *args):
        start = time.perf_counter()
        value = fn(*args)
        return value, time.perf_counter() - start

    def surface_quality():
        return analyzer.compute_global(analyzer.compute_local(mesh))

    tasks = {
        "feature_accuracy": (compute_feature_accuracy, points, mesh, tolerance, device),
        "surface_quality": (surface_quality,),
        "topology": (compute_topology, mesh),
        "performance": (compute_performance, stage_seconds, points.num_points),
    }

    results = {}
    task_seconds = {}
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        futures = {pool.submit(timed, *task): name for name, task in tasks.items()}
        for future in as_completed(futures):
            name = futures[future]
            results[name], task_seconds[name] = future.result()
            logger.debug("Validation task %s finished in %.3fs", name, task_seconds[name])

    return ValidationReport(
        feature_accuracy=results["feature_accuracy"],
        surface_quality=results["surface_quality"],
        topology=results["topology"],
        performance=results["performance"],
        task_seconds=task_seconds,
    )
