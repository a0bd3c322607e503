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

"""End-to-end surface reconstruction from oriented points.

Stages run strictly in order, each one finishing before the next starts::

    validate -> (multi-view stereo) -> preprocess -> index -> assemble
             -> solve -> extract -> analyze

If the analyzed mesh misses the quality thresholds, the parameters are adapted
and the preprocess..analyze stages run again, at most ``max_retries`` times.

Example:
    >>> with ReconstructionPipeline(device="cpu") as pipeline:
    ...     result = pipeline.run(OrientedPointCloud(positions, normals))
    >>> result.mesh.num_triangles > 0
    True
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field

import numpy as np
import warp as wp

from .config import (
    MAX_RECONSTRUCTION_DEPTH,
    MVSOptions,
    ProcessingParameters,
    QualityThresholds,
    ReconstructionParameters,
    SolverConfig,
)
from .errors import InitializationFailed, ReconstructionCancelled
from .marching_cubes import MarchingCubesExtractor
from .metrics_cache import MetricsCache
from .mvs import CameraView, DepthMap, MVSResult, PatchMatchFuser, SparseCloud
from .octree import Octree
from .poisson import PoissonSystemBuilder
from .preprocess import PointCloudPreprocessor
from .quality import IssueType, MeshQualityAnalyzer, QualityIssue, QualityReport
from .solver import ConjugateGradientSolver, SolverResult
from .types import Mesh, OrientedPointCloud
from .validation import ValidationReport, validate_reconstruction

logger = logging.getLogger(__name__)

ADAPT_FACTOR = 1.2
"""Multiplier applied to a parameter that is adapted for a retry."""


@dataclass
class ReconstructionResult:
    """Outcome of :meth:`ReconstructionPipeline.run`.

    Attributes:
        mesh: Surface of the last attempt.
        report: Quality report of ``mesh``.
        issues: Thresholds ``report`` fails, plus solver non-convergence.
        attempts: Number of reconstruction passes (1 + retries).
        parameters: Reconstruction parameters of the last attempt.
        processing: Processing parameters of the last attempt.
        solver_results: One solver result per attempt.
        stage_seconds: Wall time per stage of the last attempt (MVS included).
        point_density: Mean sample density after preprocessing.
        validation: Concurrent validation metrics, if requested.
        mvs: Stereo result, if views were given.
    """

    mesh: Mesh
    report: QualityReport
    issues: list[QualityIssue]
    attempts: int
    parameters: ReconstructionParameters
    processing: ProcessingParameters
    solver_results: list[SolverResult] = field(default_factory=list)
    stage_seconds: dict[str, float] = field(default_factory=dict)
    point_density: float = 0.0
    validation: ValidationReport | None = None
    mvs: MVSResult | None = None

    @property
    def degraded(self) -> bool:
        return self.report.degraded


def adapt_parameters(
    report: QualityReport,
    reconstruction: ReconstructionParameters,
    processing: ProcessingParameters,
    thresholds: QualityThresholds,
) -> tuple[ReconstructionParameters, ProcessingParameters]:
    """Adjust parameters toward the thresholds ``report`` misses.

    - Low density or completeness: one level deeper (up to ``MAX_RECONSTRUCTION_DEPTH``).
    - High noise: stronger denoising and smoothing.
    - Weak features: higher feature weight (up to 1) and point weight.
    """
    m = report.metrics
    if m.point_density < thresholds.minimum_point_density or (
        m.surface_completeness < thresholds.minimum_surface_completeness
    ):
        reconstruction = reconstruction.replace(depth=min(reconstruction.depth + 1, MAX_RECONSTRUCTION_DEPTH))
    if m.noise_level > thresholds.maximum_noise_level:
        processing = processing.replace(spatial_sigma=processing.spatial_sigma * ADAPT_FACTOR)
        reconstruction = reconstruction.replace(smoothing_factor=reconstruction.smoothing_factor * ADAPT_FACTOR)
    if m.feature_preservation < thresholds.minimum_feature_preservation:
        processing = processing.replace(feature_weight=min(processing.feature_weight * ADAPT_FACTOR, 1.0))
        reconstruction = reconstruction.replace(point_weight=reconstruction.point_weight * ADAPT_FACTOR)
    return reconstruction, processing


class ReconstructionPipeline:
    """Run the full reconstruction with a bounded quality retry.

    Args:
        reconstruction: Octree and system parameters.
        processing: Preprocessing and quality-analysis parameters.
        solver: Conjugate gradient settings.
        thresholds: Quality acceptance thresholds.
        mvs_options: Stereo settings, used when views are passed to :meth:`run`.
        max_retries: Re-runs allowed after a failed quality check.
        metrics_cache: Cache to record metrics into. If None the pipeline
            creates one and closes it in :meth:`close`.
        device: Warp device for computation.
        verbose: Print progress information.
    """

    def __init__(
        self,
        reconstruction: ReconstructionParameters | None = None,
        processing: ProcessingParameters | None = None,
        solver: SolverConfig | None = None,
        thresholds: QualityThresholds | None = None,
        mvs_options: MVSOptions | None = None,
        max_retries: int = 1,
        metrics_cache: MetricsCache | None = None,
        device: str | None = None,
        verbose: bool = False,
    ):
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {max_retries}")

        self.reconstruction = reconstruction if reconstruction is not None else ReconstructionParameters()
        self.processing = processing if processing is not None else ProcessingParameters()
        self.solver_config = solver if solver is not None else SolverConfig()
        self.thresholds = thresholds if thresholds is not None else QualityThresholds()
        self.mvs_options = mvs_options if mvs_options is not None else MVSOptions()
        self.max_retries = max_retries
        self.device = device
        self.verbose = verbose

        self._owns_cache = metrics_cache is None
        self.metrics_cache = metrics_cache if metrics_cache is not None else MetricsCache()

        try:
            wp.get_device(device)
        except (RuntimeError, ValueError) as e:
            raise InitializationFailed(f"Warp device {device!r} is not available: {e}") from e

        self.preprocessor = PointCloudPreprocessor(device=device)
        self.builder = PoissonSystemBuilder(device=device)
        self.solver = ConjugateGradientSolver(self.solver_config, device=device)
        self.extractor = MarchingCubesExtractor(device=device)
        self.analyzer = MeshQualityAnalyzer(self.processing, device=device)

    def close(self):
        if self._owns_cache:
            self.metrics_cache.close()

    def __enter__(self) -> ReconstructionPipeline:
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _log(self, message: str, *args):
        logger.info(message, *args)
        if self.verbose:
            print(message % args)

    @staticmethod
    def _check_cancelled(cancel_event: threading.Event | None, stage: str):
        if cancel_event is not None and cancel_event.is_set():
            raise ReconstructionCancelled(f"reconstruction cancelled before stage '{stage}'")

    def run(
        self,
        points: OrientedPointCloud,
        views: Sequence[CameraView] | None = None,
        sparse_cloud: SparseCloud | None = None,
        initial_depth_maps: Sequence[DepthMap | None] | None = None,
        cancel_event: threading.Event | None = None,
        artifact_id: str = "reconstruction",
        validate: bool = True,
    ) -> ReconstructionResult:
        """Reconstruct a mesh from ``points`` (and optional stereo views).

        Args:
            points: Samples, e.g. from a depth sensor. Samples without a normal
                get one estimated from their neighborhood when it is planar enough.
            views: Calibrated images; when given, stereo points are fused in.
            sparse_cloud: Seeds stereo depth for views without a depth map.
            initial_depth_maps: Stereo depth initialization per view.
            cancel_event: Checked between stages and kernel dispatches.
            artifact_id: Key for the metrics recorded in the cache.
            validate: Compute the concurrent validation metrics at the end.

        Raises:
            InvalidInput: If ``points`` is malformed.
            InsufficientData: If too few oriented samples survive preprocessing.
            SurfaceExtractionFailed: If the solved field has no surface.
            InitializationFailed: If stereo cannot start.
            ReconstructionCancelled: If ``cancel_event`` is set.
        """
        self._check_cancelled(cancel_event, "validate")
        points = self.validate_input(points)
        should_cancel = cancel_event.is_set if cancel_event is not None else None

        mvs_result = None
        mvs_seconds = {}
        if views is not None:
            self._check_cancelled(cancel_event, "mvs")
            with wp.ScopedTimer("mvs", print=False, synchronize=True) as timer:
                fuser = PatchMatchFuser(self.mvs_options, device=self.device)
                mvs_result = fuser.process(
                    sparse_cloud, views, initial_depth_maps, should_cancel=should_cancel, verbose=self.verbose
                )
            mvs_seconds["mvs"] = timer.elapsed / 1000.0
            self._log(
                "Stereo fused %d points in %d steps (converged=%s)",
                mvs_result.points.num_points,
                mvs_result.iterations,
                mvs_result.converged,
            )

        reconstruction = self.reconstruction
        processing = self.processing
        solver_results = []
        attempt = 0
        while True:
            attempt += 1
            self._log("Reconstruction attempt %d (depth=%d)", attempt, reconstruction.depth)
            processed, mesh, report, solver_result, stage_seconds, density = self._run_once(
                points, mvs_result, reconstruction, processing, cancel_event
            )
            solver_results.append(solver_result)
            self._record(artifact_id, attempt, report, solver_result, stage_seconds)

            issues = self.analyzer.validate(report, self.thresholds)
            failing = [i for i in issues if i.kind != IssueType.SOLVER_NON_CONVERGENCE]
            if not failing or attempt > self.max_retries:
                break
            self._log("Quality check failed (%s), adapting parameters", ", ".join(i.kind.value for i in failing))
            reconstruction, processing = adapt_parameters(report, reconstruction, processing, self.thresholds)

        validation = None
        if validate:
            self._check_cancelled(cancel_event, "validation")
            validation = validate_reconstruction(
                processed, mesh, processing, {**mvs_seconds, **stage_seconds}, device=self.device
            )

        return ReconstructionResult(
            mesh=mesh,
            report=report,
            issues=issues,
            attempts=attempt,
            parameters=reconstruction,
            processing=processing,
            solver_results=solver_results,
            stage_seconds={**mvs_seconds, **stage_seconds},
            point_density=density,
            validation=validation,
            mvs=mvs_result,
        )

    @staticmethod
    def validate_input(points) -> OrientedPointCloud:
        """Coerce ``points`` to an :class:`OrientedPointCloud`, raising ``InvalidInput`` early.

        Accepts a cloud or a ``(positions, normals[, confidence])`` tuple.
        """
        if isinstance(points, OrientedPointCloud):
            return points
        return OrientedPointCloud(*points)

    def _run_once(
        self,
        points: OrientedPointCloud,
        mvs_result: MVSResult | None,
        params: ReconstructionParameters,
        processing: ProcessingParameters,
        cancel_event: threading.Event | None,
    ):
        stage_seconds = {}
        should_cancel = cancel_event.is_set if cancel_event is not None else None

        def stage(name):
            self._check_cancelled(cancel_event, name)
            return wp.ScopedTimer(name, print=False, synchronize=True)

        radius = processing.neighborhood_radius
        with stage("preprocess") as timer:
            processed = self.preprocessor.filter_by_confidence(points, processing.confidence_threshold)
            processed = self.preprocessor.denoise(processed, radius, processing.spatial_sigma, processing.range_sigma)
            if mvs_result is not None and mvs_result.points.num_points > 0:
                processed = self.preprocessor.merge_multi_modal(
                    processed, mvs_result.points, radius, keep_unmatched_secondary=True
                )
            processed = self.preprocessor.estimate_normals(processed, radius, processing.normal_planarity)
            density = self.preprocessor.estimate_density(processed, radius)
        stage_seconds["preprocess"] = timer.elapsed / 1000.0
        stats = self.preprocessor.compute_statistics(processed, density)
        self._log("Preprocessed %d points (mean density %.1f)", stats.point_count, stats.mean_density)

        with stage("index") as timer:
            octree = Octree.build(
                processed.positions,
                max_depth=params.depth,
                leaf_capacity=params.samples_per_node,
                scale=params.scale,
                support_radius=params.support_radius,
                device=self.device,
            )
        stage_seconds["index"] = timer.elapsed / 1000.0

        with stage("assemble") as timer:
            matrix, rhs = self.builder.build(processed, octree, params)
        stage_seconds["assemble"] = timer.elapsed / 1000.0

        with stage("solve") as timer:
            solution = self.solver.solve(matrix, rhs, should_cancel=should_cancel)
        stage_seconds["solve"] = timer.elapsed / 1000.0
        self._log(
            "Solver %s after %d iterations (residual %.2e)",
            solution.status.value,
            solution.iterations,
            solution.residual,
        )
        del matrix, rhs

        with stage("extract") as timer:
            field_values = octree.evaluate_field(solution.x)
            oriented = processed.positions[processed.normal_mask]
            iso_level = float(np.mean(octree.evaluate_at(solution.x, oriented)))
            h = octree.lattice_spacing
            mesh = self.extractor.extract(
                field_values,
                grid_size=octree.lattice_size,
                iso_level=iso_level,
                origin=octree.origin + 0.5 * h,
                spacing=h,
            )
        stage_seconds["extract"] = timer.elapsed / 1000.0
        self._log("Extracted %d vertices, %d triangles", mesh.num_vertices, mesh.num_triangles)

        with stage("analyze") as timer:
            report = self.analyzer.analyze(mesh, processing, degraded=not solution.converged)
        stage_seconds["analyze"] = timer.elapsed / 1000.0

        mean_density = float(np.mean(density)) if len(density) else 0.0
        return processed, mesh, report, solution, stage_seconds, mean_density

    def _record(self, artifact_id, attempt, report, solver_result, stage_seconds):
        m = report.metrics
        self.metrics_cache.record_many(
            artifact_id,
            {
                "attempt": attempt,
                "point_density": m.point_density,
                "surface_completeness": m.surface_completeness,
                "noise_level": m.noise_level,
                "feature_preservation": m.feature_preservation,
                "average_quality": report.average_quality,
                "solver_status": solver_result.status.value,
                "solver_iterations": solver_result.iterations,
                "stage_seconds": dict(stage_seconds),
            },
        )
