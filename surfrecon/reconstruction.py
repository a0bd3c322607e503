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

from ._src.reconstruction import (
    MAX_DEPTH,
    MAX_RECONSTRUCTION_DEPTH,
    CameraView,
    ConjugateGradientSolver,
    DepthMap,
    InitializationFailed,
    InsufficientData,
    InvalidInput,
    IssueType,
    LocalQualityMetrics,
    MarchingCubesExtractor,
    Mesh,
    MeshQualityAnalyzer,
    MetricsCache,
    MVSOptions,
    MVSResult,
    NonConvergence,
    Octree,
    OrientedPointCloud,
    PatchMatchFuser,
    PointCloudPreprocessor,
    PoissonSystemBuilder,
    ProcessingParameters,
    QualityIssue,
    QualityMetrics,
    QualityReport,
    QualityThresholds,
    QualityTrend,
    ReconstructionCancelled,
    ReconstructionError,
    ReconstructionParameters,
    ReconstructionPipeline,
    ReconstructionResult,
    ReconstructionWarning,
    Severity,
    SolverConfig,
    SolverResult,
    SolverStatus,
    SparseCloud,
    SparseMatrix,
    SurfaceExtractionFailed,
    ValidationReport,
    adapt_parameters,
    severity,
    validate_reconstruction,
)

__all__ = [
    "MAX_DEPTH",
    "MAX_RECONSTRUCTION_DEPTH",
    "CameraView",
    "ConjugateGradientSolver",
    "DepthMap",
    "InitializationFailed",
    "InsufficientData",
    "InvalidInput",
    "IssueType",
    "LocalQualityMetrics",
    "MVSOptions",
    "MVSResult",
    "MarchingCubesExtractor",
    "Mesh",
    "MeshQualityAnalyzer",
    "MetricsCache",
    "NonConvergence",
    "Octree",
    "OrientedPointCloud",
    "PatchMatchFuser",
    "PointCloudPreprocessor",
    "PoissonSystemBuilder",
    "ProcessingParameters",
    "QualityIssue",
    "QualityMetrics",
    "QualityReport",
    "QualityThresholds",
    "QualityTrend",
    "ReconstructionCancelled",
    "ReconstructionError",
    "ReconstructionParameters",
    "ReconstructionPipeline",
    "ReconstructionResult",
    "ReconstructionWarning",
    "Severity",
    "SolverConfig",
    "SolverResult",
    "SolverStatus",
    "SparseCloud",
    "SparseMatrix",
    "SurfaceExtractionFailed",
    "ValidationReport",
    "adapt_parameters",
    "severity",
    "validate_reconstruction",
]
