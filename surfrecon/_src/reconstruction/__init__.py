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

from .config import (
    MAX_DEPTH,
    MAX_RECONSTRUCTION_DEPTH,
    MIN_USABLE_POINTS,
    MVSOptions,
    ProcessingParameters,
    QualityThresholds,
    ReconstructionParameters,
    SolverConfig,
)
from .errors import (
    InitializationFailed,
    InsufficientData,
    InvalidInput,
    NonConvergence,
    ReconstructionCancelled,
    ReconstructionError,
    ReconstructionWarning,
    Severity,
    SurfaceExtractionFailed,
    severity,
)
from .marching_cubes import MarchingCubesExtractor
from .metrics_cache import MetricsCache, MetricsEntry
from .mvs import CameraView, DepthMap, MVSResult, PatchMatchFuser, SparseCloud
from .octree import Octree
from .pipeline import ReconstructionPipeline, ReconstructionResult, adapt_parameters
from .poisson import PoissonSystemBuilder, SparseMatrix
from .preprocess import PointCloudPreprocessor, PointCloudStatistics
from .quality import (
    IssueType,
    LocalQualityMetrics,
    MeshQualityAnalyzer,
    QualityIssue,
    QualityReport,
    QualityTrend,
)
from .solver import ConjugateGradientSolver, SolverResult, SolverStatus
from .types import Mesh, OrientedPointCloud, QualityMetrics
from .validation import ValidationReport, validate_reconstruction
