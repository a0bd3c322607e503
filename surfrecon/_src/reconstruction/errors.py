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

"""Exceptions and warnings raised by the reconstruction pipeline.

Fatal conditions derive from :class:`ReconstructionError` and also from the
builtin exception a caller would expect (``ValueError`` for bad data,
``RuntimeError`` for backend problems), so generic handlers keep working.
Solver non-convergence is not fatal: it is reported as a :class:`NonConvergence`
warning and the approximate solution is still returned.
"""

import enum


class ReconstructionError(Exception):
    """Base class for reconstruction failures."""


class InitializationFailed(ReconstructionError, RuntimeError):
    """A compute backend or processing resource could not be set up."""


class InsufficientData(ReconstructionError, ValueError):
    """Too few usable points or normals remain to build the system."""


class InvalidInput(ReconstructionError, ValueError):
    """Input arrays are malformed: mismatched lengths, NaN/inf, bad indices."""


class SurfaceExtractionFailed(ReconstructionError, RuntimeError):
    """The scalar field is degenerate or produced no surface."""


class ReconstructionCancelled(ReconstructionError):
    """The caller cancelled the run between two kernel dispatches."""


class ReconstructionWarning(UserWarning):
    """Base class for non-fatal reconstruction diagnostics."""


class NonConvergence(ReconstructionWarning):
    """The iterative solver stopped before reaching its tolerance."""


class Severity(enum.Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


_SEVERITIES = (
    (ReconstructionCancelled, Severity.WARNING),
    (InsufficientData, Severity.ERROR),
    (InvalidInput, Severity.ERROR),
    (SurfaceExtractionFailed, Severity.ERROR),
    (InitializationFailed, Severity.CRITICAL),
)


def severity(error: BaseException) -> Severity:
    """Classify an error for callers that present recovery options.

    Data problems are recoverable by recapturing or relaxing parameters
    (``ERROR``); backend failures are not (``CRITICAL``). Unknown exceptions are
    treated as critical.
    """
    if isinstance(error, ReconstructionWarning):
        return Severity.WARNING
    for cls, level in _SEVERITIES:
        if isinstance(error, cls):
            return level
    return Severity.CRITICAL
