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

"""Preconditioned conjugate gradient on Warp kernels.

All vectors live on the device in float64. Each iteration launches a CSR
mat-vec (one thread per row), two reductions through ``wp.atomic_add`` into a
single-element array, and elementwise updates; the host only reads back the
scalars that drive the iteration.
"""

from __future__ import annotations

import enum
import logging
import math
import warnings
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
import warp as wp

from .config import SolverConfig
from .errors import InvalidInput, NonConvergence, ReconstructionCancelled
from .poisson import SparseMatrix

logger = logging.getLogger(__name__)


@wp.kernel
def _csr_matvec_kernel(
    row_ptr: wp.array(dtype=wp.int32),
    cols: wp.array(dtype=wp.int32),
    values: wp.array(dtype=wp.float64),
    x: wp.array(dtype=wp.float64),
    y: wp.array(dtype=wp.float64),
):
    row = wp.tid()
    total = wp.float64(0.0)
    for k in range(row_ptr[row], row_ptr[row + 1]):
        total += values[k] * x[cols[k]]
    y[row] = total


@wp.kernel
def _dot_kernel(
    a: wp.array(dtype=wp.float64),
    b: wp.array(dtype=wp.float64),
    out: wp.array(dtype=wp.float64),
):
    tid = wp.tid()
    wp.atomic_add(out, 0, a[tid] * b[tid])


@wp.kernel
def _update_solution_kernel(
    alpha: wp.float64,
    p: wp.array(dtype=wp.float64),
    ap: wp.array(dtype=wp.float64),
    x: wp.array(dtype=wp.float64),
    r: wp.array(dtype=wp.float64),
):
    tid = wp.tid()
    x[tid] = x[tid] + alpha * p[tid]
    r[tid] = r[tid] - alpha * ap[tid]


@wp.kernel
def _update_direction_kernel(
    beta: wp.float64,
    z: wp.array(dtype=wp.float64),
    p: wp.array(dtype=wp.float64),
):
    tid = wp.tid()
    p[tid] = z[tid] + beta * p[tid]


@wp.kernel
def _apply_jacobi_kernel(
    inv_diagonal: wp.array(dtype=wp.float64),
    r: wp.array(dtype=wp.float64),
    z: wp.array(dtype=wp.float64),
):
    tid = wp.tid()
    z[tid] = inv_diagonal[tid] * r[tid]


class SolverStatus(enum.Enum):
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    DIVERGED = "diverged"


@dataclass
class SolverResult:
    """Outcome of :meth:`ConjugateGradientSolver.solve`.

    Attributes:
        x: (n,) float64 solution. For a diverged run, the iterate with the
            lowest residual.
        iterations: Iterations performed.
        residual: Relative residual ``|b - A x| / |b|`` of ``x``.
        status: Why the iteration stopped.
    """

    x: np.ndarray
    iterations: int
    residual: float
    status: SolverStatus

    @property
    def converged(self) -> bool:
        return self.status == SolverStatus.CONVERGED


class _ResidualMonitor:
    """Track the lowest residual and detect a sustained blow-up.

    The 2-norm residual of preconditioned CG is not monotone, so a run only
    counts as diverging while the residual stays above ``growth`` times the
    best value seen, for ``window`` consecutive updates. A non-finite residual
    diverges immediately.
    """

    def __init__(self, window: int, growth: float = 100.0):
        self.window = window
        self.growth = growth
        self.best = math.inf
        self.excursions = 0

    def update(self, residual: float) -> bool:
        """Record a residual. Returns True if it is the lowest seen so far."""
        if not math.isfinite(residual):
            self.excursions = self.window
            return False
        if residual < self.best:
            self.best = residual
            self.excursions = 0
            return True
        if residual > self.growth * self.best:
            self.excursions += 1
        else:
            self.excursions = 0
        return False

    @property
    def diverged(self) -> bool:
        return self.excursions >= self.window


class ConjugateGradientSolver:
    """Solve symmetric positive definite systems with (Jacobi-preconditioned) CG.

    Args:
        config: Iteration limits and preconditioning.
        device: Warp device for computation.
    """

    def __init__(self, config: SolverConfig | None = None, device: str | None = None):
        self.config = config if config is not None else SolverConfig()
        self.device = device

    def _dot(self, a: wp.array, b: wp.array, out: wp.array) -> float:
        out.zero_()
        wp.launch(_dot_kernel, dim=a.shape[0], inputs=[a, b, out], device=self.device)
        return float(out.numpy()[0])

    def solve(
        self,
        matrix: SparseMatrix,
        b: np.ndarray,
        max_iterations: int | None = None,
        tolerance: float | None = None,
        x0: np.ndarray | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> SolverResult:
        """Run CG on ``matrix @ x = b``.

        Stops when the relative residual drops below ``tolerance`` or after
        ``max_iterations``. If the residual stays above ``divergence_growth``
        times its best value for ``divergence_window`` consecutive iterations,
        turns non-finite, or the curvature ``p^T A p`` stops being
        positive, the iteration is abandoned and the best iterate so far is
        returned with status ``DIVERGED``. Both non-converged outcomes emit a
        :class:`NonConvergence` warning.

        Args:
            matrix: System matrix.
            b: Right-hand side.
            max_iterations: Overrides ``config.max_iterations``.
            tolerance: Overrides ``config.tolerance``.
            x0: Initial guess. Defaults to zero.
            should_cancel: Polled between iterations; returning True raises
                :class:`ReconstructionCancelled`.
        """
        cfg = self.config
        max_iterations = cfg.max_iterations if max_iterations is None else max_iterations
        tolerance = cfg.tolerance if tolerance is None else tolerance
        device = self.device

        n = matrix.num_rows
        b = np.asarray(b, dtype=np.float64).reshape(-1)
        if len(b) != n:
            raise InvalidInput(f"right-hand side has length {len(b)}, expected {n}")
        if not np.all(np.isfinite(b)):
            raise InvalidInput("right-hand side contains NaN or inf")

        b_norm = float(np.linalg.norm(b))
        if b_norm == 0.0:
            return SolverResult(np.zeros(n), 0, 0.0, SolverStatus.CONVERGED)

        row_ptr, cols, values = matrix.to_csr()
        wp_row_ptr = wp.array(row_ptr, dtype=wp.int32, device=device)
        wp_cols = wp.array(cols, dtype=wp.int32, device=device)
        wp_values = wp.array(values, dtype=wp.float64, device=device)

        diagonal = matrix.diagonal()
        inv_diagonal = np.ones(n, dtype=np.float64)
        if cfg.use_preconditioner:
            positive = diagonal > 0.0
            inv_diagonal[positive] = 1.0 / diagonal[positive]
        wp_inv_diagonal = wp.array(inv_diagonal, dtype=wp.float64, device=device)

        x_init = np.zeros(n) if x0 is None else np.asarray(x0, dtype=np.float64).reshape(-1)
        if len(x_init) != n:
            raise InvalidInput(f"initial guess has length {len(x_init)}, expected {n}")
        if not np.all(np.isfinite(x_init)):
            raise InvalidInput("initial guess contains NaN or inf")
        x = wp.array(x_init, dtype=wp.float64, device=device)
        best_x = wp.clone(x)
        ap = wp.zeros(n, dtype=wp.float64, device=device)
        scalar = wp.zeros(1, dtype=wp.float64, device=device)

        # r = b - A x0
        wp.launch(_csr_matvec_kernel, dim=n, inputs=[wp_row_ptr, wp_cols, wp_values, x, ap], device=device)
        r = wp.array(b - ap.numpy(), dtype=wp.float64, device=device)
        z = wp.zeros(n, dtype=wp.float64, device=device)
        wp.launch(_apply_jacobi_kernel, dim=n, inputs=[wp_inv_diagonal, r, z], device=device)
        p = wp.clone(z)
        rz = self._dot(r, z, scalar)

        monitor = _ResidualMonitor(cfg.divergence_window, cfg.divergence_growth)
        residual = math.sqrt(max(self._dot(r, r, scalar), 0.0)) / b_norm
        monitor.update(residual)
        if residual < tolerance:
            return SolverResult(x.numpy(), 0, residual, SolverStatus.CONVERGED)

        status = SolverStatus.MAX_ITERATIONS
        iterations = 0
        for iteration in range(1, max_iterations + 1):
            if should_cancel is not None and should_cancel():
                raise ReconstructionCancelled(f"solver cancelled at iteration {iteration}")
            iterations = iteration

            wp.launch(_csr_matvec_kernel, dim=n, inputs=[wp_row_ptr, wp_cols, wp_values, p, ap], device=device)
            p_ap = self._dot(p, ap, scalar)
            if not (math.isfinite(p_ap) and p_ap > 0.0):
                logger.debug("CG breakdown at iteration %d: p^T A p = %g", iteration, p_ap)
                status = SolverStatus.DIVERGED
                break

            alpha = rz / p_ap
            wp.launch(_update_solution_kernel, dim=n, inputs=[wp.float64(alpha), p, ap, x, r], device=device)
            residual = math.sqrt(max(self._dot(r, r, scalar), 0.0)) / b_norm
            if monitor.update(residual):
                wp.copy(best_x, x)

            if residual < tolerance:
                status = SolverStatus.CONVERGED
                break
            if monitor.diverged:
                logger.debug("CG residual blew up over %d iterations, aborting at %d", cfg.divergence_window, iteration)
                status = SolverStatus.DIVERGED
                break

            wp.launch(_apply_jacobi_kernel, dim=n, inputs=[wp_inv_diagonal, r, z], device=device)
            rz_new = self._dot(r, z, scalar)
            beta = rz_new / rz
            rz = rz_new
            wp.launch(_update_direction_kernel, dim=n, inputs=[wp.float64(beta), z, p], device=device)

        if status == SolverStatus.CONVERGED:
            return SolverResult(x.numpy(), iterations, residual, status)

        if status == SolverStatus.DIVERGED:
            result = SolverResult(best_x.numpy(), iterations, monitor.best, status)
        else:
            result = SolverResult(x.numpy(), iterations, residual, status)
        warnings.warn(
            f"Conjugate gradient stopped without converging ({status.value}) after {iterations} iterations, "
            f"relative residual {result.residual:.3e} > tolerance {tolerance:.1e}",
            NonConvergence,
            stacklevel=2,
        )
        return result
