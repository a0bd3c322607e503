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

"""
Tests for the conjugate gradient solver.

This test suite validates:
1. Agreement with a dense direct solve, with and without preconditioning
2. Zero right-hand side and warm starts
3. Breakdown on an indefinite matrix returns the best iterate
4. Iteration limits emit a NonConvergence warning
5. Cancellation and invalid input
6. The default configuration converges on an assembled Poisson system
7. Divergence is judged against the best residual, not single increases
"""

import unittest
import warnings

import numpy as np
import warp as wp

from surfrecon.reconstruction import (
    ConjugateGradientSolver,
    InvalidInput,
    NonConvergence,
    Octree,
    OrientedPointCloud,
    PoissonSystemBuilder,
    ReconstructionCancelled,
    ReconstructionParameters,
    SolverConfig,
    SolverStatus,
    SparseMatrix,
)
from surfrecon._src.reconstruction.solver import _ResidualMonitor


def create_sphere_cloud(count, radius=1.0):
    """Fibonacci sphere with outward normals."""
    i = np.arange(count) + 0.5
    phi = np.arccos(1.0 - 2.0 * i / count)
    theta = np.pi * (1.0 + 5.0**0.5) * i
    normals = np.stack([np.cos(theta) * np.sin(phi), np.sin(theta) * np.sin(phi), np.cos(phi)], axis=1)
    return OrientedPointCloud(radius * normals, normals)


def create_spd_matrix(n, seed=0):
    """Random sparse symmetric positive definite matrix in triplet form."""
    rng = np.random.default_rng(seed)
    dense = np.zeros((n, n))
    for _ in range(3 * n):
        i, j = rng.integers(0, n, size=2)
        value = rng.uniform(-1.0, 1.0)
        dense[i, j] += value
        dense[j, i] += value
    dense += np.diag(np.abs(dense).sum(axis=1) + rng.uniform(1.0, 10.0, size=n))
    rows, cols = np.nonzero(dense)
    return SparseMatrix(n, rows.astype(np.int32), cols.astype(np.int32), dense[rows, cols]), dense


class TestConjugateGradient(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_matches_direct_solve(self):
        matrix, dense = create_spd_matrix(60)
        b = np.random.default_rng(1).normal(size=60)
        expected = np.linalg.solve(dense, b)

        for use_preconditioner in (True, False):
            solver = ConjugateGradientSolver(
                SolverConfig(tolerance=1e-10, use_preconditioner=use_preconditioner), device="cpu"
            )
            result = solver.solve(matrix, b)
            self.assertEqual(result.status, SolverStatus.CONVERGED)
            self.assertTrue(result.converged)
            self.assertLess(result.residual, 1e-10)
            np.testing.assert_allclose(result.x, expected, atol=1e-5)

    def test_duplicate_triplets(self):
        matrix = SparseMatrix(
            2,
            np.array([0, 0, 1, 1], dtype=np.int32),
            np.array([0, 0, 1, 1], dtype=np.int32),
            np.array([1.0, 1.0, 2.0, 2.0]),
        )
        result = ConjugateGradientSolver(device="cpu").solve(matrix, [2.0, 8.0])
        np.testing.assert_allclose(result.x, [1.0, 2.0], atol=1e-6)

    def test_zero_rhs(self):
        matrix, _ = create_spd_matrix(10)
        result = ConjugateGradientSolver(device="cpu").solve(matrix, np.zeros(10))
        self.assertEqual(result.status, SolverStatus.CONVERGED)
        self.assertEqual(result.iterations, 0)
        np.testing.assert_array_equal(result.x, np.zeros(10))

    def test_warm_start_at_solution(self):
        matrix, dense = create_spd_matrix(20)
        b = np.ones(20)
        x0 = np.linalg.solve(dense, b)
        result = ConjugateGradientSolver(SolverConfig(tolerance=1e-6), device="cpu").solve(matrix, b, x0=x0)
        self.assertEqual(result.iterations, 0)
        self.assertTrue(result.converged)

    def test_indefinite_matrix_breaks_down(self):
        matrix = SparseMatrix(
            2,
            np.array([0, 1], dtype=np.int32),
            np.array([0, 1], dtype=np.int32),
            np.array([1.0, -1.0]),
        )
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = ConjugateGradientSolver(device="cpu").solve(matrix, [1.0, 1.0])

        self.assertEqual(result.status, SolverStatus.DIVERGED)
        self.assertEqual(result.iterations, 1)
        self.assertAlmostEqual(result.residual, 1.0)
        np.testing.assert_array_equal(result.x, [0.0, 0.0])
        self.assertTrue(any(issubclass(w.category, NonConvergence) for w in caught))

    def test_iteration_limit_warns(self):
        matrix, _ = create_spd_matrix(50)
        b = np.random.default_rng(2).normal(size=50)
        solver = ConjugateGradientSolver(SolverConfig(use_preconditioner=False), device="cpu")
        with self.assertWarns(NonConvergence):
            result = solver.solve(matrix, b, max_iterations=2, tolerance=1e-14)
        self.assertEqual(result.status, SolverStatus.MAX_ITERATIONS)
        self.assertEqual(result.iterations, 2)
        self.assertFalse(result.converged)
        self.assertLess(result.residual, 1.0)

    def test_cancellation(self):
        matrix, _ = create_spd_matrix(10)
        with self.assertRaises(ReconstructionCancelled):
            ConjugateGradientSolver(device="cpu").solve(matrix, np.ones(10), should_cancel=lambda: True)

    def test_invalid_rhs(self):
        matrix, _ = create_spd_matrix(4)
        solver = ConjugateGradientSolver(device="cpu")
        with self.assertRaises(InvalidInput):
            solver.solve(matrix, np.ones(5))
        with self.assertRaises(InvalidInput):
            solver.solve(matrix, [1.0, np.nan, 0.0, 0.0])

    def test_invalid_initial_guess(self):
        matrix, _ = create_spd_matrix(4)
        solver = ConjugateGradientSolver(device="cpu")
        with self.assertRaises(InvalidInput):
            solver.solve(matrix, np.ones(4), x0=np.zeros(3))
        with self.assertRaises(InvalidInput):
            solver.solve(matrix, np.ones(4), x0=[0.0, np.inf, 0.0, 0.0])


class TestPoissonSystemSolve(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        wp.init()

    def test_default_solver_converges_on_sphere_system(self):
        cloud = create_sphere_cloud(1000)
        params = ReconstructionParameters(depth=6)
        tree = Octree.build(
            cloud.positions, max_depth=params.depth, support_radius=params.support_radius, device="cpu"
        )
        matrix, b = PoissonSystemBuilder(device="cpu").build(cloud, tree, params)

        with warnings.catch_warnings():
            warnings.simplefilter("error", NonConvergence)
            result = ConjugateGradientSolver(device="cpu").solve(matrix, b)

        self.assertEqual(result.status, SolverStatus.CONVERGED)
        self.assertLess(result.residual, SolverConfig().tolerance)


class TestResidualMonitor(unittest.TestCase):
    def test_tracks_best_residual(self):
        monitor = _ResidualMonitor(window=3)
        self.assertTrue(monitor.update(1.0))
        self.assertTrue(monitor.update(0.5))
        self.assertFalse(monitor.update(0.6))
        self.assertEqual(monitor.best, 0.5)

    def test_oscillation_is_not_divergence(self):
        monitor = _ResidualMonitor(window=3, growth=10.0)
        monitor.update(1.0)
        monitor.update(0.1)
        # Non-monotone but bounded residuals, as preconditioned CG produces
        for residual in (0.2, 0.4, 0.8, 0.9, 0.95, 0.5, 0.7):
            monitor.update(residual)
        self.assertFalse(monitor.diverged)
        self.assertEqual(monitor.best, 0.1)

    def test_sustained_blow_up(self):
        monitor = _ResidualMonitor(window=3, growth=10.0)
        monitor.update(0.1)
        monitor.update(2.0)
        monitor.update(3.0)
        self.assertFalse(monitor.diverged)
        monitor.update(4.0)
        self.assertTrue(monitor.diverged)

    def test_return_below_growth_resets_count(self):
        monitor = _ResidualMonitor(window=2, growth=10.0)
        monitor.update(0.1)
        monitor.update(2.0)
        monitor.update(0.5)
        monitor.update(2.0)
        self.assertFalse(monitor.diverged)

    def test_non_finite_residual(self):
        monitor = _ResidualMonitor(window=4)
        monitor.update(1.0)
        self.assertFalse(monitor.update(float("nan")))
        self.assertTrue(monitor.diverged)


if __name__ == "__main__":
    unittest.main(verbosity=2)
