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

"""ASV benchmarks for assembling and solving the Poisson system.

The scene is a Fibonacci sphere with outward normals. Octree depth sets the
lattice resolution, so the system grows as (2**depth)**3 unknowns.
Assembly and the conjugate gradient solve are timed separately.
"""

import statistics
import warnings

import numpy as np
import warp as wp

wp.config.quiet = True

from surfrecon.reconstruction import (
    ConjugateGradientSolver,
    NonConvergence,
    Octree,
    OrientedPointCloud,
    PoissonSystemBuilder,
    ReconstructionParameters,
    SolverConfig,
)


def build_sphere_cloud(count: int, radius: float = 1.0) -> OrientedPointCloud:
    i = np.arange(count) + 0.5
    phi = np.arccos(1.0 - 2.0 * i / count)
    theta = np.pi * (1.0 + 5.0**0.5) * i
    normals = np.stack([np.cos(theta) * np.sin(phi), np.sin(theta) * np.sin(phi), np.cos(phi)], axis=1)
    return OrientedPointCloud(radius * normals, normals)


class PoissonSolve:
    """Time system assembly and CG solve against octree depth."""

    repeat = 3
    number = 1
    timeout = 600
    timed_iterations = 3
    params = [
        [4, 5, 6],  # depth
        [True, False],  # preconditioner
    ]
    param_names = ["depth", "preconditioner"]

    def setup(self, depth, preconditioner):
        wp.init()
        self.device = wp.get_device()
        self.cloud = build_sphere_cloud(4000)
        self.params = ReconstructionParameters(depth=depth)
        self.octree = Octree.build(
            self.cloud.positions,
            max_depth=depth,
            scale=self.params.scale,
            support_radius=self.params.support_radius,
            device=self.device,
        )
        self.builder = PoissonSystemBuilder(device=self.device)
        self.matrix, self.b = self.builder.build(self.cloud, self.octree, self.params)

        config = SolverConfig(use_preconditioner=preconditioner)
        self.solver = ConjugateGradientSolver(config, device=self.device)
        wp.synchronize()

    def _solve(self):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NonConvergence)
            return self.solver.solve(self.matrix, self.b)

    def time_assemble(self, depth, preconditioner):
        samples = []
        for _ in range(self.timed_iterations):
            with wp.ScopedTimer("assemble", synchronize=True, print=False) as timer:
                self.builder.build(self.cloud, self.octree, self.params)
            samples.append(timer.elapsed)
        return statistics.median(samples)

    def time_solve(self, depth, preconditioner):
        samples = []
        for _ in range(self.timed_iterations):
            with wp.ScopedTimer("solve", synchronize=True, print=False) as timer:
                self._solve()
            samples.append(timer.elapsed)
        return statistics.median(samples)

    def track_iterations(self, depth, preconditioner):
        return self._solve().iterations

    def track_unknowns(self, depth, preconditioner):
        return self.matrix.num_rows

    def track_nonzeros(self, depth, preconditioner):
        return self.matrix.nnz
