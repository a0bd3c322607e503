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

"""ASV benchmarks for surface extraction and the end-to-end pipeline.

Marching cubes runs on an analytic sphere distance field so the timing
excludes the solve. The pipeline benchmark reconstructs a sampled sphere
with the retry disabled.
"""

import statistics
import warnings

import numpy as np
import warp as wp

wp.config.quiet = True

from surfrecon.reconstruction import (
    MarchingCubesExtractor,
    NonConvergence,
    OrientedPointCloud,
    ReconstructionParameters,
    ReconstructionPipeline,
)


def build_sphere_field(grid_size: int, radius: float = 0.6):
    """Signed distance to a sphere sampled on [-1, 1]^3."""
    axis = np.linspace(-1.0, 1.0, grid_size)
    x, y, z = np.meshgrid(axis, axis, axis, indexing="ij")
    field = np.sqrt(x**2 + y**2 + z**2) - radius
    spacing = 2.0 / (grid_size - 1)
    return field.astype(np.float32), (-1.0, -1.0, -1.0), spacing


class MarchingCubesExtraction:
    repeat = 5
    number = 1
    timeout = 300
    timed_iterations = 5
    params = [[32, 64, 128]]
    param_names = ["grid_size"]

    def setup(self, grid_size):
        wp.init()
        self.extractor = MarchingCubesExtractor(device=wp.get_device())
        self.field, self.origin, self.spacing = build_sphere_field(grid_size)
        # Warmup compiles the kernels
        self.extractor.extract(self.field, origin=self.origin, spacing=self.spacing)
        wp.synchronize()

    def time_extract(self, grid_size):
        samples = []
        for _ in range(self.timed_iterations):
            with wp.ScopedTimer("extract", synchronize=True, print=False) as timer:
                self.extractor.extract(self.field, origin=self.origin, spacing=self.spacing)
            samples.append(timer.elapsed)
        return statistics.median(samples)

    def track_triangles(self, grid_size):
        return self.extractor.extract(self.field, origin=self.origin, spacing=self.spacing).num_triangles


class PipelineSphere:
    """Time a full reconstruction of a sampled unit sphere."""

    repeat = 3
    number = 1
    timeout = 900
    params = [[4000, 16000], [5, 6]]
    param_names = ["num_points", "depth"]

    def setup(self, num_points, depth):
        wp.init()
        i = np.arange(num_points) + 0.5
        phi = np.arccos(1.0 - 2.0 * i / num_points)
        theta = np.pi * (1.0 + 5.0**0.5) * i
        normals = np.stack([np.cos(theta) * np.sin(phi), np.sin(theta) * np.sin(phi), np.cos(phi)], axis=1)
        self.cloud = OrientedPointCloud(normals, normals)
        self.pipeline = ReconstructionPipeline(
            reconstruction=ReconstructionParameters(depth=depth),
            max_retries=0,
            device=wp.get_device(),
        )

    def _run(self):
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NonConvergence)
            return self.pipeline.run(self.cloud, validate=False)

    def time_reconstruct(self, num_points, depth):
        self._run()

    def track_vertices(self, num_points, depth):
        return self._run().mesh.num_vertices
