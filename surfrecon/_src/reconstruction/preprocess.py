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

"""Point cloud preprocessing: bilateral denoising, multi-modal fusion, normal
estimation and density.

Every operation is a per-point Warp kernel over a :class:`PointGrid` built with
the query radius as cell size, so each thread only visits the 27 surrounding
cells. None of the operations fail on well-formed clouds; an empty cloud gives
an empty result.

Denoising follows the classic point-set bilateral filter: samples with a normal
move only along that normal, by the weighted mean offset of their neighbors,
so samples on a locally planar patch stay where they are. Samples without a
normal move to the weighted centroid of their neighborhood. Both kernels weight
a neighbor by a spatial gaussian times a range gaussian on the confidence
difference.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np
import warp as wp

from ..core.point_grid import PointGrid, PointGridData, point_grid_cell, point_grid_coords
from .types import OrientedPointCloud

OPTIMAL_POINT_DENSITY = 1000.0
"""Sample density (points per unit volume) considered fully covered."""

MIN_NORMAL_NEIGHBORS = 3
"""Samples with fewer neighbors (itself included) get no estimated normal."""


@wp.kernel
def _denoise_kernel(
    grid: PointGridData,
    positions: wp.array(dtype=wp.vec3),
    normals: wp.array(dtype=wp.vec3),
    has_normal: wp.array(dtype=wp.int32),
    confidence: wp.array(dtype=float),
    radius: float,
    inv_two_spatial_var: float,
    inv_two_range_var: float,
    out_positions: wp.array(dtype=wp.vec3),
    out_normals: wp.array(dtype=wp.vec3),
):
    tid = wp.tid()
    p = positions[tid]
    n = normals[tid]
    c = confidence[tid]
    oriented = has_normal[tid] != 0
    radius_sq = radius * radius

    weight_sum = float(0.0)
    offset_sum = float(0.0)
    position_sum = wp.vec3(0.0, 0.0, 0.0)
    normal_sum = wp.vec3(0.0, 0.0, 0.0)
    num_neighbors = int(0)

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
                            diff = positions[j] - p
                            dist_sq = wp.dot(diff, diff)
                            if dist_sq <= radius_sq:
                                dc = confidence[j] - c
                                w = wp.exp(-dist_sq * inv_two_spatial_var) * wp.exp(-dc * dc * inv_two_range_var)
                                weight_sum += w
                                num_neighbors += 1
                                if oriented:
                                    offset_sum += w * wp.dot(n, diff)
                                    if has_normal[j] != 0:
                                        normal_sum += w * normals[j]
                                else:
                                    position_sum += w * positions[j]

    if num_neighbors == 0:
        out_positions[tid] = p
        out_normals[tid] = n
        return

    # The sample itself enters every average with weight 1
    total = 1.0 + weight_sum
    if oriented:
        out_positions[tid] = p + n * (offset_sum / total)
        smoothed = n + normal_sum
        length = wp.length(smoothed)
        if length > 1.0e-8:
            out_normals[tid] = smoothed / length
        else:
            out_normals[tid] = n
    else:
        out_positions[tid] = (p + position_sum) / total
        out_normals[tid] = n


@wp.kernel
def _merge_kernel(
    grid: PointGridData,
    primary_positions: wp.array(dtype=wp.vec3),
    primary_normals: wp.array(dtype=wp.vec3),
    primary_has_normal: wp.array(dtype=wp.int32),
    primary_confidence: wp.array(dtype=float),
    secondary_positions: wp.array(dtype=wp.vec3),
    secondary_normals: wp.array(dtype=wp.vec3),
    secondary_has_normal: wp.array(dtype=wp.int32),
    secondary_confidence: wp.array(dtype=float),
    threshold: float,
    inv_two_var: float,
    out_positions: wp.array(dtype=wp.vec3),
    out_normals: wp.array(dtype=wp.vec3),
    out_has_normal: wp.array(dtype=wp.int32),
    out_confidence: wp.array(dtype=float),
    secondary_matched: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    p = primary_positions[tid]
    n = primary_normals[tid]
    oriented = primary_has_normal[tid] != 0
    c = primary_confidence[tid]
    threshold_sq = threshold * threshold

    w_self = wp.max(c, 1.0e-6)
    weight_sum = w_self
    position_sum = w_self * p
    normal_sum = wp.vec3(0.0, 0.0, 0.0)
    if oriented:
        normal_sum = w_self * n
    merged_oriented = oriented
    merged_confidence = c

    cell = point_grid_coords(grid, p)
    for dz in range(-1, 2):
        for dy in range(-1, 2):
            for dx in range(-1, 2):
                cell_idx = point_grid_cell(grid, cell[0] + dx, cell[1] + dy, cell[2] + dz)
                if cell_idx >= 0:
                    start = grid.cell_start[cell_idx]
                    for k in range(start, start + grid.cell_count[cell_idx]):
                        j = grid.sorted_index[k]
                        diff = secondary_positions[j] - p
                        dist_sq = wp.dot(diff, diff)
                        if dist_sq <= threshold_sq:
                            secondary_matched[j] = 1
                            cj = secondary_confidence[j]
                            w = wp.exp(-dist_sq * inv_two_var) * cj
                            weight_sum += w
                            position_sum += w * secondary_positions[j]
                            if secondary_has_normal[j] != 0:
                                nj = secondary_normals[j]
                                if oriented and wp.dot(nj, n) < 0.0:
                                    nj = -nj
                                normal_sum += w * nj
                                merged_oriented = True
                            merged_confidence = wp.max(merged_confidence, cj)

    out_positions[tid] = position_sum / weight_sum
    out_confidence[tid] = merged_confidence
    length = wp.length(normal_sum)
    if merged_oriented and length > 1.0e-8:
        out_normals[tid] = normal_sum / length
        out_has_normal[tid] = 1
    else:
        out_normals[tid] = n
        out_has_normal[tid] = primary_has_normal[tid]


@wp.kernel
def _density_kernel(
    grid: PointGridData,
    positions: wp.array(dtype=wp.vec3),
    radius: float,
    inv_volume: float,
    out_density: wp.array(dtype=float),
):
    tid = wp.tid()
    p = positions[tid]
    radius_sq = radius * radius
    count = int(0)

    cell = point_grid_coords(grid, p)
    for dz in range(-1, 2):
        for dy in range(-1, 2):
            for dx in range(-1, 2):
                cell_idx = point_grid_cell(grid, cell[0] + dx, cell[1] + dy, cell[2] + dz)
                if cell_idx >= 0:
                    start = grid.cell_start[cell_idx]
                    for k in range(start, start + grid.cell_count[cell_idx]):
                        diff = positions[grid.sorted_index[k]] - p
                        if wp.dot(diff, diff) <= radius_sq:
                            count += 1

    out_density[tid] = float(count) * inv_volume


@wp.kernel
def _covariance_kernel(
    grid: PointGridData,
    positions: wp.array(dtype=wp.vec3),
    radius: float,
    out_covariance: wp.array(dtype=wp.mat33),
    out_count: wp.array(dtype=wp.int32),
):
    tid = wp.tid()
    p = positions[tid]
    radius_sq = radius * radius
    cell = point_grid_coords(grid, p)

    centroid = wp.vec3(0.0)
    count = int(0)
    for dz in range(-1, 2):
        for dy in range(-1, 2):
            for dx in range(-1, 2):
                cell_idx = point_grid_cell(grid, cell[0] + dx, cell[1] + dy, cell[2] + dz)
                if cell_idx >= 0:
                    start = grid.cell_start[cell_idx]
                    for k in range(start, start + grid.cell_count[cell_idx]):
                        q = positions[grid.sorted_index[k]]
                        diff = q - p
                        if wp.dot(diff, diff) <= radius_sq:
                            centroid += q
                            count += 1

    covariance = wp.mat33(0.0)
    if count > 0:
        centroid = centroid / float(count)
        for dz in range(-1, 2):
            for dy in range(-1, 2):
                for dx in range(-1, 2):
                    cell_idx = point_grid_cell(grid, cell[0] + dx, cell[1] + dy, cell[2] + dz)
                    if cell_idx >= 0:
                        start = grid.cell_start[cell_idx]
                        for k in range(start, start + grid.cell_count[cell_idx]):
                            q = positions[grid.sorted_index[k]]
                            diff = q - p
                            if wp.dot(diff, diff) <= radius_sq:
                                offset = q - centroid
                                covariance += wp.outer(offset, offset)
        covariance = covariance / float(count)

    out_covariance[tid] = covariance
    out_count[tid] = count


@dataclass
class PointCloudStatistics:
    """Summary of a preprocessed cloud.

    Attributes:
        point_count: Number of samples.
        mean_confidence: Average sample confidence.
        mean_density: Average local density (samples per unit volume).
        average_quality: Mean confidence scaled by density coverage, in [0, 1].
    """

    point_count: int
    mean_confidence: float
    mean_density: float
    average_quality: float


def _valid_radius(radius: float) -> bool:
    return radius > 0.0 and math.isfinite(radius)


class PointCloudPreprocessor:
    """Denoise, fuse and measure oriented point clouds.

    Args:
        device: Warp device for computation.

    Example:
        >>> pre = PointCloudPreprocessor(device="cpu")
        >>> smooth = pre.denoise(cloud, radius=0.03, spatial_sigma=0.01, range_sigma=0.1)
        >>> density = pre.estimate_density(smooth, radius=0.03)
    """

    def __init__(self, device: str | None = None):
        self.device = device

    def _upload(self, cloud: OrientedPointCloud):
        device = self.device
        return (
            wp.array(cloud.positions, dtype=wp.vec3, device=device),
            wp.array(cloud.normals_or_zeros(), dtype=wp.vec3, device=device),
            wp.array(cloud.normal_mask.astype(np.int32), dtype=wp.int32, device=device),
            wp.array(cloud.confidence, dtype=float, device=device),
        )

    def filter_by_confidence(self, cloud: OrientedPointCloud, threshold: float) -> OrientedPointCloud:
        """Drop samples whose confidence is below ``threshold``."""
        return cloud.subset(cloud.confidence >= threshold)

    def denoise(
        self,
        cloud: OrientedPointCloud,
        radius: float,
        spatial_sigma: float,
        range_sigma: float,
    ) -> OrientedPointCloud:
        """Bilateral filter over neighbors within ``radius``.

        Args:
            cloud: Input samples.
            radius: Neighborhood radius.
            spatial_sigma: Standard deviation of the spatial gaussian.
            range_sigma: Standard deviation of the confidence gaussian.

        Returns:
            A new cloud with filtered positions and normals. Confidence is kept.
            Samples without neighbors are returned unchanged.
        """
        if cloud.num_points == 0 or not _valid_radius(radius):
            return cloud
        if spatial_sigma <= 0 or range_sigma <= 0:
            raise ValueError(f"sigmas must be > 0, got spatial={spatial_sigma}, range={range_sigma}")

        grid = PointGrid(cloud.positions, radius, device=self.device)
        positions, normals, has_normal, confidence = self._upload(cloud)
        out_positions = wp.zeros_like(positions)
        out_normals = wp.zeros_like(normals)

        wp.launch(
            _denoise_kernel,
            dim=cloud.num_points,
            inputs=[
                grid.get_data_struct(),
                positions,
                normals,
                has_normal,
                confidence,
                float(radius),
                float(1.0 / (2.0 * spatial_sigma * spatial_sigma)),
                float(1.0 / (2.0 * range_sigma * range_sigma)),
                out_positions,
                out_normals,
            ],
            device=self.device,
        )

        return OrientedPointCloud(
            positions=out_positions.numpy(),
            normals=None if cloud.normals is None else out_normals.numpy(),
            confidence=cloud.confidence,
            normal_mask=cloud.normal_mask,
        )

    def merge_multi_modal(
        self,
        primary: OrientedPointCloud,
        secondary: OrientedPointCloud,
        merge_threshold: float,
        keep_unmatched_secondary: bool = False,
    ) -> OrientedPointCloud:
        """Fuse a secondary cloud (e.g. stereo) into a primary one (e.g. depth sensor).

        Each primary sample becomes the confidence-weighted mean of itself and
        the secondary samples within ``merge_threshold``, with a gaussian falloff
        (sigma = threshold / 2) on distance. The merged confidence is the maximum
        over all contributors; primary samples without matches pass through.

        Args:
            primary: Samples that define the output ordering.
            secondary: Samples merged into the primary ones.
            merge_threshold: Matching radius.
            keep_unmatched_secondary: Append secondary samples that matched no
                primary sample instead of dropping them.
        """
        if primary.num_points == 0:
            return secondary if keep_unmatched_secondary else primary
        if secondary.num_points == 0 or not _valid_radius(merge_threshold):
            if keep_unmatched_secondary and secondary.num_points > 0:
                return primary.concatenate(secondary)
            return primary

        device = self.device
        grid = PointGrid(secondary.positions, merge_threshold, device=device)
        p_pos, p_nrm, p_has, p_conf = self._upload(primary)
        s_pos, s_nrm, s_has, s_conf = self._upload(secondary)
        out_positions = wp.zeros_like(p_pos)
        out_normals = wp.zeros_like(p_nrm)
        out_has_normal = wp.zeros_like(p_has)
        out_confidence = wp.zeros_like(p_conf)
        matched = wp.zeros(secondary.num_points, dtype=wp.int32, device=device)
        sigma = 0.5 * merge_threshold

        wp.launch(
            _merge_kernel,
            dim=primary.num_points,
            inputs=[
                grid.get_data_struct(),
                p_pos,
                p_nrm,
                p_has,
                p_conf,
                s_pos,
                s_nrm,
                s_has,
                s_conf,
                float(merge_threshold),
                float(1.0 / (2.0 * sigma * sigma)),
                out_positions,
                out_normals,
                out_has_normal,
                out_confidence,
                matched,
            ],
            device=device,
        )

        has_normal = out_has_normal.numpy().astype(bool)
        merged = OrientedPointCloud(
            positions=out_positions.numpy(),
            normals=out_normals.numpy() if has_normal.any() else None,
            confidence=np.clip(out_confidence.numpy(), 0.0, 1.0),
            normal_mask=has_normal,
        )
        if keep_unmatched_secondary:
            unmatched = matched.numpy() == 0
            if unmatched.any():
                merged = merged.concatenate(secondary.subset(unmatched))
        return merged

    def estimate_density(self, cloud: OrientedPointCloud, radius: float) -> np.ndarray:
        """Samples per unit volume around each sample.

        Counts the samples within ``radius`` (the sample itself included) and
        divides by the sphere volume. A non-positive or non-finite radius yields
        zeros; the result is always finite.

        Returns:
            (N,) float32 array.
        """
        n = cloud.num_points
        if n == 0 or not _valid_radius(radius):
            return np.zeros(n, dtype=np.float32)

        volume = 4.0 / 3.0 * math.pi * radius**3
        if not (volume > 0.0 and math.isfinite(volume)):
            return np.zeros(n, dtype=np.float32)

        grid = PointGrid(cloud.positions, radius, device=self.device)
        positions = wp.array(cloud.positions, dtype=wp.vec3, device=self.device)
        density = wp.zeros(n, dtype=float, device=self.device)
        wp.launch(
            _density_kernel,
            dim=n,
            inputs=[grid.get_data_struct(), positions, float(radius), float(1.0 / volume), density],
            device=self.device,
        )
        result = density.numpy()
        return np.where(np.isfinite(result), result, 0.0).astype(np.float32)

    def estimate_normals(
        self,
        cloud: OrientedPointCloud,
        radius: float,
        min_planarity: float = 0.85,
        viewpoint=None,
    ) -> OrientedPointCloud:
        """Fill in normals for samples that lack one by local PCA.

        The normal of a sample is the eigenvector of the smallest eigenvalue of
        its neighborhood covariance. Its planarity ``1 - 3 * l_min / trace``
        is 1 on a flat patch and 0 for an isotropic blob; samples below
        ``min_planarity`` or with fewer than ``MIN_NORMAL_NEIGHBORS`` neighbors
        stay unoriented. Estimated normals face ``viewpoint`` when given and
        point away from the cloud centroid otherwise.

        Samples that already carry a normal are returned unchanged.

        Args:
            cloud: Input samples.
            radius: Neighborhood radius.
            min_planarity: Planarity a neighborhood needs to yield a normal.
            viewpoint: Optional (3,) sensor position the normals should face.
        """
        missing = ~cloud.normal_mask
        if not missing.any() or not _valid_radius(radius):
            return cloud

        n = cloud.num_points
        grid = PointGrid(cloud.positions, radius, device=self.device)
        positions = wp.array(cloud.positions, dtype=wp.vec3, device=self.device)
        covariance = wp.zeros(n, dtype=wp.mat33, device=self.device)
        counts = wp.zeros(n, dtype=wp.int32, device=self.device)
        wp.launch(
            _covariance_kernel,
            dim=n,
            inputs=[grid.get_data_struct(), positions, float(radius), covariance, counts],
            device=self.device,
        )

        eigenvalues, eigenvectors = np.linalg.eigh(covariance.numpy().astype(np.float64))
        normals = eigenvectors[:, :, 0]
        trace = eigenvalues.sum(axis=1)
        planarity = np.zeros(n)
        spread = trace > 0.0
        planarity[spread] = 1.0 - 3.0 * eigenvalues[spread, 0] / trace[spread]

        if viewpoint is not None:
            facing = np.asarray(viewpoint, dtype=np.float64).reshape(3) - cloud.positions
        else:
            facing = cloud.positions - cloud.positions.mean(axis=0)
        flip = np.einsum("ij,ij->i", normals, facing) < 0.0
        normals[flip] = -normals[flip]

        estimated = missing & (counts.numpy() >= MIN_NORMAL_NEIGHBORS) & (planarity >= min_planarity)
        combined = cloud.normals_or_zeros().copy()
        combined[estimated] = normals[estimated]
        return OrientedPointCloud(
            positions=cloud.positions,
            normals=combined,
            confidence=cloud.confidence,
            normal_mask=cloud.normal_mask | estimated,
        )

    def compute_statistics(self, cloud: OrientedPointCloud, density: np.ndarray | None = None) -> PointCloudStatistics:
        """Summarize a cloud and its density estimate."""
        if cloud.num_points == 0:
            return PointCloudStatistics(0, 0.0, 0.0, 0.0)
        mean_confidence = float(cloud.confidence.mean())
        mean_density = float(np.mean(density)) if density is not None and len(density) else 0.0
        coverage = min(mean_density / OPTIMAL_POINT_DENSITY, 1.0)
        return PointCloudStatistics(
            point_count=cloud.num_points,
            mean_confidence=mean_confidence,
            mean_density=mean_density,
            average_quality=mean_confidence * coverage,
        )
