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

"""PatchMatch multi-view stereo refinement and depth-map fusion.

Every pixel of every view is one kernel thread. A PatchMatch step tests the
current depth, the depths of the four neighbors from the previous step and a
random perturbation, and keeps a candidate only if it improves the photometric
score by more than ``min_score_gain``. The score of a depth is the mean
normalized cross correlation (clamped to [0, 1]) between the reference patch and its
reprojection into every other view, assuming a fronto-parallel patch.

Steps ping-pong between two depth buffers so a thread never reads a value
written in the same launch. Iteration stops once the largest depth change of a
step falls below ``convergence_epsilon``.

Fusion back-projects every pixel whose score exceeds
``min_photometric_consistency``, rejects it when another view observes a
depth that differs by more than ``max_depth_deviation`` at its projection,
and estimates its normal from the depth-map neighbors.

Camera convention: ``x_cam = R @ x_world + t`` with the camera looking down +z;
pixel ``(u, v)`` is (column, row) and ``u = fx * x / z + cx``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np
import warp as wp

from .config import MVSOptions
from .errors import InitializationFailed, InvalidInput, ReconstructionCancelled
from .types import OrientedPointCloud

logger = logging.getLogger(__name__)

_LCG_A = wp.constant(wp.uint32(1103515245))
_LCG_C = wp.constant(wp.uint32(12345))

# Patches with an intensity variance below this carry no texture to match
_MIN_PATCH_VARIANCE = 1.0e-6


@wp.func
def rand_init(seed: wp.uint32, thread_id: wp.uint32) -> wp.uint32:
    """Initialize random state from a seed and thread ID."""
    state = seed ^ thread_id
    return state * _LCG_A + _LCG_C


@wp.func
def rand_next_float(state: wp.uint32) -> tuple[wp.uint32, float]:
    """Advance state and return (new_state, random_float in [0, 1))."""
    new_state = state * _LCG_A + _LCG_C
    rand_val = wp.float32(new_state & wp.uint32(0x7FFFFFFF)) / wp.float32(0x7FFFFFFF)
    return new_state, rand_val


@wp.func
def backproject(k: wp.vec4, r: wp.mat33, t: wp.vec3, u: float, v: float, depth: float) -> wp.vec3:
    """World position of pixel ``(u, v)`` at ``depth`` along the optical axis."""
    cam = wp.vec3((u - k[2]) / k[0] * depth, (v - k[3]) / k[1] * depth, depth)
    return wp.transpose(r) * (cam - t)


@wp.func
def project(k: wp.vec4, r: wp.mat33, t: wp.vec3, x: wp.vec3) -> wp.vec3:
    """Return ``(u, v, depth)`` of a world point. Depth <= 0 is behind the camera."""
    cam = r * x + t
    if cam[2] <= 0.0:
        return wp.vec3(0.0, 0.0, cam[2])
    return wp.vec3(k[0] * cam[0] / cam[2] + k[2], k[1] * cam[1] / cam[2] + k[3], cam[2])


@wp.func
def _bilinear(images: wp.array3d(dtype=float), view: int, u: float, v: float, width: int, height: int) -> float:
    x0 = wp.min(int(wp.floor(u)), width - 1)
    y0 = wp.min(int(wp.floor(v)), height - 1)
    x1 = wp.min(x0 + 1, width - 1)
    y1 = wp.min(y0 + 1, height - 1)
    fx = u - float(x0)
    fy = v - float(y0)
    top = wp.lerp(images[view, y0, x0], images[view, y0, x1], fx)
    bottom = wp.lerp(images[view, y1, x0], images[view, y1, x1], fx)
    return wp.lerp(top, bottom, fy)


@wp.func
def _patch_ncc(
    images: wp.array3d(dtype=float),
    intrinsics: wp.array(dtype=wp.vec4),
    rotations: wp.array(dtype=wp.mat33),
    translations: wp.array(dtype=wp.vec3),
    ref: int,
    src: int,
    x: int,
    y: int,
    depth: float,
    patch_radius: int,
    width: int,
    height: int,
) -> float:
    """Clamped NCC between the reference patch and its reprojection into ``src``."""
    sum_r = float(0.0)
    sum_s = float(0.0)
    sum_rr = float(0.0)
    sum_ss = float(0.0)
    sum_rs = float(0.0)
    max_u = float(width - 1)
    max_v = float(height - 1)

    for dy in range(-patch_radius, patch_radius + 1):
        for dx in range(-patch_radius, patch_radius + 1):
            px = x + dx
            py = y + dy
            world = backproject(intrinsics[ref], rotations[ref], translations[ref], float(px), float(py), depth)
            uvd = project(intrinsics[src], rotations[src], translations[src], world)
            if uvd[2] <= 0.0 or uvd[0] < 0.0 or uvd[0] > max_u or uvd[1] < 0.0 or uvd[1] > max_v:
                return 0.0
            s = _bilinear(images, src, uvd[0], uvd[1], width, height)
            r = images[ref, py, px]
            sum_r += r
            sum_s += s
            sum_rr += r * r
            sum_ss += s * s
            sum_rs += r * s

    n = float((2 * patch_radius + 1) * (2 * patch_radius + 1))
    mean_r = sum_r / n
    mean_s = sum_s / n
    var_r = sum_rr / n - mean_r * mean_r
    var_s = sum_ss / n - mean_s * mean_s
    if var_r < _MIN_PATCH_VARIANCE or var_s < _MIN_PATCH_VARIANCE:
        return 0.0
    ncc = (sum_rs / n - mean_r * mean_s) / wp.sqrt(var_r * var_s)
    return wp.clamp(ncc, 0.0, 1.0)


@wp.func
def photometric_score(
    images: wp.array3d(dtype=float),
    intrinsics: wp.array(dtype=wp.vec4),
    rotations: wp.array(dtype=wp.mat33),
    translations: wp.array(dtype=wp.vec3),
    ref: int,
    x: int,
    y: int,
    depth: float,
    patch_radius: int,
) -> float:
    """Mean clamped NCC of the patch at ``(x, y)`` over all other views."""
    num_views = images.shape[0]
    height = images.shape[1]
    width = images.shape[2]
    if depth <= 0.0:
        return 0.0
    if x < patch_radius or y < patch_radius or x + patch_radius >= width or y + patch_radius >= height:
        return 0.0
    total = float(0.0)
    for src in range(num_views):
        if src != ref:
            total += _patch_ncc(
                images, intrinsics, rotations, translations, ref, src, x, y, depth, patch_radius, width, height
            )
    return total / float(num_views - 1)


@wp.kernel
def _score_kernel(
    images: wp.array3d(dtype=float),
    intrinsics: wp.array(dtype=wp.vec4),
    rotations: wp.array(dtype=wp.mat33),
    translations: wp.array(dtype=wp.vec3),
    depth: wp.array3d(dtype=float),
    patch_radius: int,
    out_score: wp.array3d(dtype=float),
):
    view, y, x = wp.tid()
    out_score[view, y, x] = photometric_score(
        images, intrinsics, rotations, translations, view, x, y, depth[view, y, x], patch_radius
    )


@wp.kernel
def _patchmatch_step_kernel(
    images: wp.array3d(dtype=float),
    intrinsics: wp.array(dtype=wp.vec4),
    rotations: wp.array(dtype=wp.mat33),
    translations: wp.array(dtype=wp.vec3),
    depth_in: wp.array3d(dtype=float),
    score_in: wp.array3d(dtype=float),
    patch_radius: int,
    search_range: float,
    min_gain: float,
    seed: wp.uint32,
    depth_out: wp.array3d(dtype=float),
    score_out: wp.array3d(dtype=float),
    max_change: wp.array(dtype=float),
):
    view, y, x = wp.tid()
    height = depth_in.shape[1]
    width = depth_in.shape[2]

    current = depth_in[view, y, x]
    best_depth = current
    best_score = score_in[view, y, x]

    # Propagation from the four neighbors of the previous step
    for n in range(4):
        nx = x
        ny = y
        if n == 0:
            nx = x - 1
        elif n == 1:
            nx = x + 1
        elif n == 2:
            ny = y - 1
        else:
            ny = y + 1
        if nx >= 0 and nx < width and ny >= 0 and ny < height:
            candidate = depth_in[view, ny, nx]
            if candidate > 0.0 and candidate != best_depth:
                s = photometric_score(images, intrinsics, rotations, translations, view, x, y, candidate, patch_radius)
                if s > best_score + min_gain:
                    best_score = s
                    best_depth = candidate

    # Random refinement around the best depth so far
    if search_range > 0.0 and best_depth > 0.0:
        state = rand_init(seed, wp.uint32((view * height + y) * width + x))
        state, r = rand_next_float(state)
        candidate = best_depth * (1.0 + search_range * (2.0 * r - 1.0))
        if candidate > 0.0:
            s = photometric_score(images, intrinsics, rotations, translations, view, x, y, candidate, patch_radius)
            if s > best_score + min_gain:
                best_score = s
                best_depth = candidate

    depth_out[view, y, x] = best_depth
    score_out[view, y, x] = best_score
    wp.atomic_max(max_change, 0, wp.abs(best_depth - current))


@wp.kernel
def _fuse_kernel(
    intrinsics: wp.array(dtype=wp.vec4),
    rotations: wp.array(dtype=wp.mat33),
    translations: wp.array(dtype=wp.vec3),
    depth: wp.array3d(dtype=float),
    score: wp.array3d(dtype=float),
    min_consistency: float,
    max_deviation: float,
    counter: wp.array(dtype=wp.int32),
    out_positions: wp.array(dtype=wp.vec3),
    out_normals: wp.array(dtype=wp.vec3),
    out_has_normal: wp.array(dtype=wp.int32),
    out_confidence: wp.array(dtype=float),
):
    view, y, x = wp.tid()
    num_views = depth.shape[0]
    height = depth.shape[1]
    width = depth.shape[2]

    d = depth[view, y, x]
    s = score[view, y, x]
    if d <= 0.0 or s <= min_consistency:
        return

    k = intrinsics[view]
    r = rotations[view]
    t = translations[view]
    p = backproject(k, r, t, float(x), float(y), d)

    for other in range(num_views):
        if other != view:
            uvd = project(intrinsics[other], rotations[other], translations[other], p)
            if uvd[2] > 0.0:
                u = int(wp.round(uvd[0]))
                v = int(wp.round(uvd[1]))
                if u >= 0 and u < width and v >= 0 and v < height:
                    observed = depth[other, v, u]
                    if observed > 0.0 and wp.abs(observed - uvd[2]) > max_deviation:
                        return

    # Normal from the depth-map neighbors, one-sided at the border
    sx = 1
    if x + 1 >= width:
        sx = -1
    sy = 1
    if y + 1 >= height:
        sy = -1
    dx = depth[view, y, x + sx]
    dy = depth[view, y + sy, x]
    normal = wp.vec3(0.0, 0.0, 0.0)
    has_normal = int(0)
    if dx > 0.0 and dy > 0.0:
        px = backproject(k, r, t, float(x + sx), float(y), dx)
        py = backproject(k, r, t, float(x), float(y + sy), dy)
        n = wp.cross(px - p, py - p)
        length = wp.length(n)
        if length > 1.0e-12:
            normal = n / length
            camera_center = -(wp.transpose(r) * t)
            if wp.dot(normal, camera_center - p) < 0.0:
                normal = -normal
            has_normal = 1

    idx = wp.atomic_add(counter, 0, 1)
    out_positions[idx] = p
    out_normals[idx] = normal
    out_has_normal[idx] = has_normal
    out_confidence[idx] = s


@dataclass
class CameraView:
    """A calibrated grayscale image.

    Attributes:
        image: (H, W) intensities.
        intrinsics: ``(fx, fy, cx, cy)`` in pixels.
        rotation: (3, 3) camera-from-world rotation.
        translation: (3,) camera-from-world translation.
    """

    image: np.ndarray
    intrinsics: tuple[float, float, float, float]
    rotation: np.ndarray = field(default_factory=lambda: np.eye(3, dtype=np.float32))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3, dtype=np.float32))

    def __post_init__(self):
        self.image = np.asarray(self.image, dtype=np.float32)
        self.rotation = np.asarray(self.rotation, dtype=np.float32).reshape(3, 3)
        self.translation = np.asarray(self.translation, dtype=np.float32).reshape(3)
        self.intrinsics = tuple(float(v) for v in self.intrinsics)
        if self.image.ndim != 2:
            raise InvalidInput(f"image must have shape (H, W), got {self.image.shape}")
        if len(self.intrinsics) != 4 or self.intrinsics[0] <= 0 or self.intrinsics[1] <= 0:
            raise InvalidInput(
                f"intrinsics must be (fx, fy, cx, cy) with positive focal lengths, got {self.intrinsics}"
            )

    @property
    def shape(self) -> tuple[int, int]:
        return self.image.shape

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates."""
        return -self.rotation.T @ self.translation

    def project(self, points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        """Project world points. Returns ``(uv, depth)`` with uv as (N, 2) (column, row)."""
        cam = np.asarray(points, dtype=np.float64).reshape(-1, 3) @ self.rotation.T + self.translation
        depth = cam[:, 2]
        fx, fy, cx, cy = self.intrinsics
        with np.errstate(divide="ignore", invalid="ignore"):
            uv = np.stack([fx * cam[:, 0] / depth + cx, fy * cam[:, 1] / depth + cy], axis=1)
        return uv, depth


@dataclass
class DepthMap:
    """Per-pixel depth along the optical axis. Zero marks unknown pixels."""

    depth: np.ndarray


@dataclass
class SparseCloud:
    """Sparse structure-from-motion points used to seed depth."""

    points: np.ndarray
    confidence: np.ndarray | None = None


@dataclass
class MVSResult:
    """Output of :meth:`PatchMatchFuser.process`.

    Attributes:
        points: Fused oriented samples; confidence is the photometric score.
        iterations: PatchMatch steps performed.
        converged: True if the depth change dropped below the epsilon.
        depth_maps: Refined (H, W) depth per view.
        score_maps: Final (H, W) photometric score per view.
    """

    points: OrientedPointCloud
    iterations: int
    converged: bool
    depth_maps: list[np.ndarray]
    score_maps: list[np.ndarray]


class PatchMatchFuser:
    """Refine per-view depth with PatchMatch and fuse it into one point cloud.

    Args:
        options: Iteration and fusion settings.
        device: Warp device for computation.
    """

    def __init__(self, options: MVSOptions | None = None, device: str | None = None):
        self.options = options if options is not None else MVSOptions()
        self.device = device

    def _seed_depth(self, sparse: SparseCloud | None, view: CameraView) -> np.ndarray:
        """Constant depth map at the median depth of the sparse points visible in ``view``."""
        if sparse is None or len(sparse.points) == 0:
            raise InitializationFailed("view has no initial depth map and no sparse points to seed from")
        uv, depth = view.project(sparse.points)
        height, width = view.shape
        visible = (depth > 0) & (uv[:, 0] >= 0) & (uv[:, 0] <= width - 1) & (uv[:, 1] >= 0) & (uv[:, 1] <= height - 1)
        if not np.any(visible):
            raise InitializationFailed("no sparse point projects into a view without an initial depth map")
        return np.full((height, width), float(np.median(depth[visible])), dtype=np.float32)

    def _initial_depths(
        self,
        sparse: SparseCloud | None,
        views: Sequence[CameraView],
        initial_depth_maps: Sequence[DepthMap | None] | None,
    ) -> np.ndarray:
        if not views:
            raise InitializationFailed("multi-view stereo needs camera views, got none")
        if len(views) < 2:
            raise InitializationFailed(f"multi-view stereo needs at least 2 views, got {len(views)}")
        shape = views[0].shape
        for i, view in enumerate(views):
            if view.shape != shape:
                raise InitializationFailed(f"view {i} has image size {view.shape}, expected {shape}")

        if initial_depth_maps is None:
            initial_depth_maps = [None] * len(views)
        if len(initial_depth_maps) != len(views):
            raise InitializationFailed(f"got {len(initial_depth_maps)} depth maps for {len(views)} views")

        depths = []
        for i, (view, depth_map) in enumerate(zip(views, initial_depth_maps, strict=True)):
            if depth_map is None:
                depths.append(self._seed_depth(sparse, view))
                continue
            depth = np.asarray(depth_map.depth, dtype=np.float32)
            if depth.shape != shape:
                raise InitializationFailed(f"depth map {i} has shape {depth.shape}, expected {shape}")
            if not np.all(np.isfinite(depth)):
                raise InvalidInput(f"depth map {i} contains NaN or inf")
            depths.append(depth)
        return np.stack(depths)

    def process(
        self,
        sparse_cloud: SparseCloud | None,
        views: Sequence[CameraView],
        initial_depth_maps: Sequence[DepthMap | None] | None = None,
        should_cancel: Callable[[], bool] | None = None,
        verbose: bool = False,
    ) -> MVSResult:
        """Refine depth for every view and fuse the consistent samples.

        Args:
            sparse_cloud: Seeds depth for views without an initial depth map.
            views: At least two views of equal image size.
            initial_depth_maps: One entry per view, or None to seed all views.
            should_cancel: Polled between steps; returning True raises
                :class:`ReconstructionCancelled`.
            verbose: Print progress information.

        Raises:
            InitializationFailed: If the inputs cannot start an iteration or
                the device is unavailable.
        """
        opts = self.options
        depth0 = self._initial_depths(sparse_cloud, views, initial_depth_maps)
        device = self.device
        num_views, height, width = depth0.shape

        try:
            wp.get_device(device)
            images = wp.array(np.stack([v.image for v in views]), dtype=float, device=device)
            intrinsics = wp.array(
                np.array([v.intrinsics for v in views], dtype=np.float32), dtype=wp.vec4, device=device
            )
            rotations = wp.array(np.stack([v.rotation for v in views]), dtype=wp.mat33, device=device)
            translations = wp.array(np.stack([v.translation for v in views]), dtype=wp.vec3, device=device)
            depth_a = wp.array(depth0, dtype=float, device=device)
            depth_b = wp.zeros_like(depth_a)
            score_a = wp.zeros_like(depth_a)
            score_b = wp.zeros_like(depth_a)
            max_change = wp.zeros(1, dtype=float, device=device)
        except (RuntimeError, ValueError) as e:
            raise InitializationFailed(f"could not allocate stereo buffers on device {device!r}: {e}") from e

        dim = (num_views, height, width)
        camera_inputs = [images, intrinsics, rotations, translations]
        wp.launch(_score_kernel, dim=dim, inputs=[*camera_inputs, depth_a, opts.patch_radius, score_a], device=device)

        converged = False
        iterations = 0
        for step in range(opts.num_photometric_consistency_steps):
            if should_cancel is not None and should_cancel():
                raise ReconstructionCancelled(f"stereo cancelled before step {step + 1}")
            iterations = step + 1
            max_change.zero_()
            wp.launch(
                _patchmatch_step_kernel,
                dim=dim,
                inputs=[
                    *camera_inputs,
                    depth_a,
                    score_a,
                    opts.patch_radius,
                    float(opts.random_search_range * 0.5**step),
                    float(opts.min_score_gain),
                    wp.uint32((opts.seed + 7919 * step) & 0xFFFFFFFF),
                    depth_b,
                    score_b,
                    max_change,
                ],
                device=device,
            )
            depth_a, depth_b = depth_b, depth_a
            score_a, score_b = score_b, score_a

            change = float(max_change.numpy()[0])
            if verbose:
                print(f"  PatchMatch step {iterations}: max depth change {change:.3e}")
            if change < opts.convergence_epsilon:
                converged = True
                break

        capacity = num_views * height * width
        counter = wp.zeros(1, dtype=wp.int32, device=device)
        positions = wp.zeros(capacity, dtype=wp.vec3, device=device)
        normals = wp.zeros(capacity, dtype=wp.vec3, device=device)
        has_normal = wp.zeros(capacity, dtype=wp.int32, device=device)
        confidence = wp.zeros(capacity, dtype=float, device=device)
        wp.launch(
            _fuse_kernel,
            dim=dim,
            inputs=[
                intrinsics,
                rotations,
                translations,
                depth_a,
                score_a,
                float(opts.min_photometric_consistency),
                float(opts.max_depth_deviation),
                counter,
                positions,
                normals,
                has_normal,
                confidence,
            ],
            device=device,
        )

        count = int(counter.numpy()[0])
        fused = OrientedPointCloud(
            positions=positions.numpy()[:count],
            normals=normals.numpy()[:count],
            confidence=np.clip(confidence.numpy()[:count], 0.0, 1.0),
            normal_mask=has_normal.numpy()[:count].astype(bool),
        )
        logger.debug(
            "PatchMatch: %d views, %d steps (converged=%s), fused %d points", num_views, iterations, converged, count
        )
        return MVSResult(
            points=fused,
            iterations=iterations,
            converged=converged,
            depth_maps=list(depth_a.numpy()),
            score_maps=list(score_a.numpy()),
        )
