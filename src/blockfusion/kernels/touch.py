"""
Visibility / touch pass.

Computes the deduplicated block coordinates an observation may affect. The
coordinates are inserted into a scratch hash map, whose activation masks mark
the first occurrence of every block; nothing is allocated in the grid itself.
"""

from __future__ import annotations

import logging

import torch

from ..hashmap import HashMap
from ..utils.camera_utils import camera_rays, pixel_grid

logger = logging.getLogger(__name__)


def _unique_from_scratch(scratch: HashMap, block_coords: torch.Tensor) -> torch.Tensor:
    buf_indices, masks = scratch.activate(block_coords)
    return scratch.get_key_tensor()[buf_indices[masks]].clone()


def depth_touch(
    scratch: HashMap,
    depth: torch.Tensor,
    intrinsic: torch.Tensor,
    extrinsic: torch.Tensor,
    block_resolution: int,
    voxel_size: float,
    sdf_trunc: float,
    depth_scale: float,
    depth_max: float,
    down_factor: int = 4,
    ray_samples: int = 4,
) -> torch.Tensor:
    """
    Blocks intersected by the truncation band around a depth image.

    Every `down_factor`-th pixel with a valid depth d contributes the blocks
    containing `ray_samples` equally spaced points of the ray segment between
    depths max(d - sdf_trunc, 0) and min(d + sdf_trunc, depth_max).

    Args:
        scratch: Cleared scratch hash map, large enough for all samples
        depth: Raw depth image [H, W] (float32)
        intrinsic: Pinhole intrinsic [3, 3]
        extrinsic: World-to-camera transform [4, 4]

    Returns:
        Unique block coordinates [M, 3] (int32)
    """
    height, width = depth.shape
    u, v = pixel_grid(height, width, down_factor, depth.device)
    d = depth[::down_factor, ::down_factor] / depth_scale

    valid = (d > 0) & (d < depth_max)
    u, v, d = u[valid], v[valid], d[valid]
    if d.numel() == 0:
        return torch.empty((0, 3), dtype=torch.int32, device=depth.device)

    origin, directions = camera_rays(intrinsic, extrinsic, u, v)

    t_min = (d - sdf_trunc).clamp(min=0.0)
    t_max = (d + sdf_trunc).clamp(max=depth_max)
    steps = torch.linspace(0.0, 1.0, ray_samples, device=depth.device)
    t = t_min[:, None] + (t_max - t_min)[:, None] * steps[None, :]

    points = origin + t[..., None] * directions[:, None, :]
    block_size = voxel_size * block_resolution
    block_coords = torch.floor(points / block_size).to(torch.int32).view(-1, 3)

    coords = _unique_from_scratch(scratch, block_coords)
    logger.debug(f"Depth touch: {d.numel()} samples -> {coords.shape[0]} blocks")
    return coords


def point_cloud_touch(
    scratch: HashMap,
    positions: torch.Tensor,
    block_resolution: int,
    voxel_size: float,
    sdf_trunc: float,
) -> torch.Tensor:
    """
    Blocks within `sdf_trunc` of a set of points.

    The axis-aligned box p +/- sdf_trunc of every point spans at most two
    blocks per axis as long as 2 * sdf_trunc is below a block size, so the
    eight corner combinations of its lower and upper block cover it.

    Args:
        scratch: Cleared scratch hash map
        positions: World-space points [N, 3]

    Returns:
        Unique block coordinates [M, 3] (int32)
    """
    if positions.shape[0] == 0:
        return torch.empty((0, 3), dtype=torch.int32, device=positions.device)

    block_size = voxel_size * block_resolution
    lo = torch.floor((positions - sdf_trunc) / block_size).to(torch.int32)
    hi = torch.floor((positions + sdf_trunc) / block_size).to(torch.int32)

    corners = torch.tensor(
        [[(k >> 0) & 1, (k >> 1) & 1, (k >> 2) & 1] for k in range(8)],
        dtype=torch.int32,
        device=positions.device,
    )
    block_coords = lo[:, None, :] + corners[None, :, :] * (hi - lo)[:, None, :]
    block_coords = block_coords.view(-1, 3)

    coords = _unique_from_scratch(scratch, block_coords)
    logger.debug(f"Point cloud touch: {positions.shape[0]} points -> {coords.shape[0]} blocks")
    return coords
