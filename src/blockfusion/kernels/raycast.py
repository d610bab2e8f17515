"""
Ray casting pass.

Renders depth, vertex, color and normal maps of the fused TSDF from a virtual
camera. A coarse per-pixel depth range is splatted from the projected blocks
first; rays are then marched only inside that range, and the first positive
to negative TSDF transition along each ray is taken as the surface.

Every pixel is independent, rays are processed as a batch and the set of
live rays shrinks as they hit the surface or leave their range.
"""

from __future__ import annotations

import logging
import math
from typing import Dict, Optional

import torch

from ..block_index import BlockHashIndex
from ..utils.camera_utils import camera_rays, project_points, transform_points

logger = logging.getLogger(__name__)

# Corner k of a unit cube: bit 0 -> x, bit 1 -> y, bit 2 -> z
CORNER_OFFSETS = [[(k >> 0) & 1, (k >> 1) & 1, (k >> 2) & 1] for k in range(8)]


def _corner_offsets(device, dtype=torch.int64) -> torch.Tensor:
    return torch.tensor(CORNER_OFFSETS, dtype=dtype, device=device)


@torch.no_grad()
def estimate_range(
    block_coords: torch.Tensor,
    intrinsic: torch.Tensor,
    extrinsic: torch.Tensor,
    height: int,
    width: int,
    down_factor: int,
    block_resolution: int,
    voxel_size: float,
    depth_min: float,
    depth_max: float,
) -> torch.Tensor:
    """
    Conservative [depth_min, depth_max] ray range per coarse pixel.

    Each block's eight corners are projected onto a grid down-sampled by
    `down_factor`, and the block's camera depth interval is splatted over its
    projected bounding box. Cells no block covers keep the empty range
    [depth_max, depth_min].

    Returns:
        Range map [ceil(H / f), ceil(W / f), 2]
    """
    device = intrinsic.device
    h_c = math.ceil(height / down_factor)
    w_c = math.ceil(width / down_factor)
    range_min = torch.full((h_c * w_c,), float(depth_max), dtype=torch.float32, device=device)
    range_max = torch.full((h_c * w_c,), float(depth_min), dtype=torch.float32, device=device)

    if block_coords.shape[0] > 0:
        block_size = voxel_size * block_resolution
        corners = (
            block_coords.to(torch.float32)[:, None, :]
            + _corner_offsets(device, torch.float32)[None]
        ) * block_size
        corners_cam = transform_points(extrinsic, corners)
        z = corners_cam[..., 2]

        z_lo = z.min(dim=1).values.clamp(min=depth_min)
        z_hi = z.max(dim=1).values.clamp(max=depth_max)
        straddle = (z <= 0).any(dim=1)

        u, v = project_points(intrinsic, corners_cam)
        u0 = torch.floor(u.min(dim=1).values / down_factor)
        u1 = torch.floor(u.max(dim=1).values / down_factor)
        v0 = torch.floor(v.min(dim=1).values / down_factor)
        v1 = torch.floor(v.max(dim=1).values / down_factor)

        # Blocks crossing the camera plane have no reliable projection
        u0 = torch.where(straddle, torch.zeros_like(u0), u0)
        v0 = torch.where(straddle, torch.zeros_like(v0), v0)
        u1 = torch.where(straddle, torch.full_like(u1, w_c - 1), u1)
        v1 = torch.where(straddle, torch.full_like(v1, h_c - 1), v1)

        keep = (
            ~(z <= 0).all(dim=1)
            & (z_lo <= z_hi)
            & (u1 >= 0) & (u0 <= w_c - 1)
            & (v1 >= 0) & (v0 <= h_c - 1)
        )
        u0 = u0[keep].clamp(0, w_c - 1).to(torch.int64)
        u1 = u1[keep].clamp(0, w_c - 1).to(torch.int64)
        v0 = v0[keep].clamp(0, h_c - 1).to(torch.int64)
        v1 = v1[keep].clamp(0, h_c - 1).to(torch.int64)
        z_lo, z_hi = z_lo[keep], z_hi[keep]

        box_w = u1 - u0 + 1
        counts = box_w * (v1 - v0 + 1)
        total = int(counts.sum().item()) if counts.numel() > 0 else 0
        if total > 0:
            owner = torch.repeat_interleave(torch.arange(counts.numel(), device=device), counts)
            starts = torch.cumsum(counts, dim=0) - counts
            offset = torch.arange(total, device=device) - starts[owner]
            cu = u0[owner] + offset % box_w[owner]
            cv = v0[owner] + torch.div(offset, box_w[owner], rounding_mode="floor")
            cells = cv * w_c + cu

            range_min.scatter_reduce_(0, cells, z_lo[owner], reduce="amin")
            range_max.scatter_reduce_(0, cells, z_hi[owner], reduce="amax")

    return torch.stack([range_min, range_max], dim=1).view(h_c, w_c, 2)


def _gather(buffer: torch.Tensor, flat: torch.Tensor, valid: torch.Tensor) -> torch.Tensor:
    """Values of `buffer` [N, C] at flat indices, zero where invalid. Returns [..., C]."""
    out = torch.zeros((*flat.shape, buffer.shape[1]), dtype=torch.float32, device=flat.device)
    out[valid] = buffer[flat[valid]].to(torch.float32)
    return out


@torch.no_grad()
def ray_cast(
    index: BlockHashIndex,
    range_map: torch.Tensor,
    intrinsic: torch.Tensor,
    extrinsic: torch.Tensor,
    height: int,
    width: int,
    voxel_size: float,
    depth_scale: float,
    depth_min: float,
    depth_max: float,
    weight_threshold: float,
    tsdf_slot: int,
    weight_slot: int,
    color_slot: Optional[int] = None,
    range_down_factor: int = 8,
    pixel_chunk_size: int = 65536,
) -> Dict[str, torch.Tensor]:
    """
    March rays through the sparse grid.

    Returns:
        dict with vertex [H, W, 3] (camera frame), depth [H, W, 1] (depth
        image units), color [H, W, 3], normal [H, W, 3] (camera frame),
        mask / ratio / index [H, W, 8] for the trilinear interpolation
        at the surface, and the coarse range map.
    """
    device = intrinsic.device
    n_pixels = height * width

    outputs = {
        "vertex": torch.zeros((n_pixels, 3), dtype=torch.float32, device=device),
        "depth": torch.zeros((n_pixels, 1), dtype=torch.float32, device=device),
        "color": torch.zeros((n_pixels, 3), dtype=torch.float32, device=device),
        "normal": torch.zeros((n_pixels, 3), dtype=torch.float32, device=device),
        "mask": torch.zeros((n_pixels, 8), dtype=torch.bool, device=device),
        "ratio": torch.zeros((n_pixels, 8), dtype=torch.float32, device=device),
        "index": torch.full((n_pixels, 8), -1, dtype=torch.int64, device=device),
    }

    tsdf_buf = index.flat_value(tsdf_slot)
    weight_buf = index.flat_value(weight_slot)
    color_buf = index.flat_value(color_slot) if color_slot is not None else None
    color_range = 1.0 if color_buf is None or color_buf.is_floating_point() else 255.0

    w_c = range_map.shape[1]
    flat_range = range_map.view(-1, 2)

    hits = 0
    for start in range(0, n_pixels, pixel_chunk_size):
        pixels = torch.arange(start, min(start + pixel_chunk_size, n_pixels), device=device)
        ys = torch.div(pixels, width, rounding_mode="floor")
        xs = pixels - ys * width

        cells = torch.div(ys, range_down_factor, rounding_mode="floor") * w_c + torch.div(
            xs, range_down_factor, rounding_mode="floor"
        )
        t_start = flat_range[cells, 0]
        t_end = flat_range[cells, 1]

        origin, dirs = camera_rays(intrinsic, extrinsic, xs.to(torch.float32), ys.to(torch.float32))
        t_hit = _march(
            index, tsdf_buf, weight_buf, origin, dirs, t_start, t_end, voxel_size, weight_threshold
        )

        found = torch.nonzero(t_hit > 0).squeeze(1)
        if found.numel() == 0:
            continue
        hits += found.numel()

        rows = pixels[found]
        t = t_hit[found]
        points = origin + t[:, None] * dirs[found]

        outputs["depth"][rows, 0] = t * depth_scale
        outputs["vertex"][rows] = transform_points(extrinsic, points)

        # Trilinear interpolation over the 8 voxels around the surface point
        vf = points / voxel_size
        base = torch.floor(vf)
        frac = vf - base
        corners = base.to(torch.int64)[:, None, :] + _corner_offsets(device)[None]
        flat, ok = index.find_voxels(corners)
        weights = _gather(weight_buf, flat, ok)[..., 0]
        valid = ok & (weights > 0)

        bits = _corner_offsets(device, torch.float32)[None]
        ratio = torch.where(bits > 0, frac[:, None, :], 1.0 - frac[:, None, :]).prod(dim=2)
        ratio = torch.where(valid, ratio, torch.zeros_like(ratio))
        ratio_sum = ratio.sum(dim=1, keepdim=True)
        interpolable = ratio_sum[:, 0] > 0
        ratio = torch.where(interpolable[:, None], ratio / ratio_sum.clamp(min=1e-12), ratio)

        outputs["mask"][rows] = valid
        outputs["ratio"][rows] = ratio
        outputs["index"][rows] = torch.where(valid, flat, torch.full_like(flat, -1))

        if color_buf is not None:
            colors = _gather(color_buf, flat, valid) / color_range
            outputs["color"][rows] = (ratio[..., None] * colors).sum(dim=1)

        normals_world = _interpolate_gradient(index, tsdf_buf, weight_buf, corners, ratio, voxel_size)
        norm = normals_world.norm(dim=1, keepdim=True)
        normals_world = torch.where(norm > 1e-8, normals_world / norm.clamp(min=1e-8), torch.zeros_like(normals_world))
        outputs["normal"][rows] = normals_world @ extrinsic[:3, :3].T

    logger.debug(f"Ray cast {width}x{height}: {hits} surface hits")

    return {
        "vertex": outputs["vertex"].view(height, width, 3),
        "depth": outputs["depth"].view(height, width, 1),
        "color": outputs["color"].view(height, width, 3),
        "normal": outputs["normal"].view(height, width, 3),
        "mask": outputs["mask"].view(height, width, 8),
        "ratio": outputs["ratio"].view(height, width, 8),
        "index": outputs["index"].view(height, width, 8),
        "range": range_map,
    }


def _march(
    index: BlockHashIndex,
    tsdf_buf: torch.Tensor,
    weight_buf: torch.Tensor,
    origin: torch.Tensor,
    dirs: torch.Tensor,
    t_start: torch.Tensor,
    t_end: torch.Tensor,
    voxel_size: float,
    weight_threshold: float,
) -> torch.Tensor:
    """
    Camera depth of the first surface crossing per ray, 0 where none.

    Samples read the nearest lattice voxel. Unallocated or unobserved samples
    advance one voxel and break the sign-change chain; observed samples in
    front of the surface advance by their TSDF (at least one voxel).
    """
    n = dirs.shape[0]
    device = dirs.device
    dir_norm = dirs.norm(dim=1)

    t = t_start.clone()
    t_prev = torch.zeros_like(t)
    tsdf_prev = torch.zeros_like(t)
    prev_valid = torch.zeros(n, dtype=torch.bool, device=device)
    t_hit = torch.zeros_like(t)

    alive = torch.nonzero(t < t_end).squeeze(1)
    if alive.numel() == 0:
        return t_hit

    max_span = ((t_end - t_start)[alive] * dir_norm[alive]).max().item()
    max_steps = int(math.ceil(max_span / voxel_size)) + 2

    for _ in range(max_steps):
        if alive.numel() == 0:
            break
        ta = t[alive]
        points = origin + ta[:, None] * dirs[alive]
        voxels = torch.floor(points / voxel_size + 0.5).to(torch.int64)
        flat, ok = index.find_voxels(voxels)

        tsdf = torch.zeros_like(ta)
        weight = torch.zeros_like(ta)
        tsdf[ok] = tsdf_buf[flat[ok], 0].to(torch.float32)
        weight[ok] = weight_buf[flat[ok], 0].to(torch.float32)
        observed = ok & (weight > 0)

        crossing = (
            observed
            & (weight >= weight_threshold)
            & prev_valid[alive]
            & (tsdf_prev[alive] > 0)
            & (tsdf <= 0)
        )
        if bool(crossing.any()):
            rows = alive[crossing]
            tp, sp, sc = t_prev[rows], tsdf_prev[rows], tsdf[crossing]
            t_hit[rows] = (ta[crossing] * sp - tp * sc) / (sp - sc)

        prev_valid[alive] = observed
        tsdf_prev[alive] = tsdf
        t_prev[alive] = ta

        step = torch.where(observed & (tsdf > voxel_size), tsdf, torch.full_like(tsdf, voxel_size))
        t[alive] = ta + step / dir_norm[alive]

        keep = ~crossing & (t[alive] < t_end[alive])
        alive = alive[keep]

    return t_hit


def _interpolate_gradient(
    index: BlockHashIndex,
    tsdf_buf: torch.Tensor,
    weight_buf: torch.Tensor,
    corners: torch.Tensor,
    ratio: torch.Tensor,
    voxel_size: float,
) -> torch.Tensor:
    """Trilinear blend of central-difference TSDF gradients at the 8 corners [P, 3]."""
    device = corners.device
    axes = torch.eye(3, dtype=torch.int64, device=device)
    # [P, 8, 2, 3, 3]: sign (+, -), axis, coordinate
    neighbors = corners[:, :, None, None, :] + torch.stack([axes, -axes])[None, None]
    flat, ok = index.find_voxels(neighbors)
    weights = _gather(weight_buf, flat, ok)[..., 0]
    valid = ok & (weights > 0)
    tsdf = _gather(tsdf_buf, flat, valid)[..., 0]

    both = valid[:, :, 0, :] & valid[:, :, 1, :]
    grad = (tsdf[:, :, 0, :] - tsdf[:, :, 1, :]) / (2.0 * voxel_size)
    grad = torch.where(both, grad, torch.zeros_like(grad))
    return (ratio[..., None] * grad).sum(dim=1)
