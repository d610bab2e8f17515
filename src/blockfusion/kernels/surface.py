"""
Surface point extraction.

Emits one point on every voxel edge (along +x, +y, +z) where the TSDF changes
sign between two sufficiently observed voxels. Neighboring voxels across block
boundaries are reached through the 27-block neighbor table.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional, Sequence

import torch

from ..block_index import BlockHashIndex

logger = logging.getLogger(__name__)

AXES = ((1, 0, 0), (0, 1, 0), (0, 0, 1))


def _sample(buffer: torch.Tensor, flat: torch.Tensor, valid: torch.Tensor) -> torch.Tensor:
    out = torch.zeros((*flat.shape, buffer.shape[1]), dtype=torch.float32, device=flat.device)
    out[valid] = buffer[flat[valid]].to(torch.float32)
    return out


def _gradient(
    index: BlockHashIndex,
    tsdf_buf: torch.Tensor,
    weight_buf: torch.Tensor,
    nb_indices: torch.Tensor,
    local: torch.Tensor,
    center: Sequence[int],
    voxel_size: float,
) -> torch.Tensor:
    """Central-difference TSDF gradient at `local + center` [B, V, 3], 0 where undefined."""
    components = []
    for axis in AXES:
        plus = [c + a for c, a in zip(center, axis)]
        minus = [c - a for c, a in zip(center, axis)]
        flat_p, ok_p = index.neighbor_flat_indices(nb_indices, local, plus)
        flat_m, ok_m = index.neighbor_flat_indices(nb_indices, local, minus)
        ok_p &= _sample(weight_buf, flat_p, ok_p)[..., 0] > 0
        ok_m &= _sample(weight_buf, flat_m, ok_m)[..., 0] > 0
        diff = _sample(tsdf_buf, flat_p, ok_p)[..., 0] - _sample(tsdf_buf, flat_m, ok_m)[..., 0]
        components.append(torch.where(ok_p & ok_m, diff / (2.0 * voxel_size), torch.zeros_like(diff)))
    return torch.stack(components, dim=-1)


@torch.no_grad()
def extract_surface_points(
    index: BlockHashIndex,
    tsdf_slot: int,
    weight_slot: int,
    color_slot: Optional[int],
    voxel_size: float,
    weight_threshold: float = 3.0,
    estimated_number: int = -1,
    block_chunk_size: int = 256,
) -> Dict[str, Optional[torch.Tensor]]:
    """
    Extract zero-crossing points from all active blocks.

    Args:
        estimated_number: Point budget, the output is truncated to it when
            positive. Non-positive values mean no budget.

    Returns:
        dict with positions [N, 3], normals [N, 3] and colors [N, 3] (None
        without a color attribute)
    """
    device = index.device
    res = index.block_resolution
    n_vox = index.voxels_per_block

    tsdf_buf = index.flat_value(tsdf_slot)
    weight_buf = index.flat_value(weight_slot)
    color_buf = index.flat_value(color_slot) if color_slot is not None else None
    color_range = 1.0 if color_buf is None or color_buf.is_floating_point() else 255.0

    keys = index.get_key_tensor()
    active = index.get_active_indices()
    local = index.local_coords[None]

    positions, normals, colors = [], [], []
    for start in range(0, active.numel(), block_chunk_size):
        blocks = active[start : start + block_chunk_size]
        nb_indices, _ = index.radius_neighbors(blocks)

        own = blocks[:, None] * n_vox + torch.arange(n_vox, device=device)[None]
        tsdf = tsdf_buf[own, 0].to(torch.float32)
        weight = weight_buf[own, 0].to(torch.float32)
        observed = (weight > 0) & (weight >= weight_threshold)
        if not bool(observed.any()):
            continue

        voxel_coords = keys[blocks].to(torch.int64)[:, None, :] * res + local
        own_grad = _gradient(index, tsdf_buf, weight_buf, nb_indices, local, (0, 0, 0), voxel_size)

        for axis in AXES:
            flat_nb, ok_nb = index.neighbor_flat_indices(nb_indices, local, axis)
            weight_nb = _sample(weight_buf, flat_nb, ok_nb)[..., 0]
            tsdf_nb = _sample(tsdf_buf, flat_nb, ok_nb)[..., 0]

            crossing = (
                observed
                & ok_nb
                & (weight_nb > 0)
                & (weight_nb >= weight_threshold)
                & ((tsdf >= 0) != (tsdf_nb >= 0))
            )
            if not bool(crossing.any()):
                continue

            r = tsdf[crossing] / (tsdf[crossing] - tsdf_nb[crossing])
            step = torch.tensor(axis, dtype=torch.float32, device=device)
            points = (voxel_coords[crossing].to(torch.float32) + r[:, None] * step) * voxel_size
            positions.append(points)

            nb_grad = _gradient(index, tsdf_buf, weight_buf, nb_indices, local, axis, voxel_size)
            grad = (1.0 - r[:, None]) * own_grad[crossing] + r[:, None] * nb_grad[crossing]
            norm = grad.norm(dim=1, keepdim=True)
            normals.append(torch.where(norm > 1e-8, grad / norm.clamp(min=1e-8), torch.zeros_like(grad)))

            if color_buf is not None:
                c0 = color_buf[own[crossing]].to(torch.float32)
                c1 = color_buf[flat_nb[crossing]].to(torch.float32)
                colors.append(((1.0 - r[:, None]) * c0 + r[:, None] * c1) / color_range)

    if positions:
        out_positions = torch.cat(positions)
        out_normals = torch.cat(normals)
        out_colors = torch.cat(colors) if color_buf is not None else None
    else:
        out_positions = torch.zeros((0, 3), dtype=torch.float32, device=device)
        out_normals = torch.zeros((0, 3), dtype=torch.float32, device=device)
        out_colors = torch.zeros((0, 3), dtype=torch.float32, device=device) if color_buf is not None else None

    total = out_positions.shape[0]
    if estimated_number > 0 and total > estimated_number:
        logger.warning(
            f"Extracted {total} surface points, truncated to the estimated number "
            f"{estimated_number}; the point cloud may be incomplete"
        )
        out_positions = out_positions[:estimated_number]
        out_normals = out_normals[:estimated_number]
        if out_colors is not None:
            out_colors = out_colors[:estimated_number]

    logger.debug(f"Extracted {out_positions.shape[0]} surface points from {active.numel()} blocks")
    return {"positions": out_positions, "normals": out_normals, "colors": out_colors}
