"""
TSDF integration pass.

Fuses one depth (and optional color) frame into allocated blocks. Every voxel
of every block is projected into the frame and updated with a weighted
running average. Blocks are deduplicated by slot first, so within one call
each voxel has exactly one writer.
"""

from __future__ import annotations

import logging
from typing import Optional

import torch

from ..block_index import BlockHashIndex
from ..utils.camera_utils import project_points, transform_points

logger = logging.getLogger(__name__)


def _weight_increment(weight_function: str, z: torch.Tensor) -> torch.Tensor:
    if weight_function == "uniform":
        return torch.ones_like(z)
    if weight_function == "inverse_depth":
        return (1.0 / z.clamp(min=1e-6)).clamp(max=1.0)
    raise ValueError(f"Unknown weight function {weight_function}")


def _store(buffer: torch.Tensor, indices: torch.Tensor, values: torch.Tensor) -> None:
    if not buffer.is_floating_point():
        # Saturate, a wrapped weight would read as unobserved
        info = torch.iinfo(buffer.dtype)
        values = torch.round(values).clamp(info.min, info.max)
    buffer[indices] = values.to(buffer.dtype).view(-1, buffer.shape[1])


@torch.no_grad()
def integrate_tsdf(
    index: BlockHashIndex,
    buf_indices: torch.Tensor,
    depth: torch.Tensor,
    color: Optional[torch.Tensor],
    intrinsic: torch.Tensor,
    extrinsic: torch.Tensor,
    voxel_size: float,
    sdf_trunc: float,
    depth_scale: float,
    depth_max: float,
    tsdf_slot: int,
    weight_slot: int,
    color_slot: Optional[int] = None,
    weight_cap: float = 1000.0,
    weight_function: str = "uniform",
    block_chunk_size: int = 512,
) -> int:
    """
    Integrate a frame into the given blocks.

    Args:
        index: Block index owning the attribute buffers
        buf_indices: Slots of the blocks to update [N]
        depth: Raw depth image [H, W] (float32)
        color: Optional color image [Hc, Wc, 3] in [0, 1]
        intrinsic: Depth camera intrinsic [3, 3]
        extrinsic: World-to-camera transform [4, 4]
        tsdf_slot, weight_slot, color_slot: Attribute buffer indices

    Returns:
        Number of voxels updated
    """
    buf_indices = torch.unique(buf_indices.to(torch.int64))
    if buf_indices.numel() == 0:
        return 0

    height, width = depth.shape
    res = index.block_resolution
    n_vox = index.voxels_per_block

    tsdf_buf = index.flat_value(tsdf_slot)
    weight_buf = index.flat_value(weight_slot)
    color_buf = index.flat_value(color_slot) if color is not None and color_slot is not None else None
    keys = index.get_key_tensor()

    if color_buf is not None:
        color_scale_u = color.shape[1] / width
        color_scale_v = color.shape[0] / height

    updated = 0
    for start in range(0, buf_indices.numel(), block_chunk_size):
        blocks = buf_indices[start : start + block_chunk_size]

        # Voxel lattice positions [B, V, 3]
        voxel_coords = keys[blocks].to(torch.int64)[:, None, :] * res + index.local_coords[None]
        points = voxel_coords.to(torch.float32) * voxel_size
        points_cam = transform_points(extrinsic, points)
        z = points_cam[..., 2]

        u, v = project_points(intrinsic, points_cam)
        u = torch.round(u).to(torch.int64)
        v = torch.round(v).to(torch.int64)
        valid = (z > 0) & (u >= 0) & (u < width) & (v >= 0) & (v < height)

        observed = torch.zeros_like(z)
        observed[valid] = depth[v[valid], u[valid]] / depth_scale
        sdf = observed - z
        valid &= (observed > 0) & (observed < depth_max) & (sdf >= -sdf_trunc)

        if not bool(valid.any()):
            continue

        flat = (blocks[:, None] * n_vox + torch.arange(n_vox, device=blocks.device)[None])[valid]
        sdf = sdf[valid].clamp(max=sdf_trunc)
        dw = _weight_increment(weight_function, z[valid])

        w = weight_buf[flat, 0].to(torch.float32)
        tsdf = tsdf_buf[flat, 0].to(torch.float32)
        w_sum = w + dw

        _store(tsdf_buf, flat, (tsdf * w + sdf * dw) / w_sum)
        _store(weight_buf, flat, torch.clamp(w_sum, max=weight_cap))

        if color_buf is not None:
            uc = (u[valid].to(torch.float32) * color_scale_u).to(torch.int64).clamp(0, color.shape[1] - 1)
            vc = (v[valid].to(torch.float32) * color_scale_v).to(torch.int64).clamp(0, color.shape[0] - 1)
            observed_color = color[vc, uc]
            # Integer color buffers hold 8-bit intensities
            color_range = 1.0 if color_buf.is_floating_point() else 255.0
            stored = color_buf[flat].to(torch.float32) / color_range
            blended = (stored * w[:, None] + observed_color * dw[:, None]) / w_sum[:, None]
            _store(color_buf, flat, blended * color_range)

        updated += flat.numel()

    logger.debug(f"Integrated {updated} voxels in {buf_indices.numel()} blocks")
    return updated
