"""
Pinhole camera helpers shared by the grid passes.

Conventions: the intrinsic matrix K maps camera coordinates to pixels,
the extrinsic matrix maps world coordinates to camera coordinates, and a
pixel (u, v) addresses column u and row v.
"""

from __future__ import annotations

from typing import Tuple

import torch


def pose_from_extrinsic(extrinsic: torch.Tensor) -> torch.Tensor:
    """Invert a rigid world-to-camera transform (camera-to-world pose)."""
    R = extrinsic[:3, :3]
    t = extrinsic[:3, 3]
    pose = torch.eye(4, dtype=extrinsic.dtype, device=extrinsic.device)
    pose[:3, :3] = R.T
    pose[:3, 3] = -R.T @ t
    return pose


def transform_points(T: torch.Tensor, points: torch.Tensor) -> torch.Tensor:
    """Apply a 4x4 rigid transform to points [..., 3]."""
    return points @ T[:3, :3].T + T[:3, 3]


def project_points(
    intrinsic: torch.Tensor, points_cam: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Project camera-space points to continuous pixel coordinates.

    Points with z <= 0 produce meaningless (but finite) pixels, callers mask them.

    Returns:
        tuple of (u, v)
    """
    z = points_cam[..., 2]
    safe_z = torch.where(z.abs() > 1e-8, z, torch.ones_like(z))
    u = intrinsic[0, 0] * points_cam[..., 0] / safe_z + intrinsic[0, 2]
    v = intrinsic[1, 1] * points_cam[..., 1] / safe_z + intrinsic[1, 2]
    return u, v


def unproject_pixels(
    intrinsic: torch.Tensor, u: torch.Tensor, v: torch.Tensor, depth: torch.Tensor
) -> torch.Tensor:
    """Unproject pixels at camera depth `depth` into camera space [..., 3]."""
    x = (u - intrinsic[0, 2]) * depth / intrinsic[0, 0]
    y = (v - intrinsic[1, 2]) * depth / intrinsic[1, 1]
    return torch.stack([x, y, depth], dim=-1)


def pixel_grid(
    height: int, width: int, stride: int, device: torch.device
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Strided pixel coordinates (u, v), each [ceil(H/stride), ceil(W/stride)]."""
    vs = torch.arange(0, height, stride, device=device, dtype=torch.float32)
    us = torch.arange(0, width, stride, device=device, dtype=torch.float32)
    v, u = torch.meshgrid(vs, us, indexing="ij")
    return u, v


def camera_rays(
    intrinsic: torch.Tensor, extrinsic: torch.Tensor, u: torch.Tensor, v: torch.Tensor
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    World-space rays through pixels.

    The direction is scaled so that its camera-space z component is 1, so
    `origin + t * direction` lies at camera depth t.

    Returns:
        tuple of (origin [3], directions [..., 3])
    """
    pose = pose_from_extrinsic(extrinsic)
    dirs_cam = unproject_pixels(intrinsic, u, v, torch.ones_like(u))
    dirs_world = dirs_cam @ pose[:3, :3].T
    return pose[:3, 3], dirs_world
