"""
Point cloud container.

Holds positions with optional per-point colors and normals as tensors on one
device. Used as input of the point cloud touch pass and as output of surface
extraction, with conversion helpers for open3d and trimesh.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np
import torch

from .hashmap import create_hashmap
from .utils.camera_utils import pose_from_extrinsic, project_points, transform_points, unproject_pixels
from .utils.tensor_checks import (
    ArrayLike,
    as_tensor,
    check_color_tensor,
    check_depth_tensor,
    check_extrinsic_tensor,
    check_intrinsic_tensor,
    check_positions,
    dtype_name,
)

logger = logging.getLogger(__name__)


class PointCloud:
    """Point cloud with `positions` and optional `colors` / `normals` attributes."""

    def __init__(
        self,
        positions: Optional[ArrayLike] = None,
        colors: Optional[ArrayLike] = None,
        normals: Optional[ArrayLike] = None,
        device: Union[str, torch.device, None] = None,
    ):
        if device is None:
            device = positions.device if isinstance(positions, torch.Tensor) else "cpu"
        self.device = torch.device(device)

        if positions is None:
            positions = torch.zeros((0, 3), dtype=torch.float32)
        self._attrs: Dict[str, torch.Tensor] = {"positions": check_positions(positions, self.device)}
        if colors is not None:
            self.colors = colors
        if normals is not None:
            self.normals = normals

    # Attributes

    @property
    def positions(self) -> torch.Tensor:
        return self._attrs["positions"]

    @positions.setter
    def positions(self, value: ArrayLike):
        positions = check_positions(value, self.device)
        for name in ("colors", "normals"):
            if name in self._attrs and self._attrs[name].shape[0] != positions.shape[0]:
                raise ValueError(f"New positions mismatch existing {name} length")
        self._attrs["positions"] = positions

    @property
    def colors(self) -> Optional[torch.Tensor]:
        return self._attrs.get("colors")

    @colors.setter
    def colors(self, value: ArrayLike):
        self._set_point_attr("colors", value)

    @property
    def normals(self) -> Optional[torch.Tensor]:
        return self._attrs.get("normals")

    @normals.setter
    def normals(self, value: ArrayLike):
        self._set_point_attr("normals", value)

    def _set_point_attr(self, name: str, value: ArrayLike) -> None:
        value = as_tensor(value, self.device)
        if value.dim() != 2 or value.shape[1] != 3:
            raise ValueError(f"{name} must have shape (N, 3), got {tuple(value.shape)}")
        if value.shape[0] != len(self):
            raise ValueError(f"{name} length {value.shape[0]} mismatch with {len(self)} points")
        self._attrs[name] = value

    def has_colors(self) -> bool:
        return "colors" in self._attrs

    def has_normals(self) -> bool:
        return "normals" in self._attrs

    def __len__(self) -> int:
        return self.positions.shape[0]

    def is_empty(self) -> bool:
        return len(self) == 0

    def __repr__(self) -> str:
        attrs = ", ".join(self._attrs)
        return f"PointCloud({len(self)} points, attributes=[{attrs}], device={self.device})"

    # Geometry

    def get_min_bound(self) -> torch.Tensor:
        if self.is_empty():
            return torch.zeros(3, device=self.device)
        return self.positions.min(dim=0).values

    def get_max_bound(self) -> torch.Tensor:
        if self.is_empty():
            return torch.zeros(3, device=self.device)
        return self.positions.max(dim=0).values

    def get_center(self) -> torch.Tensor:
        if self.is_empty():
            return torch.zeros(3, device=self.device)
        return self.positions.mean(dim=0)

    def to(self, device: Union[str, torch.device]) -> "PointCloud":
        """Copy to another device."""
        return PointCloud(self.positions, self.colors, self.normals, device=device)

    def clone(self) -> "PointCloud":
        return PointCloud(
            self.positions.clone(),
            self.colors.clone() if self.has_colors() else None,
            self.normals.clone() if self.has_normals() else None,
            device=self.device,
        )

    def transform(self, transformation: ArrayLike) -> "PointCloud":
        """Apply a 4x4 rigid transform in place, normals are rotated."""
        T = check_extrinsic_tensor(transformation, self.device)
        self._attrs["positions"] = transform_points(T, self.positions)
        if self.has_normals():
            self._attrs["normals"] = self.normals.to(torch.float32) @ T[:3, :3].T
        return self

    def translate(self, translation: ArrayLike, relative: bool = True) -> "PointCloud":
        """Translate in place; with relative=False the center is moved to `translation`."""
        t = as_tensor(translation, self.device, torch.float32).view(3)
        if not relative:
            t = t - self.get_center()
        self._attrs["positions"] = self.positions + t
        return self

    def scale(self, scale: float, center: ArrayLike) -> "PointCloud":
        c = as_tensor(center, self.device, torch.float32).view(3)
        self._attrs["positions"] = (self.positions - c) * scale + c
        return self

    def rotate(self, R: ArrayLike, center: ArrayLike) -> "PointCloud":
        R = as_tensor(R, self.device, torch.float32)
        if tuple(R.shape) != (3, 3):
            raise ValueError(f"Rotation must have shape (3, 3), got {tuple(R.shape)}")
        c = as_tensor(center, self.device, torch.float32).view(3)
        self._attrs["positions"] = (self.positions - c) @ R.T + c
        if self.has_normals():
            self._attrs["normals"] = self.normals.to(torch.float32) @ R.T
        return self

    def voxel_down_sample(self, voxel_size: float) -> "PointCloud":
        """
        Average all points falling into the same voxel.

        Args:
            voxel_size: Voxel edge length, must be positive

        Returns:
            New point cloud with one point per occupied voxel
        """
        if voxel_size <= 0:
            raise ValueError("voxel_size must be positive")
        if self.is_empty():
            return self.clone()

        voxel_coords = torch.floor(self.positions / voxel_size).to(torch.int32)
        hashmap = create_hashmap("linear_probing", len(self), device=self.device)
        buf_indices, _ = hashmap.activate(voxel_coords)
        n = hashmap.size()

        counts = torch.zeros(n, dtype=torch.float32, device=self.device)
        counts.index_add_(0, buf_indices, torch.ones(len(self), device=self.device))

        def average(values: torch.Tensor) -> torch.Tensor:
            total = torch.zeros((n, values.shape[1]), dtype=torch.float32, device=self.device)
            total.index_add_(0, buf_indices, values.to(torch.float32))
            return total / counts[:, None]

        down = PointCloud(average(self.positions), device=self.device)
        if self.has_colors():
            down.colors = average(self.colors).to(self.colors.dtype)
        if self.has_normals():
            normals = average(self.normals)
            norm = normals.norm(dim=1, keepdim=True)
            down.normals = torch.where(norm > 1e-8, normals / norm.clamp(min=1e-8), normals)

        logger.debug(f"Voxel down sample: {len(self)} -> {n} points")
        return down

    # Depth images

    @classmethod
    def create_from_depth_image(
        cls,
        depth: ArrayLike,
        intrinsic: ArrayLike,
        extrinsic: Optional[ArrayLike] = None,
        depth_scale: float = 1000.0,
        depth_max: float = 3.0,
        stride: int = 1,
        device: Union[str, torch.device] = "cpu",
    ) -> "PointCloud":
        """
        Unproject every `stride`-th pixel of a uint16 or float32 depth image.

        Pixels with depth <= 0 or at or beyond depth_max are skipped. Points are in
        world coordinates when an extrinsic (world-to-camera) is given.
        """
        return cls._from_depth(depth, None, intrinsic, extrinsic, depth_scale, depth_max, stride, device)

    @classmethod
    def create_from_rgbd_image(
        cls,
        depth: ArrayLike,
        color: ArrayLike,
        intrinsic: ArrayLike,
        extrinsic: Optional[ArrayLike] = None,
        depth_scale: float = 1000.0,
        depth_max: float = 3.0,
        stride: int = 1,
        device: Union[str, torch.device] = "cpu",
    ) -> "PointCloud":
        """Same as create_from_depth_image, with colors from an aligned color image."""
        return cls._from_depth(depth, color, intrinsic, extrinsic, depth_scale, depth_max, stride, device)

    @classmethod
    def _from_depth(cls, depth, color, intrinsic, extrinsic, depth_scale, depth_max, stride, device):
        if stride <= 0:
            raise ValueError("stride must be positive")
        device = torch.device(device)
        depth = check_depth_tensor(depth, device)
        K = check_intrinsic_tensor(intrinsic, device)
        T = (
            check_extrinsic_tensor(extrinsic, device)
            if extrinsic is not None
            else torch.eye(4, dtype=torch.float32, device=device)
        )
        if color is not None:
            color = check_color_tensor(color, device)
            if tuple(color.shape[:2]) != tuple(depth.shape):
                raise ValueError(
                    f"Color image {tuple(color.shape[:2])} must be aligned with depth {tuple(depth.shape)}"
                )

        height, width = depth.shape
        vs = torch.arange(0, height, stride, device=device)
        us = torch.arange(0, width, stride, device=device)
        v, u = torch.meshgrid(vs, us, indexing="ij")
        d = depth[v, u] / depth_scale
        valid = (d > 0) & (d < depth_max)
        u, v, d = u[valid], v[valid], d[valid]

        points_cam = unproject_pixels(K, u.to(torch.float32), v.to(torch.float32), d)
        points = transform_points(pose_from_extrinsic(T), points_cam)
        colors = color[v, u] if color is not None else None
        return cls(points, colors, device=device)

    def _z_buffer(
        self,
        width: int,
        height: int,
        intrinsic: ArrayLike,
        extrinsic: Optional[ArrayLike],
        depth_max: float,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Nearest point per pixel.

        Returns:
            tuple of (camera depth [H * W], inf where empty, and index of the
            nearest point [H * W], -1 where empty)
        """
        K = check_intrinsic_tensor(intrinsic, self.device)
        T = (
            check_extrinsic_tensor(extrinsic, self.device)
            if extrinsic is not None
            else torch.eye(4, dtype=torch.float32, device=self.device)
        )
        points_cam = transform_points(T, self.positions)
        z = points_cam[:, 2]
        u, v = project_points(K, points_cam)
        u = torch.round(u).to(torch.int64)
        v = torch.round(v).to(torch.int64)
        valid = (z > 0) & (z < depth_max) & (u >= 0) & (u < width) & (v >= 0) & (v < height)

        pixels = (v * width + u)[valid]
        z_valid = z[valid]
        depth = torch.full((height * width,), float("inf"), dtype=torch.float32, device=self.device)
        depth.scatter_reduce_(0, pixels, z_valid, reduce="amin")

        # Points tied at the nearest depth resolve to the highest index
        nearest = z_valid == depth[pixels]
        point_ids = torch.nonzero(valid).squeeze(1)
        winner = torch.full((height * width,), -1, dtype=torch.int64, device=self.device)
        winner.scatter_reduce_(0, pixels[nearest], point_ids[nearest], reduce="amax")
        return depth, winner

    def project_to_depth_image(
        self,
        width: int,
        height: int,
        intrinsic: ArrayLike,
        extrinsic: Optional[ArrayLike] = None,
        depth_scale: float = 1000.0,
        depth_max: float = 3.0,
    ) -> torch.Tensor:
        """
        Render the points into a float32 depth image [H, W] in depth image units.

        The nearest point wins per pixel, pixels without points are 0.
        """
        depth, _ = self._z_buffer(width, height, intrinsic, extrinsic, depth_max)
        depth = torch.where(torch.isinf(depth), torch.zeros_like(depth), depth * depth_scale)
        return depth.view(height, width)

    def project_to_rgbd_image(
        self,
        width: int,
        height: int,
        intrinsic: ArrayLike,
        extrinsic: Optional[ArrayLike] = None,
        depth_scale: float = 1000.0,
        depth_max: float = 3.0,
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Render the points into a depth image [H, W] and a color image [H, W, 3].

        Each pixel takes the color of its nearest point, in the dtype of the
        point colors. Pixels without points are 0 in both images.
        """
        if not self.has_colors():
            raise ValueError("Unable to project to RGBD without colors in the point cloud")

        depth, winner = self._z_buffer(width, height, intrinsic, extrinsic, depth_max)
        hit = winner >= 0
        color = torch.zeros((height * width, 3), dtype=self.colors.dtype, device=self.device)
        color[hit] = self.colors[winner[hit]]

        depth = torch.where(hit, depth * depth_scale, torch.zeros_like(depth))
        return depth.view(height, width), color.view(height, width, 3)

    # Interop

    @classmethod
    def from_legacy(cls, pcd, device: Union[str, torch.device] = "cpu") -> "PointCloud":
        """Create from an open3d.geometry.PointCloud."""
        if not pcd.has_points():
            logger.warning("Legacy point cloud has no points, returning an empty point cloud")
            return cls(device=device)

        positions = np.asarray(pcd.points, dtype=np.float32)
        colors = np.asarray(pcd.colors, dtype=np.float32) if pcd.has_colors() else None
        normals = np.asarray(pcd.normals, dtype=np.float32) if pcd.has_normals() else None
        return cls(positions, colors, normals, device=device)

    def to_legacy(self):
        """Convert to an open3d.geometry.PointCloud (colors rescaled to [0, 1])."""
        import open3d as o3d

        pcd = o3d.geometry.PointCloud()
        pcd.points = o3d.utility.Vector3dVector(self.positions.detach().cpu().numpy().astype(np.float64))
        if self.has_colors():
            pcd.colors = o3d.utility.Vector3dVector(self._normalized_colors().astype(np.float64))
        if self.has_normals():
            pcd.normals = o3d.utility.Vector3dVector(
                self.normals.detach().cpu().numpy().astype(np.float64)
            )
        return pcd

    def export(self, path: Union[str, Path]) -> None:
        """Write the point cloud to a file (ply, xyz, ...) through trimesh."""
        import trimesh

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        colors = None
        if self.has_colors():
            colors = (np.clip(self._normalized_colors(), 0.0, 1.0) * 255).astype(np.uint8)
        cloud = trimesh.PointCloud(self.positions.detach().cpu().numpy(), colors=colors)
        cloud.export(str(path))
        logger.info(f"Exported {len(self)} points to {path}")

    def _normalized_colors(self) -> np.ndarray:
        colors = self.colors.detach().cpu()
        if colors.dtype == torch.uint8:
            return colors.numpy().astype(np.float32) / 255.0
        if dtype_name(colors) == "uint16":
            return colors.numpy().astype(np.float32) / 65535.0
        return colors.to(torch.float32).numpy()
