"""
Voxel block grid.

Sparse volumetric storage for TSDF fusion. Space is partitioned into cubic
blocks of block_resolution^3 voxels, allocated lazily through a hash map keyed
by integer block coordinates. The grid drives the four passes:

    1. touch: block coordinates an observation may affect
    2. integrate: weighted TSDF / color running average
    3. ray_cast: depth, vertex, color and normal maps of a virtual camera
    4. extract_surface_points: zero-crossing point cloud
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Optional, Tuple, Union

import torch

from .block_index import BlockHashIndex
from .config import VoxelBlockGridConfig, load_config
from .hashmap import HashMap, create_hashmap
from .kernels import (
    depth_touch,
    estimate_range,
    extract_surface_points,
    integrate_tsdf,
    point_cloud_touch,
    ray_cast,
)
from .pointcloud import PointCloud
from .utils.tensor_checks import (
    ArrayLike,
    as_tensor,
    check_block_coordinates,
    check_color_tensor,
    check_depth_tensor,
    check_extrinsic_tensor,
    check_intrinsic_tensor,
)

logger = logging.getLogger(__name__)


class VoxelBlockGrid:
    """
    Sparse grid of voxel blocks with named per-voxel attributes.

    Args:
        config: Grid configuration, defaults to VoxelBlockGridConfig()
        **kwargs: Overrides used to build a configuration when none is given
    """

    def __init__(self, config: Optional[VoxelBlockGridConfig] = None, **kwargs):
        if config is None:
            config = VoxelBlockGridConfig(**kwargs)
        elif kwargs:
            raise ValueError("Pass either a config or keyword overrides, not both")

        self.config = config
        self.device = torch.device(config.device)
        self.voxel_size = float(config.voxel_size)
        self.block_resolution = int(config.block_resolution)

        self.attr_name_to_slot = MappingProxyType(
            {name: slot for slot, name in enumerate(config.attr_names)}
        )
        self._attr_channels = dict(zip(config.attr_names, config.attr_channels))

        self.block_hashmap = BlockHashIndex(
            block_resolution=self.block_resolution,
            block_count=config.block_count,
            attr_dtypes=config.torch_dtypes(),
            attr_channels=config.attr_channels,
            device=self.device,
            backend=config.hash_backend,
        )
        self._frustum_hashmap: Optional[HashMap] = None

        logger.info(
            f"VoxelBlockGrid: voxel_size={self.voxel_size}, resolution={self.block_resolution}, "
            f"capacity={config.block_count}, attributes={list(config.attr_names)}, "
            f"backend={config.hash_backend}, device={self.device}"
        )

    @classmethod
    def from_config_file(cls, config_path: Union[str, Path]) -> "VoxelBlockGrid":
        return cls(load_config(config_path))

    @property
    def hashmap(self) -> BlockHashIndex:
        return self.block_hashmap

    def num_blocks(self) -> int:
        return self.block_hashmap.size()

    def __repr__(self) -> str:
        return (
            f"VoxelBlockGrid(blocks={self.num_blocks()}/{self.block_hashmap.capacity}, "
            f"voxel_size={self.voxel_size}, resolution={self.block_resolution})"
        )

    # Attributes

    def get_attribute(self, name: str) -> torch.Tensor:
        """
        Value buffer of an attribute, shape (capacity, R, R, R, *channels).

        Unknown names log a warning and return an empty tensor.
        """
        if name not in self.attr_name_to_slot:
            logger.warning(f"Attribute {name} not found, available: {list(self.attr_name_to_slot)}")
            return torch.empty(0, device=self.device)
        return self.block_hashmap.get_value_tensors()[self.attr_name_to_slot[name]]

    def get_voxel_indices(self, buf_indices: Optional[torch.Tensor] = None) -> torch.Tensor:
        """Flattened voxel indices of the given (default: all active) blocks [N * R^3]."""
        if buf_indices is None:
            buf_indices = self.block_hashmap.get_active_indices()
        buf_indices = buf_indices.to(device=self.device, dtype=torch.int64)
        n_vox = self.block_hashmap.voxels_per_block
        offsets = torch.arange(n_vox, device=self.device)
        return (buf_indices[:, None] * n_vox + offsets[None]).view(-1)

    def get_voxel_coordinates(self, voxel_indices: torch.Tensor) -> torch.Tensor:
        """World coordinates of flattened voxel indices [N, 3]."""
        voxel_indices = voxel_indices.to(device=self.device, dtype=torch.int64)
        n_vox = self.block_hashmap.voxels_per_block
        slots = torch.div(voxel_indices, n_vox, rounding_mode="floor")
        local = self.block_hashmap.local_coords[voxel_indices - slots * n_vox]
        keys = self.block_hashmap.get_key_tensor()[slots].to(torch.int64)
        return (keys * self.block_resolution + local).to(torch.float32) * self.voxel_size

    def get_voxel_coordinates_and_flattened_indices(
        self, buf_indices: Optional[torch.Tensor] = None
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        voxel_indices = self.get_voxel_indices(buf_indices)
        return self.get_voxel_coordinates(voxel_indices), voxel_indices

    def _require_tsdf_schema(self) -> Tuple[int, int]:
        for name in ("tsdf", "weight"):
            if name not in self.attr_name_to_slot:
                raise ValueError(f"Attribute {name} is required, available: {list(self.attr_name_to_slot)}")
        return self.attr_name_to_slot["tsdf"], self.attr_name_to_slot["weight"]

    def _color_slot(self) -> Optional[int]:
        if "color" not in self.attr_name_to_slot:
            return None
        if math.prod(self._attr_channels["color"]) != 3:
            raise ValueError(f"Color attribute must have 3 channels, got {self._attr_channels['color']}")
        return self.attr_name_to_slot["color"]

    # Touch

    def _scratch_hashmap(self, capacity: int) -> HashMap:
        """Scratch map for touch passes, rebuilt only when it is too small."""
        capacity = max(int(capacity), 1)
        if self._frustum_hashmap is None or self._frustum_hashmap.capacity < capacity:
            logger.debug(f"Building scratch hash map with capacity {capacity}")
            self._frustum_hashmap = create_hashmap(
                self.config.hash_backend, capacity, device=self.device
            )
        else:
            self._frustum_hashmap.clear()
        return self._frustum_hashmap

    def get_unique_block_coordinates(
        self,
        observation: Union[ArrayLike, PointCloud],
        intrinsic: Optional[ArrayLike] = None,
        extrinsic: Optional[ArrayLike] = None,
        depth_scale: float = 1000.0,
        depth_max: float = 3.0,
    ) -> torch.Tensor:
        """
        Block coordinates touched by a depth image or a point cloud.

        Args:
            observation: Depth image [H, W] (uint16 or float32) or PointCloud
            intrinsic: Pinhole intrinsic [3, 3], required for depth images
            extrinsic: World-to-camera transform [4, 4], required for depth images
            depth_scale: Depth image units per meter
            depth_max: Depth beyond which pixels are ignored

        Returns:
            Unique block coordinates [M, 3] (int32)
        """
        touch = self.config.touch
        if isinstance(observation, PointCloud):
            positions = observation.positions.to(self.device)
            scratch = self._scratch_hashmap(positions.shape[0] * touch.point_neighbor_multiplier)
            sdf_trunc = self.voxel_size * (self.block_resolution * 0.5 - 1)
            return point_cloud_touch(scratch, positions, self.block_resolution, self.voxel_size, sdf_trunc)

        depth = check_depth_tensor(observation, self.device)
        K = check_intrinsic_tensor(intrinsic, self.device)
        T = check_extrinsic_tensor(extrinsic, self.device)
        if depth_scale <= 0 or depth_max <= 0:
            raise ValueError("depth_scale and depth_max must be positive")

        height, width = depth.shape
        f = touch.depth_down_factor
        capacity = (
            math.ceil(height / f)
            * math.ceil(width / f)
            * max(touch.depth_sample_multiplier, touch.depth_ray_samples)
        )
        scratch = self._scratch_hashmap(capacity)
        return depth_touch(
            scratch,
            depth,
            K,
            T,
            self.block_resolution,
            self.voxel_size,
            self.config.truncation,
            depth_scale,
            depth_max,
            down_factor=f,
            ray_samples=touch.depth_ray_samples,
        )

    # Integration

    def integrate(
        self,
        block_coords: ArrayLike,
        depth: ArrayLike,
        color: Optional[ArrayLike] = None,
        intrinsic: Optional[ArrayLike] = None,
        extrinsic: Optional[ArrayLike] = None,
        depth_scale: float = 1000.0,
        depth_max: float = 3.0,
    ) -> None:
        """
        Allocate the given blocks and fuse a depth (and color) frame into them.

        Args:
            block_coords: Block coordinates [N, 3], usually from get_unique_block_coordinates
            depth: Depth image [H, W] (uint16 or float32)
            color: Optional color image [H', W', 3] (uint8 or float32)
            intrinsic: Depth camera intrinsic [3, 3]
            extrinsic: World-to-camera transform [4, 4]
        """
        tsdf_slot, weight_slot = self._require_tsdf_schema()
        block_coords = check_block_coordinates(block_coords, self.device)
        depth = check_depth_tensor(depth, self.device)
        K = check_intrinsic_tensor(intrinsic, self.device)
        T = check_extrinsic_tensor(extrinsic, self.device)
        if depth_scale <= 0 or depth_max <= 0:
            raise ValueError("depth_scale and depth_max must be positive")

        color_slot = None
        if color is not None:
            color_slot = self._color_slot()
            if color_slot is None:
                logger.warning("Color image given but the grid has no color attribute, ignoring it")
                color = None
            else:
                color = check_color_tensor(color, self.device)

        self.block_hashmap.activate(block_coords)
        buf_indices, masks = self.block_hashmap.find(block_coords)
        n_missing = int((~masks).sum().item())
        if n_missing > 0:
            logger.warning(
                f"{n_missing} of {block_coords.shape[0]} blocks could not be allocated "
                f"(capacity {self.block_hashmap.capacity}), skipping them"
            )

        updated = integrate_tsdf(
            self.block_hashmap,
            buf_indices[masks],
            depth,
            color,
            K,
            T,
            self.voxel_size,
            self.config.truncation,
            depth_scale,
            depth_max,
            tsdf_slot,
            weight_slot,
            color_slot,
            weight_cap=self.config.weight_cap,
            weight_function=self.config.weight_function,
            block_chunk_size=self.config.integrate_block_chunk_size,
        )
        logger.debug(f"Integrate: {updated} voxels updated, {self.num_blocks()} blocks allocated")

    # Queries

    def ray_cast(
        self,
        block_coords: ArrayLike,
        intrinsic: ArrayLike,
        extrinsic: ArrayLike,
        width: int,
        height: int,
        depth_scale: float = 1000.0,
        depth_min: float = 0.1,
        depth_max: float = 3.0,
        weight_threshold: float = 3.0,
    ) -> Dict[str, torch.Tensor]:
        """
        Render the grid from a virtual camera.

        Args:
            block_coords: Blocks bounding the ray ranges, usually the touched blocks of the frame
            width, height: Output image size

        Returns:
            dict of vertex, depth, color, normal, mask, ratio, index and range maps
        """
        tsdf_slot, weight_slot = self._require_tsdf_schema()
        color_slot = self._color_slot()
        block_coords = check_block_coordinates(block_coords, self.device)
        K = check_intrinsic_tensor(intrinsic, self.device)
        T = check_extrinsic_tensor(extrinsic, self.device)
        if width <= 0 or height <= 0:
            raise ValueError(f"Image size must be positive, got {width}x{height}")
        if depth_min < 0 or depth_min >= depth_max:
            raise ValueError(f"Invalid depth range [{depth_min}, {depth_max}]")
        if depth_scale <= 0:
            raise ValueError("depth_scale must be positive")

        raycast = self.config.raycast
        range_map = estimate_range(
            block_coords,
            K,
            T,
            height,
            width,
            raycast.range_down_factor,
            self.block_resolution,
            self.voxel_size,
            depth_min,
            depth_max,
        )
        return ray_cast(
            self.block_hashmap,
            range_map,
            K,
            T,
            height,
            width,
            self.voxel_size,
            depth_scale,
            depth_min,
            depth_max,
            weight_threshold,
            tsdf_slot,
            weight_slot,
            color_slot,
            range_down_factor=raycast.range_down_factor,
            pixel_chunk_size=raycast.pixel_chunk_size,
        )

    def extract_surface_points(
        self, estimated_number: int = -1, weight_threshold: float = 3.0
    ) -> PointCloud:
        """
        Extract the zero-crossing surface as a point cloud.

        Args:
            estimated_number: Point budget, the result is truncated to it when
                positive (and may then undercount the surface)
            weight_threshold: Minimum weight of both voxels of a crossing edge
        """
        tsdf_slot, weight_slot = self._require_tsdf_schema()
        result = extract_surface_points(
            self.block_hashmap,
            tsdf_slot,
            weight_slot,
            self._color_slot(),
            self.voxel_size,
            weight_threshold=weight_threshold,
            estimated_number=estimated_number,
            block_chunk_size=self.config.extraction.block_chunk_size,
        )
        return PointCloud(result["positions"], result["colors"], result["normals"], device=self.device)

    # Serialization

    def save(self, path: Union[str, Path]) -> None:
        """Save configuration, block coordinates and attribute values with torch.save."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        n = self.num_blocks()
        state = {
            "config": self.config.to_dict(),
            "keys": self.block_hashmap.get_key_tensor()[:n].cpu(),
            "values": [value[:n].cpu() for value in self.block_hashmap.get_value_tensors()],
        }
        torch.save(state, path)
        logger.info(f"Saved {n} blocks to {path}")

    @classmethod
    def load(cls, path: Union[str, Path], device: Optional[str] = None) -> "VoxelBlockGrid":
        """Load a grid written by save, optionally onto another device."""
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Grid file not found: {path}")

        state = torch.load(path, map_location="cpu")
        config_dict = dict(state["config"])
        if device is not None:
            config_dict["device"] = device
        grid = cls(VoxelBlockGridConfig.from_dict(config_dict))

        keys = as_tensor(state["keys"], grid.device)
        if keys.shape[0] > 0:
            buf_indices, _ = grid.block_hashmap.activate(keys)
            for value, saved in zip(grid.block_hashmap.get_value_tensors(), state["values"]):
                value[buf_indices] = saved.to(grid.device)

        logger.info(f"Loaded {grid.num_blocks()} blocks from {path}")
        return grid
