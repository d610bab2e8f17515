"""
Frame-by-frame fusion driver.

Runs the touch / integrate loop over a sequence of RGB-D frames and exposes
rendering and point cloud extraction of the fused volume.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

import torch
from tqdm import tqdm

from .config import VoxelBlockGridConfig
from .pointcloud import PointCloud
from .utils.tensor_checks import ArrayLike
from .voxel_block_grid import VoxelBlockGrid

logger = logging.getLogger(__name__)


@dataclass
class RGBDFrame:
    """One posed observation"""

    depth: ArrayLike  # [H, W] uint16 or float32
    intrinsic: ArrayLike  # [3, 3]
    extrinsic: ArrayLike  # [4, 4] world-to-camera
    color: Optional[ArrayLike] = None  # [H', W', 3] uint8 or float32
    depth_scale: float = 1000.0
    depth_max: float = 3.0


class FusionPipeline:
    """
    TSDF fusion over a voxel block grid.

    Args:
        config: Grid configuration, used when no grid is given
        grid: Existing grid to keep integrating into
    """

    def __init__(
        self,
        config: Optional[VoxelBlockGridConfig] = None,
        grid: Optional[VoxelBlockGrid] = None,
    ):
        if grid is None:
            grid = VoxelBlockGrid(config or VoxelBlockGridConfig())
        self.grid = grid
        self.config = grid.config
        logging.getLogger("blockfusion").setLevel(self.config.log_level)

        self.frames_integrated = 0
        self.last_block_coords: Optional[torch.Tensor] = None

    def integrate_frame(self, frame: RGBDFrame) -> torch.Tensor:
        """Touch and integrate one frame, returns its block coordinates."""
        block_coords = self.grid.get_unique_block_coordinates(
            frame.depth,
            frame.intrinsic,
            frame.extrinsic,
            depth_scale=frame.depth_scale,
            depth_max=frame.depth_max,
        )
        self.grid.integrate(
            block_coords,
            frame.depth,
            frame.color,
            frame.intrinsic,
            frame.extrinsic,
            depth_scale=frame.depth_scale,
            depth_max=frame.depth_max,
        )
        self.frames_integrated += 1
        self.last_block_coords = block_coords
        return block_coords

    def integrate_frames(self, frames: Iterable[RGBDFrame], show_progress: bool = True) -> int:
        """
        Integrate a sequence of frames.

        Frames failing validation are logged and skipped.

        Returns:
            Number of frames integrated
        """
        integrated = 0
        for i, frame in enumerate(tqdm(frames, desc="Integrating", disable=not show_progress)):
            try:
                self.integrate_frame(frame)
            except ValueError as e:
                logger.warning(f"Skipping frame {i}: {e}")
                continue
            integrated += 1

        logger.info(
            f"Integrated {integrated} frames, {self.grid.num_blocks()} blocks allocated"
        )
        return integrated

    def render(
        self,
        intrinsic: ArrayLike,
        extrinsic: ArrayLike,
        width: int,
        height: int,
        depth_scale: float = 1000.0,
        depth_min: float = 0.1,
        depth_max: float = 3.0,
        weight_threshold: float = 3.0,
        block_coords: Optional[torch.Tensor] = None,
    ) -> Dict[str, torch.Tensor]:
        """
        Ray cast the fused volume.

        Ray ranges are bounded by `block_coords`, by default every allocated block.
        """
        if block_coords is None:
            n = self.grid.num_blocks()
            block_coords = self.grid.hashmap.get_key_tensor()[:n]
        return self.grid.ray_cast(
            block_coords,
            intrinsic,
            extrinsic,
            width,
            height,
            depth_scale=depth_scale,
            depth_min=depth_min,
            depth_max=depth_max,
            weight_threshold=weight_threshold,
        )

    def extract_point_cloud(
        self,
        estimated_number: int = -1,
        weight_threshold: float = 3.0,
        down_sample_voxel_size: Optional[float] = None,
    ) -> PointCloud:
        """Surface points of the fused volume, optionally voxel down sampled."""
        pcd = self.grid.extract_surface_points(estimated_number, weight_threshold)
        if down_sample_voxel_size is not None:
            pcd = pcd.voxel_down_sample(down_sample_voxel_size)
        logger.info(f"Extracted point cloud with {len(pcd)} points")
        return pcd
