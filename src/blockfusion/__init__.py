"""
BlockFusion - sparse voxel block grid for TSDF fusion

Volumetric reconstruction on a spatially hashed grid of voxel blocks.

Features:
- Lazy block allocation through a GPU friendly hash map
- Weighted TSDF / color integration of RGB-D frames
- Ray casting of depth, vertex, color and normal maps
- Surface point extraction
"""

__version__ = "1.0.0"
__author__ = "BlockFusion Team"

from .config import VoxelBlockGridConfig, load_config, save_config
from .fusion import FusionPipeline, RGBDFrame
from .pointcloud import PointCloud
from .voxel_block_grid import VoxelBlockGrid

__all__ = [
    "VoxelBlockGrid",
    "VoxelBlockGridConfig",
    "load_config",
    "save_config",
    "PointCloud",
    "FusionPipeline",
    "RGBDFrame",
]
