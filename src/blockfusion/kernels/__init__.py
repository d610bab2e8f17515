"""
Vectorized passes over the voxel block grid.
"""

from .integrate import integrate_tsdf
from .raycast import estimate_range, ray_cast
from .surface import extract_surface_points
from .touch import depth_touch, point_cloud_touch

__all__ = [
    "depth_touch",
    "point_cloud_touch",
    "integrate_tsdf",
    "estimate_range",
    "ray_cast",
    "extract_surface_points",
]
