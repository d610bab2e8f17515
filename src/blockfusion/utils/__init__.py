"""
Utility functions for blockfusion.
"""

from .camera_utils import (
    camera_rays,
    pixel_grid,
    pose_from_extrinsic,
    project_points,
    transform_points,
    unproject_pixels,
)

from .morton_utils import morton_decode_3d, morton_encode_3d

from .tensor_checks import (
    as_tensor,
    check_block_coordinates,
    check_color_tensor,
    check_depth_tensor,
    check_extrinsic_tensor,
    check_intrinsic_tensor,
    check_positions,
)

__all__ = [
    "camera_rays",
    "pixel_grid",
    "pose_from_extrinsic",
    "project_points",
    "transform_points",
    "unproject_pixels",
    "morton_encode_3d",
    "morton_decode_3d",
    "as_tensor",
    "check_block_coordinates",
    "check_color_tensor",
    "check_depth_tensor",
    "check_extrinsic_tensor",
    "check_intrinsic_tensor",
    "check_positions",
]
