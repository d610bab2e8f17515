"""
Input validation for the grid passes.

Every pass validates shapes and dtypes at the call boundary, before any
state is mutated, and converts numpy inputs to tensors on the grid device.
"""

from __future__ import annotations

from typing import Optional, Union

import numpy as np
import torch

ArrayLike = Union[torch.Tensor, np.ndarray]


def as_tensor(array: ArrayLike, device: torch.device, dtype: Optional[torch.dtype] = None):
    """Convert numpy arrays or tensors to a tensor on `device`."""
    if isinstance(array, np.ndarray):
        if array.dtype == np.uint16:
            array = array.astype(np.float32)
        array = torch.from_numpy(np.ascontiguousarray(array))
    elif not isinstance(array, torch.Tensor):
        array = torch.as_tensor(array)
    if dtype is not None:
        array = array.to(dtype)
    return array.to(device)


def dtype_name(array: ArrayLike) -> str:
    """Backend independent dtype name, e.g. 'float32' or 'uint16'."""
    if isinstance(array, np.ndarray):
        return str(array.dtype)
    return str(array.dtype).replace("torch.", "")


def check_depth_tensor(depth: ArrayLike, device: torch.device) -> torch.Tensor:
    """
    Validate a depth image and return it as float32 [H, W].

    Accepted inputs are uint16 or float32 arrays of shape (H, W) or (H, W, 1).
    Values are raw depth units, division by depth_scale happens in the passes.
    """
    if depth is None:
        raise ValueError("Depth image must be provided")
    if not isinstance(depth, (torch.Tensor, np.ndarray)):
        raise ValueError(f"Depth must be a tensor or numpy array, got {type(depth)}")

    if dtype_name(depth) not in ("uint16", "float32"):
        raise ValueError(f"Unsupported depth dtype {depth.dtype}, expected uint16 or float32")

    shape = tuple(depth.shape)
    if len(shape) == 3 and shape[2] == 1:
        shape = shape[:2]
    if len(shape) != 2:
        raise ValueError(f"Depth image must have shape (H, W) or (H, W, 1), got {tuple(depth.shape)}")
    if shape[0] == 0 or shape[1] == 0:
        raise ValueError("Depth image must not be empty")

    return as_tensor(depth, device, torch.float32).reshape(shape)


def check_color_tensor(color: ArrayLike, device: torch.device) -> torch.Tensor:
    """
    Validate a color image and return it as float32 [H, W, 3] in [0, 1].

    uint8 images are rescaled by 1/255, float32 images are used as is.
    """
    if not isinstance(color, (torch.Tensor, np.ndarray)):
        raise ValueError(f"Color must be a tensor or numpy array, got {type(color)}")
    if len(color.shape) != 3 or color.shape[2] != 3:
        raise ValueError(f"Color image must have shape (H, W, 3), got {tuple(color.shape)}")

    if dtype_name(color) == "uint8":
        return as_tensor(color, device, torch.float32) / 255.0
    if dtype_name(color) == "float32":
        return as_tensor(color, device, torch.float32)
    raise ValueError(f"Unsupported color dtype {color.dtype}, expected uint8 or float32")


def check_intrinsic_tensor(intrinsic: ArrayLike, device: torch.device) -> torch.Tensor:
    """Validate a 3x3 pinhole intrinsic matrix, returned as float32 (computation dtype)."""
    if intrinsic is None:
        raise ValueError("Intrinsic matrix must be provided")
    intrinsic = as_tensor(intrinsic, device, torch.float64)
    if tuple(intrinsic.shape) != (3, 3):
        raise ValueError(f"Intrinsic must have shape (3, 3), got {tuple(intrinsic.shape)}")
    if intrinsic[0, 0] == 0 or intrinsic[1, 1] == 0:
        raise ValueError("Intrinsic focal lengths must be non-zero")
    return intrinsic.to(torch.float32)


def check_extrinsic_tensor(extrinsic: ArrayLike, device: torch.device) -> torch.Tensor:
    """Validate a 4x4 world-to-camera transform."""
    if extrinsic is None:
        raise ValueError("Extrinsic matrix must be provided")
    extrinsic = as_tensor(extrinsic, device, torch.float64)
    if tuple(extrinsic.shape) != (4, 4):
        raise ValueError(f"Extrinsic must have shape (4, 4), got {tuple(extrinsic.shape)}")
    return extrinsic.to(torch.float32)


def check_block_coordinates(block_coords: ArrayLike, device: torch.device) -> torch.Tensor:
    """Validate integer block coordinates [N, 3], returned as int32."""
    block_coords = as_tensor(block_coords, device)
    if block_coords.dim() != 2 or block_coords.shape[1] != 3:
        raise ValueError(
            f"Block coordinates must have shape (N, 3), got {tuple(block_coords.shape)}"
        )
    if block_coords.dtype not in (torch.int32, torch.int64):
        raise ValueError(f"Block coordinates must be int32 or int64, got {block_coords.dtype}")
    return block_coords.to(torch.int32)


def check_positions(positions: ArrayLike, device: torch.device) -> torch.Tensor:
    """Validate point positions [N, 3], returned as float32."""
    positions = as_tensor(positions, device)
    if positions.dim() != 2 or positions.shape[1] != 3:
        raise ValueError(f"Positions must have shape (N, 3), got {tuple(positions.shape)}")
    if not positions.is_floating_point():
        raise ValueError(f"Positions must be floating point, got {positions.dtype}")
    return positions.to(torch.float32)
