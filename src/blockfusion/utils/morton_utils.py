"""
Morton code utilities.

Encodes signed integer 3D coordinates into 63-bit Morton codes (Z-order
curves) so block coordinates can be sorted spatially and packed into a
single int64 key.
"""

from __future__ import annotations

import torch

MORTON_BITS = 21
MORTON_OFFSET = 1 << (MORTON_BITS - 1)
COORD_MIN = -MORTON_OFFSET
COORD_MAX = MORTON_OFFSET - 1


def _part1by2(n: torch.Tensor) -> torch.Tensor:
    """Separate bits by inserting two zeros between each bit."""
    n = n & 0x1FFFFF
    n = (n ^ (n << 32)) & 0x1F00000000FFFF
    n = (n ^ (n << 16)) & 0x1F0000FF0000FF
    n = (n ^ (n << 8)) & 0x100F00F00F00F00F
    n = (n ^ (n << 4)) & 0x10C30C30C30C30C3
    n = (n ^ (n << 2)) & 0x1249249249249249
    return n


def _compact1by2(n: torch.Tensor) -> torch.Tensor:
    """Compact bits by removing two zeros between each bit."""
    n = n & 0x1249249249249249
    n = (n ^ (n >> 2)) & 0x10C30C30C30C30C3
    n = (n ^ (n >> 4)) & 0x100F00F00F00F00F
    n = (n ^ (n >> 8)) & 0x1F0000FF0000FF
    n = (n ^ (n >> 16)) & 0x1F00000000FFFF
    n = (n ^ (n >> 32)) & 0x1FFFFF
    return n


def coords_in_morton_range(coords: torch.Tensor) -> torch.Tensor:
    """Per-row mask of coordinates representable by morton_encode_3d."""
    return ((coords >= COORD_MIN) & (coords <= COORD_MAX)).all(dim=-1)


def morton_encode_3d(coords: torch.Tensor) -> torch.Tensor:
    """
    Encode signed 3D integer coordinates into Morton codes.

    Each component is shifted by 2^20 and interleaved with 21 bits, so the
    supported range is [-2^20, 2^20) per axis.

    Args:
        coords: Integer coordinates [N, 3]

    Returns:
        Morton codes [N] (int64, non-negative)
    """
    if coords.dim() != 2 or coords.shape[1] != 3:
        raise ValueError(f"Expected coordinates of shape (N, 3), got {tuple(coords.shape)}")
    if coords.numel() > 0 and not bool(coords_in_morton_range(coords).all()):
        raise ValueError(
            f"Morton encoding requires coordinates in [{COORD_MIN}, {COORD_MAX}]"
        )

    shifted = coords.to(torch.int64) + MORTON_OFFSET
    x = _part1by2(shifted[:, 0])
    y = _part1by2(shifted[:, 1])
    z = _part1by2(shifted[:, 2])
    return (z << 2) | (y << 1) | x


def morton_decode_3d(codes: torch.Tensor) -> torch.Tensor:
    """
    Decode Morton codes back to signed 3D coordinates.

    Args:
        codes: Morton codes [N] (int64)

    Returns:
        Coordinates [N, 3] (int64)
    """
    codes = codes.to(torch.int64)
    x = _compact1by2(codes)
    y = _compact1by2(codes >> 1)
    z = _compact1by2(codes >> 2)
    return torch.stack([x, y, z], dim=1) - MORTON_OFFSET
