"""
Block index adapter.

Maps integer block coordinates to buffer slots of the underlying hash map and
converts between global voxel coordinates and flattened voxel indices.

Layout: every attribute buffer has shape (block_count, R, R, R, *channels)
indexed [slot, z, y, x], so the flattened index of a voxel is
slot * R^3 + z * R^2 + y * R + x.
"""

from __future__ import annotations

import logging
from typing import List, Sequence, Tuple

import torch

from .hashmap import HashMap, create_hashmap

logger = logging.getLogger(__name__)


def enumerate_neighbor_offsets(radius: int = 1, device=None) -> torch.Tensor:
    """
    Block offsets of a cubic neighborhood, x varying fastest.

    For radius 1, offset k is (k % 3 - 1, (k // 3) % 3 - 1, k // 9 - 1) and
    offset 13 is the block itself.
    """
    arange = torch.arange(-radius, radius + 1, device=device)
    dz, dy, dx = torch.meshgrid(arange, arange, arange, indexing="ij")
    return torch.stack([dx.reshape(-1), dy.reshape(-1), dz.reshape(-1)], dim=1)


class BlockHashIndex:
    """Facade over a hash map keyed by block coordinates."""

    def __init__(
        self,
        block_resolution: int,
        block_count: int,
        attr_dtypes: Sequence[torch.dtype],
        attr_channels: Sequence[Tuple[int, ...]],
        device: torch.device,
        backend: str = "linear_probing",
    ):
        self.block_resolution = block_resolution
        self.voxels_per_block = block_resolution ** 3
        self.device = device

        block_shape = (block_resolution, block_resolution, block_resolution)
        element_shapes = [block_shape + tuple(channels) for channels in attr_channels]
        self.hashmap: HashMap = create_hashmap(
            backend, block_count, attr_dtypes, element_shapes, device
        )

        # Local (x, y, z) of every in-block linear index
        res = block_resolution
        lin = torch.arange(self.voxels_per_block, device=device)
        self.local_coords = torch.stack(
            [lin % res, (lin // res) % res, lin // (res * res)], dim=1
        )
        self.neighbor_offsets = enumerate_neighbor_offsets(1, device=device).to(torch.int32)

    @property
    def capacity(self) -> int:
        return self.hashmap.capacity

    def activate(self, block_coords: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return self.hashmap.activate(block_coords)

    def find(self, block_coords: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        return self.hashmap.find(block_coords)

    def clear(self) -> None:
        self.hashmap.clear()

    def size(self) -> int:
        return self.hashmap.size()

    def get_key_tensor(self) -> torch.Tensor:
        return self.hashmap.get_key_tensor()

    def get_value_tensors(self) -> List[torch.Tensor]:
        return self.hashmap.get_value_tensors()

    def get_active_indices(self) -> torch.Tensor:
        return self.hashmap.get_active_indices()

    def flat_value(self, index: int) -> torch.Tensor:
        """Value buffer `index` viewed as [block_count * R^3, C]."""
        value = self.hashmap.get_value_tensor(index)
        return value.view(self.capacity * self.voxels_per_block, -1)

    def linearize_local(self, local: torch.Tensor) -> torch.Tensor:
        """In-block linear index of local (x, y, z) coordinates [..., 3]."""
        res = self.block_resolution
        return local[..., 0] + local[..., 1] * res + local[..., 2] * res * res

    def radius_neighbors(self, buf_indices: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Slots of the 27 neighboring blocks of each block.

        Args:
            buf_indices: Active block slots [N]

        Returns:
            tuple of (nb_indices [N, 27] int64, nb_masks [N, 27] bool),
            missing neighbors have index -1
        """
        keys = self.get_key_tensor()[buf_indices.to(torch.int64)]
        n = keys.shape[0]
        nb_keys = (keys.view(n, 1, 3) + self.neighbor_offsets.view(1, 27, 3)).view(-1, 3)
        nb_indices, nb_masks = self.find(nb_keys)
        return nb_indices.view(n, 27), nb_masks.view(n, 27)

    def find_voxels(self, voxel_coords: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Resolve global voxel coordinates to flattened voxel indices.

        Args:
            voxel_coords: Global integer voxel coordinates [..., 3]

        Returns:
            tuple of (flat_indices [...], masks [...]), -1 where the block is unallocated
        """
        shape = voxel_coords.shape[:-1]
        voxel_coords = voxel_coords.reshape(-1, 3).to(torch.int64)
        res = self.block_resolution

        block_coords = torch.div(voxel_coords, res, rounding_mode="floor")
        local = voxel_coords - block_coords * res
        buf_indices, masks = self.find(block_coords)

        flat = buf_indices * self.voxels_per_block + self.linearize_local(local)
        flat = torch.where(masks, flat, torch.full_like(flat, -1))
        return flat.view(shape), masks.view(shape)

    def neighbor_flat_indices(
        self,
        nb_indices: torch.Tensor,
        local: torch.Tensor,
        offset: Sequence[int],
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Flattened index of the voxel at `local + offset`, crossing into neighboring blocks.

        Args:
            nb_indices: 27-neighborhood slots of the owning blocks [B, 27]
            local: Local voxel coordinates, broadcastable to [B, V, 3]
            offset: Voxel offset (dx, dy, dz), each at most R in magnitude

        Returns:
            tuple of (flat_indices [B, V], masks [B, V])
        """
        res = self.block_resolution
        if any(abs(int(o)) > res for o in offset):
            raise ValueError(f"Voxel offset {tuple(offset)} leaves the 27-block neighborhood (R={res})")
        shifted = local + torch.as_tensor(offset, device=local.device, dtype=local.dtype)
        block_shift = torch.div(shifted, res, rounding_mode="floor")
        wrapped = shifted - block_shift * res

        nb = (block_shift[..., 0] + 1) + (block_shift[..., 1] + 1) * 3 + (block_shift[..., 2] + 1) * 9
        nb = nb.expand(nb_indices.shape[0], -1) if nb.shape[0] == 1 else nb
        slots = torch.gather(nb_indices, 1, nb.to(torch.int64))
        masks = slots >= 0

        flat = slots * self.voxels_per_block + self.linearize_local(wrapped)
        flat = torch.where(masks, flat, torch.full_like(flat, -1))
        return flat, masks
