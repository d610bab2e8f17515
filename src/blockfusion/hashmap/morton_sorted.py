"""
Sorted Morton code map.

Keys are packed into 63-bit Morton codes and kept sorted together with their
buffer slots; lookups are a binary search. Iteration over the sorted codes
visits blocks in Z-order, which keeps spatially close blocks close in memory
order.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import torch

from ..utils.morton_utils import (
    COORD_MAX,
    COORD_MIN,
    coords_in_morton_range,
    morton_encode_3d,
)
from .base import HashMap


class MortonSortedHashMap(HashMap):
    """Binary search backend over sorted Morton codes."""

    def __init__(
        self,
        capacity: int,
        value_dtypes: Sequence[torch.dtype] = (),
        value_element_shapes: Sequence[Tuple[int, ...]] = (),
        device: torch.device = torch.device("cpu"),
    ):
        super().__init__(capacity, value_dtypes, value_element_shapes, device)
        self._codes = torch.empty(0, dtype=torch.int64, device=self.device)
        self._slots = torch.empty(0, dtype=torch.int64, device=self.device)

    def activate(self, keys: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        keys = self._check_keys(keys)
        if not bool(coords_in_morton_range(keys).all()):
            raise ValueError(
                f"Keys must lie in [{COORD_MIN}, {COORD_MAX}] for the morton_sorted backend"
            )
        return super().activate(keys)

    def _lookup(self, keys: torch.Tensor) -> torch.Tensor:
        result = torch.full((keys.shape[0],), -1, dtype=torch.int64, device=self.device)
        if self._codes.numel() == 0:
            return result

        # Keys outside the encodable range can never have been inserted
        in_range = torch.nonzero(coords_in_morton_range(keys)).squeeze(1)
        codes = morton_encode_3d(keys[in_range])
        pos = torch.searchsorted(self._codes, codes).clamp(max=self._codes.numel() - 1)
        hit = self._codes[pos] == codes
        result[in_range[hit]] = self._slots[pos[hit]]
        return result

    def _register(self, keys: torch.Tensor, buf_indices: torch.Tensor) -> None:
        codes = torch.cat([self._codes, morton_encode_3d(keys)])
        slots = torch.cat([self._slots, buf_indices])
        codes, order = torch.sort(codes)
        self._codes = codes
        self._slots = slots[order]

    def _reset(self) -> None:
        self._codes = self._codes[:0]
        self._slots = self._slots[:0]

    def get_active_indices(self) -> torch.Tensor:
        """Active slots in Z-order."""
        return self._slots.clone()
