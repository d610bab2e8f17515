"""
Hash map interface.

A hash map associates integer 3D keys with buffer slots. Each slot owns one
entry in every value buffer, and slots are handed out append-only: a slot is
never reassigned to another key while the map is not cleared.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import List, Sequence, Tuple

import torch

logger = logging.getLogger(__name__)


class HashMap(ABC):
    """
    Abstract hash map over int32 keys of shape [3].

    Subclasses implement the slot lookup structure; buffers, slot allocation
    and value initialization are shared here.
    """

    key_dim = 3

    def __init__(
        self,
        capacity: int,
        value_dtypes: Sequence[torch.dtype] = (),
        value_element_shapes: Sequence[Tuple[int, ...]] = (),
        device: torch.device = torch.device("cpu"),
    ):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if len(value_dtypes) != len(value_element_shapes):
            raise ValueError(
                f"Number of value dtypes ({len(value_dtypes)}) mismatch with "
                f"element shapes ({len(value_element_shapes)})"
            )

        self.capacity = int(capacity)
        self.device = torch.device(device)

        self._keys = torch.zeros((self.capacity, self.key_dim), dtype=torch.int32, device=self.device)
        self._values: List[torch.Tensor] = [
            torch.zeros((self.capacity, *shape), dtype=dtype, device=self.device)
            for dtype, shape in zip(value_dtypes, value_element_shapes)
        ]
        self._size = 0

    # Backend specific lookup structure

    @abstractmethod
    def _lookup(self, keys: torch.Tensor) -> torch.Tensor:
        """Buffer index per unique key, -1 when absent."""

    @abstractmethod
    def _register(self, keys: torch.Tensor, buf_indices: torch.Tensor) -> None:
        """Record freshly allocated (distinct, absent) keys."""

    @abstractmethod
    def _reset(self) -> None:
        """Drop all entries from the lookup structure."""

    # Public interface

    def activate(self, keys: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Insert absent keys with zero-initialized values.

        Args:
            keys: Integer keys [N, 3]

        Returns:
            tuple of (buf_indices [N] int64, masks [N] bool). buf_indices is -1
            for keys that are absent after the call (capacity exhausted).
            masks is true only for the first occurrence of each key inserted
            by this call.
        """
        keys = self._check_keys(keys)
        n = keys.shape[0]
        buf_indices = torch.full((n,), -1, dtype=torch.int64, device=self.device)
        masks = torch.zeros(n, dtype=torch.bool, device=self.device)
        if n == 0:
            return buf_indices, masks

        unique_keys, inverse = torch.unique(keys, dim=0, return_inverse=True)
        n_unique = unique_keys.shape[0]
        first_occurrence = torch.full((n_unique,), n, dtype=torch.int64, device=self.device)
        first_occurrence.scatter_reduce_(
            0, inverse, torch.arange(n, device=self.device), reduce="amin"
        )

        unique_buf = self._lookup(unique_keys)
        absent = torch.nonzero(unique_buf < 0).squeeze(1)

        available = self.capacity - self._size
        if absent.numel() > available:
            logger.warning(
                f"Hash map capacity exhausted: {absent.numel() - available} of "
                f"{absent.numel()} new keys dropped (capacity {self.capacity})"
            )
            absent = absent[:available]

        n_new = absent.numel()
        if n_new > 0:
            new_buf = torch.arange(self._size, self._size + n_new, device=self.device)
            self._keys[new_buf] = unique_keys[absent]
            for value in self._values:
                value[new_buf] = 0
            self._register(unique_keys[absent], new_buf)
            self._size += n_new
            unique_buf[absent] = new_buf

            masks[first_occurrence[absent]] = True

        buf_indices = unique_buf[inverse]
        return buf_indices, masks

    def find(self, keys: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Look up keys.

        Returns:
            tuple of (buf_indices [N] int64, masks [N] bool), -1 where absent
        """
        keys = self._check_keys(keys)
        if keys.shape[0] == 0 or self._size == 0:
            buf_indices = torch.full((keys.shape[0],), -1, dtype=torch.int64, device=self.device)
            return buf_indices, buf_indices >= 0

        unique_keys, inverse = torch.unique(keys, dim=0, return_inverse=True)
        buf_indices = self._lookup(unique_keys)[inverse]
        return buf_indices, buf_indices >= 0

    def clear(self) -> None:
        """Remove every key, buffers are kept for reuse."""
        self._reset()
        self._size = 0

    def size(self) -> int:
        return self._size

    def __len__(self) -> int:
        return self._size

    def get_key_tensor(self) -> torch.Tensor:
        """Key buffer [capacity, 3], rows of inactive slots are meaningless."""
        return self._keys

    def get_value_tensors(self) -> List[torch.Tensor]:
        return self._values

    def get_value_tensor(self, index: int) -> torch.Tensor:
        return self._values[index]

    def get_active_indices(self) -> torch.Tensor:
        """Slots currently holding a key."""
        return torch.arange(self._size, dtype=torch.int64, device=self.device)

    def _check_keys(self, keys: torch.Tensor) -> torch.Tensor:
        if keys.dim() != 2 or keys.shape[1] != self.key_dim:
            raise ValueError(f"Keys must have shape (N, {self.key_dim}), got {tuple(keys.shape)}")
        if keys.dtype not in (torch.int32, torch.int64):
            raise ValueError(f"Keys must be int32 or int64, got {keys.dtype}")
        return keys.to(device=self.device, dtype=torch.int32)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(size={self._size}, capacity={self.capacity}, "
            f"values={len(self._values)}, device={self.device})"
        )
