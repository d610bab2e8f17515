"""
Open addressing hash map with linear probing.

All keys of a call are inserted in parallel probe rounds. In every round each
pending key claims its current bucket; when several keys target the same empty
bucket the one with the smallest batch position wins (scatter-min), the others
move on to the next bucket. The bucket table holds buffer slots, so keys and
values never move once inserted.
"""

from __future__ import annotations

from typing import Sequence, Tuple

import torch

from .base import HashMap

# Teschner et al. spatial hashing primes
_PRIMES = (73856093, 19349669, 83492791)


def _next_power_of_two(n: int) -> int:
    p = 1
    while p < n:
        p <<= 1
    return p


def spatial_hash(keys: torch.Tensor) -> torch.Tensor:
    """Hash int keys [N, 3] to int64 [N]."""
    keys = keys.to(torch.int64)
    h = keys[:, 0] * _PRIMES[0]
    h = torch.bitwise_xor(h, keys[:, 1] * _PRIMES[1])
    h = torch.bitwise_xor(h, keys[:, 2] * _PRIMES[2])
    return h


class LinearProbingHashMap(HashMap):
    """Vectorized open addressing backend."""

    def __init__(
        self,
        capacity: int,
        value_dtypes: Sequence[torch.dtype] = (),
        value_element_shapes: Sequence[Tuple[int, ...]] = (),
        device: torch.device = torch.device("cpu"),
        load_factor: float = 0.5,
    ):
        super().__init__(capacity, value_dtypes, value_element_shapes, device)
        if not 0 < load_factor < 1:
            raise ValueError("load_factor must be in (0, 1)")

        self.bucket_count = _next_power_of_two(int(self.capacity / load_factor) + 1)
        self._bucket_mask = self.bucket_count - 1
        self._buckets = torch.full((self.bucket_count,), -1, dtype=torch.int64, device=self.device)

    def _home_buckets(self, keys: torch.Tensor) -> torch.Tensor:
        return spatial_hash(keys) & self._bucket_mask

    def _lookup(self, keys: torch.Tensor) -> torch.Tensor:
        n = keys.shape[0]
        result = torch.full((n,), -1, dtype=torch.int64, device=self.device)
        pending = torch.arange(n, device=self.device)
        buckets = self._home_buckets(keys)

        # A load factor below 1 guarantees an empty bucket ends every probe chain
        for _ in range(self.bucket_count):
            if pending.numel() == 0:
                break
            slots = self._buckets[buckets]
            occupied = slots >= 0
            hit = occupied & (self._keys[slots.clamp(min=0)] == keys[pending]).all(dim=1)

            result[pending[hit]] = slots[hit]
            keep = occupied & ~hit
            pending = pending[keep]
            buckets = (buckets[keep] + 1) & self._bucket_mask

        return result

    def _register(self, keys: torch.Tensor, buf_indices: torch.Tensor) -> None:
        n = keys.shape[0]
        pending = torch.arange(n, device=self.device)
        buckets = self._home_buckets(keys)

        for _ in range(self.bucket_count):
            if pending.numel() == 0:
                break
            empty = self._buckets[buckets] < 0

            # Resolve contention on each empty bucket in favor of the smallest claimant
            claim = torch.full((self.bucket_count,), n, dtype=torch.int64, device=self.device)
            claim.scatter_reduce_(0, buckets[empty], pending[empty], reduce="amin")
            won = empty & (claim[buckets] == pending)

            self._buckets[buckets[won]] = buf_indices[pending[won]]
            keep = ~won
            pending = pending[keep]
            buckets = (buckets[keep] + 1) & self._bucket_mask

    def _reset(self) -> None:
        self._buckets.fill_(-1)
