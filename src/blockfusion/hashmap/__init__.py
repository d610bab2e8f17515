"""
Hash maps over integer 3D keys.

Backends:
    - linear_probing: open addressing with parallel probe rounds
    - morton_sorted: binary search over sorted Morton codes
"""

from __future__ import annotations

from typing import Sequence, Tuple, Union

import torch

from .base import HashMap
from .linear_probing import LinearProbingHashMap, spatial_hash
from .morton_sorted import MortonSortedHashMap

HASH_BACKEND_CLASSES = {
    "linear_probing": LinearProbingHashMap,
    "morton_sorted": MortonSortedHashMap,
}


def create_hashmap(
    backend: str,
    capacity: int,
    value_dtypes: Sequence[torch.dtype] = (),
    value_element_shapes: Sequence[Tuple[int, ...]] = (),
    device: Union[str, torch.device] = "cpu",
) -> HashMap:
    """Create a hash map with the given backend name."""
    if backend not in HASH_BACKEND_CLASSES:
        raise ValueError(
            f"Unknown hash backend {backend}, expected one of {tuple(HASH_BACKEND_CLASSES)}"
        )
    return HASH_BACKEND_CLASSES[backend](
        capacity, value_dtypes, value_element_shapes, torch.device(device)
    )


__all__ = [
    "HashMap",
    "LinearProbingHashMap",
    "MortonSortedHashMap",
    "HASH_BACKEND_CLASSES",
    "create_hashmap",
    "spatial_hash",
]
