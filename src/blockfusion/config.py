"""
Configuration for the voxel block grid.

Defines the attribute schema, grid geometry, hash backend and the tuning
knobs of the touch, integration, ray casting and extraction passes.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple, Union

import torch
import yaml

SUPPORTED_ATTR_DTYPES = {
    "float16": torch.float16,
    "float32": torch.float32,
    "float64": torch.float64,
    "int16": torch.int16,
    "int32": torch.int32,
    "int64": torch.int64,
    "uint8": torch.uint8,
}

HASH_BACKENDS = ("linear_probing", "morton_sorted")
WEIGHT_FUNCTIONS = ("uniform", "inverse_depth")


@dataclass
class TouchConfig:
    """Visibility / touch pass configuration"""

    depth_down_factor: int = 4  # pixel stride when sampling depth images
    depth_sample_multiplier: int = 4  # scratch capacity per sampled pixel
    depth_ray_samples: int = 4  # samples along the truncation segment
    point_neighbor_multiplier: int = 8  # scratch capacity per point


@dataclass
class RayCastConfig:
    """Ray casting configuration"""

    range_down_factor: int = 8  # coarse grid used for depth range estimation
    pixel_chunk_size: int = 65536


@dataclass
class ExtractionConfig:
    """Surface extraction configuration"""

    block_chunk_size: int = 256


@dataclass
class VoxelBlockGridConfig:
    """Voxel block grid configuration.

    Attributes:
        attr_names: Per-voxel attribute names
        attr_dtypes: Attribute dtypes, see SUPPORTED_ATTR_DTYPES
        attr_channels: Per-voxel channel shape of each attribute
        voxel_size: Voxel edge length in meters
        block_resolution: Voxels per block edge
        block_count: Maximum number of allocated blocks
        device: auto, cpu, cuda or cuda:N
        hash_backend: linear_probing or morton_sorted
        sdf_trunc: Truncation distance, defaults to half a block
        weight_cap: Upper bound of the per-voxel integration weight
        weight_function: uniform or inverse_depth
        integrate_block_chunk_size: Blocks integrated per vectorized step
    """

    attr_names: Tuple[str, ...] = ("tsdf", "weight", "color")
    attr_dtypes: Tuple[str, ...] = ("float32", "float32", "float32")
    attr_channels: Tuple[Tuple[int, ...], ...] = ((1,), (1,), (3,))

    voxel_size: float = 0.0058
    block_resolution: int = 16
    block_count: int = 10000

    device: str = "auto"
    hash_backend: str = "linear_probing"

    sdf_trunc: Optional[float] = None
    weight_cap: float = 1000.0
    weight_function: str = "uniform"
    integrate_block_chunk_size: int = 512

    touch: TouchConfig = field(default_factory=TouchConfig)
    raycast: RayCastConfig = field(default_factory=RayCastConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)

    log_level: str = "INFO"

    def __post_init__(self):
        """Normalize and validate"""
        self.attr_names = tuple(self.attr_names)
        self.attr_dtypes = tuple(self.attr_dtypes)
        self.attr_channels = tuple(tuple(int(c) for c in ch) for ch in self.attr_channels)

        if self.device == "auto":
            self.device = "cuda" if torch.cuda.is_available() else "cpu"

        n_attrs = len(self.attr_names)
        if len(self.attr_dtypes) != n_attrs:
            raise ValueError(
                f"Number of attribute dtypes ({len(self.attr_dtypes)}) "
                f"mismatch with names ({n_attrs})"
            )
        if len(self.attr_channels) != n_attrs:
            raise ValueError(
                f"Number of attribute channels ({len(self.attr_channels)}) "
                f"mismatch with names ({n_attrs})"
            )
        if len(set(self.attr_names)) != n_attrs:
            raise ValueError(f"Duplicate attribute names: {self.attr_names}")
        for name, dtype in zip(self.attr_names, self.attr_dtypes):
            if dtype not in SUPPORTED_ATTR_DTYPES:
                raise ValueError(f"Unsupported dtype {dtype} for attribute {name}")

        if self.voxel_size <= 0:
            raise ValueError("voxel_size must be positive")
        if self.block_resolution < 2:
            raise ValueError("block_resolution must be at least 2")
        if self.block_count <= 0:
            raise ValueError("block_count must be positive")
        if self.sdf_trunc is not None and self.sdf_trunc <= 0:
            raise ValueError("sdf_trunc must be positive")
        if self.weight_cap <= 0:
            raise ValueError("weight_cap must be positive")
        if self.hash_backend not in HASH_BACKENDS:
            raise ValueError(
                f"Unknown hash backend {self.hash_backend}, expected one of {HASH_BACKENDS}"
            )
        if self.weight_function not in WEIGHT_FUNCTIONS:
            raise ValueError(
                f"Unknown weight function {self.weight_function}, "
                f"expected one of {WEIGHT_FUNCTIONS}"
            )
        if self.touch.depth_down_factor <= 0 or self.raycast.range_down_factor <= 0:
            raise ValueError("down factors must be positive")
        if self.touch.depth_ray_samples < 2:
            raise ValueError("depth_ray_samples must be at least 2")

    @property
    def truncation(self) -> float:
        """Truncation distance used by integration and ray casting"""
        if self.sdf_trunc is not None:
            return float(self.sdf_trunc)
        return self.voxel_size * self.block_resolution * 0.5

    def torch_dtypes(self) -> Tuple[torch.dtype, ...]:
        return tuple(SUPPORTED_ATTR_DTYPES[d] for d in self.attr_dtypes)

    def to_dict(self) -> dict:
        """Convert to a plain dictionary"""
        return {
            "attr_names": list(self.attr_names),
            "attr_dtypes": list(self.attr_dtypes),
            "attr_channels": [list(ch) for ch in self.attr_channels],
            "voxel_size": self.voxel_size,
            "block_resolution": self.block_resolution,
            "block_count": self.block_count,
            "device": self.device,
            "hash_backend": self.hash_backend,
            "sdf_trunc": self.sdf_trunc,
            "weight_cap": self.weight_cap,
            "weight_function": self.weight_function,
            "integrate_block_chunk_size": self.integrate_block_chunk_size,
            "touch": dict(self.touch.__dict__),
            "raycast": dict(self.raycast.__dict__),
            "extraction": dict(self.extraction.__dict__),
            "log_level": self.log_level,
        }

    @classmethod
    def from_dict(cls, config_dict: dict) -> "VoxelBlockGridConfig":
        """Create a configuration from a dictionary"""
        config_dict = dict(config_dict)
        touch = TouchConfig(**config_dict.pop("touch", {}))
        raycast = RayCastConfig(**config_dict.pop("raycast", {}))
        extraction = ExtractionConfig(**config_dict.pop("extraction", {}))
        return cls(touch=touch, raycast=raycast, extraction=extraction, **config_dict)


def load_config(config_path: Union[str, Path]) -> VoxelBlockGridConfig:
    """
    Load a grid configuration from file.

    Args:
        config_path: Path to config file (yaml or json)

    Returns:
        VoxelBlockGridConfig
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, "r") as f:
        if config_path.suffix in (".yaml", ".yml"):
            config = yaml.safe_load(f)
        elif config_path.suffix == ".json":
            config = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {config_path.suffix}")

    return VoxelBlockGridConfig.from_dict(config or {})


def save_config(config: VoxelBlockGridConfig, save_path: Union[str, Path]) -> None:
    """Save a grid configuration to yaml or json."""
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)

    with open(save_path, "w") as f:
        if save_path.suffix in (".yaml", ".yml"):
            yaml.dump(config.to_dict(), f, default_flow_style=False)
        elif save_path.suffix == ".json":
            json.dump(config.to_dict(), f, indent=2)
        else:
            raise ValueError(f"Unsupported config file format: {save_path.suffix}")
