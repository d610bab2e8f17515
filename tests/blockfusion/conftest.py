"""
BlockFusion 测试配置和夹具

提供合成场景（平面墙、球体）、相机参数和小规模体素网格。
"""

import shutil
import tempfile
from pathlib import Path

import numpy as np
import pytest
import torch

from blockfusion import VoxelBlockGrid, VoxelBlockGridConfig

WALL_WIDTH = 64
WALL_HEIGHT = 48
WALL_DEPTH = 1.0

SPHERE_SIZE = 64
SPHERE_RADIUS = 0.3
SPHERE_CAMERA_DISTANCE = 1.0


@pytest.fixture(scope="session")
def device():
    """测试设备（固定 CPU 以保证确定性）"""
    return torch.device("cpu")


@pytest.fixture
def wall_config():
    """平面墙场景配置: voxel_size=0.01, block_resolution=16, capacity=1000"""
    return VoxelBlockGridConfig(
        voxel_size=0.01,
        block_resolution=16,
        block_count=1000,
        device="cpu",
    )


@pytest.fixture
def wall_grid(wall_config):
    """空的平面墙场景网格"""
    return VoxelBlockGrid(wall_config)


@pytest.fixture
def wall_intrinsic():
    """64x48 针孔相机内参"""
    return torch.tensor(
        [[50.0, 0.0, 32.0], [0.0, 50.0, 24.0], [0.0, 0.0, 1.0]], dtype=torch.float64
    )


@pytest.fixture
def identity_extrinsic():
    """单位外参（相机位于世界原点）"""
    return torch.eye(4, dtype=torch.float64)


@pytest.fixture
def wall_depth():
    """1.0m 处平面墙的 uint16 深度图 (depth_scale=1000)"""
    return np.full((WALL_HEIGHT, WALL_WIDTH), int(WALL_DEPTH * 1000), dtype=np.uint16)


@pytest.fixture
def integrated_wall_grid(wall_grid, wall_depth, wall_intrinsic, identity_extrinsic):
    """已融合一帧平面墙的网格，返回 (grid, block_coords)"""
    block_coords = wall_grid.get_unique_block_coordinates(
        wall_depth, wall_intrinsic, identity_extrinsic, depth_scale=1000.0, depth_max=3.0
    )
    wall_grid.integrate(
        block_coords,
        wall_depth,
        None,
        wall_intrinsic,
        identity_extrinsic,
        depth_scale=1000.0,
        depth_max=3.0,
    )
    return wall_grid, block_coords


@pytest.fixture
def sphere_intrinsic():
    """64x64 针孔相机内参"""
    return torch.tensor(
        [[80.0, 0.0, 32.0], [0.0, 80.0, 32.0], [0.0, 0.0, 1.0]], dtype=torch.float32
    )


@pytest.fixture
def sphere_extrinsic():
    """相机位于 (0, 0, -1)，朝向 +z 观察原点"""
    extrinsic = torch.eye(4, dtype=torch.float32)
    extrinsic[2, 3] = SPHERE_CAMERA_DISTANCE
    return extrinsic


@pytest.fixture
def sphere_depth(sphere_intrinsic):
    """原点处半径 0.3m 球体的 float32 深度图（米），背景为 0"""
    K = sphere_intrinsic
    v, u = torch.meshgrid(
        torch.arange(SPHERE_SIZE, dtype=torch.float32),
        torch.arange(SPHERE_SIZE, dtype=torch.float32),
        indexing="ij",
    )
    dx = (u - K[0, 2]) / K[0, 0]
    dy = (v - K[1, 2]) / K[1, 1]

    # |o + t d|^2 = r^2, o = (0, 0, -D), d = (dx, dy, 1)
    a = dx ** 2 + dy ** 2 + 1.0
    b = -2.0 * SPHERE_CAMERA_DISTANCE
    c = SPHERE_CAMERA_DISTANCE ** 2 - SPHERE_RADIUS ** 2
    disc = b ** 2 - 4.0 * a * c
    t = (-b - torch.sqrt(disc.clamp(min=0.0))) / (2.0 * a)
    return torch.where(disc > 0, t, torch.zeros_like(t)).to(torch.float32)


@pytest.fixture
def sphere_config():
    """球体场景配置"""
    return VoxelBlockGridConfig(
        voxel_size=0.01,
        block_resolution=8,
        block_count=4000,
        device="cpu",
    )


@pytest.fixture
def integrated_sphere_grid(sphere_config, sphere_depth, sphere_intrinsic, sphere_extrinsic):
    """已融合一帧球体的网格"""
    grid = VoxelBlockGrid(sphere_config)
    block_coords = grid.get_unique_block_coordinates(
        sphere_depth, sphere_intrinsic, sphere_extrinsic, depth_scale=1.0, depth_max=3.0
    )
    grid.integrate(
        block_coords,
        sphere_depth,
        None,
        sphere_intrinsic,
        sphere_extrinsic,
        depth_scale=1.0,
        depth_max=3.0,
    )
    return grid


@pytest.fixture
def temp_dir():
    """临时目录夹具"""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)
    shutil.rmtree(temp_dir)


def pytest_configure(config):
    """配置测试标记"""
    config.addinivalue_line("markers", "slow: 标记为慢速测试")
    config.addinivalue_line("markers", "cuda: 需要 CUDA 的测试")
    config.addinivalue_line("markers", "integration: 集成测试")
