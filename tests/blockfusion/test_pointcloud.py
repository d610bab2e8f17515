"""
BlockFusion 点云测试
"""

import math

import numpy as np
import pytest
import torch

from blockfusion import PointCloud


@pytest.fixture
def cube_points():
    """单位立方体的 8 个角点"""
    return torch.tensor(
        [[x, y, z] for z in (0.0, 1.0) for y in (0.0, 1.0) for x in (0.0, 1.0)],
        dtype=torch.float32,
    )


class TestPointCloudBasics:
    """测试点云属性"""

    def test_construction(self, cube_points):
        """测试构造和属性"""
        pcd = PointCloud(cube_points, colors=torch.ones(8, 3))

        assert len(pcd) == 8
        assert not pcd.is_empty()
        assert pcd.has_colors()
        assert not pcd.has_normals()
        assert pcd.normals is None
        assert pcd.positions.dtype == torch.float32

    def test_empty(self):
        """测试空点云"""
        pcd = PointCloud()
        assert pcd.is_empty()
        assert pcd.positions.shape == (0, 3)
        assert torch.equal(pcd.get_center(), torch.zeros(3))

    def test_numpy_input(self):
        """测试 numpy 输入"""
        pcd = PointCloud(np.zeros((5, 3), dtype=np.float64))
        assert isinstance(pcd.positions, torch.Tensor)
        assert pcd.positions.dtype == torch.float32

    def test_invalid_attributes(self, cube_points):
        """测试非法属性形状"""
        with pytest.raises(ValueError):
            PointCloud(torch.zeros(5, 2))
        with pytest.raises(ValueError):
            PointCloud(torch.zeros((5, 3), dtype=torch.int64))
        with pytest.raises(ValueError):
            PointCloud(cube_points, colors=torch.zeros(7, 3))
        with pytest.raises(ValueError):
            PointCloud(cube_points, normals=torch.zeros(8, 4))

    def test_bounds(self, cube_points):
        """测试包围盒和中心"""
        pcd = PointCloud(cube_points)

        assert torch.equal(pcd.get_min_bound(), torch.zeros(3))
        assert torch.equal(pcd.get_max_bound(), torch.ones(3))
        assert torch.allclose(pcd.get_center(), torch.full((3,), 0.5))

    def test_clone_independent(self, cube_points):
        """测试 clone 深拷贝"""
        pcd = PointCloud(cube_points)
        copy = pcd.clone()
        copy.translate([1.0, 0.0, 0.0])

        assert torch.equal(pcd.positions, cube_points)


class TestPointCloudGeometry:
    """测试几何变换"""

    def test_transform(self, cube_points):
        """测试刚体变换，法向只旋转"""
        pcd = PointCloud(cube_points, normals=torch.tensor([[1.0, 0.0, 0.0]]).repeat(8, 1))
        T = torch.eye(4)
        T[:3, :3] = torch.tensor([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
        T[:3, 3] = torch.tensor([1.0, 2.0, 3.0])

        pcd.transform(T)

        assert torch.allclose(pcd.positions[1], torch.tensor([1.0, 3.0, 3.0]))
        assert torch.allclose(pcd.normals, torch.tensor([[0.0, 1.0, 0.0]]).repeat(8, 1))

    def test_translate(self, cube_points):
        """测试相对和绝对平移"""
        pcd = PointCloud(cube_points)
        pcd.translate([1.0, 1.0, 1.0])
        assert torch.allclose(pcd.get_center(), torch.full((3,), 1.5))

        pcd.translate([0.0, 0.0, 0.0], relative=False)
        assert torch.allclose(pcd.get_center(), torch.zeros(3), atol=1e-6)

    def test_scale(self, cube_points):
        """测试以中心缩放"""
        pcd = PointCloud(cube_points)
        pcd.scale(2.0, center=pcd.get_center())

        assert torch.allclose(pcd.get_min_bound(), torch.full((3,), -0.5))
        assert torch.allclose(pcd.get_max_bound(), torch.full((3,), 1.5))

    def test_rotate(self, cube_points):
        """测试绕中心旋转"""
        pcd = PointCloud(cube_points)
        angle = math.pi / 2
        R = torch.tensor(
            [[math.cos(angle), -math.sin(angle), 0.0], [math.sin(angle), math.cos(angle), 0.0], [0.0, 0.0, 1.0]]
        )
        pcd.rotate(R, center=torch.full((3,), 0.5))

        assert torch.allclose(pcd.get_min_bound(), torch.zeros(3), atol=1e-6)
        assert torch.allclose(pcd.get_max_bound(), torch.ones(3), atol=1e-6)

        with pytest.raises(ValueError):
            pcd.rotate(torch.eye(4), center=torch.zeros(3))

    def test_voxel_down_sample(self):
        """测试体素下采样按体素取平均"""
        positions = torch.tensor(
            [[0.01, 0.01, 0.01], [0.03, 0.03, 0.03], [0.51, 0.01, 0.01], [0.53, 0.01, 0.01]]
        )
        colors = torch.tensor([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0], [0.0, 0.0, 1.0]])
        normals = torch.tensor([[0.0, 0.0, 1.0], [0.0, 0.0, 1.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
        pcd = PointCloud(positions, colors, normals)

        down = pcd.voxel_down_sample(0.1)

        assert len(down) == 2
        order = torch.argsort(down.positions[:, 0])
        assert torch.allclose(down.positions[order[0]], torch.tensor([0.02, 0.02, 0.02]))
        assert torch.allclose(down.positions[order[1]], torch.tensor([0.52, 0.01, 0.01]))
        assert torch.allclose(down.colors[order[0]], torch.tensor([0.5, 0.5, 0.0]))
        assert torch.allclose(down.normals.norm(dim=1), torch.ones(2))

    def test_voxel_down_sample_invalid(self, cube_points):
        """测试非法体素大小"""
        with pytest.raises(ValueError):
            PointCloud(cube_points).voxel_down_sample(0.0)


class TestDepthImages:
    """测试深度图与点云转换"""

    def test_create_from_depth_image(self, wall_depth, wall_intrinsic):
        """测试深度图反投影"""
        pcd = PointCloud.create_from_depth_image(wall_depth, wall_intrinsic, depth_scale=1000.0)

        assert len(pcd) == 48 * 64
        assert torch.allclose(pcd.positions[:, 2], torch.ones(len(pcd)))
        assert torch.allclose(pcd.positions[0], torch.tensor([-0.64, -0.48, 1.0]))

    def test_create_with_extrinsic_and_stride(self, wall_depth, wall_intrinsic):
        """测试外参（世界到相机）和步长"""
        extrinsic = torch.eye(4)
        extrinsic[2, 3] = 1.0  # camera at world z = -1
        pcd = PointCloud.create_from_depth_image(
            wall_depth, wall_intrinsic, extrinsic, depth_scale=1000.0, stride=2
        )

        assert len(pcd) == 24 * 32
        assert torch.allclose(pcd.positions[:, 2], torch.zeros(len(pcd)), atol=1e-6)

    def test_depth_filtering(self, wall_intrinsic):
        """测试无效深度被跳过"""
        depth = np.zeros((48, 64), dtype=np.uint16)
        depth[0, 0] = 1000
        depth[0, 1] = 5000
        pcd = PointCloud.create_from_depth_image(depth, wall_intrinsic, depth_scale=1000.0, depth_max=3.0)
        assert len(pcd) == 1

    def test_create_from_rgbd_image(self, wall_depth, wall_intrinsic):
        """测试 RGBD 反投影带颜色"""
        color = np.full((48, 64, 3), 255, dtype=np.uint8)
        pcd = PointCloud.create_from_rgbd_image(wall_depth, color, wall_intrinsic, depth_scale=1000.0)

        assert pcd.has_colors()
        assert torch.allclose(pcd.colors, torch.ones_like(pcd.colors))

    def test_unsupported_depth_dtype(self, wall_intrinsic):
        """测试不支持的深度类型"""
        with pytest.raises(ValueError):
            PointCloud.create_from_depth_image(np.zeros((4, 4), dtype=np.int32), wall_intrinsic)

    def test_project_round_trip(self, wall_depth, wall_intrinsic):
        """测试反投影后再投影得到原深度图"""
        pcd = PointCloud.create_from_depth_image(wall_depth, wall_intrinsic, depth_scale=1000.0)
        depth = pcd.project_to_depth_image(64, 48, wall_intrinsic, depth_scale=1000.0)

        assert depth.shape == (48, 64)
        assert torch.allclose(depth, torch.full((48, 64), 1000.0), atol=1e-2)

    def test_project_z_buffer(self, wall_intrinsic):
        """测试同一像素取最近点"""
        pcd = PointCloud(torch.tensor([[0.0, 0.0, 2.0], [0.0, 0.0, 1.0], [0.0, 0.0, -1.0]]))
        depth = pcd.project_to_depth_image(64, 48, wall_intrinsic, depth_scale=1000.0)

        assert float(depth[24, 32]) == pytest.approx(1000.0)
        assert int((depth > 0).sum()) == 1

    def test_project_depth_max_excluded(self, wall_intrinsic):
        """测试位于 depth_max 的点不参与投影"""
        pcd = PointCloud(torch.tensor([[0.0, 0.0, 3.0]]))
        depth = pcd.project_to_depth_image(64, 48, wall_intrinsic, depth_scale=1000.0, depth_max=3.0)
        assert not (depth > 0).any()

    def test_project_rgbd_z_buffer(self, wall_intrinsic):
        """测试 RGBD 投影取最近点的颜色"""
        positions = torch.tensor([[0.0, 0.0, 2.0], [0.0, 0.0, 1.0], [0.02, 0.0, 1.5]])
        colors = torch.tensor([[255, 0, 0], [0, 255, 0], [0, 0, 255]], dtype=torch.uint8)
        pcd = PointCloud(positions, colors=colors)

        depth, color = pcd.project_to_rgbd_image(64, 48, wall_intrinsic, depth_scale=1000.0)

        assert depth.shape == (48, 64)
        assert color.shape == (48, 64, 3)
        assert color.dtype == torch.uint8
        assert float(depth[24, 32]) == pytest.approx(1000.0)
        assert color[24, 32].tolist() == [0, 255, 0]
        # (0.02, 0, 1.5) lands on u = 32 + 50 * 0.02 / 1.5
        assert float(depth[24, 33]) == pytest.approx(1500.0)
        assert color[24, 33].tolist() == [0, 0, 255]
        assert not color[depth == 0].any()

    def test_project_rgbd_matches_depth(self, wall_depth, wall_intrinsic):
        """测试 RGBD 投影的深度图与纯深度投影一致"""
        color_image = np.full((48, 64, 3), 0.25, dtype=np.float32)
        pcd = PointCloud.create_from_rgbd_image(wall_depth, color_image, wall_intrinsic, depth_scale=1000.0)

        depth, color = pcd.project_to_rgbd_image(64, 48, wall_intrinsic, depth_scale=1000.0)

        assert torch.equal(depth, pcd.project_to_depth_image(64, 48, wall_intrinsic, depth_scale=1000.0))
        assert torch.allclose(color, torch.full((48, 64, 3), 0.25))

    def test_project_rgbd_without_colors(self, cube_points, wall_intrinsic):
        """测试没有颜色时 RGBD 投影抛出 ValueError"""
        with pytest.raises(ValueError):
            PointCloud(cube_points).project_to_rgbd_image(64, 48, wall_intrinsic)


class TestInterop:
    """测试 open3d / trimesh 转换"""

    def test_legacy_round_trip(self, cube_points):
        """测试与 open3d 点云互转"""
        o3d = pytest.importorskip("open3d")
        pcd = PointCloud(cube_points, colors=torch.full((8, 3), 0.25))

        legacy = pcd.to_legacy()
        assert isinstance(legacy, o3d.geometry.PointCloud)
        assert len(legacy.points) == 8

        restored = PointCloud.from_legacy(legacy)
        assert torch.allclose(restored.positions, cube_points)
        assert torch.allclose(restored.colors, torch.full((8, 3), 0.25))

    def test_legacy_uint8_colors(self, cube_points):
        """测试 uint8 颜色归一化到 [0, 1]"""
        pytest.importorskip("open3d")
        pcd = PointCloud(cube_points, colors=torch.full((8, 3), 255, dtype=torch.uint8))

        legacy = pcd.to_legacy()
        assert np.allclose(np.asarray(legacy.colors), 1.0)

    def test_empty_legacy(self, caplog):
        """测试空 open3d 点云返回空结果并警告"""
        o3d = pytest.importorskip("open3d")
        pcd = PointCloud.from_legacy(o3d.geometry.PointCloud())

        assert pcd.is_empty()
        assert "no points" in caplog.text

    def test_export(self, cube_points, temp_dir):
        """测试通过 trimesh 导出 PLY"""
        trimesh = pytest.importorskip("trimesh")
        path = temp_dir / "cube.ply"
        PointCloud(cube_points, colors=torch.full((8, 3), 0.5)).export(path)

        assert path.exists()
        loaded = trimesh.load(path)
        assert len(loaded.vertices) == 8
