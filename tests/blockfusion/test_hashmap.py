"""
BlockFusion 哈希表测试

两种后端（linear_probing, morton_sorted）共用同一组测试。
"""

import logging

import pytest
import torch

from blockfusion.hashmap import (
    LinearProbingHashMap,
    MortonSortedHashMap,
    create_hashmap,
)

BACKENDS = ["linear_probing", "morton_sorted"]


def make_map(backend, capacity=16, with_values=True):
    if with_values:
        return create_hashmap(backend, capacity, (torch.float32, torch.int32), ((2,), (1,)), "cpu")
    return create_hashmap(backend, capacity, device="cpu")


@pytest.mark.parametrize("backend", BACKENDS)
class TestHashMap:
    """测试哈希表接口"""

    def test_activate_new_keys(self, backend):
        """测试插入新键"""
        hashmap = make_map(backend)
        keys = torch.tensor([[0, 0, 0], [1, 2, 3], [-4, 5, -6]], dtype=torch.int32)

        buf_indices, masks = hashmap.activate(keys)

        assert masks.all()
        assert hashmap.size() == 3
        assert len(hashmap) == 3
        assert sorted(buf_indices.tolist()) == [0, 1, 2]
        assert torch.equal(hashmap.get_key_tensor()[buf_indices], keys)

    def test_duplicate_keys_share_slot(self, backend):
        """测试同一次调用中的重复键解析到同一个 slot"""
        hashmap = make_map(backend)
        keys = torch.tensor([[7, 7, 7], [1, 2, 3], [7, 7, 7], [1, 2, 3], [7, 7, 7]])

        buf_indices, masks = hashmap.activate(keys)

        assert hashmap.size() == 2
        assert buf_indices[0] == buf_indices[2] == buf_indices[4]
        assert buf_indices[1] == buf_indices[3]
        assert masks.tolist() == [True, True, False, False, False]

    def test_reactivate_existing(self, backend):
        """测试重复插入已存在的键"""
        hashmap = make_map(backend)
        keys = torch.tensor([[1, 1, 1], [2, 2, 2]])
        first, _ = hashmap.activate(keys)

        second, masks = hashmap.activate(keys.flip(0))

        assert not masks.any()
        assert torch.equal(second, first.flip(0))
        assert hashmap.size() == 2

    def test_find_after_activate(self, backend):
        """测试 Activate 之后 Find 总能找到"""
        generator = torch.Generator().manual_seed(0)
        keys = torch.randint(-50, 50, (3000, 3), generator=generator, dtype=torch.int32)
        n_unique = torch.unique(keys, dim=0).shape[0]
        hashmap = make_map(backend, capacity=n_unique, with_values=False)

        buf_indices, masks = hashmap.activate(keys)
        found, found_masks = hashmap.find(keys)

        assert hashmap.size() == n_unique
        assert int(masks.sum()) == n_unique
        assert found_masks.all()
        assert torch.equal(found, buf_indices)
        assert torch.equal(hashmap.get_key_tensor()[found], keys)

    def test_find_missing(self, backend):
        """测试查找不存在的键"""
        hashmap = make_map(backend)
        hashmap.activate(torch.tensor([[0, 0, 0]]))

        buf_indices, masks = hashmap.find(torch.tensor([[0, 0, 0], [0, 0, 1], [5, -5, 5]]))

        assert masks.tolist() == [True, False, False]
        assert buf_indices[1:].tolist() == [-1, -1]

    def test_capacity_exhausted(self, backend, caplog):
        """测试容量耗尽时通过 mask 报告而不是抛出异常"""
        hashmap = make_map(backend, capacity=4)
        keys = torch.arange(18, dtype=torch.int32).view(6, 3)

        with caplog.at_level(logging.WARNING):
            buf_indices, masks = hashmap.activate(keys)

        assert hashmap.size() == 4
        assert int(masks.sum()) == 4
        assert int((buf_indices < 0).sum()) == 2
        assert torch.equal(masks, buf_indices >= 0)
        assert "capacity" in caplog.text

        _, found_masks = hashmap.find(keys)
        assert torch.equal(found_masks, masks)

    def test_values_zero_initialized(self, backend):
        """测试新激活的 slot 值为 0"""
        hashmap = make_map(backend)
        buf_indices, _ = hashmap.activate(torch.tensor([[1, 2, 3]]))
        hashmap.get_value_tensor(0)[buf_indices] = 5.0
        hashmap.get_value_tensor(1)[buf_indices] = 7

        hashmap.clear()
        buf_indices, _ = hashmap.activate(torch.tensor([[3, 2, 1]]))

        assert hashmap.get_value_tensor(0)[buf_indices].abs().sum() == 0
        assert hashmap.get_value_tensor(1)[buf_indices].abs().sum() == 0

    def test_value_shapes(self, backend):
        """测试值缓冲区形状"""
        hashmap = make_map(backend, capacity=8)
        values = hashmap.get_value_tensors()

        assert len(values) == 2
        assert values[0].shape == (8, 2)
        assert values[1].shape == (8, 1)
        assert values[1].dtype == torch.int32

    def test_clear(self, backend):
        """测试清空后缓冲区复用"""
        hashmap = make_map(backend)
        keys = torch.tensor([[1, 1, 1], [2, 2, 2]])
        hashmap.activate(keys)

        hashmap.clear()

        assert hashmap.size() == 0
        assert hashmap.get_active_indices().numel() == 0
        _, masks = hashmap.find(keys)
        assert not masks.any()

        buf_indices, masks = hashmap.activate(keys)
        assert masks.all()
        assert sorted(buf_indices.tolist()) == [0, 1]

    def test_active_indices(self, backend):
        """测试活跃 slot 列表"""
        hashmap = make_map(backend)
        buf_indices, _ = hashmap.activate(torch.tensor([[0, 0, 1], [0, 1, 0], [1, 0, 0]]))

        active = hashmap.get_active_indices()
        assert sorted(active.tolist()) == sorted(buf_indices.tolist())

    def test_invalid_keys(self, backend):
        """测试非法键"""
        hashmap = make_map(backend)
        with pytest.raises(ValueError):
            hashmap.activate(torch.zeros((4, 2), dtype=torch.int32))
        with pytest.raises(ValueError):
            hashmap.find(torch.zeros((4, 3), dtype=torch.float32))

    def test_empty_keys(self, backend):
        """测试空输入"""
        hashmap = make_map(backend)
        buf_indices, masks = hashmap.activate(torch.zeros((0, 3), dtype=torch.int32))

        assert buf_indices.numel() == 0
        assert masks.numel() == 0
        assert hashmap.size() == 0


class TestBackends:
    """测试后端特有行为"""

    def test_factory(self):
        """测试后端工厂"""
        assert isinstance(create_hashmap("linear_probing", 4), LinearProbingHashMap)
        assert isinstance(create_hashmap("morton_sorted", 4), MortonSortedHashMap)

        with pytest.raises(ValueError):
            create_hashmap("cuckoo", 4)

    def test_invalid_capacity(self):
        """测试非法容量"""
        with pytest.raises(ValueError):
            create_hashmap("linear_probing", 0)

    def test_bucket_table_size(self):
        """测试桶数量为 2 的幂且至少两倍容量"""
        hashmap = LinearProbingHashMap(100)
        assert hashmap.bucket_count >= 200
        assert hashmap.bucket_count & (hashmap.bucket_count - 1) == 0

    def test_colliding_keys(self):
        """测试大量冲突键的线性探测"""
        hashmap = LinearProbingHashMap(64, load_factor=0.9)
        keys = torch.stack(
            [torch.arange(64), torch.zeros(64, dtype=torch.int64), torch.zeros(64, dtype=torch.int64)],
            dim=1,
        )

        buf_indices, masks = hashmap.activate(keys)
        found, found_masks = hashmap.find(keys)

        assert masks.all()
        assert found_masks.all()
        assert torch.equal(found, buf_indices)

    def test_morton_out_of_range(self):
        """测试 Morton 后端的坐标范围检查"""
        hashmap = MortonSortedHashMap(4)
        with pytest.raises(ValueError):
            hashmap.activate(torch.tensor([[1 << 20, 0, 0]]))
        assert hashmap.size() == 0

        _, masks = hashmap.find(torch.tensor([[1 << 20, 0, 0]]))
        assert not masks.any()

    def test_morton_sorted_order(self):
        """测试 Morton 后端按 Z 序遍历"""
        hashmap = MortonSortedHashMap(8)
        keys = torch.tensor([[1, 1, 1], [0, 0, 0], [1, 0, 0], [0, 1, 0]])
        buf_indices, _ = hashmap.activate(keys)

        order = hashmap.get_active_indices()
        sorted_keys = hashmap.get_key_tensor()[order].tolist()
        assert sorted_keys == [[0, 0, 0], [1, 0, 0], [0, 1, 0], [1, 1, 1]]
