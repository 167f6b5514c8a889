"""
Tests for checkpoint import.
"""

import pytest
import torch
from safetensors.torch import save_file

from auria_runtime.adapters.shard_store import InMemoryShardStore
from auria_runtime.common.types import ExpertId, Hash
from auria_runtime.domain.entities import Tensor, TensorDType
from auria_runtime.domain.manager import TierManager
from auria_runtime.domain.routing import ModelTopology
from auria_runtime.infra import ShardImporter

from conftest import OWNER, tiers


@pytest.fixture
def importer(store, clock):
    return ShardImporter(store, OWNER, shard_bytes=16, clock=clock)


class TestShardImporter:
    """Test splitting tensors into shards."""

    def test_rows_split_into_shards(self, importer, store):
        weights = torch.arange(32, dtype=torch.float16).reshape(8, 4)
        expert = importer.import_tensor("block.0.expert_1", weights)

        assert expert.expert_id == ExpertId.from_name("block.0.expert_1")
        assert len(expert.shards) == 4
        assert expert.tensor_layout.shape == (8, 4)
        for shard_id in expert.shards:
            shard = store.get(shard_id)
            assert shard.tensor.shape == (2, 4)
            assert shard.expert_id == expert.expert_id
            assert shard.metadata.owner == OWNER

    def test_reassembles_through_the_cache(self, importer, store, clock):
        """Test that the imported expert rebuilds to the original weights."""
        weights = torch.randn(5, 6).to(torch.float16)
        expert = importer.import_tensor("w", weights)
        manager = TierManager(store, ModelTopology([expert]), tiers(ram=1024), clock=clock)

        rebuilt = manager.materialize(expert.expert_id, device=torch.device("cpu"))
        assert torch.equal(rebuilt, weights)

    def test_reimport_stores_nothing_new(self, clock):
        store = InMemoryShardStore()
        importer = ShardImporter(store, OWNER, shard_bytes=16, clock=clock)
        weights = torch.ones(4, 4, dtype=torch.float16)
        first = importer.import_tensor("w", weights)
        puts = store.put_count

        second = importer.import_tensor("w", weights)

        assert second == first
        assert store.put_count == puts

    def test_vectors_and_odd_int4_rows_stay_whole(self, importer):
        vector = importer.import_tensor("bias", torch.zeros(64, dtype=torch.float16))
        assert len(vector.shards) == 1

        packed = Tensor(data=b"\x11" * 24, shape=(16, 3), dtype=TensorDType.INT4)
        assert len(importer.import_tensor("q", packed).shards) == 1

    def test_license_hash_recorded(self, store, clock):
        importer = ShardImporter(store, OWNER, license_hash=Hash.of(b"terms"), clock=clock)
        expert = importer.import_tensor("w", torch.zeros(2, 2, dtype=torch.float16))
        assert store.get(expert.shards[0]).metadata.license_hash == Hash.of(b"terms")

    def test_shard_bytes_validated(self, store):
        with pytest.raises(ValueError):
            ShardImporter(store, OWNER, shard_bytes=0)

    def test_import_file(self, importer, tmp_path):
        path = tmp_path / "model.safetensors"
        save_file(
            {
                "b.expert": torch.zeros(4, 4, dtype=torch.float16),
                "a.expert": torch.ones(4, 4, dtype=torch.float16),
                "a.router": torch.ones(4, dtype=torch.float16),
            },
            str(path),
        )

        experts = importer.import_file(path, include=lambda name: name.endswith(".expert"))

        assert [e.name for e in experts] == ["a.expert", "b.expert"]
