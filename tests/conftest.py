"""
Shared fixtures for the runtime tests.
"""

import hashlib
import threading
import time
from typing import List

import pytest
from nacl.signing import SigningKey

from auria_runtime.adapters.shard_store import InMemoryShardStore
from auria_runtime.common.types import ExpertId, PublicKey, StorageTier
from auria_runtime.config.runtime_config import StorageTierConfig
from auria_runtime.domain.entities import (
    ExecutionOutput,
    Expert,
    Shard,
    Tensor,
    TensorDType,
    TensorLayout,
    UsageStats,
)
from auria_runtime.domain.interfaces.compute import IComputeEngine
from auria_runtime.domain.licensing import LicenseAuthority, public_key_of

OWNER = PublicKey(b"\x01" * 32)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingStore(InMemoryShardStore):
    """In-memory store that counts reads and can slow them down."""

    def __init__(self, delay: float = 0.0):
        super().__init__()
        self.delay = delay
        self.reads = 0
        self._count_lock = threading.Lock()

    def get(self, shard_id, version=None):
        with self._count_lock:
            self.reads += 1
        if self.delay:
            time.sleep(self.delay)
        return super().get(shard_id, version)


class FakeEngine(IComputeEngine):
    """Emits one token per step, up to ``steps`` tokens."""

    def __init__(self, steps: int = 3, fail: bool = False):
        self.steps = steps
        self.fail = fail
        self.calls = []

    def forward(self, request, decision, weights, context):
        self.calls.append((request.request_id, tuple(decision.expert_ids), dict(weights)))
        if self.fail:
            raise RuntimeError("kernel exploded")
        tokens = []
        for step in range(min(self.steps, request.max_tokens)):
            context.advance(1)
            tokens.append(f"tok{step}")
        return ExecutionOutput(tokens=tuple(tokens), usage=UsageStats(tokens_generated=len(tokens)))


def payload(label: str, nbytes: int) -> bytes:
    """Deterministic bytes for a label."""
    out = b""
    counter = 0
    while len(out) < nbytes:
        out += hashlib.sha256(f"{label}/{counter}".encode()).digest()
        counter += 1
    return out[:nbytes]


def make_expert(
    store,
    name: str,
    shards: int = 2,
    rows: int = 2,
    cols: int = 4,
    dtype: TensorDType = TensorDType.FP16,
) -> Expert:
    """Store ``shards`` row blocks and return the expert that joins them."""
    expert_id = ExpertId.from_name(name)
    shard_ids = []
    for index in range(shards):
        tensor = Tensor(
            data=payload(f"{name}/{index}", dtype.nbytes(rows * cols)),
            shape=(rows, cols),
            dtype=dtype,
        )
        shard = Shard.create(expert_id, tensor, owner=OWNER, created_at=0)
        store.put(shard)
        shard_ids.append(shard.shard_id)
    return Expert(
        expert_id=expert_id,
        shards=tuple(shard_ids),
        tensor_layout=TensorLayout.contiguous((shards * rows, cols)),
        dtype=dtype,
        name=name,
    )


def expected_bytes(store, expert: Expert) -> bytes:
    return b"".join(store.get(shard_id).tensor.data for shard_id in expert.shards)


def tiers(vram: int = 0, ram: int = 0, disk: int = None, disk_path=None, network: bool = True) -> List[StorageTierConfig]:
    configs = []
    if vram:
        configs.append(StorageTierConfig(StorageTier.VRAM, vram))
    if ram:
        configs.append(StorageTierConfig(StorageTier.RAM, ram))
    if disk is not None:
        configs.append(StorageTierConfig(StorageTier.DISK, disk, disk_path))
    if network:
        configs.append(StorageTierConfig(StorageTier.NETWORK, 0))
    return configs


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryShardStore()


@pytest.fixture
def authority():
    return LicenseAuthority.from_seed(b"A" * 32)


@pytest.fixture
def node_key():
    return SigningKey(b"N" * 32)


@pytest.fixture
def node_pubkey(node_key):
    return public_key_of(node_key)
