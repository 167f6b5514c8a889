"""
Model topology: the table of experts a node can serve.

Experts reference shards by id and shards reference experts by id; the
topology and the shard store are the owning tables that resolve them.
"""

import threading
from types import MappingProxyType
from typing import Iterable, Iterator, List, Mapping, Optional

from ...common.errors import ExpertNotFound, ShardNotFound
from ...common.types import ExpertId
from ..entities.expert import Expert
from ..interfaces.shard_store import IShardStore


class ModelTopology:
    """
    Immutable snapshot of the expert table.

    Changes produce a new snapshot with a higher version, so a request
    routed against one snapshot never observes a later change.
    """

    def __init__(self, experts: Iterable[Expert] = (), version: int = 0):
        table = {}
        for expert in experts:
            table[expert.expert_id] = expert
        self._experts: Mapping[ExpertId, Expert] = MappingProxyType(table)
        self.version = version

    @classmethod
    def load(cls, experts: Iterable[Expert], store: IShardStore, version: int = 0) -> "ModelTopology":
        """
        Build a topology, checking every shard reference resolves.

        Args:
            experts: Expert definitions
            store: Shard store the shard ids must resolve in
            version: Snapshot version

        Returns:
            Verified topology

        Raises:
            ShardNotFound: If an expert references a shard the store lacks
        """
        experts = list(experts)
        for expert in experts:
            _check_shards(expert, store)
        return cls(experts, version=version)

    def get(self, expert_id: ExpertId) -> Expert:
        """
        Raises:
            ExpertNotFound: If the expert is not part of this topology
        """
        try:
            return self._experts[expert_id]
        except KeyError:
            raise ExpertNotFound(expert_id) from None

    def find(self, expert_id: ExpertId) -> Optional[Expert]:
        return self._experts.get(expert_id)

    def __contains__(self, expert_id: object) -> bool:
        return expert_id in self._experts

    def __len__(self) -> int:
        return len(self._experts)

    def __iter__(self) -> Iterator[Expert]:
        return iter(self._experts.values())

    def expert_ids(self) -> List[ExpertId]:
        """Expert ids in a stable (byte) order."""
        return sorted(self._experts, key=lambda e: e.value)

    def with_expert(self, expert: Expert, store: Optional[IShardStore] = None) -> "ModelTopology":
        if store is not None:
            _check_shards(expert, store)
        experts = dict(self._experts)
        experts[expert.expert_id] = expert
        return ModelTopology(experts.values(), version=self.version + 1)

    def without_expert(self, expert_id: ExpertId) -> "ModelTopology":
        if expert_id not in self._experts:
            raise ExpertNotFound(expert_id)
        experts = {k: v for k, v in self._experts.items() if k != expert_id}
        return ModelTopology(experts.values(), version=self.version + 1)

    def __repr__(self) -> str:
        return f"ModelTopology(v{self.version}, {len(self)} experts)"


def _check_shards(expert: Expert, store: IShardStore) -> None:
    for shard_id in expert.shards:
        if not store.exists(shard_id):
            raise ShardNotFound(shard_id)


class TopologyHolder:
    """Publishes the current topology snapshot."""

    def __init__(self, topology: ModelTopology):
        self._topology = topology
        self._lock = threading.Lock()

    @property
    def current(self) -> ModelTopology:
        return self._topology

    def publish(self, topology: ModelTopology) -> None:
        with self._lock:
            if topology.version < self._topology.version:
                raise ValueError(
                    f"Topology version {topology.version} is older than "
                    f"current {self._topology.version}"
                )
            self._topology = topology

    def add_expert(self, expert: Expert, store: Optional[IShardStore] = None) -> ModelTopology:
        with self._lock:
            self._topology = self._topology.with_expert(expert, store)
            return self._topology

    def remove_expert(self, expert_id: ExpertId) -> ModelTopology:
        with self._lock:
            self._topology = self._topology.without_expert(expert_id)
            return self._topology
