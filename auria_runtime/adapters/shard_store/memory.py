"""
In-process shard store.

Shards are immutable values, so storing the object itself is enough;
a write is durable for the life of the process as soon as it returns.
"""

import threading
from typing import Dict, List, Optional

from ...common.errors import ShardNotFound
from ...common.types import ShardId
from ...domain.entities.shard import Shard
from ...domain.interfaces.shard_store import IShardStore


class InMemoryShardStore(IShardStore):
    """
    Dictionary-backed store for tests and ephemeral nodes.

    Each shard's version table is replaced wholesale on write, so readers
    never take a lock.
    """

    def __init__(self):
        super().__init__()
        self._shards: Dict[ShardId, Dict[int, Shard]] = {}
        self._table_lock = threading.Lock()
        self._puts = 0

    def exists(self, shard_id: ShardId) -> bool:
        return shard_id in self._shards

    def versions(self, shard_id: ShardId) -> List[int]:
        return sorted(self._shards.get(shard_id, {}))

    def _write_version(self, shard: Shard) -> None:
        with self._table_lock:
            table = dict(self._shards.get(shard.shard_id, {}))
            table[shard.version] = shard
            self._shards[shard.shard_id] = table
            self._puts += 1

    def _read_version(self, shard_id: ShardId, version: Optional[int]) -> Shard:
        table = self._shards.get(shard_id)
        if not table:
            raise ShardNotFound(shard_id)
        resolved = max(table) if version is None else version
        if resolved not in table:
            raise ShardNotFound(shard_id, version)
        return table[resolved]

    def __len__(self) -> int:
        return len(self._shards)

    @property
    def put_count(self) -> int:
        return self._puts
