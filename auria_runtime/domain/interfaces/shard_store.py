"""
Abstract interface for shard persistence.

This module defines the contract for content-addressed, versioned
storage of shard payloads. Stores know nothing about tiers.
"""

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ...common.errors import ShardNotFound, StorageError
from ...common.types import Hash, ShardId
from ..entities.shard import Shard
from ..entities.tensor import Tensor


class IShardStore(ABC):
    """
    Content-addressed, versioned shard storage.

    Subclasses implement the raw read/write of one version; this base
    class owns id verification, tensor validation and the per-id write
    locks that serialize version bumps.
    """

    def __init__(self):
        self._locks_guard = threading.Lock()
        self._write_locks: Dict[ShardId, threading.Lock] = {}

    def _write_lock(self, shard_id: ShardId) -> threading.Lock:
        with self._locks_guard:
            lock = self._write_locks.get(shard_id)
            if lock is None:
                lock = self._write_locks[shard_id] = threading.Lock()
            return lock

    def put(self, shard: Shard) -> ShardId:
        """
        Store one version of a shard durably.

        Args:
            shard: Shard version to store

        Returns:
            The shard's id

        Raises:
            InvalidTensorError: If the tensor payload disagrees with shape x dtype
            StorageError: If a first version's id is not its content address,
                or a later version names an id the store has never seen
        """
        shard.tensor.validate()
        with self._write_lock(shard.shard_id):
            self._check_identity(shard)
            self._write_version(shard)
        return shard.shard_id

    def bump(
        self,
        shard_id: ShardId,
        tensor: Tensor,
        license_hash: Optional[Hash] = None,
        now: Optional[int] = None,
    ) -> Shard:
        """
        Store ``tensor`` as the next version of an existing shard.

        Args:
            shard_id: Existing shard to version
            tensor: New payload
            license_hash: New license hash (keeps the current one if None)
            now: Creation timestamp for the new version

        Returns:
            The stored shard version

        Raises:
            ShardNotFound: If the shard has no stored version
        """
        tensor.validate()
        with self._write_lock(shard_id):
            latest = self._read_version(shard_id, None)
            shard = latest.next_version(tensor, license_hash=license_hash, created_at=now)
            self._write_version(shard)
        return shard

    def get(self, shard_id: ShardId, version: Optional[int] = None) -> Shard:
        """
        Retrieve a shard version.

        Args:
            shard_id: Shard identifier
            version: Version to read, latest when None

        Returns:
            The stored shard

        Raises:
            ShardNotFound: If the shard or the requested version is absent
        """
        return self._read_version(shard_id, version)

    def _check_identity(self, shard: Shard) -> None:
        existing = self.versions(shard.shard_id)
        if shard.version == 1 or not existing:
            if shard.version != 1:
                raise StorageError(
                    f"Shard {shard.shard_id} has no stored versions; "
                    f"cannot store version {shard.version}"
                )
            derived = Shard.derive_id(shard.expert_id, shard.tensor)
            if derived != shard.shard_id:
                raise StorageError(
                    f"Shard id {shard.shard_id} does not match content address {derived}"
                )

    @abstractmethod
    def exists(self, shard_id: ShardId) -> bool:
        """
        Check whether any version of a shard is stored.

        Args:
            shard_id: Shard identifier

        Returns:
            True if at least one version is stored
        """
        pass

    @abstractmethod
    def versions(self, shard_id: ShardId) -> List[int]:
        """
        List stored versions of a shard in ascending order.

        Args:
            shard_id: Shard identifier

        Returns:
            Sorted list of versions, empty if the shard is unknown
        """
        pass

    @abstractmethod
    def _write_version(self, shard: Shard) -> None:
        """Persist one version; durable when this returns."""
        pass

    @abstractmethod
    def _read_version(self, shard_id: ShardId, version: Optional[int]) -> Shard:
        """Read one version, latest when ``version`` is None."""
        pass

    def _latest(self, shard_id: ShardId, version: Optional[int]) -> int:
        """Resolve ``version`` against the stored versions."""
        stored = self.versions(shard_id)
        if not stored:
            raise ShardNotFound(shard_id)
        if version is None:
            return stored[-1]
        if version not in stored:
            raise ShardNotFound(shard_id, version)
        return version
