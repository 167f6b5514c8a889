"""
Content-addressed shards of expert weights.
"""

import hashlib
import struct
import time
from dataclasses import dataclass, replace
from typing import Optional

from ...common.types import ExpertId, Hash, PublicKey, ShardId
from .tensor import Tensor


@dataclass(frozen=True)
class ShardMetadata:
    owner: PublicKey
    license_hash: Optional[Hash]
    created_at: int
    version: int

    def __post_init__(self):
        """Validate metadata values."""
        if self.version < 1:
            raise ValueError(f"version must be >= 1, got {self.version}")
        if self.created_at < 0:
            raise ValueError(f"created_at must be non-negative, got {self.created_at}")


@dataclass(frozen=True)
class Shard:
    """
    One version of a slice of an expert's weights.

    A stored version never changes. Publishing new bytes under the same
    ShardId means storing a new version with bumped metadata.
    """

    shard_id: ShardId
    expert_id: ExpertId
    tensor: Tensor
    metadata: ShardMetadata

    @property
    def version(self) -> int:
        return self.metadata.version

    @staticmethod
    def derive_id(expert_id: ExpertId, tensor: Tensor) -> ShardId:
        """Content address of a shard's first version."""
        digest = hashlib.sha256()
        digest.update(expert_id.value)
        digest.update(tensor.dtype.value.encode("ascii"))
        digest.update(struct.pack(">I", len(tensor.shape)))
        for dim in tensor.shape:
            digest.update(struct.pack(">Q", dim))
        digest.update(tensor.data)
        return ShardId(digest.digest())

    @classmethod
    def create(
        cls,
        expert_id: ExpertId,
        tensor: Tensor,
        owner: PublicKey,
        license_hash: Optional[Hash] = None,
        created_at: Optional[int] = None,
    ) -> "Shard":
        """Build version 1 of a new shard, addressed by its content."""
        return cls(
            shard_id=cls.derive_id(expert_id, tensor),
            expert_id=expert_id,
            tensor=tensor,
            metadata=ShardMetadata(
                owner=owner,
                license_hash=license_hash,
                created_at=int(time.time()) if created_at is None else created_at,
                version=1,
            ),
        )

    def next_version(
        self,
        tensor: Tensor,
        license_hash: Optional[Hash] = None,
        created_at: Optional[int] = None,
    ) -> "Shard":
        """Same logical shard, new payload, version + 1."""
        metadata = replace(
            self.metadata,
            license_hash=license_hash if license_hash is not None else self.metadata.license_hash,
            created_at=int(time.time()) if created_at is None else created_at,
            version=self.metadata.version + 1,
        )
        return replace(self, tensor=tensor, metadata=metadata)

    def content_hash(self) -> Hash:
        """Digest of payload and metadata, recorded per stored version."""
        digest = hashlib.sha256()
        digest.update(self.shard_id.value)
        digest.update(self.expert_id.value)
        digest.update(self.tensor.dtype.value.encode("ascii"))
        for dim in self.tensor.shape:
            digest.update(struct.pack(">Q", dim))
        digest.update(self.tensor.data)
        digest.update(self.metadata.owner.value)
        digest.update(
            self.metadata.license_hash.value if self.metadata.license_hash else b"\x00"
        )
        digest.update(struct.pack(">QI", self.metadata.created_at, self.metadata.version))
        return Hash(digest.digest())

    def __repr__(self) -> str:
        return (
            f"Shard({self.shard_id.hex()[:12]}, v{self.version}, "
            f"expert={self.expert_id.hex()[:12]}, {self.tensor!r})"
        )
