"""
License, terms, usage counters and receipts.
"""

import struct
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from ...common.types import ExpertId, PublicKey, RequestId, ShardId, Signature


@dataclass(frozen=True)
class RateLimit:
    requests_per_second: int
    burst_size: int

    def __post_init__(self):
        """Validate rate limit parameters."""
        if self.requests_per_second < 0:
            raise ValueError("requests_per_second must be non-negative")
        if self.burst_size < 1:
            raise ValueError("burst_size must be at least 1")


@dataclass(frozen=True)
class Subscription:
    tier: str
    max_requests_per_day: int


@dataclass(frozen=True)
class PayPerUse:
    credits: int
    cost_per_token: float


@dataclass(frozen=True)
class Enterprise:
    unlimited: bool
    max_concurrent_requests: int = 0


@dataclass(frozen=True)
class Community:
    tier: str


LicenseType = Union[Subscription, PayPerUse, Enterprise, Community]


@dataclass(frozen=True)
class LicenseTerms:
    """
    Consumption rules attached to a license.

    ``allowed_tiers`` lists hardware tier names (see common.types.Tier)
    the licensed node may run as; empty means any.
    """

    license_type: LicenseType
    max_shards: int = 0
    allowed_tiers: Tuple[str, ...] = ()
    rate_limit: Optional[RateLimit] = None

    def __post_init__(self):
        if not isinstance(self.allowed_tiers, tuple):
            object.__setattr__(self, "allowed_tiers", tuple(self.allowed_tiers))


@dataclass(frozen=True)
class License:
    """
    Grant for ``node_pubkey`` to use ``shard_id`` until ``expiry_timestamp``.

    The authority signature covers only the canonical encoding of
    (shard_id, node_pubkey, expiry_timestamp).
    """

    shard_id: ShardId
    node_pubkey: PublicKey
    expiry_timestamp: int
    signature: Signature
    terms: LicenseTerms

    @staticmethod
    def signing_payload(shard_id: ShardId, node_pubkey: PublicKey, expiry_timestamp: int) -> bytes:
        """Canonical 72-byte encoding: shard_id || node_pubkey || expiry (u64 BE)."""
        return shard_id.value + node_pubkey.value + struct.pack(">Q", expiry_timestamp)

    @property
    def key(self) -> Tuple[ShardId, PublicKey]:
        return (self.shard_id, self.node_pubkey)


@dataclass
class LicenseUsage:
    """
    Running consumption counter for one (license, node) pair.

    Counters only move forward; the billing cycle boundary, driven from
    outside, is the only reset.
    """

    license_id: ShardId
    node_pubkey: PublicKey
    tokens_used: int = 0
    requests_made: int = 0
    last_updated: float = 0.0

    @property
    def key(self) -> Tuple[ShardId, PublicKey]:
        return (self.license_id, self.node_pubkey)


@dataclass(frozen=True)
class UsageReceipt:
    """Signed proof that usage for one request was debited."""

    request_id: RequestId
    expert_ids: Tuple[ExpertId, ...]
    token_count: int
    timestamp: int
    node_signature: Signature

    @staticmethod
    def signing_payload(
        request_id: RequestId,
        expert_ids: Tuple[ExpertId, ...],
        token_count: int,
        timestamp: int,
    ) -> bytes:
        parts = [request_id.value, struct.pack(">I", len(expert_ids))]
        parts.extend(expert_id.value for expert_id in expert_ids)
        parts.append(struct.pack(">IQ", token_count, timestamp))
        return b"".join(parts)

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id.hex(),
            "expert_ids": [expert_id.hex() for expert_id in self.expert_ids],
            "token_count": self.token_count,
            "timestamp": self.timestamp,
            "node_signature": self.node_signature.hex(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UsageReceipt":
        return cls(
            request_id=RequestId.from_hex(data["request_id"]),
            expert_ids=tuple(ExpertId.from_hex(e) for e in data["expert_ids"]),
            token_count=int(data["token_count"]),
            timestamp=int(data["timestamp"]),
            node_signature=Signature.from_hex(data["node_signature"]),
        )
