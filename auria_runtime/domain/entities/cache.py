"""
Cache-side entities owned by the TierManager.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from ...common.types import ExpertId, StorageTier
from .expert import Expert
from .tensor import Tensor


@dataclass
class ExpertCacheEntry:
    """
    A materialized expert and where it currently lives.

    ``tensor`` is None while the payload is not held in process memory:
    always for NETWORK entries, and for DISK entries once their spill
    file has been written.

    ``expert`` is the definition the payload was assembled from; an entry
    only serves requests routed against that same definition.
    """

    expert_id: ExpertId
    tensor: Optional[Tensor]
    last_used_timestamp: float
    tier: StorageTier
    nbytes: int
    sequence: int = 0  # access order, breaks timestamp ties
    spill_path: Optional[Path] = None
    expert: Optional[Expert] = None

    @property
    def lru_key(self):
        return (self.last_used_timestamp, self.sequence)

    def __repr__(self) -> str:
        held = "held" if self.tensor is not None else "spilled"
        return (
            f"ExpertCacheEntry({self.expert_id.hex()[:12]}, @{self.tier.name}, "
            f"{self.nbytes}B, {held})"
        )


@dataclass(frozen=True)
class StorageStats:
    """Point-in-time snapshot of tier occupancy. Never authoritative."""

    vram_count: int = 0
    ram_count: int = 0
    disk_count: int = 0
    network_count: int = 0
    bytes_by_tier: Dict[str, int] = field(default_factory=dict)
    hits: int = 0
    misses: int = 0
    loads: int = 0
    evictions: int = 0
    promotions: int = 0

    @property
    def total_count(self) -> int:
        return self.vram_count + self.ram_count + self.disk_count + self.network_count

    def to_dict(self) -> dict:
        return {
            "vram_count": self.vram_count,
            "ram_count": self.ram_count,
            "disk_count": self.disk_count,
            "network_count": self.network_count,
            "bytes_by_tier": dict(self.bytes_by_tier),
            "hits": self.hits,
            "misses": self.misses,
            "loads": self.loads,
            "evictions": self.evictions,
            "promotions": self.promotions,
        }
