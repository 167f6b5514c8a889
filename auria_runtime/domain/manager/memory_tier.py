"""
Per-tier entry tables.

This module tracks which cache entry lives in which storage tier and how
many bytes each tier holds. Every expert id has at most one entry, in
exactly one tier.
"""

from typing import Dict, Iterable, List, Optional

from ...common.types import ExpertId, StorageTier
from ..entities.cache import ExpertCacheEntry


class TierTables:
    """
    Entry tracking across storage tiers.

    A location index maps each expert id to its entry, and one dict per
    tier holds the entries resident there. Callers serialize access.
    """

    def __init__(self, tiers: Iterable[StorageTier]):
        """Initialize empty tables for the configured tiers."""
        self._tier_entries: Dict[StorageTier, Dict[ExpertId, ExpertCacheEntry]] = {
            tier: {} for tier in tiers
        }
        self._used_bytes: Dict[StorageTier, int] = {tier: 0 for tier in self._tier_entries}
        self._locations: Dict[ExpertId, ExpertCacheEntry] = {}

    @property
    def tiers(self) -> List[StorageTier]:
        return sorted(self._tier_entries, key=lambda t: t.value)

    def add_to_tier(self, tier: StorageTier, entry: ExpertCacheEntry) -> None:
        """
        Add an entry to a tier.

        Raises:
            ValueError: If the expert already has an entry somewhere
        """
        if entry.expert_id in self._locations:
            raise ValueError(f"Expert {entry.expert_id} already resident")
        entry.tier = tier
        self._tier_entries[tier][entry.expert_id] = entry
        self._locations[entry.expert_id] = entry
        if tier.holds_payload:
            self._used_bytes[tier] += entry.nbytes

    def remove(self, expert_id: ExpertId) -> Optional[ExpertCacheEntry]:
        """Remove an expert's entry from wherever it lives."""
        entry = self._locations.pop(expert_id, None)
        if entry is None:
            return None
        del self._tier_entries[entry.tier][expert_id]
        if entry.tier.holds_payload:
            self._used_bytes[entry.tier] -= entry.nbytes
        return entry

    def move_between_tiers(self, entry: ExpertCacheEntry, to_tier: StorageTier) -> None:
        """Move an entry to another tier in one step."""
        self.remove(entry.expert_id)
        self.add_to_tier(to_tier, entry)

    def get_entry(self, expert_id: ExpertId) -> Optional[ExpertCacheEntry]:
        return self._locations.get(expert_id)

    def get_tier(self, expert_id: ExpertId) -> Optional[StorageTier]:
        entry = self._locations.get(expert_id)
        return entry.tier if entry is not None else None

    def get_entries_in_tier(self, tier: StorageTier) -> List[ExpertCacheEntry]:
        """Entries of a tier, least recently used first."""
        return sorted(self._tier_entries[tier].values(), key=lambda e: e.lru_key)

    def get_tier_size(self, tier: StorageTier) -> int:
        entries = self._tier_entries.get(tier)
        return len(entries) if entries is not None else 0

    def used_bytes(self, tier: StorageTier) -> int:
        return self._used_bytes.get(tier, 0)

    def clear(self) -> List[ExpertCacheEntry]:
        """Drop every entry and return what was dropped."""
        dropped = list(self._locations.values())
        for entries in self._tier_entries.values():
            entries.clear()
        for tier in self._used_bytes:
            self._used_bytes[tier] = 0
        self._locations.clear()
        return dropped

    def __contains__(self, expert_id: object) -> bool:
        return expert_id in self._locations

    def __len__(self) -> int:
        return len(self._locations)

    def get_tier_summary(self) -> dict:
        """
        Get a summary of current tier usage.

        Returns:
            Dictionary with per-tier counts and bytes
        """
        return {
            "vram_count": self.get_tier_size(StorageTier.VRAM),
            "ram_count": self.get_tier_size(StorageTier.RAM),
            "disk_count": self.get_tier_size(StorageTier.DISK),
            "network_count": self.get_tier_size(StorageTier.NETWORK),
            "bytes_by_tier": {
                tier.name: self._used_bytes[tier]
                for tier in self.tiers
                if tier.holds_payload
            },
        }
