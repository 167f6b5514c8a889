"""
Manager domain for coordinating where expert payloads live.

- TierManager: placement, LRU demotion and single-flight loading across
  the VRAM, RAM, DISK and NETWORK tiers
- TierTables: per-tier entry bookkeeping used by the TierManager
"""

from .memory_tier import TierTables
from .tier_manager import TierManager

__all__ = ["TierManager", "TierTables"]
