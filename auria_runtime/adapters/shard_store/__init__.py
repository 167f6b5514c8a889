"""
Shard store implementations.
"""

from .memory import InMemoryShardStore
from .safetensors_store import SafetensorsShardStore

__all__ = [
    "InMemoryShardStore",
    "SafetensorsShardStore",
]
