"""
Abstract interfaces for the shard cache runtime.

This module provides abstract base classes that define the contracts
for the pluggable collaborators of the runtime.
"""

from .compute import IComputeEngine
from .routing import IRoutingPolicy
from .shard_store import IShardStore

__all__ = [
    "IComputeEngine",
    "IRoutingPolicy",
    "IShardStore",
]
