"""
Routing domain: topology snapshots and request routing.
"""

from .router import HashRoutingPolicy, Router, StaticRoutingPolicy
from .topology import ModelTopology, TopologyHolder

__all__ = [
    "HashRoutingPolicy",
    "ModelTopology",
    "Router",
    "StaticRoutingPolicy",
    "TopologyHolder",
]
