"""
Core entities for the shard cache runtime.
"""

from .cache import ExpertCacheEntry, StorageStats
from .execution import (
    ExecutionOutput,
    ExecutionState,
    ExecutionStateSnapshot,
    InferenceRequest,
    RoutingDecision,
    UsageStats,
)
from .expert import Expert, ExpertDefinition, TensorLayout
from .license import (
    Community,
    Enterprise,
    License,
    LicenseTerms,
    LicenseType,
    LicenseUsage,
    PayPerUse,
    RateLimit,
    Subscription,
    UsageReceipt,
)
from .shard import Shard, ShardMetadata
from .tensor import Tensor, TensorDType

__all__ = [
    "Community",
    "Enterprise",
    "ExecutionOutput",
    "ExecutionState",
    "ExecutionStateSnapshot",
    "Expert",
    "ExpertCacheEntry",
    "ExpertDefinition",
    "InferenceRequest",
    "License",
    "LicenseTerms",
    "LicenseType",
    "LicenseUsage",
    "PayPerUse",
    "RateLimit",
    "RoutingDecision",
    "Shard",
    "ShardMetadata",
    "StorageStats",
    "Subscription",
    "TensorLayout",
    "Tensor",
    "TensorDType",
    "UsageReceipt",
    "UsageStats",
]
