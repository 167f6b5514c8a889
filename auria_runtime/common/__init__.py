"""
Common vocabulary shared by every layer: identifiers, tiers, errors.
"""

from .errors import (
    AuriaError,
    ConfigError,
    ExecutionError,
    ExpertNotFound,
    InsufficientHardware,
    InvalidTensorError,
    LicenseInvalid,
    RateLimited,
    SecurityError,
    SerializationError,
    ShardNotFound,
    StorageError,
)
from .types import (
    ExpertId,
    Hash,
    PublicKey,
    RequestId,
    RuntimeVersion,
    ShardId,
    Signature,
    StorageTier,
    Tier,
)

__all__ = [
    "AuriaError",
    "ConfigError",
    "ExecutionError",
    "ExpertNotFound",
    "InsufficientHardware",
    "InvalidTensorError",
    "LicenseInvalid",
    "RateLimited",
    "SecurityError",
    "SerializationError",
    "ShardNotFound",
    "StorageError",
    "ExpertId",
    "Hash",
    "PublicKey",
    "RequestId",
    "RuntimeVersion",
    "ShardId",
    "Signature",
    "StorageTier",
    "Tier",
]
