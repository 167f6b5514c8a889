"""
Error taxonomy for the shard cache runtime.

Every error raised by the runtime derives from AuriaError so callers can
catch the whole family at a request boundary. None of them is fatal to
the process.
"""

from typing import Any, Optional


class AuriaError(Exception):
    """Base class for runtime errors."""


class ShardNotFound(AuriaError):
    def __init__(self, shard_id: Any, version: Optional[int] = None):
        self.shard_id = shard_id
        self.version = version
        suffix = f" (version {version})" if version is not None else ""
        super().__init__(f"Shard not found: {shard_id}{suffix}")


class ExpertNotFound(AuriaError):
    def __init__(self, expert_id: Any):
        self.expert_id = expert_id
        super().__init__(f"Expert not found: {expert_id}")


class LicenseInvalid(AuriaError):
    """
    Missing, expired or badly signed license.

    The message is identical for every failure mode so callers cannot
    learn which check failed.
    """

    def __init__(self, shard_id: Any):
        self.shard_id = shard_id
        super().__init__(f"License invalid or expired for shard: {shard_id}")


class RateLimited(AuriaError):
    """Admission denied. Nothing was debited."""

    def __init__(self, reason: str, detail: str = ""):
        self.reason = reason
        message = f"Rate limited: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class StorageError(AuriaError):
    """I/O failure persisting or reconstructing a payload."""


class InvalidTensorError(StorageError, ValueError):
    """Tensor bytes disagree with its shape and dtype, or layout is out of range."""


class InsufficientHardware(AuriaError):
    def __init__(self, tier: Any, detail: str = ""):
        self.tier = tier
        message = f"Insufficient hardware capabilities for tier: {tier}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ExecutionError(AuriaError):
    pass


class ConfigError(AuriaError, ValueError):
    pass


class SerializationError(AuriaError, ValueError):
    pass


class SecurityError(AuriaError):
    pass
