"""
Core types for the shard cache runtime.

This module contains fundamental type definitions that are used across
the entire codebase. It should have minimal dependencies to avoid
circular imports.
"""

import hashlib
import os
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Optional

from .errors import SerializationError


class StorageTier(Enum):
    """
    Represents different storage tiers for expert payloads.

    Lower values indicate faster access tiers.
    """

    VRAM = 0  # GPU memory - fastest, most limited
    RAM = 1  # System memory - fast, moderate capacity
    DISK = 2  # NVMe/SSD storage - slower, larger capacity
    NETWORK = 3  # Remote/ShardStore source - slowest, tier of last resort

    def slower(self) -> Optional["StorageTier"]:
        """Next slower tier, or None for NETWORK."""
        if self.value == StorageTier.NETWORK.value:
            return None
        return StorageTier(self.value + 1)

    @property
    def holds_payload(self) -> bool:
        """Network entries are placeholders re-fetched from the shard store."""
        return self is not StorageTier.NETWORK


class Tier(Enum):
    """Hardware class a node is sized for."""

    NANO = "Nano"
    STANDARD = "Standard"
    PRO = "Pro"
    MAX = "Max"

    def __str__(self) -> str:
        return self.value

    @property
    def rank(self) -> int:
        return list(Tier).index(self)


@dataclass(frozen=True)
class RuntimeVersion:
    major: int
    minor: int
    patch: int

    @classmethod
    def current(cls) -> "RuntimeVersion":
        return cls(1, 0, 0)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


@dataclass(frozen=True)
class _FixedBytes:
    """
    Fixed-width binary identifier.

    Equality is byte-exact and the type participates in equality, so a
    ShardId never compares equal to an ExpertId with the same bytes.
    The only textual encoding is lowercase hex.
    """

    value: bytes
    SIZE: ClassVar[int] = 32

    def __post_init__(self):
        """Validate identifier width."""
        if not isinstance(self.value, (bytes, bytearray)):
            raise SerializationError(
                f"{type(self).__name__} requires bytes, got {type(self.value).__name__}"
            )
        if len(self.value) != self.SIZE:
            raise SerializationError(
                f"{type(self).__name__} must be {self.SIZE} bytes, got {len(self.value)}"
            )
        if isinstance(self.value, bytearray):
            object.__setattr__(self, "value", bytes(self.value))

    @classmethod
    def from_hex(cls, text: str):
        """Decode the lowercase hex form; any other encoding is rejected."""
        if not isinstance(text, str) or len(text) != cls.SIZE * 2:
            raise SerializationError(
                f"{cls.__name__} hex must be {cls.SIZE * 2} characters"
            )
        if text != text.lower():
            raise SerializationError(f"{cls.__name__} hex must be lowercase")
        try:
            return cls(bytes.fromhex(text))
        except ValueError as e:
            raise SerializationError(f"{cls.__name__}: invalid hex: {e}") from e

    def hex(self) -> str:
        return self.value.hex()

    def __str__(self) -> str:
        return self.hex()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.hex()[:12]}…)"


@dataclass(frozen=True, repr=False)
class ShardId(_FixedBytes):
    SIZE: ClassVar[int] = 32


@dataclass(frozen=True, repr=False)
class ExpertId(_FixedBytes):
    SIZE: ClassVar[int] = 32

    @classmethod
    def from_name(cls, name: str) -> "ExpertId":
        """Stable id for a named expert, e.g. ``block.3.mlp.expert_7``."""
        return cls(hashlib.sha256(name.encode("utf-8")).digest())


@dataclass(frozen=True, repr=False)
class PublicKey(_FixedBytes):
    SIZE: ClassVar[int] = 32


@dataclass(frozen=True, repr=False)
class Signature(_FixedBytes):
    SIZE: ClassVar[int] = 64


@dataclass(frozen=True, repr=False)
class Hash(_FixedBytes):
    SIZE: ClassVar[int] = 32

    @classmethod
    def of(cls, data: bytes) -> "Hash":
        return cls(hashlib.sha256(data).digest())


@dataclass(frozen=True, repr=False)
class RequestId(_FixedBytes):
    SIZE: ClassVar[int] = 16

    @classmethod
    def generate(cls) -> "RequestId":
        return cls(os.urandom(cls.SIZE))
