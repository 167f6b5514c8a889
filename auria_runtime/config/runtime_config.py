"""
Runtime configuration management.

This module provides configuration classes for sizing the storage tiers
and for the metering defaults, derived once from the node's hardware.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..common.errors import ConfigError, InsufficientHardware
from ..common.types import StorageTier, Tier
from .hardware import HardwareProfile, classify_hardware

# Community tier name -> tokens per billing cycle
DEFAULT_COMMUNITY_ALLOWANCES: Dict[str, int] = {
    "free": 10_000,
    "basic": 100_000,
    "plus": 1_000_000,
}


@dataclass(frozen=True)
class StorageTierConfig:
    """
    Capacity of one storage tier.

    ``path`` is only meaningful for DISK: when set, demoted payloads are
    spilled there instead of being kept in process memory. NETWORK ignores
    ``max_size_bytes``.
    """

    tier: StorageTier
    max_size_bytes: int
    path: Optional[Path] = None

    def __post_init__(self):
        """Validate tier parameters."""
        if self.max_size_bytes < 0:
            raise ConfigError(f"{self.tier.name}: max_size_bytes must be non-negative")
        if self.path is not None and not isinstance(self.path, Path):
            object.__setattr__(self, "path", Path(self.path))
        if self.path is not None and self.tier is not StorageTier.DISK:
            raise ConfigError(f"{self.tier.name}: only the DISK tier takes a path")

    def to_dict(self) -> dict:
        return {
            "tier": self.tier.name,
            "max_size_bytes": self.max_size_bytes,
            "path": str(self.path) if self.path is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StorageTierConfig":
        path = data.get("path")
        return cls(
            tier=StorageTier[data["tier"]],
            max_size_bytes=int(data.get("max_size_bytes", 0)),
            path=Path(path) if path else None,
        )


@dataclass
class RuntimeConfig:
    """
    Configuration for the runtime services.

    This class encapsulates the tier capacities and the metering and
    admission parameters needed to construct the runtime.
    """

    tiers: List[StorageTierConfig]

    # Hardware requirements
    node_tier: Tier = Tier.NANO
    min_tier: Tier = Tier.NANO
    min_working_set_bytes: int = 0

    # Metering
    community_allowances: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_COMMUNITY_ALLOWANCES)
    )

    def __post_init__(self):
        """Validate configuration parameters."""
        if not self.tiers:
            raise ConfigError("At least one storage tier must be configured")
        seen = set()
        for tier_config in self.tiers:
            if tier_config.tier in seen:
                raise ConfigError(f"Tier {tier_config.tier.name} configured twice")
            seen.add(tier_config.tier)
        if seen == {StorageTier.NETWORK}:
            raise ConfigError("At least one in-memory or disk tier must be configured")
        if self.min_working_set_bytes < 0:
            raise ConfigError("min_working_set_bytes must be non-negative")
        if any(v < 0 for v in self.community_allowances.values()):
            raise ConfigError("community allowances must be non-negative")
        self.tiers = sorted(self.tiers, key=lambda c: c.tier.value)

    @property
    def network_tier_enabled(self) -> bool:
        return any(c.tier is StorageTier.NETWORK for c in self.tiers)

    def tier_config(self, tier: StorageTier) -> Optional[StorageTierConfig]:
        for tier_config in self.tiers:
            if tier_config.tier is tier:
                return tier_config
        return None

    @classmethod
    def for_hardware(
        cls,
        profile: HardwareProfile,
        vram_fraction: float = 0.6,
        ram_fraction: float = 0.3,
        disk_path: Optional[Union[str, Path]] = None,
        disk_limit_bytes: Optional[int] = None,
        network_tier: bool = True,
        **kwargs,
    ) -> "RuntimeConfig":
        """
        Size the storage tiers for a node.

        Args:
            profile: Hardware profile from hardware detection
            vram_fraction: Share of accelerator memory given to the VRAM tier
            ram_fraction: Share of system memory given to the RAM tier
            disk_path: Spill directory for the DISK tier (no DISK tier if None
                and disk_limit_bytes is None)
            disk_limit_bytes: DISK tier capacity
            network_tier: Whether to keep the NETWORK tier as last resort
            **kwargs: Additional configuration parameters

        Returns:
            Sized runtime configuration

        Raises:
            InsufficientHardware: If the node classifies below ``min_tier``
        """
        if not 0.0 <= vram_fraction <= 1.0 or not 0.0 <= ram_fraction <= 1.0:
            raise ConfigError("tier fractions must be between 0 and 1")

        node_tier = classify_hardware(profile)
        min_tier = kwargs.get("min_tier", Tier.NANO)
        if node_tier.rank < min_tier.rank:
            raise InsufficientHardware(min_tier, f"node classifies as {node_tier}")

        tiers = []
        if profile.vram_bytes > 0:
            tiers.append(
                StorageTierConfig(StorageTier.VRAM, int(profile.vram_bytes * vram_fraction))
            )
        tiers.append(StorageTierConfig(StorageTier.RAM, int(profile.ram_bytes * ram_fraction)))
        if disk_path is not None or disk_limit_bytes is not None:
            tiers.append(
                StorageTierConfig(
                    StorageTier.DISK,
                    disk_limit_bytes if disk_limit_bytes is not None else 4 * profile.ram_bytes,
                    Path(disk_path) if disk_path is not None else None,
                )
            )
        if network_tier:
            tiers.append(StorageTierConfig(StorageTier.NETWORK, 0))

        return cls(tiers=tiers, node_tier=node_tier, **kwargs)

    def to_dict(self) -> dict:
        """Convert configuration to dictionary for serialization."""
        return {
            "tiers": [c.to_dict() for c in self.tiers],
            "node_tier": self.node_tier.name,
            "min_tier": self.min_tier.name,
            "min_working_set_bytes": self.min_working_set_bytes,
            "community_allowances": dict(self.community_allowances),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RuntimeConfig":
        """Create configuration from dictionary."""
        try:
            return cls(
                tiers=[StorageTierConfig.from_dict(t) for t in data["tiers"]],
                node_tier=Tier[data.get("node_tier", "NANO")],
                min_tier=Tier[data.get("min_tier", "NANO")],
                min_working_set_bytes=int(data.get("min_working_set_bytes", 0)),
                community_allowances=dict(
                    data.get("community_allowances", DEFAULT_COMMUNITY_ALLOWANCES)
                ),
            )
        except KeyError as e:
            raise ConfigError(f"Missing or unknown configuration value: {e}") from e

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "RuntimeConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e
        return cls.from_dict(data)
