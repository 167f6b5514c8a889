"""
Hardware profile supplied by external hardware detection.

The runtime reads it once at startup to size its storage tiers.
"""

from dataclasses import asdict, dataclass
from typing import Optional, Tuple

from ..common.types import Tier

GIB = 1024**3


@dataclass(frozen=True)
class CpuProfile:
    vendor: str
    brand: str
    cores: int
    threads: int
    features: Tuple[str, ...] = ()


@dataclass(frozen=True)
class GpuProfile:
    vendor: str
    name: str
    vram_bytes: int
    compute_capability: Tuple[int, int] = (0, 0)


@dataclass(frozen=True)
class HardwareProfile:
    cpu: CpuProfile
    gpu: Optional[GpuProfile]
    ram_bytes: int
    ram_bandwidth_gbps: float = 0.0
    disk_bandwidth_mbps: float = 0.0
    network_latency_ms: float = 0.0

    @property
    def vram_bytes(self) -> int:
        return self.gpu.vram_bytes if self.gpu is not None else 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "HardwareProfile":
        cpu = data["cpu"]
        gpu = data.get("gpu")
        return cls(
            cpu=CpuProfile(
                vendor=cpu["vendor"],
                brand=cpu["brand"],
                cores=int(cpu["cores"]),
                threads=int(cpu["threads"]),
                features=tuple(cpu.get("features", ())),
            ),
            gpu=GpuProfile(
                vendor=gpu["vendor"],
                name=gpu["name"],
                vram_bytes=int(gpu["vram_bytes"]),
                compute_capability=tuple(gpu.get("compute_capability", (0, 0))),
            )
            if gpu
            else None,
            ram_bytes=int(data["ram_bytes"]),
            ram_bandwidth_gbps=float(data.get("ram_bandwidth_gbps", 0.0)),
            disk_bandwidth_mbps=float(data.get("disk_bandwidth_mbps", 0.0)),
            network_latency_ms=float(data.get("network_latency_ms", 0.0)),
        )


def classify_hardware(profile: HardwareProfile) -> Tier:
    """
    Hardware class of a node.

    Thresholds are on accelerator memory first, then system memory.
    """
    vram = profile.vram_bytes
    if vram >= 48 * GIB:
        return Tier.MAX
    if vram >= 16 * GIB:
        return Tier.PRO
    if vram >= 4 * GIB or profile.ram_bytes >= 16 * GIB:
        return Tier.STANDARD
    return Tier.NANO
