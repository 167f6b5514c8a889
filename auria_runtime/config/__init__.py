"""
Configuration management for the shard cache runtime.
"""

import torch

from .hardware import CpuProfile, GpuProfile, HardwareProfile, classify_hardware
from .runtime_config import DEFAULT_COMMUNITY_ALLOWANCES, RuntimeConfig, StorageTierConfig

# Global device configuration
TORCH_VRAM_DEVICE = torch.device("cuda" if torch.cuda.is_available() else "cpu")
TORCH_RAM_DEVICE = torch.device("cpu")

__all__ = [
    "CpuProfile",
    "DEFAULT_COMMUNITY_ALLOWANCES",
    "GpuProfile",
    "HardwareProfile",
    "RuntimeConfig",
    "StorageTierConfig",
    "TORCH_RAM_DEVICE",
    "TORCH_VRAM_DEVICE",
    "classify_hardware",
]
