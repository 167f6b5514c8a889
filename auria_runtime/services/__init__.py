"""
Service layer: request orchestration and runtime wiring.
"""

from .runtime import InferenceRuntime
from .runtime_factory import RuntimeFactory

__all__ = ["InferenceRuntime", "RuntimeFactory"]
