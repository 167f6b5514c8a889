"""
Tiered, license-gated expert shard cache and routing runtime for
Mixture-of-Experts inference nodes.
"""

from .common.types import RuntimeVersion

__version__ = str(RuntimeVersion.current())

__all__ = ["__version__"]
