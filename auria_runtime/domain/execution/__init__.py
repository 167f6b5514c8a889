"""
Execution domain: request-scoped state and its lifetime.
"""

from .context import ExecutionContext, ExecutionRegistry

__all__ = ["ExecutionContext", "ExecutionRegistry"]
