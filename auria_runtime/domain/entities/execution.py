"""
Request-scoped entities: inbound requests, routing decisions, execution
state and outputs.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from ...common.types import ExpertId, RequestId
from .tensor import Tensor


@dataclass(frozen=True)
class InferenceRequest:
    """
    What the transport layer hands the runtime for one request.

    ``features`` is whatever the routing policy keys on (e.g. a prompt
    embedding digest); the runtime treats it as opaque bytes.
    """

    request_id: RequestId
    features: bytes
    max_tokens: int
    prompt: Optional[str] = None

    def __post_init__(self):
        if self.max_tokens < 0:
            raise ValueError(f"max_tokens must be non-negative, got {self.max_tokens}")


@dataclass(frozen=True)
class RoutingDecision:
    """Experts selected for one request, in order. Never recomputed."""

    expert_ids: Tuple[ExpertId, ...]
    request_id: Optional[RequestId] = None
    topology_version: int = 0

    def __post_init__(self):
        if not isinstance(self.expert_ids, tuple):
            object.__setattr__(self, "expert_ids", tuple(self.expert_ids))

    def __len__(self) -> int:
        return len(self.expert_ids)

    def __iter__(self):
        return iter(self.expert_ids)


@dataclass
class ExecutionState:
    """Position counter and KV cache of one in-flight request."""

    position: int = 0
    kv_cache: List[Tensor] = field(default_factory=list)

    def snapshot(self) -> "ExecutionStateSnapshot":
        return ExecutionStateSnapshot(position=self.position, kv_cache=tuple(self.kv_cache))


@dataclass(frozen=True)
class ExecutionStateSnapshot:
    position: int
    kv_cache: Tuple[Tensor, ...]


@dataclass(frozen=True)
class UsageStats:
    tokens_generated: int


@dataclass(frozen=True)
class ExecutionOutput:
    tokens: Tuple[str, ...]
    usage: UsageStats

    def __post_init__(self):
        if not isinstance(self.tokens, tuple):
            object.__setattr__(self, "tokens", tuple(self.tokens))
