"""
Abstract interface for the compute engine the runtime feeds.

The forward-pass math lives outside this package; the runtime only hands
over materialized weights and the request's execution context.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict

from ...common.types import ExpertId
from ..entities.execution import ExecutionOutput, InferenceRequest, RoutingDecision
from ..entities.tensor import Tensor

if TYPE_CHECKING:
    from ..execution.context import ExecutionContext


class IComputeEngine(ABC):
    """Consumes materialized expert tensors and produces tokens."""

    @abstractmethod
    def forward(
        self,
        request: InferenceRequest,
        decision: RoutingDecision,
        weights: Dict[ExpertId, Tensor],
        context: "ExecutionContext",
    ) -> ExecutionOutput:
        """
        Run generation for one request.

        Args:
            request: The request being served
            decision: Experts routed for this request
            weights: Materialized tensor for every routed expert
            context: Execution context to advance as tokens are produced

        Returns:
            Generated tokens and usage
        """
        pass
