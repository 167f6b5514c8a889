"""
Abstract interface for expert selection.

The selection policy is pluggable; the Router wraps whichever policy is
configured and owns validation of its output.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Sequence

from ...common.types import ExpertId
from ..entities.execution import InferenceRequest

if TYPE_CHECKING:
    from ..routing.topology import ModelTopology


class IRoutingPolicy(ABC):
    """Chooses which experts serve a request."""

    @abstractmethod
    def select(
        self, request: InferenceRequest, topology: "ModelTopology"
    ) -> Sequence[ExpertId]:
        """
        Select experts for a request.

        Must be deterministic for the same request features and topology.

        Args:
            request: Inbound request
            topology: Topology snapshot the request is routed against

        Returns:
            Ordered expert ids
        """
        pass
