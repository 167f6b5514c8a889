"""
Request routing.

The Router turns a request into an immutable RoutingDecision using a
pluggable selection policy, and guarantees every expert it names exists
in the topology snapshot the request was routed against.
"""

import hashlib
import logging
from typing import List, Optional, Sequence, Union

from ...common.errors import ExecutionError, ExpertNotFound
from ...common.types import ExpertId
from ..entities.execution import InferenceRequest, RoutingDecision
from ..interfaces.routing import IRoutingPolicy
from .topology import ModelTopology, TopologyHolder

logger = logging.getLogger(__name__)


class StaticRoutingPolicy(IRoutingPolicy):
    """Always selects the same experts."""

    def __init__(self, expert_ids: Sequence[ExpertId]):
        self._expert_ids = tuple(expert_ids)

    def select(self, request: InferenceRequest, topology: ModelTopology) -> Sequence[ExpertId]:
        return self._expert_ids


class HashRoutingPolicy(IRoutingPolicy):
    """
    Deterministic top-k selection keyed on the request features.

    Each expert scores sha256(features || expert_id); the k lowest
    scores win, ordered by score.
    """

    def __init__(self, top_k: int = 2):
        if top_k < 1:
            raise ValueError(f"top_k must be positive, got {top_k}")
        self.top_k = top_k

    def select(self, request: InferenceRequest, topology: ModelTopology) -> Sequence[ExpertId]:
        scored = sorted(
            topology.expert_ids(),
            key=lambda expert_id: hashlib.sha256(request.features + expert_id.value).digest(),
        )
        return scored[: self.top_k]


class Router:
    """Produces validated routing decisions."""

    def __init__(
        self,
        topology: Union[TopologyHolder, ModelTopology],
        policy: IRoutingPolicy,
    ):
        """
        Initialize router.

        Args:
            topology: Topology holder (or a fixed snapshot)
            policy: Expert selection policy
        """
        if isinstance(topology, ModelTopology):
            topology = TopologyHolder(topology)
        self._topology = topology
        self._policy = policy

    @property
    def topology(self) -> ModelTopology:
        return self._topology.current

    def route(
        self, request: InferenceRequest, snapshot: Optional[ModelTopology] = None
    ) -> RoutingDecision:
        """
        Route a request.

        Args:
            request: Inbound request
            snapshot: Topology to route against (defaults to the current one)

        Returns:
            Ordered, de-duplicated routing decision bound to the request

        Raises:
            ExpertNotFound: If the policy selects an expert outside the topology
            ExecutionError: If the policy selects nothing
        """
        if snapshot is None:
            snapshot = self._topology.current
        selected = self._validated(self._policy.select(request, snapshot), snapshot)
        if not selected:
            raise ExecutionError(f"No experts selected for request {request.request_id}")

        decision = RoutingDecision(
            expert_ids=tuple(selected),
            request_id=request.request_id,
            topology_version=snapshot.version,
        )
        logger.debug(
            "Routed request %s to %d experts (topology v%d)",
            request.request_id,
            len(decision),
            snapshot.version,
        )
        return decision

    def accept(
        self, decision: RoutingDecision, snapshot: Optional[ModelTopology] = None
    ) -> RoutingDecision:
        """
        Validate a decision produced upstream.

        Raises:
            ExpertNotFound: If the decision names an unknown expert
        """
        if snapshot is None:
            snapshot = self._topology.current
        self._validated(decision.expert_ids, snapshot)
        return decision

    @staticmethod
    def _validated(expert_ids: Sequence[ExpertId], snapshot: ModelTopology) -> List[ExpertId]:
        seen = set()
        ordered = []
        for expert_id in expert_ids:
            if expert_id not in snapshot:
                raise ExpertNotFound(expert_id)
            if expert_id not in seen:
                seen.add(expert_id)
                ordered.append(expert_id)
        return ordered
