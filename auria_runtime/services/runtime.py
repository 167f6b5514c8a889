"""
Request orchestration.

One request flows through the runtime as:
route -> validate every shard license -> materialize experts ->
charge usage -> compute -> receipt.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from ..common.errors import AuriaError, ExecutionError
from ..common.types import ExpertId, PublicKey, ShardId
from ..domain.entities.cache import StorageStats
from ..domain.entities.execution import ExecutionOutput, InferenceRequest, RoutingDecision
from ..domain.entities.license import LicenseTerms, UsageReceipt
from ..domain.entities.tensor import Tensor
from ..domain.execution.context import ExecutionContext, ExecutionRegistry
from ..domain.interfaces.compute import IComputeEngine
from ..domain.licensing.meter import UsageMeter
from ..domain.licensing.validator import LicenseValidator
from ..domain.manager.tier_manager import TierManager
from ..domain.routing.router import Router
from ..domain.routing.topology import ModelTopology

logger = logging.getLogger(__name__)


class InferenceRuntime:
    """
    Serves requests against explicitly constructed services.

    Licenses are re-validated on every request. The execution context is
    opened before usage is charged, so a request id already in flight is
    refused without a debit. A receipt is issued as soon as usage has been
    charged, even if the compute engine then fails, because the debit has
    already happened.
    """

    def __init__(
        self,
        router: Router,
        tier_manager: TierManager,
        validator: LicenseValidator,
        meter: UsageMeter,
        node_pubkey: PublicKey,
        registry: Optional[ExecutionRegistry] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize runtime.

        Args:
            router: Request router
            tier_manager: Expert cache
            validator: License validator
            meter: Usage meter that signs receipts
            node_pubkey: Identity this node is licensed under
            registry: In-flight execution contexts
            clock: Source of unix time for license and charge checks
        """
        self.router = router
        self.tier_manager = tier_manager
        self.validator = validator
        self.meter = meter
        self.node_pubkey = node_pubkey
        self.registry = registry or ExecutionRegistry()
        self._clock = clock

    def execute(
        self,
        request: InferenceRequest,
        engine: IComputeEngine,
        decision: Optional[RoutingDecision] = None,
        timeout: Optional[float] = None,
    ) -> Tuple[ExecutionOutput, UsageReceipt]:
        """
        Serve one request.

        Args:
            request: Inbound request
            engine: Compute engine producing the tokens
            decision: Routing decision made upstream; routed locally if None
            timeout: Seconds the execution context may stay open

        Returns:
            Generated output and the signed receipt for its usage

        Raises:
            ExpertNotFound: If routing names an unknown expert
            LicenseInvalid: If any shard of a routed expert lacks a valid license
            ShardNotFound: If a shard is missing from the store
            RateLimited: If usage could not be charged
            InsufficientHardware: If no tier can hold a routed expert
            ExecutionError: If compute fails, the context is misused, or the
                request id is already in flight
        """
        snapshot = self.router.topology
        if decision is None:
            decision = self.router.route(request, snapshot)
        else:
            if decision.request_id is not None and decision.request_id != request.request_id:
                raise ExecutionError(
                    f"Routing decision for {decision.request_id} used for request {request.request_id}"
                )
            self.router.accept(decision, snapshot)

        now = self._clock()
        shard_terms = self._validate_licenses(decision, snapshot, now)
        weights = self._materialize(decision, snapshot)

        context = self.registry.open(request.request_id, timeout)
        try:
            items = [
                (self.meter.usage_for(shard_id, self.node_pubkey), terms)
                for shard_id, terms in shard_terms.items()
            ]
            charges = self.meter.charge_all(items, request.max_tokens, now)
            try:
                output = self._compute(request, engine, decision, weights, context)
            finally:
                try:
                    receipt = self.meter.issue_receipt(
                        request.request_id, decision.expert_ids, charges
                    )
                finally:
                    for charge in charges:
                        self.meter.release(charge)
        finally:
            self.registry.release(context)

        logger.info(
            "Served request %s: %d experts, %d tokens",
            request.request_id,
            len(decision),
            output.usage.tokens_generated,
        )
        return output, receipt

    def stats(self) -> StorageStats:
        return self.tier_manager.stats()

    def receipts(self) -> List[UsageReceipt]:
        return self.meter.receipts()

    def _validate_licenses(
        self, decision: RoutingDecision, snapshot: ModelTopology, now: float
    ) -> Dict[ShardId, LicenseTerms]:
        shard_terms: Dict[ShardId, LicenseTerms] = {}
        for expert_id in decision.expert_ids:
            expert = snapshot.get(expert_id)
            shard_terms.update(self.validator.validate_expert(expert, self.node_pubkey, now))
        return shard_terms

    def _materialize(
        self, decision: RoutingDecision, snapshot: ModelTopology
    ) -> Dict[ExpertId, Tensor]:
        # built from the definitions whose shards were just validated
        return {
            expert_id: self.tier_manager.get_or_load(expert_id, snapshot.get(expert_id))
            for expert_id in decision.expert_ids
        }

    @staticmethod
    def _compute(
        request: InferenceRequest,
        engine: IComputeEngine,
        decision: RoutingDecision,
        weights: Dict[ExpertId, Tensor],
        context: ExecutionContext,
    ) -> ExecutionOutput:
        try:
            return engine.forward(request, decision, weights, context)
        except AuriaError:
            raise
        except Exception as e:
            raise ExecutionError(f"Compute failed for request {request.request_id}: {e}") from e
