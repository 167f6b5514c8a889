"""
Factory for wiring a runtime from configuration.

Every service is constructed explicitly and passed to the services that
need it; nothing is a process-wide singleton, so tests can build isolated
runtimes side by side.
"""

import logging
import time
from typing import Callable, Iterable, Optional, Union

from nacl.signing import SigningKey

from ..common.types import PublicKey
from ..config.runtime_config import RuntimeConfig
from ..domain.entities.license import License, UsageReceipt
from ..domain.execution.context import ExecutionRegistry
from ..domain.interfaces.routing import IRoutingPolicy
from ..domain.interfaces.shard_store import IShardStore
from ..domain.licensing.meter import UsageMeter
from ..domain.licensing.signing import public_key_of
from ..domain.licensing.validator import LicenseValidator
from ..domain.manager.tier_manager import TierManager
from ..domain.routing.router import HashRoutingPolicy, Router
from ..domain.routing.topology import ModelTopology, TopologyHolder
from .runtime import InferenceRuntime

logger = logging.getLogger(__name__)


class RuntimeFactory:
    """
    Factory for creating runtime services.

    The individual ``create_*`` methods are exposed so callers can swap a
    single service while keeping the default wiring for the rest.
    """

    @classmethod
    def create_tier_manager(
        cls,
        config: RuntimeConfig,
        store: IShardStore,
        topology: Union[TopologyHolder, ModelTopology],
    ) -> TierManager:
        """
        Create the expert cache sized by the configuration.

        Raises:
            InsufficientHardware: If the tiers cannot hold the minimum working set
        """
        return TierManager(
            store=store,
            topology=topology,
            tier_configs=config.tiers,
            min_tier=config.min_tier,
            min_working_set_bytes=config.min_working_set_bytes,
        )

    @classmethod
    def create_meter(
        cls,
        config: RuntimeConfig,
        node_signing_key: SigningKey,
        clock: Callable[[], float] = time.time,
        receipt_sink: Optional[Callable[[UsageReceipt], None]] = None,
    ) -> UsageMeter:
        return UsageMeter(
            signing_key=node_signing_key,
            community_allowances=config.community_allowances,
            clock=clock,
            receipt_sink=receipt_sink,
        )

    @classmethod
    def create(
        cls,
        config: RuntimeConfig,
        store: IShardStore,
        topology: Union[TopologyHolder, ModelTopology],
        authority_key: PublicKey,
        node_signing_key: SigningKey,
        licenses: Iterable[License] = (),
        policy: Optional[IRoutingPolicy] = None,
        clock: Callable[[], float] = time.time,
        receipt_sink: Optional[Callable[[UsageReceipt], None]] = None,
    ) -> InferenceRuntime:
        """
        Wire a complete runtime.

        Args:
            config: Tier sizing and metering configuration
            store: Shard store experts are reconstructed from
            topology: Topology holder (or initial snapshot)
            authority_key: Public key of the license issuer
            node_signing_key: This node's identity key
            licenses: Licenses issued to this node
            policy: Routing policy (deterministic top-2 if None)
            clock: Source of unix time for licensing and metering
            receipt_sink: Called with every receipt issued

        Returns:
            Ready-to-serve runtime
        """
        if isinstance(topology, ModelTopology):
            topology = TopologyHolder(topology)

        tier_manager = cls.create_tier_manager(config, store, topology)
        validator = LicenseValidator(
            authority_key, licenses=licenses, node_tier=config.node_tier, clock=clock
        )
        meter = cls.create_meter(config, node_signing_key, clock, receipt_sink)
        router = Router(topology, policy or HashRoutingPolicy(top_k=2))

        node_pubkey = public_key_of(node_signing_key)
        logger.info(
            "Created runtime for node %s (%s tier, %d storage tiers, %d experts)",
            node_pubkey,
            config.node_tier,
            len(config.tiers),
            len(topology.current),
        )
        return InferenceRuntime(
            router=router,
            tier_manager=tier_manager,
            validator=validator,
            meter=meter,
            node_pubkey=node_pubkey,
            registry=ExecutionRegistry(),
            clock=clock,
        )
