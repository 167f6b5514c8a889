"""
License validation.

Every access boundary re-validates: expiry depends on the clock, so a
license is never remembered as valid.
"""

import logging
import threading
import time
from types import MappingProxyType
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from ...common.errors import LicenseInvalid
from ...common.types import PublicKey, ShardId, Tier
from ..entities.expert import Expert
from ..entities.license import License, LicenseTerms
from .signing import verify

logger = logging.getLogger(__name__)


class LicenseValidator:
    """
    Checks licenses against the issuing authority's key.

    The license table is read-only once published; ``install`` swaps in a
    new table, so validation never takes a lock.
    """

    def __init__(
        self,
        authority_key: PublicKey,
        licenses: Iterable[License] = (),
        node_tier: Optional[Tier] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize validator.

        Args:
            authority_key: Public key of the license issuer
            licenses: Licenses known to this node
            node_tier: Hardware tier of this node, checked against allowed_tiers
            clock: Source of the current unix time
        """
        self._authority_key = authority_key
        self._node_tier = node_tier
        self._clock = clock
        self._install_lock = threading.Lock()
        table: Dict[Tuple[ShardId, PublicKey], License] = {}
        for grant in licenses:
            table[grant.key] = grant
        self._licenses: Mapping[Tuple[ShardId, PublicKey], License] = MappingProxyType(table)

    @property
    def authority_key(self) -> PublicKey:
        return self._authority_key

    def install(self, grant: License) -> None:
        """Add or replace the license for its (shard, node) pair."""
        with self._install_lock:
            table = dict(self._licenses)
            table[grant.key] = grant
            self._licenses = MappingProxyType(table)

    def validate(
        self, shard_id: ShardId, node_pubkey: PublicKey, now: Optional[float] = None
    ) -> LicenseTerms:
        """
        Validate the license binding ``shard_id`` to ``node_pubkey``.

        Args:
            shard_id: Shard about to be materialized
            node_pubkey: Node requesting access
            now: Unix time to check expiry against (defaults to the clock)

        Returns:
            Terms of the valid license

        Raises:
            LicenseInvalid: If the license is missing, expired, badly signed
                or not allowed on this node's tier
        """
        if now is None:
            now = self._clock()
        grant = self._licenses.get((shard_id, node_pubkey))
        if grant is None:
            logger.debug("License check failed for shard %s", shard_id)
            raise LicenseInvalid(shard_id)

        # Evaluate every check so all failure modes cost the same.
        unexpired = now < grant.expiry_timestamp
        payload = License.signing_payload(shard_id, node_pubkey, grant.expiry_timestamp)
        signed = verify(self._authority_key, payload, grant.signature)
        tier_allowed = self._tier_allowed(grant.terms)

        if not (unexpired and signed and tier_allowed):
            logger.debug("License check failed for shard %s", shard_id)
            raise LicenseInvalid(shard_id)
        return grant.terms

    def validate_expert(
        self, expert: Expert, node_pubkey: PublicKey, now: Optional[float] = None
    ) -> Dict[ShardId, LicenseTerms]:
        """
        Validate every shard of an expert.

        Returns:
            Terms per shard id

        Raises:
            LicenseInvalid: For the first shard without a valid license
        """
        if now is None:
            now = self._clock()
        return {
            shard_id: self.validate(shard_id, node_pubkey, now)
            for shard_id in expert.shards
        }

    def _tier_allowed(self, terms: LicenseTerms) -> bool:
        if not terms.allowed_tiers or self._node_tier is None:
            return True
        allowed = {name.lower() for name in terms.allowed_tiers}
        return self._node_tier.value.lower() in allowed or self._node_tier.name.lower() in allowed
