"""
Usage metering and receipts.

[ALGORITHM] Admission per license identity (shard, node):
- The license type decides whether the request fits the budget
  (daily request cap, credits, concurrency ceiling, community allowance)
- An optional token bucket limits the request rate:
  capacity = burst_size, refill = requests_per_second
- A request needs one whole token; without one it is rejected, never queued

Charges are all-or-nothing: every check for every license of a request runs
under that license's lock before any counter moves.
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from nacl.signing import SigningKey

from ...common.errors import RateLimited, SecurityError
from ...common.types import ExpertId, PublicKey, RequestId, ShardId
from ...config.runtime_config import DEFAULT_COMMUNITY_ALLOWANCES
from ..entities.license import (
    Community,
    Enterprise,
    LicenseTerms,
    LicenseUsage,
    PayPerUse,
    RateLimit,
    Subscription,
    UsageReceipt,
)
from .signing import public_key_of, sign, verify

logger = logging.getLogger(__name__)

UsageKey = Tuple[ShardId, PublicKey]


@dataclass
class TokenBucket:
    """Token bucket for one license identity."""

    tokens: float
    max_tokens: int
    last_update: float
    tokens_per_second: float
    rate_limit: Optional[RateLimit] = None

    @classmethod
    def full(cls, rate_limit: RateLimit, now: float) -> "TokenBucket":
        return cls(
            tokens=float(rate_limit.burst_size),
            max_tokens=rate_limit.burst_size,
            last_update=now,
            tokens_per_second=float(rate_limit.requests_per_second),
            rate_limit=rate_limit,
        )

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_update)
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.tokens_per_second)
        self.last_update = max(self.last_update, now)

    def available(self, now: float, cost: int = 1) -> bool:
        self.refill(now)
        return self.tokens >= cost

    def consume(self, now: float, cost: int = 1) -> bool:
        """Take ``cost`` tokens. Returns True if successful."""
        if not self.available(now, cost):
            return False
        self.tokens -= cost
        return True


@dataclass(frozen=True)
class Charge:
    """Record of one successful debit, redeemable for exactly one receipt."""

    charge_id: int
    key: UsageKey
    tokens: int
    timestamp: float
    holds_slot: bool = False


class UsageMeter:
    """
    Meters consumption per license identity and signs receipts.

    Counters only move forward; ``reset_cycle`` is the billing-cycle
    boundary and the only reset.
    """

    def __init__(
        self,
        signing_key: SigningKey,
        community_allowances: Optional[Dict[str, int]] = None,
        clock: Callable[[], float] = time.time,
        receipt_sink: Optional[Callable[[UsageReceipt], None]] = None,
    ):
        """
        Initialize usage meter.

        Args:
            signing_key: Node key receipts are signed with
            community_allowances: Tokens per cycle for each community tier name
            clock: Source of the current unix time
            receipt_sink: Called with every receipt after it is logged; its
                failures are logged and do not affect the receipt
        """
        self._signing_key = signing_key
        self.public_key: PublicKey = public_key_of(signing_key)
        self._allowances = dict(
            community_allowances if community_allowances is not None else DEFAULT_COMMUNITY_ALLOWANCES
        )
        self._clock = clock
        self._receipt_sink = receipt_sink

        self._registry_lock = threading.Lock()
        self._locks: Dict[UsageKey, threading.Lock] = {}
        self._usage: Dict[UsageKey, LicenseUsage] = {}
        self._buckets: Dict[UsageKey, TokenBucket] = {}
        self._in_flight: Dict[UsageKey, int] = {}
        self._slots: Set[int] = set()

        self._charge_ids = itertools.count(1)
        self._receipt_lock = threading.Lock()
        self._outstanding: Dict[int, Charge] = {}
        self._receipts: List[UsageReceipt] = []

    def usage_for(self, shard_id: ShardId, node_pubkey: PublicKey) -> LicenseUsage:
        """The tracked counter for a license identity, created on first use."""
        key = (shard_id, node_pubkey)
        with self._registry_lock:
            usage = self._usage.get(key)
            if usage is None:
                usage = LicenseUsage(license_id=shard_id, node_pubkey=node_pubkey)
                self._usage[key] = usage
                self._locks[key] = threading.Lock()
            return usage

    def in_flight(self, shard_id: ShardId, node_pubkey: PublicKey) -> int:
        return self._in_flight.get((shard_id, node_pubkey), 0)

    def charge(
        self,
        usage: LicenseUsage,
        terms: LicenseTerms,
        tokens: int,
        now: Optional[float] = None,
    ) -> Charge:
        """
        Debit one request of ``tokens`` tokens against a license.

        Raises:
            RateLimited: If any budget or the rate limit denies the request;
                nothing is debited
        """
        return self.charge_all([(usage, terms)], tokens, now)[0]

    def charge_all(
        self,
        items: Sequence[Tuple[LicenseUsage, LicenseTerms]],
        tokens: int,
        now: Optional[float] = None,
    ) -> List[Charge]:
        """
        Debit one request against several licenses at once.

        Locks are taken in a fixed order, every check runs before any
        counter moves, and either every license is charged or none is.

        Args:
            items: (usage counter, terms) per license
            tokens: Tokens the request may consume
            now: Unix time of the charge (defaults to the clock)

        Returns:
            One charge per item, in item order

        Raises:
            RateLimited: If any license denies the request
        """
        if tokens < 0:
            raise ValueError(f"tokens must be non-negative, got {tokens}")
        if now is None:
            now = self._clock()

        tracked = [(self._track(usage), terms) for usage, terms in items]
        keys = [usage.key for usage, _ in tracked]
        if len(set(keys)) != len(keys):
            raise ValueError("Each license may appear only once per charge")

        locks = [self._locks[key] for key in sorted(keys, key=_key_order)]
        for lock in locks:
            lock.acquire()
        try:
            for usage, terms in tracked:
                self._check(usage, terms, tokens, now)
            charges = [self._apply(usage, terms, tokens, now) for usage, terms in tracked]
        finally:
            for lock in reversed(locks):
                lock.release()

        with self._receipt_lock:
            for charge in charges:
                self._outstanding[charge.charge_id] = charge
        return charges

    def release(self, charge: Charge) -> None:
        """Give back the concurrency slot an enterprise charge holds."""
        if not charge.holds_slot:
            return
        with self._locks[charge.key]:
            if charge.charge_id not in self._slots:
                return
            self._slots.discard(charge.charge_id)
            self._in_flight[charge.key] -= 1

    def reset_cycle(self, key: UsageKey) -> None:
        """Start a new billing cycle for one license identity."""
        usage = self.usage_for(*key)
        with self._locks[key]:
            usage.tokens_used = 0
            usage.requests_made = 0
            usage.last_updated = self._clock()
        logger.info("Reset billing cycle for shard %s", key[0])

    def issue_receipt(
        self,
        request_id: RequestId,
        expert_ids: Sequence[ExpertId],
        charges: Sequence[Charge],
        now: Optional[float] = None,
    ) -> UsageReceipt:
        """
        Sign proof of an already-debited request.

        Args:
            request_id: Request the charges were made for
            expert_ids: Experts the request executed
            charges: Charges returned by this meter for the request
            now: Receipt time (defaults to the clock)

        Returns:
            Signed receipt, also appended to the receipt log

        Raises:
            SecurityError: If a charge was not produced by this meter or
                already has a receipt
        """
        if not charges:
            raise SecurityError("A receipt requires at least one charge")
        if now is None:
            now = self._clock()

        with self._receipt_lock:
            for charge in charges:
                if self._outstanding.get(charge.charge_id) is not charge:
                    raise SecurityError(f"Charge {charge.charge_id} is unknown or already receipted")
            for charge in charges:
                del self._outstanding[charge.charge_id]

            expert_ids = tuple(expert_ids)
            token_count = max(charge.tokens for charge in charges)
            timestamp = int(now)
            payload = UsageReceipt.signing_payload(request_id, expert_ids, token_count, timestamp)
            receipt = UsageReceipt(
                request_id=request_id,
                expert_ids=expert_ids,
                token_count=token_count,
                timestamp=timestamp,
                node_signature=sign(self._signing_key, payload),
            )
            self._receipts.append(receipt)

        logger.info("Issued receipt for request %s (%d tokens)", request_id, token_count)
        if self._receipt_sink is not None:
            try:
                self._receipt_sink(receipt)
            except Exception as e:
                # the receipt is already in the log; the sink only mirrors it
                logger.warning("Receipt sink failed for request %s: %s", request_id, e)
        return receipt

    def receipts(self) -> List[UsageReceipt]:
        """Copy of the append-only receipt log."""
        with self._receipt_lock:
            return list(self._receipts)

    @staticmethod
    def verify_receipt(receipt: UsageReceipt, node_pubkey: PublicKey) -> bool:
        payload = UsageReceipt.signing_payload(
            receipt.request_id, receipt.expert_ids, receipt.token_count, receipt.timestamp
        )
        return verify(node_pubkey, payload, receipt.node_signature)

    def _track(self, usage: LicenseUsage) -> LicenseUsage:
        with self._registry_lock:
            current = self._usage.get(usage.key)
            if current is None:
                self._usage[usage.key] = usage
                self._locks[usage.key] = threading.Lock()
                return usage
        if current is not usage:
            raise ValueError(f"Usage counter for shard {usage.license_id} is not the tracked one")
        return current

    def _bucket_for(self, key: UsageKey, rate_limit: RateLimit, now: float) -> TokenBucket:
        """Cached bucket for a license, or a full one if none matches its current terms."""
        bucket = self._buckets.get(key)
        if bucket is None or bucket.rate_limit != rate_limit:
            bucket = TokenBucket.full(rate_limit, now)
        return bucket

    def _check(self, usage: LicenseUsage, terms: LicenseTerms, tokens: int, now: float) -> None:
        key = usage.key
        license_type = terms.license_type
        if isinstance(license_type, Subscription):
            if usage.requests_made + 1 > license_type.max_requests_per_day:
                raise RateLimited(
                    "daily_cap",
                    f"{usage.requests_made}/{license_type.max_requests_per_day} requests",
                )
        elif isinstance(license_type, PayPerUse):
            cost = (usage.tokens_used + tokens) * license_type.cost_per_token
            if cost > license_type.credits:
                raise RateLimited(
                    "insufficient_credits", f"needs {cost} of {license_type.credits} credits"
                )
        elif isinstance(license_type, Enterprise):
            if not license_type.unlimited:
                if self._in_flight.get(key, 0) >= license_type.max_concurrent_requests:
                    raise RateLimited(
                        "concurrency",
                        f"{license_type.max_concurrent_requests} requests in flight",
                    )
        elif isinstance(license_type, Community):
            allowance = self._allowances.get(license_type.tier)
            if allowance is None:
                raise RateLimited("unknown_tier", license_type.tier)
            if usage.tokens_used + tokens > allowance:
                raise RateLimited("allowance", f"{license_type.tier} allows {allowance} tokens")
        else:
            raise RateLimited("unknown_license_type", type(license_type).__name__)

        if terms.rate_limit is not None:
            bucket = self._bucket_for(key, terms.rate_limit, now)
            if not bucket.available(now):
                raise RateLimited("rate_limit", f"burst of {terms.rate_limit.burst_size} exhausted")

    def _apply(self, usage: LicenseUsage, terms: LicenseTerms, tokens: int, now: float) -> Charge:
        key = usage.key
        if terms.rate_limit is not None:
            bucket = self._bucket_for(key, terms.rate_limit, now)
            self._buckets[key] = bucket
            bucket.consume(now)
        else:
            self._buckets.pop(key, None)

        usage.tokens_used += tokens
        usage.requests_made += 1
        usage.last_updated = now

        license_type = terms.license_type
        holds_slot = isinstance(license_type, Enterprise) and not license_type.unlimited
        charge = Charge(
            charge_id=next(self._charge_ids),
            key=key,
            tokens=tokens,
            timestamp=now,
            holds_slot=holds_slot,
        )
        if holds_slot:
            self._in_flight[key] = self._in_flight.get(key, 0) + 1
            self._slots.add(charge.charge_id)
        return charge


def _key_order(key: UsageKey) -> Tuple[bytes, bytes]:
    return (key[0].value, key[1].value)
