"""
End-to-end tests for request orchestration.
"""

import pytest

from auria_runtime.common.errors import ExecutionError, LicenseInvalid, RateLimited
from auria_runtime.common.types import RequestId
from auria_runtime.config import RuntimeConfig
from auria_runtime.domain.entities import (
    Community,
    Enterprise,
    Expert,
    InferenceRequest,
    LicenseTerms,
    PayPerUse,
    RoutingDecision,
)
from auria_runtime.domain.licensing import UsageMeter
from auria_runtime.domain.routing import ModelTopology, StaticRoutingPolicy, TopologyHolder
from auria_runtime.services import RuntimeFactory

from conftest import FakeEngine, expected_bytes, make_expert, tiers

FREE = LicenseTerms(license_type=Community(tier="free"))


def request(max_tokens: int = 4, rid: bytes = b"\x01" * 16) -> InferenceRequest:
    return InferenceRequest(request_id=RequestId(rid), features=b"hello", max_tokens=max_tokens)


@pytest.fixture
def experts(store):
    return [make_expert(store, f"e{i}") for i in range(3)]


@pytest.fixture
def holder(store, experts):
    return TopologyHolder(ModelTopology.load(experts, store))


@pytest.fixture
def build(store, experts, holder, authority, node_key, node_pubkey, clock):
    """Return a function building a runtime routed to the first two experts."""

    def _build(terms=FREE, unlicensed=(), expiry=3600, receipt_sink=None):
        licenses = [
            authority.issue(shard_id, node_pubkey, int(clock()) + expiry, terms)
            for expert in experts
            for shard_id in expert.shards
            if shard_id not in unlicensed
        ]
        config = RuntimeConfig(tiers=tiers(vram=32, ram=256))
        return RuntimeFactory.create(
            config,
            store,
            holder,
            authority.public_key,
            node_key,
            licenses=licenses,
            policy=StaticRoutingPolicy([experts[0].expert_id, experts[1].expert_id]),
            clock=clock,
            receipt_sink=receipt_sink,
        )

    return _build


class TestExecute:
    """Test the happy path."""

    def test_request_served_with_signed_receipt(self, build, experts, node_pubkey):
        runtime = build()
        engine = FakeEngine(steps=3)

        output, receipt = runtime.execute(request(max_tokens=4), engine)

        assert output.tokens == ("tok0", "tok1", "tok2")
        assert receipt.request_id == RequestId(b"\x01" * 16)
        assert receipt.expert_ids == (experts[0].expert_id, experts[1].expert_id)
        assert receipt.token_count == 4
        assert UsageMeter.verify_receipt(receipt, node_pubkey)
        assert runtime.receipts() == [receipt]

        _, _, weights = engine.calls[0]
        assert set(weights) == {experts[0].expert_id, experts[1].expert_id}
        assert runtime.registry.in_flight() == 0

    def test_every_shard_license_charged(self, build, experts, node_pubkey):
        runtime = build()
        runtime.execute(request(max_tokens=4), FakeEngine())
        for expert in experts[:2]:
            for shard_id in expert.shards:
                assert runtime.meter.usage_for(shard_id, node_pubkey).tokens_used == 4
        for shard_id in experts[2].shards:
            assert runtime.meter.usage_for(shard_id, node_pubkey).tokens_used == 0

    def test_experts_placed_by_capacity(self, build):
        runtime = build()
        runtime.execute(request(), FakeEngine())
        stats = runtime.stats()
        assert stats.vram_count == 1
        assert stats.ram_count == 1

    def test_upstream_decision(self, build, experts):
        runtime = build()
        decision = RoutingDecision(expert_ids=(experts[2].expert_id,), request_id=RequestId(b"\x01" * 16))
        _, receipt = runtime.execute(request(), FakeEngine(), decision=decision)
        assert receipt.expert_ids == (experts[2].expert_id,)

    def test_decision_for_other_request(self, build, experts):
        runtime = build()
        decision = RoutingDecision(expert_ids=(experts[2].expert_id,), request_id=RequestId(b"\x02" * 16))
        with pytest.raises(ExecutionError):
            runtime.execute(request(), FakeEngine(), decision=decision)
        assert runtime.receipts() == []


class TestAdmission:
    """Test requests refused before compute."""

    def test_missing_shard_license(self, build, experts, node_pubkey):
        """Test that one unlicensed shard stops the request before anything is loaded or charged."""
        runtime = build(unlicensed={experts[1].shards[1]})
        engine = FakeEngine()

        with pytest.raises(LicenseInvalid):
            runtime.execute(request(), engine)

        assert engine.calls == []
        assert runtime.receipts() == []
        assert runtime.stats().total_count == 0
        assert runtime.meter.usage_for(experts[0].shards[0], node_pubkey).requests_made == 0

    def test_expired_license(self, build, clock):
        runtime = build(expiry=10)
        runtime.execute(request(), FakeEngine())
        clock.advance(10)
        with pytest.raises(LicenseInvalid):
            runtime.execute(request(rid=b"\x02" * 16), FakeEngine())

    def test_rate_limited(self, build, experts, node_pubkey):
        runtime = build(terms=LicenseTerms(license_type=PayPerUse(credits=10, cost_per_token=1.0)))
        runtime.execute(request(max_tokens=8), FakeEngine())
        engine = FakeEngine()

        with pytest.raises(RateLimited):
            runtime.execute(request(max_tokens=8, rid=b"\x02" * 16), engine)

        assert engine.calls == []
        assert len(runtime.receipts()) == 1
        assert runtime.meter.usage_for(experts[0].shards[0], node_pubkey).tokens_used == 8
        assert runtime.registry.in_flight() == 0

    def test_duplicate_in_flight_request_is_not_charged(self, build, experts, node_pubkey):
        """Test that a request id already in flight is refused before any debit."""
        runtime = build()
        held = runtime.registry.open(RequestId(b"\x01" * 16))

        with pytest.raises(ExecutionError, match="already in flight"):
            runtime.execute(request(), FakeEngine())

        assert runtime.registry.get(RequestId(b"\x01" * 16)) is held
        assert runtime.receipts() == []
        for expert in experts[:2]:
            for shard_id in expert.shards:
                usage = runtime.meter.usage_for(shard_id, node_pubkey)
                assert usage.tokens_used == 0
                assert usage.requests_made == 0


class TestComputeFailure:
    """Test that debits are always receipted."""

    def test_receipt_issued_when_compute_fails(self, build):
        terms = LicenseTerms(license_type=Enterprise(unlimited=False, max_concurrent_requests=1))
        runtime = build(terms=terms)

        with pytest.raises(ExecutionError, match="kernel exploded"):
            runtime.execute(request(), FakeEngine(fail=True))

        assert len(runtime.receipts()) == 1
        assert runtime.registry.in_flight() == 0

        # The concurrency slot was given back.
        runtime.execute(request(rid=b"\x02" * 16), FakeEngine())
        assert len(runtime.receipts()) == 2

    def test_failing_receipt_sink_releases_slot(self, build):
        """Test that a sink error neither leaks the concurrency slot nor loses the receipt."""
        terms = LicenseTerms(license_type=Enterprise(unlimited=False, max_concurrent_requests=1))

        def broken_sink(receipt):
            raise OSError("billing spool unavailable")

        runtime = build(terms=terms, receipt_sink=broken_sink)

        _, first = runtime.execute(request(), FakeEngine())
        _, second = runtime.execute(request(rid=b"\x02" * 16), FakeEngine())

        assert runtime.receipts() == [first, second]
        assert runtime.registry.in_flight() == 0


class TestTopologyChanges:
    """Test that each request is served the experts its snapshot defines."""

    def test_redefined_expert_serves_new_shards(self, build, holder, experts, store):
        runtime = build()
        first = FakeEngine()
        runtime.execute(request(), first)
        target = experts[0]
        assert first.calls[0][2][target.expert_id].data == expected_bytes(store, target)

        redefined = Expert(
            expert_id=target.expert_id,
            shards=experts[2].shards,
            tensor_layout=experts[2].tensor_layout,
            dtype=experts[2].dtype,
        )
        holder.add_expert(redefined, store)
        second = FakeEngine()
        runtime.execute(request(rid=b"\x02" * 16), second)

        assert second.calls[0][2][target.expert_id].data == expected_bytes(store, experts[2])

    def test_redefinition_onto_unlicensed_shards_refused(self, build, holder, experts, store):
        """Test that cached bytes never bypass validation of the new shard list."""
        runtime = build()
        runtime.execute(request(), FakeEngine())

        foreign = make_expert(store, "unlicensed")
        holder.add_expert(
            Expert(
                expert_id=experts[0].expert_id,
                shards=foreign.shards,
                tensor_layout=foreign.tensor_layout,
            ),
            store,
        )
        engine = FakeEngine()

        with pytest.raises(LicenseInvalid):
            runtime.execute(request(rid=b"\x02" * 16), engine)
        assert engine.calls == []
