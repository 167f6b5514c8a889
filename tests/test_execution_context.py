"""
Tests for per-request execution contexts.
"""

import pytest

from auria_runtime.common.errors import ExecutionError
from auria_runtime.common.types import RequestId
from auria_runtime.domain.entities import Tensor, TensorDType
from auria_runtime.domain.execution import ExecutionContext, ExecutionRegistry

RID = RequestId(b"\x0a" * 16)


def kv(label: bytes) -> Tensor:
    return Tensor(data=label * 2, shape=(2,), dtype=TensorDType.INT8)


class TestExecutionContext:
    """Test context state and release."""

    def test_advance_accumulates(self, clock):
        context = ExecutionContext(RID, clock=clock)
        context.advance(1, [kv(b"a")])
        snapshot = context.advance(2, [kv(b"b")])
        assert snapshot.position == 3
        assert snapshot.kv_cache == (kv(b"a"), kv(b"b"))

    def test_snapshot_is_detached(self, clock):
        context = ExecutionContext(RID, clock=clock)
        before = context.state
        context.advance(1, [kv(b"a")])
        assert before.position == 0
        assert before.kv_cache == ()

    def test_use_after_complete(self, clock):
        with ExecutionContext(RID, clock=clock) as context:
            context.advance(1)
        assert context.closed
        with pytest.raises(ExecutionError, match="completed"):
            context.advance(1)

    def test_cancel(self, clock):
        context = ExecutionContext(RID, clock=clock)
        context.cancel()
        with pytest.raises(ExecutionError, match="cancelled"):
            _ = context.state

    def test_deadline(self, clock):
        context = ExecutionContext(RID, deadline=clock() + 5, clock=clock)
        context.advance(1)
        clock.advance(5)
        assert context.expired
        with pytest.raises(ExecutionError, match="timed out"):
            context.advance(1)
        assert context.closed

    def test_negative_tokens(self, clock):
        with pytest.raises(ValueError):
            ExecutionContext(RID, clock=clock).advance(-1)


class TestExecutionRegistry:
    """Test the in-flight table."""

    def test_open_get_complete(self, clock):
        registry = ExecutionRegistry(clock)
        context = registry.open(RID)
        assert registry.get(RID) is context
        assert registry.in_flight() == 1

        registry.complete(RID)
        assert context.closed
        assert registry.in_flight() == 0
        with pytest.raises(ExecutionError):
            registry.get(RID)

    def test_duplicate_request_id(self, clock):
        registry = ExecutionRegistry(clock)
        registry.open(RID)
        with pytest.raises(ExecutionError, match="already in flight"):
            registry.open(RID)

    def test_cancel(self, clock):
        registry = ExecutionRegistry(clock)
        context = registry.open(RID)
        assert registry.cancel(RID)
        assert not registry.cancel(RID)
        with pytest.raises(ExecutionError, match="cancelled"):
            context.advance(1)

    def test_release_only_forgets_its_own_context(self, clock):
        registry = ExecutionRegistry(clock)
        stale = registry.open(RID)
        registry.complete(RID)
        current = registry.open(RID)

        registry.release(stale)

        assert registry.get(RID) is current
        assert not current.closed

    def test_reap_expired(self, clock):
        registry = ExecutionRegistry(clock)
        short = registry.open(RequestId(b"\x01" * 16), timeout=1)
        registry.open(RequestId(b"\x02" * 16), timeout=60)
        registry.open(RequestId(b"\x03" * 16))

        clock.advance(2)
        assert registry.reap_expired() == [RequestId(b"\x01" * 16)]
        assert short.closed
        assert registry.in_flight() == 2
