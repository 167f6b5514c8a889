"""
Per-request execution state.

An ExecutionContext belongs to exactly one request. It is released when
the request completes, is cancelled or runs past its deadline, and any use
after that raises ExecutionError.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from ...common.errors import ExecutionError
from ...common.types import RequestId
from ..entities.execution import ExecutionState, ExecutionStateSnapshot
from ..entities.tensor import Tensor

logger = logging.getLogger(__name__)


class ExecutionContext:
    """Exclusive owner of one request's ExecutionState."""

    def __init__(
        self,
        request_id: RequestId,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.request_id = request_id
        self.deadline = deadline
        self._clock = clock
        self._state: Optional[ExecutionState] = ExecutionState()
        self._closed_reason: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self._state is None

    @property
    def expired(self) -> bool:
        return self.deadline is not None and self._clock() >= self.deadline

    @property
    def state(self) -> ExecutionStateSnapshot:
        return self._live().snapshot()

    def advance(self, output_tokens: int, kv_entries: Iterable[Tensor] = ()) -> ExecutionStateSnapshot:
        """
        Record one decoding step.

        Args:
            output_tokens: Tokens produced by the step
            kv_entries: KV cache tensors appended by the step, in order

        Returns:
            Snapshot of the state after the step

        Raises:
            ExecutionError: If the context is closed or past its deadline
        """
        if output_tokens < 0:
            raise ValueError(f"output_tokens must be non-negative, got {output_tokens}")
        state = self._live()
        state.kv_cache.extend(kv_entries)
        state.position += output_tokens
        return state.snapshot()

    def complete(self) -> None:
        self._close("completed")

    def cancel(self) -> None:
        self._close("cancelled")

    def expire(self) -> None:
        self._close("timed out")

    def _close(self, reason: str) -> None:
        if self._state is None:
            return
        self._state = None
        self._closed_reason = reason
        logger.debug("Execution context %s %s", self.request_id, reason)

    def _live(self) -> ExecutionState:
        if self._state is not None and self.expired:
            self._close("timed out")
        if self._state is None:
            raise ExecutionError(
                f"Execution context for request {self.request_id} is {self._closed_reason}"
            )
        return self._state

    def __enter__(self) -> "ExecutionContext":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.complete()

    def __repr__(self) -> str:
        status = self._closed_reason or "open"
        return f"ExecutionContext({self.request_id}, {status})"


class ExecutionRegistry:
    """Tracks the in-flight contexts of a node."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = threading.Lock()
        self._contexts: Dict[RequestId, ExecutionContext] = {}

    def open(self, request_id: RequestId, timeout: Optional[float] = None) -> ExecutionContext:
        """
        Create the context for a new request.

        Raises:
            ExecutionError: If the request id is already in flight
        """
        deadline = self._clock() + timeout if timeout is not None else None
        with self._lock:
            if request_id in self._contexts:
                raise ExecutionError(f"Request {request_id} is already in flight")
            context = ExecutionContext(request_id, deadline=deadline, clock=self._clock)
            self._contexts[request_id] = context
        return context

    def get(self, request_id: RequestId) -> ExecutionContext:
        with self._lock:
            context = self._contexts.get(request_id)
        if context is None:
            raise ExecutionError(f"No execution context for request {request_id}")
        return context

    def complete(self, request_id: RequestId) -> None:
        context = self._discard(request_id)
        if context is not None:
            context.complete()

    def cancel(self, request_id: RequestId) -> bool:
        """
        Release a request's context. Loads it started keep running for
        their other waiters.

        Returns:
            True if the request was in flight
        """
        context = self._discard(request_id)
        if context is None:
            return False
        context.cancel()
        return True

    def release(self, context: ExecutionContext) -> None:
        """Complete a context and forget it, if it is still the registered one."""
        with self._lock:
            if self._contexts.get(context.request_id) is context:
                del self._contexts[context.request_id]
        context.complete()

    def reap_expired(self) -> List[RequestId]:
        """Release every context past its deadline."""
        with self._lock:
            expired = [rid for rid, ctx in self._contexts.items() if ctx.expired or ctx.closed]
            contexts = [self._contexts.pop(rid) for rid in expired]
        for context in contexts:
            if not context.closed:
                context.expire()
        if expired:
            logger.info("Reaped %d expired execution contexts", len(expired))
        return expired

    def in_flight(self) -> int:
        with self._lock:
            return len(self._contexts)

    def _discard(self, request_id: RequestId) -> Optional[ExecutionContext]:
        with self._lock:
            return self._contexts.pop(request_id, None)
