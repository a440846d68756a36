"""Windowed request counting against the counter store.

Fixed window (default):
- ``window_index = floor(now_ms / window_ms)`` and the counter key is
  ``{policy}:{identity}:{window_index}``.
- One atomic increment per request; the returned count decides.
- Up to twice the nominal rate can pass across a window edge. This is the
  accepted cost of one store round trip per request.

Sliding window (optional): the previous window's count is weighted by the
part of it still inside the sliding interval and added to the current count.
It smooths the boundary burst and keeps the same LimitDecision contract.

Every store call is bounded by a timeout; exceeding it raises
StoreUnavailableError so the middleware can fail open.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, TypeVar

from admission.adapters.counter_store.base import AbstractCounterStore
from admission.core.errors import StoreUnavailableError
from admission.schemas.policy import LimitDecision, LimiterPolicy
from admission.services.identity import Identity

logger = logging.getLogger(__name__)

T = TypeVar("T")


def window_index(now_ms: int, window_ms: int) -> int:
    return now_ms // window_ms


def build_counter_key(policy_name: str, identity_value: str, index: int) -> str:
    """Counter key addressing one window for one caller under one policy."""
    return f"{policy_name}:{identity_value}:{index}"


async def bounded_call(
    store: AbstractCounterStore,
    operation: str,
    awaitable: Awaitable[T],
    timeout_s: float,
) -> T:
    """Await a store call, turning a timeout into StoreUnavailableError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as exc:
        details = {
            "backend": store.backend,
            "operation": operation,
            "timeout_ms": int(timeout_s * 1000),
        }
        logger.warning("counter_store.timeout", extra=details)
        raise StoreUnavailableError(
            code="counter_store_timeout",
            message="Counter store round trip exceeded its timeout",
            details=details,
        ) from exc


class LimiterEngine:
    """Fixed-window limiter producing LimitDecision values."""

    algorithm = "fixed_window"

    def __init__(
        self,
        store: AbstractCounterStore,
        *,
        timeout_ms: int = 250,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Shared counter store.
            timeout_ms: Upper bound on each store round trip.
            clock: Time source returning UNIX time in seconds.

        Raises:
            ValueError: If timeout_ms is invalid.
        """
        if timeout_ms < 1:
            raise ValueError("timeout_ms must be >= 1")

        self._store = store
        self._timeout_s = timeout_ms / 1000
        self._clock = clock

    @property
    def store(self) -> AbstractCounterStore:
        return self._store

    @property
    def timeout_s(self) -> float:
        return self._timeout_s

    def _now_ms(self) -> int:
        return int(math.floor(self._clock() * 1000))

    async def _bounded(self, operation: str, awaitable: Awaitable[T]) -> T:
        return await bounded_call(self._store, operation, awaitable, self._timeout_s)

    @staticmethod
    def _decide(policy: LimiterPolicy, total_hits: int, reset_at_ms: int, ttl_ms: int) -> LimitDecision:
        allowed = total_hits <= policy.max_requests
        retry_after = 0 if allowed else max(1, math.ceil(ttl_ms / 1000))
        return LimitDecision(
            allowed=allowed,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - total_hits),
            reset_at_ms=reset_at_ms,
            total_hits=total_hits,
            retry_after_seconds=retry_after,
        )

    async def check(self, policy: LimiterPolicy, identity: Identity) -> LimitDecision:
        """Count one request for ``identity`` under ``policy``.

        Raises:
            StoreUnavailableError: If the store fails or times out.
        """
        now_ms = self._now_ms()
        index = window_index(now_ms, policy.window_ms)
        key = build_counter_key(policy.name, identity.value, index)

        snapshot = await self._bounded(
            "increment", self._store.increment_and_get(key, policy.window_ms)
        )
        return self._decide(
            policy,
            total_hits=snapshot.count,
            reset_at_ms=(index + 1) * policy.window_ms,
            ttl_ms=snapshot.ttl_ms,
        )


def weighted_previous(previous: int, window_ms: int, elapsed_ms: int) -> int:
    """Share of the previous window's hits still inside the sliding interval."""
    return previous * (window_ms - elapsed_ms) // window_ms


def sliding_retry_after_ms(current: int, previous: int, window_ms: int, elapsed_ms: int, limit: int) -> int:
    """Milliseconds until one more request would be admitted.

    Assumes the caller sends nothing until then. The retried request counts
    itself, so it is admitted once ``1 + hits + weighted previous <= limit``.
    Integer arithmetic keeps this consistent with ``weighted_previous``.
    """
    headroom = limit - current - 1
    if headroom >= 0:
        # Still inside the current window: wait until the previous window's
        # weighted share drops to the headroom, i.e.
        # previous * (window - elapsed - t) < (headroom + 1) * window.
        excess = previous * (window_ms - elapsed_ms) - (headroom + 1) * window_ms
        return 0 if excess < 0 else excess // previous + 1

    # Next window: the current hits become the previous window, so wait until
    # 1 + current * (window - s) // window <= limit.
    offset = window_ms * (current - limit) // current + 1
    return (window_ms - elapsed_ms) + offset


class SlidingWindowLimiterEngine(LimiterEngine):
    """Sliding-window-counter approximation built on two fixed windows.

    The current window is still incremented atomically. The previous window
    is only read, never written, so no read-modify-write happens on a counter.
    Counters live for two windows so the previous one is still readable.

    Retry-After is the earliest moment the weighted count leaves room for one
    more request, which can fall in the next fixed window.
    """

    algorithm = "sliding_window"

    async def check(self, policy: LimiterPolicy, identity: Identity) -> LimitDecision:
        now_ms = self._now_ms()
        window_ms = policy.window_ms
        index = window_index(now_ms, window_ms)
        current_key = build_counter_key(policy.name, identity.value, index)
        previous_key = build_counter_key(policy.name, identity.value, index - 1)

        snapshot = await self._bounded(
            "increment", self._store.increment_and_get(current_key, 2 * window_ms)
        )
        previous = await self._bounded("peek", self._store.peek(previous_key))

        elapsed_ms = now_ms - index * window_ms
        total_hits = snapshot.count + weighted_previous(previous, window_ms, elapsed_ms)

        ttl_ms = 0
        if total_hits > policy.max_requests:
            ttl_ms = sliding_retry_after_ms(
                snapshot.count, previous, window_ms, elapsed_ms, policy.max_requests
            )
        return self._decide(
            policy,
            total_hits=total_hits,
            reset_at_ms=(index + 1) * window_ms,
            ttl_ms=ttl_ms,
        )


def create_limiter_engine(
    store: AbstractCounterStore,
    *,
    algorithm: str = "fixed_window",
    timeout_ms: int = 250,
    clock: Callable[[], float] = time.time,
) -> LimiterEngine:
    """Instantiate the engine for ``algorithm``."""
    if algorithm == SlidingWindowLimiterEngine.algorithm:
        return SlidingWindowLimiterEngine(store, timeout_ms=timeout_ms, clock=clock)
    if algorithm == LimiterEngine.algorithm:
        return LimiterEngine(store, timeout_ms=timeout_ms, clock=clock)
    raise ValueError(f"Unknown limiter algorithm: '{algorithm}'")
