"""In-memory counter store.

Notes:
- Per-process only: running multiple workers or instances multiplies the
  effective limit. Use the Redis store for any scaled deployment.
- Thread-safe: a lock guards the increment, so concurrent callers observe a
  gap-free sequence of counts.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

from admission.adapters.counter_store.base import AbstractCounterStore, CounterSnapshot

logger = logging.getLogger(__name__)


@dataclass
class _CounterState:
    count: int
    expires_at_ms: int


class InMemoryCounterStore(AbstractCounterStore):
    """Counter store backed by a dict with lazy expiry.

    Expired counters are dropped on access and swept periodically, so the
    dict does not grow with abandoned windows.
    """

    backend = "memory"

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sweep_every: int = 1024,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            clock: Time source returning UNIX time in seconds.
            sweep_every: Number of increments between full expiry sweeps.

        Raises:
            ValueError: If sweep_every is invalid.
        """
        if sweep_every < 1:
            raise ValueError("sweep_every must be >= 1")

        self._clock = clock
        self._sweep_every = sweep_every
        self._lock = threading.RLock()
        self._counters: dict[str, _CounterState] = {}
        self._ops = 0

        logger.warning(
            "counter_store.in_memory",
            extra={"reason": "per_process_counters_not_shared_across_instances"},
        )

    def _now_ms(self) -> int:
        return int(math.floor(self._clock() * 1000))

    def _get_live_locked(self, key: str, now_ms: int) -> _CounterState | None:
        state = self._counters.get(key)
        if state is not None and state.expires_at_ms <= now_ms:
            del self._counters[key]
            return None
        return state

    def _sweep_locked(self, now_ms: int) -> None:
        expired = [k for k, state in self._counters.items() if state.expires_at_ms <= now_ms]
        for key in expired:
            del self._counters[key]
        if expired:
            logger.debug("counter_store.swept", extra={"expired": len(expired)})

    async def increment_and_get(self, key: str, window_ms: int) -> CounterSnapshot:
        if not key:
            raise ValueError("key must be a non-empty string")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

        now_ms = self._now_ms()
        with self._lock:
            self._ops += 1
            if self._ops % self._sweep_every == 0:
                self._sweep_locked(now_ms)

            state = self._get_live_locked(key, now_ms)
            if state is None:
                state = _CounterState(count=0, expires_at_ms=now_ms + window_ms)
                self._counters[key] = state
            state.count += 1
            return CounterSnapshot(count=state.count, ttl_ms=state.expires_at_ms - now_ms)

    async def peek(self, key: str) -> int:
        now_ms = self._now_ms()
        with self._lock:
            state = self._get_live_locked(key, now_ms)
            return state.count if state else 0

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._counters)
