"""Counter store interfaces.

The limiter engine depends on this abstraction (not the concrete backend) so
the shared store can be swapped without changes to the HTTP layer.

Contract for ``increment_and_get``: a single atomic step that increments the
counter and, when the key did not exist, sets its expiry. Implementations must
never read a count and write ``count + 1`` in separate steps, and must raise
StoreUnavailableError instead of returning a made-up count.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class CounterSnapshot:
    """Counter state observed right after an atomic increment.

    Attributes:
        count: Counter value including the increment just applied.
        ttl_ms: Milliseconds until the counter expires.
    """

    count: int
    ttl_ms: int


class AbstractCounterStore(ABC):
    """Interface for shared, TTL-capable counters."""

    backend: str = "abstract"

    @abstractmethod
    async def increment_and_get(self, key: str, window_ms: int) -> CounterSnapshot:
        """Atomically increment ``key`` and return the new count and TTL.

        Args:
            key: Counter key (``{policy}:{identity}:{window_index}``).
            window_ms: Expiry applied when the key is created.

        Returns:
            CounterSnapshot with the post-increment count.

        Raises:
            StoreUnavailableError: If the backing store cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    async def peek(self, key: str) -> int:
        """Return the current count for ``key`` (0 when absent) without mutating it."""
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> bool:
        """Return True when the backing store is reachable."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release connections held by the store."""
        return None
