"""Progressive penalties for repeat offenders.

Each time a client IP first exceeds a limit within a window, a violation is
recorded under ``violations:{ip}`` in the counter store. While violations
are remembered, every policy's budget for that IP is divided by
``min(2 ** violations, max_multiplier)`` (never below one request).

The violation counter expires ``ttl_ms`` after the first violation it
records, then the caller starts over with the full budget.
"""

from __future__ import annotations

import logging

from admission.adapters.counter_store.base import AbstractCounterStore
from admission.schemas.policy import LimitDecision, LimiterPolicy
from admission.services.limiter_engine import bounded_call

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
VIOLATION_KEY_PREFIX = "violations"


def violation_key(client_ip: str) -> str:
    return f"{VIOLATION_KEY_PREFIX}:{client_ip}"


def penalty_multiplier(violations: int, max_multiplier: int) -> int:
    """Budget divisor for a caller with ``violations`` recorded violations."""
    # Clamp the exponent first so a huge count never builds a huge int
    exponent = min(violations, max_multiplier.bit_length())
    return min(2**exponent, max_multiplier)


class PenaltyTracker:
    """Reads and records per-IP violations in the shared counter store."""

    def __init__(
        self,
        store: AbstractCounterStore,
        *,
        ttl_ms: int = DAY_MS,
        max_multiplier: int = 16,
        timeout_ms: int = 250,
    ) -> None:
        if ttl_ms < 1:
            raise ValueError("ttl_ms must be >= 1")
        if max_multiplier < 1:
            raise ValueError("max_multiplier must be >= 1")
        if timeout_ms < 1:
            raise ValueError("timeout_ms must be >= 1")

        self._store = store
        self._ttl_ms = ttl_ms
        self._max_multiplier = max_multiplier
        self._timeout_s = timeout_ms / 1000

    async def violations(self, client_ip: str) -> int:
        """Violations currently remembered for ``client_ip``.

        Raises:
            StoreUnavailableError: If the store fails or times out.
        """
        return await bounded_call(
            self._store, "peek", self._store.peek(violation_key(client_ip)), self._timeout_s
        )

    def penalize(self, policy: LimiterPolicy, violations: int) -> LimiterPolicy:
        """Return ``policy`` with its budget reduced for ``violations``.

        The name is kept, so the caller's existing window counter is checked
        against the reduced budget.
        """
        if violations <= 0:
            return policy
        multiplier = penalty_multiplier(violations, self._max_multiplier)
        adjusted = max(1, policy.max_requests // multiplier)
        return policy.model_copy(update={"max_requests": adjusted})

    @staticmethod
    def is_first_rejection(decision: LimitDecision) -> bool:
        """True for the one request that first exceeds the budget in a window."""
        return not decision.allowed and decision.total_hits == decision.limit + 1

    async def record_violation(self, client_ip: str) -> int:
        """Atomically count one more violation; returns the new total.

        Raises:
            StoreUnavailableError: If the store fails or times out.
        """
        snapshot = await bounded_call(
            self._store,
            "increment",
            self._store.increment_and_get(violation_key(client_ip), self._ttl_ms),
            self._timeout_s,
        )
        return snapshot.count
