"""Redis-backed counter store.

The increment, first-hit expiry and TTL read run as one Lua script, which
Redis executes atomically. Concurrent callers on the same key therefore see
a strictly increasing sequence of counts across every service instance.

**Security Note**: Use a ``rediss://`` URL when Redis is reached over an
untrusted network, and never log the connection URL (it may carry a password).
"""

from __future__ import annotations

import logging

from redis.asyncio import Redis
from redis.exceptions import RedisError

from admission.adapters.counter_store.base import AbstractCounterStore, CounterSnapshot
from admission.core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# KEYS[1] = counter key, ARGV[1] = window in milliseconds.
# A key that somehow lost its TTL gets one again, so it can never live forever.
INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""


class RedisCounterStore(AbstractCounterStore):
    """Counter store using a shared Redis instance."""

    backend = "redis"

    def __init__(self, client: Redis, *, key_prefix: str = "") -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._increment = client.register_script(INCREMENT_SCRIPT)

    @classmethod
    def from_url(cls, url: str, *, key_prefix: str = "", timeout_ms: int = 250) -> "RedisCounterStore":
        """Create a store with a connection pool bounded by ``timeout_ms``."""
        timeout_s = timeout_ms / 1000
        client = Redis.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
            socket_timeout=timeout_s,
            socket_connect_timeout=timeout_s,
        )
        logger.debug("counter_store.redis_client_created")
        return cls(client, key_prefix=key_prefix)

    def _full_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def increment_and_get(self, key: str, window_ms: int) -> CounterSnapshot:
        if not key:
            raise ValueError("key must be a non-empty string")
        if window_ms < 1:
            raise ValueError("window_ms must be >= 1")

        try:
            count, ttl_ms = await self._increment(keys=[self._full_key(key)], args=[window_ms])
        except (RedisError, OSError) as exc:
            logger.warning(
                "counter_store.unavailable",
                extra={"backend": self.backend, "operation": "increment", "error_type": type(exc).__name__},
            )
            raise StoreUnavailableError(
                code="counter_store_unavailable",
                message="Counter store did not complete the increment",
                details={"backend": self.backend, "operation": "increment"},
            ) from exc

        return CounterSnapshot(count=int(count), ttl_ms=int(ttl_ms))

    async def peek(self, key: str) -> int:
        try:
            value = await self._client.get(self._full_key(key))
        except (RedisError, OSError) as exc:
            logger.warning(
                "counter_store.unavailable",
                extra={"backend": self.backend, "operation": "peek", "error_type": type(exc).__name__},
            )
            raise StoreUnavailableError(
                code="counter_store_unavailable",
                message="Counter store did not complete the read",
                details={"backend": self.backend, "operation": "peek"},
            ) from exc
        return int(value) if value else 0

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._client.aclose()
        logger.debug("counter_store.redis_client_closed")
