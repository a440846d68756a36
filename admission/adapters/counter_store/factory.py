"""Factory for creating counter store instances."""

from __future__ import annotations

from admission.adapters.counter_store.base import AbstractCounterStore
from admission.adapters.counter_store.in_memory import InMemoryCounterStore
from admission.adapters.counter_store.redis_store import RedisCounterStore
from admission.core.config import Settings, settings as default_settings
from admission.core.errors import ConfigurationAppError


def create_counter_store(cfg: Settings | None = None) -> AbstractCounterStore:
    """Instantiate the counter store selected by RATE_LIMIT_STORE.

    Args:
        cfg: Settings to read from; defaults to the global settings.

    Returns:
        AbstractCounterStore: Configured store instance.

    Raises:
        ConfigurationAppError: If the configured backend is unknown.
    """
    cfg = cfg or default_settings
    backend = cfg.rate_limit.store.lower()

    if backend == "redis":
        return RedisCounterStore.from_url(
            cfg.redis.url,
            key_prefix=cfg.redis.key_prefix,
            timeout_ms=cfg.redis.socket_timeout_ms,
        )

    if backend == "memory":
        return InMemoryCounterStore()

    raise ConfigurationAppError(
        code="counter_store_unknown_backend",
        message=f"Unknown counter store backend: '{backend}'. Supported backends: redis, memory",
    )
