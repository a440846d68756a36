"""Tests for counter store selection."""

import pytest

from admission.adapters.counter_store import (
    InMemoryCounterStore,
    RedisCounterStore,
    create_counter_store,
)
from admission.core.config import RateLimitSettings, RedisSettings, Settings
from admission.core.errors import ConfigurationAppError
from conftest import make_settings


def test_memory_backend() -> None:
    assert isinstance(create_counter_store(make_settings(store="memory")), InMemoryCounterStore)


def test_redis_backend_uses_redis_settings() -> None:
    cfg = Settings(
        rate_limit=RateLimitSettings(store="redis"),
        redis=RedisSettings(url="redis://cache:6379/1", key_prefix="rl:"),
    )

    store = create_counter_store(cfg)

    assert isinstance(store, RedisCounterStore)
    assert store.backend == "redis"


def test_unknown_backend_raises() -> None:
    # model_construct skips validation, as a hand-built settings object might
    cfg = Settings(rate_limit=RateLimitSettings.model_construct(store="memcached"))

    with pytest.raises(ConfigurationAppError) as exc_info:
        create_counter_store(cfg)

    assert exc_info.value.code == "counter_store_unknown_backend"
