"""Pytest configuration and fixtures shared across all test modules.

This file is loaded by pytest before any test module, so the environment
below is in place before settings are created. Tests use the in-memory
counter store; nothing here needs a running Redis.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ["RATE_LIMIT_STORE"] = "memory"
os.environ.setdefault("LOG_FORMAT", "plain")

from unittest.mock import Mock

import pytest

from admission.adapters.counter_store.in_memory import InMemoryCounterStore
from admission.core.config import RateLimitSettings, Settings

# Start of a 15-minute window (1_800_000_000 ms is a multiple of 900_000)
FROZEN_NOW = 1_800_000.0


def make_settings(**rate_limit_overrides) -> Settings:
    """Build Settings with rate limiting overrides and the memory store."""
    overrides = {"store": "memory", **rate_limit_overrides}
    return Settings(rate_limit=RateLimitSettings(**overrides))


@pytest.fixture
def clock() -> Mock:
    """Controllable UNIX-seconds clock; set ``clock.return_value`` to move time."""
    return Mock(return_value=FROZEN_NOW)


@pytest.fixture
def memory_store(clock: Mock) -> InMemoryCounterStore:
    return InMemoryCounterStore(clock=clock)
