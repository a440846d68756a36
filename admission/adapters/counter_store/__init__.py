"""Counter store adapters.

Admission control depends on the AbstractCounterStore interface only, so the
shared store (Redis) and the per-process development store are swappable
without touching the engine or the middleware.
"""

from admission.adapters.counter_store.base import AbstractCounterStore, CounterSnapshot
from admission.adapters.counter_store.factory import create_counter_store
from admission.adapters.counter_store.in_memory import InMemoryCounterStore
from admission.adapters.counter_store.redis_store import RedisCounterStore

__all__ = [
    "AbstractCounterStore",
    "CounterSnapshot",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_counter_store",
]
