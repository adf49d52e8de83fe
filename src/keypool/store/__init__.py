"""
Counter store module.

Provides the atomic counter capability the quota tracker is built on,
with in-memory and Redis backends.
"""

from keypool.store.base import CounterEntry, CounterStore
from keypool.store.memory import InMemoryCounterStore
from keypool.store.redis import RedisCounterStore
from keypool.store.factory import create_store, get_store

__all__ = [
    "CounterEntry",
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
    "create_store",
    "get_store",
]
