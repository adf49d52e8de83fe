"""In-memory counter store implementation."""

import asyncio
import logging
from typing import Any

from keypool.store.base import TTL_MISSING, CounterEntry, CounterStore

logger = logging.getLogger(__name__)


class InMemoryCounterStore(CounterStore):
    """
    In-memory counter store using a simple dictionary.

    Best for:
    - Single-instance deployments
    - Development and testing

    Limitations:
    - Not shared across processes
    - Lost on restart

    Expired entries are dropped lazily when touched.
    """

    def __init__(self) -> None:
        self._store: dict[str, CounterEntry] = {}
        self._lock = asyncio.Lock()
        self._connected = True

    @property
    def name(self) -> str:
        return "memory"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _live_entry(self, key: str) -> CounterEntry | None:
        """Return the entry for ``key`` unless expired (caller must hold lock)."""
        entry = self._store.get(key)
        if entry is not None and entry.is_expired:
            del self._store[key]
            return None
        return entry

    async def _add(self, key: str, delta: int) -> int:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                entry = CounterEntry(key=key, value="0")
                self._store[key] = entry
            try:
                current = int(entry.value)
            except ValueError:
                raise ValueError(f"value at {key} is not an integer") from None
            entry.value = str(current + delta)
            return current + delta

    async def incr(self, key: str) -> int:
        return await self._add(key, 1)

    async def decr(self, key: str) -> int:
        return await self._add(key, -1)

    async def get(self, key: str) -> str | None:
        async with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry is not None else None

    async def get_many(self, keys: list[str]) -> list[str | None]:
        async with self._lock:
            result = []
            for key in keys:
                entry = self._live_entry(key)
                result.append(entry.value if entry is not None else None)
            return result

    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        async with self._lock:
            entry = CounterEntry(key=key, value=str(value))
            entry.set_ttl(ttl_seconds)
            self._store[key] = entry

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return False
            entry.set_ttl(ttl_seconds)
            return True

    async def expire_if_unset(self, key: str, ttl_seconds: int) -> bool:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None or entry.expires_at is not None:
                return False
            entry.set_ttl(ttl_seconds)
            return True

    async def ttl(self, key: str) -> int:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return TTL_MISSING
            return entry.ttl_remaining

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._store.pop(key, None) is not None:
                    removed += 1
            return removed

    async def close(self) -> None:
        self._connected = False
        self._store.clear()

    async def health_check(self) -> dict[str, Any]:
        """Return health status with store statistics."""
        async with self._lock:
            total_entries = len(self._store)

        return {
            "backend": self.name,
            "connected": self.is_connected,
            "total_entries": total_entries,
        }

    def size(self) -> int:
        """Get current number of entries (sync method for convenience)."""
        return len(self._store)
