"""Abstract base class for counter stores."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

# Redis TTL conventions
TTL_MISSING = -2
TTL_PERSISTENT = -1


@dataclass
class CounterEntry:
    """
    A stored counter value with optional expiry.

    Attributes:
        key: Counter key
        value: Stored string value (integers are kept as decimal strings)
        expires_at: Absolute expiry time (None = no expiry)
    """

    key: str
    value: str
    expires_at: datetime | None = None

    @property
    def is_expired(self) -> bool:
        """Check if entry has expired."""
        if self.expires_at is None:
            return False
        return datetime.utcnow() >= self.expires_at

    @property
    def ttl_remaining(self) -> int:
        """Remaining TTL in whole seconds, or -1 when the entry never expires."""
        if self.expires_at is None:
            return TTL_PERSISTENT
        remaining = (self.expires_at - datetime.utcnow()).total_seconds()
        return max(0, int(remaining + 0.5))

    def set_ttl(self, ttl_seconds: int) -> None:
        self.expires_at = datetime.utcnow() + timedelta(seconds=ttl_seconds)


class CounterStore(ABC):
    """
    Abstract base class for counter stores.

    Every mutating call is atomic with respect to the store, which is the
    only concurrency control the quota tracker relies on.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """
        Unique identifier for this backend.

        Returns:
            Backend name (e.g., 'memory', 'redis')
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the backend is connected and healthy."""
        ...

    @abstractmethod
    async def incr(self, key: str) -> int:
        """
        Atomically increment a counter, creating it at 0 when missing.

        Args:
            key: Counter key

        Returns:
            Value after the increment
        """
        ...

    @abstractmethod
    async def decr(self, key: str) -> int:
        """
        Atomically decrement a counter.

        Args:
            key: Counter key

        Returns:
            Value after the decrement
        """
        ...

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """
        Get the raw value of a counter.

        Returns:
            Stored value, or None if missing/expired
        """
        ...

    @abstractmethod
    async def get_many(self, keys: list[str]) -> list[str | None]:
        """Get several raw values, in the order of ``keys``."""
        ...

    @abstractmethod
    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int) -> None:
        """
        Set a value together with its expiry in one atomic operation.

        Args:
            key: Counter key
            value: Value to store (stringified)
            ttl_seconds: Time-to-live in seconds (must be positive)
        """
        ...

    @abstractmethod
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        """
        Set the expiry of an existing key.

        Returns:
            True if the key exists and the expiry was set
        """
        ...

    @abstractmethod
    async def expire_if_unset(self, key: str, ttl_seconds: int) -> bool:
        """
        Set the expiry only when the key has none yet.

        Returns:
            True if the expiry was applied
        """
        ...

    @abstractmethod
    async def ttl(self, key: str) -> int:
        """
        Get remaining time-to-live.

        Returns:
            Seconds remaining, -1 if the key never expires, -2 if missing
        """
        ...

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """
        Delete keys.

        Returns:
            Number of keys removed
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the store connection."""
        ...

    async def ping(self) -> bool:
        """Check the store answers."""
        return self.is_connected

    async def health_check(self) -> dict[str, Any]:
        """
        Perform a health check on the store.

        Returns:
            Dict with health status info
        """
        return {
            "backend": self.name,
            "connected": self.is_connected,
        }
