"""Redis counter store implementation."""

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import redis.asyncio as redis
from redis.exceptions import RedisError, ResponseError

from keypool.errors import StoreUnavailable
from keypool.store.base import TTL_PERSISTENT, CounterStore

logger = logging.getLogger(__name__)


class RedisCounterStore(CounterStore):
    """
    Redis counter store for multi-instance deployments.

    All quota mutations map onto single Redis commands (INCR, DECR,
    SETEX, EXPIRE NX), so several proxy processes can share the same
    counters without additional locking.
    """

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        prefix: str = "",
        max_connections: int = 10,
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
        client: Any = None,
    ) -> None:
        """
        Initialize Redis store.

        Args:
            url: Redis connection URL
            prefix: Key prefix for namespacing
            max_connections: Maximum connections in pool
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Connection timeout in seconds
            client: Pre-built client (tests inject a mock here)
        """
        self._url = url
        self._prefix = prefix
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._client: Any = client
        self._connected = client is not None

    @property
    def name(self) -> str:
        return "redis"

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _get_key(self, key: str) -> str:
        """Get prefixed key."""
        return f"{self._prefix}{key}"

    @contextmanager
    def _errors(self, op: str, key: str | None = None) -> Iterator[None]:
        """Translate Redis failures into StoreUnavailable."""
        try:
            yield
        except (RedisError, OSError) as e:
            target = f" for {key}" if key else ""
            logger.error(f"Redis {op} error{target}: {e}")
            self._connected = False
            raise StoreUnavailable(
                "Counter store temporarily unavailable",
                details=f"{op}: {e}",
            ) from e

    async def connect(self) -> bool:
        """
        Connect to Redis.

        Returns:
            True if connected successfully

        Raises:
            StoreUnavailable: If the server does not answer
        """
        if self._connected and self._client:
            return True

        if self._client is None:
            self._client = redis.from_url(
                self._url,
                max_connections=self._max_connections,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_connect_timeout,
                decode_responses=True,
            )

        with self._errors("PING"):
            await self._client.ping()
        self._connected = True
        logger.info(f"Connected to Redis at {self._url}")
        return True

    async def _ensure_connected(self) -> None:
        if not self._connected:
            await self.connect()

    async def incr(self, key: str) -> int:
        await self._ensure_connected()
        with self._errors("INCR", key):
            return int(await self._client.incr(self._get_key(key)))

    async def decr(self, key: str) -> int:
        await self._ensure_connected()
        with self._errors("DECR", key):
            return int(await self._client.decr(self._get_key(key)))

    async def get(self, key: str) -> str | None:
        await self._ensure_connected()
        with self._errors("GET", key):
            return await self._client.get(self._get_key(key))

    async def get_many(self, keys: list[str]) -> list[str | None]:
        if not keys:
            return []
        await self._ensure_connected()
        with self._errors("MGET"):
            return list(await self._client.mget([self._get_key(k) for k in keys]))

    async def set_with_ttl(self, key: str, value: Any, ttl_seconds: int) -> None:
        await self._ensure_connected()
        with self._errors("SETEX", key):
            await self._client.setex(self._get_key(key), ttl_seconds, str(value))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        await self._ensure_connected()
        with self._errors("EXPIRE", key):
            return bool(await self._client.expire(self._get_key(key), ttl_seconds))

    async def expire_if_unset(self, key: str, ttl_seconds: int) -> bool:
        await self._ensure_connected()
        name = self._get_key(key)
        with self._errors("EXPIRE NX", key):
            try:
                return bool(await self._client.expire(name, ttl_seconds, nx=True))
            except ResponseError:
                # Servers before 7.0 reject the NX flag
                if await self._client.ttl(name) != TTL_PERSISTENT:
                    return False
                return bool(await self._client.expire(name, ttl_seconds))

    async def ttl(self, key: str) -> int:
        await self._ensure_connected()
        with self._errors("TTL", key):
            return int(await self._client.ttl(self._get_key(key)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        await self._ensure_connected()
        with self._errors("DEL"):
            return int(await self._client.delete(*[self._get_key(k) for k in keys]))

    async def ping(self) -> bool:
        try:
            await self._ensure_connected()
            with self._errors("PING"):
                await self._client.ping()
            return True
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client:
            try:
                await self._client.aclose()
            except (RedisError, OSError) as e:
                logger.error(f"Error closing Redis connection: {e}")
            finally:
                self._client = None
                self._connected = False

    async def health_check(self) -> dict[str, Any]:
        """Return health status with Redis info."""
        try:
            await self._ensure_connected()
            with self._errors("INFO"):
                info = await self._client.info("server")
                keys_count = await self._client.dbsize()
        except StoreUnavailable as e:
            return {
                "backend": self.name,
                "connected": False,
                "error": e.details,
            }

        return {
            "backend": self.name,
            "connected": True,
            "redis_version": info.get("redis_version"),
            "total_keys": keys_count,
            "uptime_seconds": info.get("uptime_in_seconds"),
        }
