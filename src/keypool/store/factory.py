"""Store factory for creating counter stores based on configuration."""

import logging

from keypool.config import settings
from keypool.errors import StoreUnavailable
from keypool.store.base import CounterStore
from keypool.store.memory import InMemoryCounterStore
from keypool.store.redis import RedisCounterStore

logger = logging.getLogger(__name__)

# Global store instance
_store_instance: CounterStore | None = None


def create_store(
    backend: str | None = None,
    url: str | None = None,
    prefix: str | None = None,
) -> CounterStore:
    """
    Create a counter store instance.

    Args:
        backend: Backend type ("memory" or "redis"), defaults to config
        url: Redis URL override
        prefix: Redis key prefix override

    Returns:
        CounterStore instance

    Raises:
        ValueError: If backend type is unknown or Redis is not configured
    """
    backend_type = backend or settings.counter_backend

    if backend_type == "memory":
        return InMemoryCounterStore()

    elif backend_type == "redis":
        redis_url = url or settings.resolved_redis_url
        if not redis_url:
            raise ValueError(
                "Redis counter backend selected but no REDIS_URL or REDIS_HOST configured"
            )
        return RedisCounterStore(
            url=redis_url,
            prefix=settings.redis_prefix if prefix is None else prefix,
        )

    else:
        raise ValueError(f"Unknown counter backend: {backend_type}")


def get_store() -> CounterStore:
    """
    Get the global store instance.

    Creates the store on first access using configuration settings.
    """
    global _store_instance

    if _store_instance is None:
        _store_instance = create_store()
        logger.info(f"Initialized {_store_instance.name} counter store")

    return _store_instance


async def initialize_store() -> CounterStore:
    """
    Initialize the global store and establish connections.

    Call this during application startup so a misconfigured Redis is
    reported before the first request.

    Raises:
        StoreUnavailable: If Redis cannot be reached and fallback is disabled
    """
    global _store_instance

    store = get_store()

    if isinstance(store, RedisCounterStore):
        try:
            await store.connect()
        except StoreUnavailable:
            if not settings.store_fallback_to_memory:
                logger.error("Failed to connect to Redis")
                raise
            logger.warning("Failed to connect to Redis, using fallback memory store")
            _store_instance = InMemoryCounterStore()
            return _store_instance

    return store


async def shutdown_store() -> None:
    """Shutdown the global store and close connections."""
    global _store_instance

    if _store_instance is not None:
        await _store_instance.close()
        _store_instance = None
        logger.info("Counter store shutdown complete")


def reset_store() -> None:
    """
    Reset the global store instance.

    Useful for testing or when configuration changes.
    """
    global _store_instance
    _store_instance = None
