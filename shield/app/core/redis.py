"""Redis connection and counter store construction.

The connection pool is created once by create_app and handed to every
component that needs it; nothing here caches a client at module level.
"""

from typing import Optional

import redis.asyncio as aioredis

from shield.app.core.config import settings
from shield.app.core.logging import get_logger
from shield.app.core.store import CounterStore, InMemoryCounterStore, RedisCounterStore

logger = get_logger(__name__)


def create_redis_client(redis_url: Optional[str] = None) -> aioredis.Redis:
    """Create a Redis client backed by a bounded connection pool.

    Socket timeouts match the store timeout so a hung connection cannot
    stall a request beyond the fail-open budget.
    """
    pool = aioredis.ConnectionPool.from_url(
        redis_url or settings.redis_url,
        max_connections=settings.redis_max_connections,
        socket_timeout=settings.store_timeout_seconds,
        socket_connect_timeout=settings.store_timeout_seconds,
        decode_responses=True,
    )
    return aioredis.Redis(connection_pool=pool)


def create_counter_store(
    backend: Optional[str] = None,
    redis_url: Optional[str] = None,
) -> CounterStore:
    """Build the counter store for this process.

    Args:
        backend: 'redis', 'memory', or None to follow settings.redis_enabled
        redis_url: Redis connection URL. Defaults to settings.redis_url.

    Returns:
        A CounterStore instance. The caller owns it and must close it.
    """
    if backend == "redis":
        use_redis = True
    elif backend == "memory":
        use_redis = False
    else:
        use_redis = settings.redis_enabled

    if use_redis:
        logger.info("Using Redis counter store")
        return RedisCounterStore(create_redis_client(redis_url))

    logger.warning(
        "Using in-memory counter store; limits are not shared between processes"
    )
    return InMemoryCounterStore()
