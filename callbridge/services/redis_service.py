"""
Redis connection management
One pooled client shared by the Redis tenant store and the Redis session store.
"""

from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from callbridge.core.config import settings
from callbridge.core.logging import get_logger

logger = get_logger(__name__)

_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Shared client, created on first use from settings.redis_url"""
    global _client

    if _client is None:
        _client = redis.Redis.from_url(
            settings.redis_url,
            max_connections=settings.redis_max_connections,
            decode_responses=True
        )
        logger.info("Redis client created")
    return _client


async def ping_redis() -> bool:
    """True when the configured Redis server answers PING"""
    try:
        return bool(await (await get_redis()).ping())
    except RedisError as e:
        logger.warning(f"Redis ping failed: {e}")
        return False


async def close_redis() -> None:
    global _client

    if _client is not None:
        await _client.aclose()
        _client = None
