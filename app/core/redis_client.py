"""
Redis Client - shared async singleton.

Used for the realtime change feed (pub/sub), the report rate limiter and
readiness checks. Connection URL comes from REDIS_URL.
"""
import asyncio
import json
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs (redis://:****@host:6379)"""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


async def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton (async, connection pool)"""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection; called on app shutdown and after each worker task"""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


def realtime_channel(table_name: str) -> str:
    return f"{settings.REALTIME_CHANNEL_PREFIX}:{table_name}"


async def publish_change(table_name: str, message: dict) -> int:
    """Publish a change event as JSON; returns the number of subscribers reached"""
    client = await get_redis()
    return await client.publish(realtime_channel(table_name), json.dumps(message, default=str))
