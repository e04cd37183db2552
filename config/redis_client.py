"""
config/redis_client.py
Async Redis client. Carries the change-feed pub/sub channels that the
notification fan-out listens on.
"""

from typing import Optional
import redis.asyncio as aioredis

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> aioredis.Redis:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()
    return redis_client


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None


def change_channel(table: str) -> str:
    """Pub/sub channel name carrying committed changes for one table."""
    return f"{settings.CHANGE_FEED_CHANNEL_PREFIX}:{table}"
