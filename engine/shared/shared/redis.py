"""Redis connection helper."""

from __future__ import annotations

import redis.asyncio as redis

from shared.config import Settings, get_settings


def create_redis(settings: Settings | None = None) -> redis.Redis:
    """Create a new Redis client for the trigger queue."""
    settings = settings or get_settings()
    return redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )


_redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Get or create the shared Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = create_redis()
    return _redis_client


async def close_redis() -> None:
    """Close the shared Redis connection."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
