"""Redis connection backing realtime cabinet events."""

import asyncio

import redis
import structlog

from cabinet_scheduler.config import settings

logger = structlog.get_logger(__name__)

# Shared by the event publisher and every SSE subscription
_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """Get or create the process-wide Redis client."""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=5,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _redis_client


async def check_redis_connection() -> bool:
    """
    Ping Redis without blocking the event loop.

    Returns:
        True if Redis answered, False otherwise
    """
    try:
        await asyncio.to_thread(get_redis_client().ping)
        return True
    except (redis.RedisError, OSError) as e:
        logger.warning("redis_unreachable", error=str(e))
        return False


def close_redis_connection() -> None:
    """Close the Redis client, if one was opened."""
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None
