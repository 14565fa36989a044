"""
Redis Module

Connection to the store backing the feedback event history. History is
best-effort, so short socket timeouts keep a slow Redis from stalling
background persistence.
"""

import redis.asyncio as redis
import structlog

from meetcoach.config import settings

logger = structlog.get_logger()

_redis_client: redis.Redis | None = None


async def init_redis() -> None:
    """Connect and ping. On failure no client is kept and the error propagates."""
    global _redis_client

    client = redis.from_url(
        str(settings.redis_url),
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )

    try:
        await client.ping()
    except Exception:
        await client.aclose()
        raise

    _redis_client = client
    logger.info("Redis connection initialized", url=str(settings.redis_url))


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def get_redis() -> redis.Redis:
    """Get Redis client instance."""
    if not _redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def is_initialized() -> bool:
    return _redis_client is not None


__all__ = ["init_redis", "close_redis", "get_redis", "is_initialized"]
