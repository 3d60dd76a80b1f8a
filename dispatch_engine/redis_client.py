"""Async Redis client for webhook event streams."""

from redis.asyncio import ConnectionPool, Redis

from .config import settings

_pool = ConnectionPool.from_url(settings.redis_url, max_connections=20, decode_responses=True)


def get_redis_client() -> Redis:
    """Get an async Redis client from the shared pool."""
    return Redis(connection_pool=_pool)
