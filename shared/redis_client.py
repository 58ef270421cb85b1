"""
Redis client singleton.

Redis backs two small concerns of the API:
- Session token blacklist (logout): token_blacklist:{jti}
- Login rate limiting counters: login_attempts:{ip}:{window}
"""

import logging
from functools import lru_cache

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from shared.config import get_settings

TOKEN_BLACKLIST_PREFIX = "token_blacklist:"

logger = logging.getLogger(__name__)


@lru_cache
def get_redis_client() -> "redis.Redis[str]":
    """
    Get cached Redis client instance with production-ready configuration.

    - Connection pooling (max 20 connections shared by api and workers)
    - Automatic retry on timeout for transient failures
    - Health check pings every 30 seconds
    """
    settings = get_settings()

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=True,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        logger.info(
            f"Redis client initialized: {settings.REDIS_URL} "
            f"(max_connections=20, retry_on_timeout=True, health_check_interval=30s)"
        )
        return client

    except RedisConnectionError as e:
        logger.error(f"Redis connection failed: {e}", exc_info=True)
        raise


async def blacklist_token(jti: str, ttl_seconds: int) -> None:
    """Store a revoked token id until the token would have expired anyway."""
    client = get_redis_client()
    await client.setex(f"{TOKEN_BLACKLIST_PREFIX}{jti}", max(ttl_seconds, 1), "1")


async def is_token_blacklisted(jti: str) -> bool:
    client = get_redis_client()
    return bool(await client.exists(f"{TOKEN_BLACKLIST_PREFIX}{jti}"))


async def close_redis_client() -> None:
    """
    Close Redis connection gracefully.

    Note:
        Should be called during application shutdown.
    """
    try:
        client = get_redis_client()
        await client.aclose()
        logger.info("Redis client closed")
    except (RedisError, OSError) as e:
        logger.warning(f"Error closing Redis client: {e}")
    get_redis_client.cache_clear()
