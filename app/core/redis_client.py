"""Redis connection and the JSON cache used for wait-time averages."""

import json
from typing import Any, cast

import redis
import structlog
from redis.exceptions import RedisError

from app.config import settings

logger = structlog.get_logger(__name__)

_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """Return the shared Redis client, creating it on first use."""
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )

    return _redis_client


async def check_redis_connection() -> bool:
    """Ping Redis; False when it cannot be reached."""
    try:
        get_redis_client().ping()
    except RedisError as e:
        logger.warning("redis_ping_failed", error=str(e))
        return False
    return True


def close_redis_connection() -> None:
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


class CacheManager:
    """Redis-based cache with per-entry TTL.

    Entries are replaced whole with SETEX, so readers never see a partial
    value. Redis errors degrade to cache misses.
    """

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def get_json(self, key: str) -> Any | None:
        """
        Read and decode a cached JSON value.

        Args:
            key: Cache key

        Returns:
            Decoded value, or None on a miss, a Redis error or corrupt JSON
        """
        try:
            value = cast(str | None, self.redis.get(key))
        except RedisError as e:
            logger.warning("cache_read_failed", key=key, error=str(e))
            return None

        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("cache_value_corrupt", key=key)
            return None

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Store ``value`` as JSON, with SETEX when a TTL is given."""
        json_value = json.dumps(value, default=str)
        try:
            if ttl:
                self.redis.setex(key, ttl, json_value)
            else:
                self.redis.set(key, json_value)
        except RedisError as e:
            logger.warning("cache_write_failed", key=key, error=str(e))
            return False
        return True
