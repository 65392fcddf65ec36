"""Redis client, slot-listing cache and payment attempt limiter."""

import json
from typing import Any, cast

import redis
import structlog

from clinicdesk.config import settings

logger = structlog.get_logger(__name__)

_redis_client: redis.Redis | None = None


def get_redis_client() -> redis.Redis:
    """
    Get or create the shared Redis client.

    The client connects lazily, so constructing it never fails even when
    Redis is down; callers below degrade gracefully on connection errors.
    """
    global _redis_client

    if _redis_client is None:
        _redis_client = redis.Redis(
            host=settings.redis_host,
            port=settings.redis_port,
            username=settings.redis_username,
            password=settings.redis_password,
            decode_responses=settings.redis_decode_responses,
            socket_connect_timeout=2,
            socket_keepalive=True,
            health_check_interval=30,
        )

    return _redis_client


async def check_redis_connection() -> bool:
    """Return True if Redis answers a PING."""
    try:
        get_redis_client().ping()
        return True
    except Exception:
        return False


def close_redis_connection() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        _redis_client.close()
        _redis_client = None


class RateLimiter:
    """Fixed-window counter used to throttle card payment attempts."""

    def __init__(self, redis_client: redis.Redis):
        """Initialize rate limiter with Redis client."""
        self.redis = redis_client

    def check_rate_limit(self, key: str, limit: int, window: int = 60) -> bool:
        """
        Count one attempt against ``key``.

        Args:
            key: Limiter key (e.g. ``ratelimit:card:<user id>``)
            limit: Maximum attempts per window
            window: Window length in seconds

        Returns:
            True if the attempt is allowed, False once the limit is reached.
            Redis errors fail open.
        """
        try:
            current = self.redis.incr(key)
            if current == 1:
                self.redis.expire(key, window)
            return cast(int, current) <= limit
        except redis.RedisError as e:
            logger.warning("rate_limiter_unavailable", key=key, error=str(e))
            return True


class CacheManager:
    """JSON cache over Redis; every operation degrades to a miss on error."""

    def __init__(self, redis_client: redis.Redis):
        """Initialize cache manager with Redis client."""
        self.redis = redis_client

    def get_json(self, key: str) -> Any | None:
        """Return the cached JSON value for ``key`` or None."""
        try:
            value = cast(str | None, self.redis.get(key))
            return json.loads(value) if value else None
        except (redis.RedisError, ValueError):
            return None

    def set_json(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """Serialize ``value`` and store it, optionally with a TTL in seconds."""
        try:
            payload = json.dumps(value, default=str)
            if ttl:
                self.redis.setex(key, ttl, payload)
            else:
                self.redis.set(key, payload)
            return True
        except redis.RedisError:
            return False

    def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a glob pattern.

        Args:
            pattern: Redis key pattern (e.g. ``slots:<doctor id>:*``)

        Returns:
            Number of keys deleted
        """
        try:
            keys = list(self.redis.scan_iter(match=pattern))
            if keys:
                return cast(int, self.redis.delete(*keys))
            return 0
        except redis.RedisError as e:
            logger.warning("cache_invalidation_failed", pattern=pattern, error=str(e))
            return 0
