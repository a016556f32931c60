"""
Redis access for rate limits and the cached user verification status.

Redis is optional. When the server is unreachable every helper degrades
to "allow" or "cache miss", so the API keeps serving without it.
"""

import json
import logging
from typing import Any, Callable, Optional, Tuple

import redis
from redis.connection import ConnectionPool

from civic_identity.core.config import settings

logger = logging.getLogger(__name__)

STATUS_CACHE_TTL_SECONDS = 3600


class RedisClient:
    """Process-wide connection pool, opened at startup"""

    _client: Optional[redis.Redis] = None
    _pool: Optional[ConnectionPool] = None
    _is_available: bool = False

    @classmethod
    def get_client(cls) -> redis.Redis:
        """Connect on first use; raises when the server cannot be reached"""
        if cls._client is not None:
            return cls._client

        pool = ConnectionPool(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD or None,
            db=settings.REDIS_DB,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            health_check_interval=30,
        )
        client = redis.Redis(connection_pool=pool)
        try:
            client.ping()
        except redis.RedisError as e:
            pool.disconnect()
            cls._is_available = False
            logger.warning("Redis unreachable at %s:%s: %s", settings.REDIS_HOST, settings.REDIS_PORT, e)
            raise

        cls._pool = pool
        cls._client = client
        cls._is_available = True
        logger.info("Redis connected (%s:%s)", settings.REDIS_HOST, settings.REDIS_PORT)
        return client

    @classmethod
    def is_available(cls) -> bool:
        return cls._is_available and cls._client is not None

    @classmethod
    def close(cls):
        if cls._client is not None:
            cls._client.close()
        if cls._pool is not None:
            cls._pool.disconnect()
        cls._client = None
        cls._pool = None
        cls._is_available = False
        logger.info("Redis connection closed")


def get_redis() -> Optional[redis.Redis]:
    """Connected client, or None when Redis was not reachable at startup"""
    return RedisClient._client if RedisClient.is_available() else None


def _run(description: str, default: Any, command: Callable[[redis.Redis], Any]) -> Any:
    """Run one command, returning `default` when Redis is down or the command fails."""
    client = get_redis()
    if client is None:
        return default
    try:
        return command(client)
    except redis.RedisError as e:
        logger.warning("Redis %s failed: %s", description, e)
        return default


class CacheKeys:
    @staticmethod
    def user_status(user_id: str) -> str:
        return f"identity:user:status:{user_id}"

    @staticmethod
    def rate_limit(identifier: str, action: str) -> str:
        return f"identity:rate:{action}:{identifier}"


class RateLimiter:
    """Fixed-window request counters"""

    @staticmethod
    def check_rate_limit(
        identifier: str,
        action: str,
        max_requests: int,
        window_seconds: int,
    ) -> Tuple[bool, int]:
        """
        Count one request against the current window.

        Returns:
            (is_allowed, remaining_requests); always allowed without Redis
        """
        key = CacheKeys.rate_limit(identifier, action)

        def count(client: redis.Redis) -> int:
            current = client.incr(key)
            # The first hit opens the window; later hits must not extend it
            if current == 1 or client.ttl(key) == -1:
                client.expire(key, window_seconds)
            return current

        current = _run(f"INCR {key}", None, count)
        if current is None:
            return True, max_requests
        return current <= max_requests, max(0, max_requests - current)

    @staticmethod
    def get_remaining_time(identifier: str, action: str) -> int:
        """Seconds until the window resets"""
        key = CacheKeys.rate_limit(identifier, action)
        return max(0, _run(f"TTL {key}", -1, lambda client: client.ttl(key)))

    @staticmethod
    def peek(identifier: str, action: str) -> int:
        """Requests counted in the current window, without counting this one"""
        key = CacheKeys.rate_limit(identifier, action)
        value = _run(f"GET {key}", None, lambda client: client.get(key))
        return int(value) if value else 0

    @staticmethod
    def reset(identifier: str, action: str) -> int:
        key = CacheKeys.rate_limit(identifier, action)
        return _run(f"DEL {key}", 0, lambda client: client.delete(key))


class Cache:
    """Cached /status payloads, keyed by user"""

    @staticmethod
    def get_user_verification(user_id: str) -> Optional[dict]:
        key = CacheKeys.user_status(user_id)
        value = _run(f"GET {key}", None, lambda client: client.get(key))
        return json.loads(value) if value else None

    @staticmethod
    def set_user_verification(user_id: str, payload: dict, ttl: int = STATUS_CACHE_TTL_SECONDS) -> bool:
        key = CacheKeys.user_status(user_id)
        value = json.dumps(payload, default=str)
        return bool(_run(f"SETEX {key}", False, lambda client: client.setex(key, ttl, value)))

    @staticmethod
    def clear_user_verification(user_id: str) -> int:
        """Drop the cached status after it changes"""
        key = CacheKeys.user_status(user_id)
        return _run(f"DEL {key}", 0, lambda client: client.delete(key))
