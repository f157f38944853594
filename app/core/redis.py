# app/core/redis.py
"""
Redis connection and caching utilities.

Redis is optional. It is used for:
- Caching external identity registry lookups (Topus), which are slow and metered

The app boots and serves every request when Redis is missing or down;
callers simply see cache misses (degraded mode).
"""

import json
import logging
from functools import lru_cache
from typing import Any, Optional

import redis

from app.core.config import get_settings

logger = logging.getLogger(__name__)


@lru_cache
def get_redis_client() -> Optional[redis.Redis]:
    """
    Get Redis client instance.
    Returns None if Redis is not configured or unreachable at first use.
    """
    settings = get_settings()

    if not settings.redis_url:
        logger.info("REDIS_URL not set. Registry cache disabled.")
        return None

    try:
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        client.ping()
        logger.info("Redis connection established successfully.")
        return client
    except redis.RedisError as e:
        logger.warning(
            f"Failed to connect to Redis: {e}. Running in degraded mode (no caching)."
        )
        return None


def cache_get_json(key: str) -> Optional[Any]:
    """Get a JSON value from cache. Returns None on miss or when Redis is unavailable."""
    client = get_redis_client()
    if not client:
        return None
    try:
        raw = client.get(key)
    except redis.RedisError as e:
        logger.warning(f"Redis GET error for key '{key}': {e}")
        return None
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning(f"Discarding non-JSON cache entry for key '{key}'")
        return None


def cache_set_json(key: str, value: Any, ttl: int = 60) -> bool:
    """Store a JSON-serialisable value with TTL (seconds). Returns False if Redis unavailable."""
    client = get_redis_client()
    if not client:
        return False
    try:
        client.setex(key, ttl, json.dumps(value, default=str))
        return True
    except redis.RedisError as e:
        logger.warning(f"Redis SET error for key '{key}': {e}")
        return False
