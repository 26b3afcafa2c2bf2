# common/cache.py
import json
import logging
import os
import threading
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_client_lock = threading.Lock()


def get_redis_client() -> Optional[redis.Redis]:
    """
    Return a Redis client if REDIS_URL is configured, otherwise None.

    Caching is optional: when Redis is unset or unreachable, every helper in
    this module becomes a no-op and callers go straight to the database.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None

    with _client_lock:
        if _redis_client is not None:
            return _redis_client
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
        except redis.RedisError as exc:
            logger.warning("Redis at %s unavailable, caching disabled: %s", redis_url, exc)
            return None
        _redis_client = client
    return _redis_client


def reset_redis_client() -> None:
    global _redis_client
    with _client_lock:
        _redis_client = None


def get_cached_json(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None

    try:
        raw = client.get(key)
    except redis.RedisError as exc:
        logger.warning("Cache read failed for %s: %s", key, exc)
        return None
    if raw is None:
        return None
    return json.loads(raw)


def set_cached_json(key: str, value: Any, ttl_seconds: int = 60) -> None:
    client = get_redis_client()
    if client is None:
        return

    try:
        client.setex(key, ttl_seconds, json.dumps(value, default=str))
    except redis.RedisError as exc:
        logger.warning("Cache write failed for %s: %s", key, exc)


def delete_prefix(prefix: str) -> int:
    """
    Delete all keys starting with prefix and return how many were removed.

    Example: prefix='room:42' or 'rooms:availability:42:'.
    """
    client = get_redis_client()
    if client is None:
        return 0

    deleted = 0
    try:
        batch = []
        for key in client.scan_iter(match=prefix + "*", count=500):
            batch.append(key)
            if len(batch) >= 500:
                deleted += client.delete(*batch)
                batch = []
        if batch:
            deleted += client.delete(*batch)
    except redis.RedisError as exc:
        logger.warning("Cache invalidation failed for prefix %s: %s", prefix, exc)
    return deleted
