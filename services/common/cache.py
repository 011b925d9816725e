"""Async Redis helper functions."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict

from redis.asyncio import Redis

from .config import ServiceSettings

RedisType = Redis

_LOGGER = logging.getLogger(__name__)
_CACHE: Dict[str, RedisType] = {}


def get_redis_client(redis_url: str) -> RedisType:
    """Return a cached Redis client for the given URL."""

    if redis_url not in _CACHE:
        _CACHE[redis_url] = Redis.from_url(redis_url, decode_responses=True)
    return _CACHE[redis_url]


def resolve_redis(settings: ServiceSettings) -> RedisType | None:
    """Return a Redis client or None if not configured."""

    if not settings.redis_url:
        return None
    return get_redis_client(settings.redis_url)


async def read_json(redis: Any, key: str) -> Any | None:
    """Return the decoded JSON value stored at ``key``.

    Cache failures and undecodable payloads are reported as a miss so callers
    can always fall back to the source of truth.
    """

    try:
        cached = await redis.get(key)
    except Exception as exc:
        _LOGGER.warning("Redis read failed for %s: %s", key, exc)
        return None
    if not cached:
        return None
    try:
        return json.loads(cached)
    except json.JSONDecodeError:
        _LOGGER.warning("Discarding undecodable cache entry %s", key)
        try:
            await redis.delete(key)
        except Exception as exc:
            _LOGGER.warning("Redis delete failed for %s: %s", key, exc)
        return None


async def write_json(redis: Any, key: str, value: Any, *, ttl_seconds: int) -> bool:
    """Store ``value`` as JSON under ``key``; returns False when Redis is unreachable."""

    try:
        await redis.set(key, json.dumps(value, default=str), ex=ttl_seconds)
    except Exception as exc:
        _LOGGER.warning("Redis write failed for %s: %s", key, exc)
        return False
    return True


async def delete_key(redis: Any, key: str) -> bool:
    try:
        await redis.delete(key)
    except Exception as exc:
        _LOGGER.warning("Redis delete failed for %s: %s", key, exc)
        return False
    return True


async def close_redis_connections() -> None:
    """Close all cached Redis connections (used for shutdown/tests)."""

    for redis in _CACHE.values():
        await redis.aclose()
    _CACHE.clear()
