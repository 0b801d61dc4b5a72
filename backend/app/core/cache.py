"""
Redis cache layer — async Redis client with typed helpers.

Provides:
    • Lazy async client (created on first use)
    • JSON serialisation cache helpers
    • TTL-aware get/set with namespace prefixes
    • Cache invalidation

Every helper degrades to a miss when Redis is down or CACHE_ENABLED is
false; callers always fall through to the database.

Usage:
    from backend.app.core.cache import cache_get, cache_set, cache_delete

    await cache_set("pref:42:email:marketing", {"enabled": False}, ttl=300)
    cached = await cache_get("pref:42:email:marketing")
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client — initialised on first use
_redis_client = None


async def _get_redis():
    """Get or create async Redis client."""
    global _redis_client
    if not settings.CACHE_ENABLED:
        return None
    if _redis_client is None:
        try:
            import redis.asyncio as aioredis
            _redis_client = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis connected: %s", settings.REDIS_URL)
        except Exception as e:
            logger.warning("Redis unavailable: %s — caching disabled", e)
            return None
    return _redis_client


async def cache_get(key: str) -> Optional[Any]:
    """Get a cached value by key. Returns None on miss or error."""
    client = await _get_redis()
    if not client:
        return None
    try:
        raw = await client.get(key)
        if raw is not None:
            return json.loads(raw)
    except Exception as e:
        logger.warning("Cache GET error for %s: %s", key, e)
    return None


async def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """Set a cached value with optional TTL (seconds)."""
    client = await _get_redis()
    if not client:
        return False
    try:
        serialised = json.dumps(value, default=str)
        await client.set(key, serialised, ex=ttl or settings.REDIS_CACHE_TTL)
        return True
    except Exception as e:
        logger.warning("Cache SET error for %s: %s", key, e)
        return False


async def cache_delete(*keys: str) -> bool:
    """Delete one or more cache keys."""
    client = await _get_redis()
    if not client or not keys:
        return False
    try:
        await client.delete(*keys)
        return True
    except Exception as e:
        logger.warning("Cache DELETE error for %s: %s", keys, e)
        return False


async def cache_clear_prefix(prefix: str) -> int:
    """Delete all keys matching a prefix pattern."""
    client = await _get_redis()
    if not client:
        return 0
    try:
        keys = []
        async for key in client.scan_iter(f"{prefix}*"):
            keys.append(key)
        if keys:
            await client.delete(*keys)
        return len(keys)
    except Exception as e:
        logger.warning("Cache CLEAR error for %s*: %s", prefix, e)
        return 0


async def ping_redis() -> bool:
    """Round-trip to Redis; False when disabled or unreachable."""
    client = await _get_redis()
    if not client:
        return False
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.warning("Redis PING failed: %s", e)
        return False


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
