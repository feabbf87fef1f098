"""
Redis cache layer for read-heavy monitoring endpoints.

Only derived data is cached (metrics aggregates); the ledger, alerts and
issued codes never live here. Every helper degrades to a miss when Redis
is disabled or unreachable, so the delivery path never waits on it.

Keys are namespaced:  {REDIS_KEY_PREFIX}:{key}   e.g. "otp:metrics:24"

Usage:
    from backend.app.core.cache import cached

    data, hit = await cached("metrics:24", lambda: ledger.get_metrics(24), ttl=30)
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Optional, Tuple

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

# Lazy Redis client, created on first use
_redis_client = None


def _ns(key: str) -> str:
    return f"{settings.REDIS_KEY_PREFIX}:{key}"


async def _get_redis():
    global _redis_client
    if not settings.REDIS_ENABLED:
        return None
    if _redis_client is None:
        try:
            import redis.asyncio as aioredis
            _redis_client = aioredis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=1.0,
                socket_connect_timeout=1.0,
            )
            logger.info("Redis client created: %s", settings.REDIS_URL.split("@")[-1])
        except Exception as e:
            logger.warning("Redis unavailable, metrics cache disabled: %s", e)
            return None
    return _redis_client


async def cache_get(key: str) -> Optional[Any]:
    """Decoded value for `key`, or None on miss or error."""
    client = await _get_redis()
    if not client:
        return None
    try:
        raw = await client.get(_ns(key))
    except Exception as e:
        logger.warning("Cache GET %s failed: %s", key, e)
        return None
    return json.loads(raw) if raw is not None else None


async def cache_set(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    client = await _get_redis()
    if not client:
        return False
    try:
        await client.set(_ns(key), json.dumps(value, default=str), ex=ttl or settings.REDIS_CACHE_TTL)
    except Exception as e:
        logger.warning("Cache SET %s failed: %s", key, e)
        return False
    return True


async def cached(
    key: str,
    loader: Callable[[], Awaitable[Any]],
    ttl: Optional[int] = None,
) -> Tuple[Any, bool]:
    """Read-through helper. Returns (value, served_from_cache)."""
    hit = await cache_get(key)
    if hit is not None:
        return hit, True
    value = await loader()
    await cache_set(key, value, ttl)
    return value, False


async def ping_redis() -> bool:
    """True when Redis answers PING."""
    client = await _get_redis()
    if not client:
        return False
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.warning("Redis PING failed: %s", e)
        return False


async def close_redis() -> None:
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
