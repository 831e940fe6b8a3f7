"""Redis-based guard against double-submitted requests."""

import logging

import redis.asyncio as aioredis

from coffee_contracts.core.config import settings

logger = logging.getLogger(__name__)

_redis: aioredis.Redis | None = None


async def _get_redis() -> aioredis.Redis:
    global _redis
    if _redis is None:
        _redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def check_idempotency(key: str, ttl: int = 300) -> bool:
    """Return True if this is the first call with this key (proceed).

    Return False if a duplicate (skip). Redis outages let the call through;
    the contract version check still rejects a real double write.
    """
    try:
        r = await _get_redis()
        was_set = await r.set(f"idempotent:{key}", "1", nx=True, ex=ttl)
        return bool(was_set)
    except Exception:
        logger.exception("Idempotency check failed for key=%s, allowing through", key)
        return True


async def release_idempotency(key: str) -> None:
    """Drop a guard so the caller can resubmit after a rejected request."""
    try:
        r = await _get_redis()
        await r.delete(f"idempotent:{key}")
    except Exception:
        logger.exception("Idempotency release failed for key=%s", key)
