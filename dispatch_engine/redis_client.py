import redis.asyncio as redis

from dispatch_engine.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    global _redis
    if _redis is None:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


async def claim_idempotency_key(r: redis.Redis, key: str, value: str, ttl_seconds: int = 86400) -> str | None:
    """
    SET key value NX. Returns None if we claimed the key (first request),
    otherwise the value stored by the earlier request.
    """
    was_set = await r.set(key, value, nx=True, ex=ttl_seconds)
    if was_set:
        return None
    return await r.get(key)
