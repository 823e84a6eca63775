"""
Token-bucket rate limiting keyed by caller identity (courier id for location pings).

A bucket holds up to `capacity` tokens and refills at `per_minute / 60` tokens
per second. Each request takes one token; an empty bucket yields a retry-after
hint in whole seconds.
"""
import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import redis.asyncio as redis

TOKEN_BUCKET_LUA = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local t = redis.call('TIME')
local now = tonumber(t[1]) + tonumber(t[2]) / 1000000
local state = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(state[1])
local ts = tonumber(state[2])
if tokens == nil or ts == nil then
  tokens = capacity
  ts = now
end
tokens = math.min(capacity, tokens + math.max(0, now - ts) * rate)
local allowed = 0
local retry_after = 0
if tokens >= 1 then
  tokens = tokens - 1
  allowed = 1
else
  retry_after = math.ceil((1 - tokens) / rate)
end
redis.call('HSET', key, 'tokens', tostring(tokens), 'ts', tostring(now))
redis.call('EXPIRE', key, math.ceil(capacity / rate) + 1)
return {allowed, retry_after}
"""


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after: int = 0


class RateLimiter(ABC):
    def __init__(self, per_minute: int, burst: int | None = None):
        if per_minute <= 0:
            raise ValueError("per_minute must be positive")
        self.capacity = burst or per_minute
        self.rate = per_minute / 60.0

    @abstractmethod
    async def hit(self, key: str) -> RateLimitDecision: ...


class InMemoryRateLimiter(RateLimiter):
    def __init__(self, per_minute: int, burst: int | None = None, clock=time.monotonic, max_keys: int = 10000):
        super().__init__(per_minute, burst)
        self._clock = clock
        self._max_keys = max_keys
        self._buckets: dict[str, tuple[float, float]] = {}

    def _prune(self, now: float) -> None:
        """Forget buckets that have refilled completely; they behave like new ones."""
        for key, (tokens, ts) in list(self._buckets.items()):
            if tokens + (now - ts) * self.rate >= self.capacity:
                del self._buckets[key]

    async def hit(self, key: str) -> RateLimitDecision:
        now = self._clock()
        if len(self._buckets) > self._max_keys:
            self._prune(now)
        tokens, ts = self._buckets.get(key, (float(self.capacity), now))
        tokens = min(self.capacity, tokens + max(0.0, now - ts) * self.rate)
        if tokens >= 1:
            self._buckets[key] = (tokens - 1, now)
            return RateLimitDecision(True)
        self._buckets[key] = (tokens, now)
        return RateLimitDecision(False, max(1, math.ceil((1 - tokens) / self.rate)))


class RedisRateLimiter(RateLimiter):
    """Bucket state lives in a Redis hash so every API instance shares it."""

    def __init__(self, r: redis.Redis, per_minute: int, burst: int | None = None, prefix: str = "ratelimit"):
        super().__init__(per_minute, burst)
        self._redis = r
        self._prefix = prefix
        self._script = r.register_script(TOKEN_BUCKET_LUA)

    async def hit(self, key: str) -> RateLimitDecision:
        allowed, retry_after = await self._script(keys=[f"{self._prefix}:{key}"], args=[self.capacity, self.rate])
        return RateLimitDecision(bool(int(allowed)), int(retry_after))
