"""
Fixed-window rate limiting per caller, counted in Redis.

INCR the caller's counter; the first increment arms the window expiry.
When the key expires the next INCR starts a fresh window, so no
background sweep is needed. A Redis failure never blocks a request.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after: int | None = None
    count: int | None = None


class RateLimiter:
    def __init__(self, redis: aioredis.Redis, window_ms: int = 60000, max_requests: int = 60):
        self.redis = redis
        self.window_ms = window_ms
        self.max_requests = max_requests

    @staticmethod
    def key(caller_id: str) -> str:
        return f"rate_limit:{caller_id}"

    async def check(self, caller_id: str) -> RateLimitDecision:
        key = self.key(caller_id)
        try:
            current = await self.redis.incr(key)
            if current == 1:
                await self.redis.pexpire(key, self.window_ms)

            if current <= self.max_requests:
                return RateLimitDecision(allowed=True, count=current)

            ttl_ms = await self.redis.pttl(key)
            if ttl_ms is None or ttl_ms < 0:
                # Counter lost its expiry (e.g. PEXPIRE never landed); re-arm it.
                await self.redis.pexpire(key, self.window_ms)
                ttl_ms = self.window_ms
            retry_after = max(1, math.ceil(ttl_ms / 1000))
            logger.info(f"Rate limit exceeded for {caller_id}: {current}/{self.max_requests}")
            return RateLimitDecision(allowed=False, retry_after=retry_after, count=current)
        except (RedisError, OSError) as e:
            logger.error(f"Error checking rate limit for {caller_id}, allowing request: {e}")
            return RateLimitDecision(allowed=True)
