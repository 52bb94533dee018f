"""Fixed-window rate limiting.

Abuse guard for endpoints that trigger chain RPC calls and ledger writes
(payment verification). Not a correctness mechanism: exactly-once crediting
is enforced by the ledger's unique constraints.

Two interchangeable stores:
  - RedisRateLimiter: INCR + EXPIRE per window, shared across workers.
  - InMemoryRateLimiter: per-process dict with an injectable clock, for
    local dev and tests.

Key pattern: "ratelimit:{scope}:{identifier}"
"""

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import redis.asyncio as aioredis

from src.cl_common.errors import RateLimitError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds

    def raise_if_denied(self, now: float) -> None:
        if self.allowed:
            return
        retry_after = max(1, math.ceil(self.reset_at - now))
        raise RateLimitError(
            limit=self.limit, retry_after=retry_after, reset_at=int(self.reset_at)
        )


class RateLimiterProtocol(Protocol):
    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision: ...


class RedisRateLimiter:
    def __init__(
        self,
        redis: aioredis.Redis,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._clock = clock

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        count = int(await self._redis.incr(key))
        if count == 1:
            await self._redis.expire(key, window_seconds)
            ttl = window_seconds
        else:
            ttl = int(await self._redis.ttl(key))
            if ttl < 0:
                # Key lost its expiry (crash between INCR and EXPIRE)
                await self._redis.expire(key, window_seconds)
                ttl = window_seconds
        reset_at = self._clock() + ttl
        if count > limit:
            return RateLimitDecision(False, limit, 0, reset_at)
        return RateLimitDecision(True, limit, limit - count, reset_at)


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._windows: dict[str, _Window] = {}

    async def hit(self, key: str, limit: int, window_seconds: int) -> RateLimitDecision:
        now = self._clock()
        self._evict_expired(now)
        window = self._windows.get(key)
        if window is None:
            window = _Window(count=1, reset_at=now + window_seconds)
            self._windows[key] = window
            return RateLimitDecision(True, limit, limit - 1, window.reset_at)

        if window.count >= limit:
            return RateLimitDecision(False, limit, 0, window.reset_at)

        window.count += 1
        return RateLimitDecision(True, limit, limit - window.count, window.reset_at)

    def _evict_expired(self, now: float) -> None:
        expired = [k for k, w in self._windows.items() if w.reset_at <= now]
        for k in expired:
            del self._windows[k]


class RateLimitGuard:
    """Callable guard: `await guard.check("verify", user_id)`."""

    def __init__(
        self,
        limiter: RateLimiterProtocol,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._limiter = limiter
        self._limit = limit
        self._window = window_seconds
        self._clock = clock

    async def check(self, scope: str, identifier: str) -> RateLimitDecision:
        decision = await self._limiter.hit(
            f"ratelimit:{scope}:{identifier}", self._limit, self._window
        )
        if not decision.allowed:
            logger.warning("Rate limit exceeded: scope=%s id=%s", scope, identifier)
        decision.raise_if_denied(self._clock())
        return decision
