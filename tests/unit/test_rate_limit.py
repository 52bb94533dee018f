"""Fixed-window rate limiter tests."""

import pytest

from src.cl_common.errors import RateLimitError
from src.cl_gateway.middleware.rate_limit import (
    InMemoryRateLimiter,
    RateLimitGuard,
    RedisRateLimiter,
)


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeRedis:
    """INCR / EXPIRE / TTL subset of redis.asyncio.Redis."""

    def __init__(self) -> None:
        self.counts: dict[str, int] = {}
        self.ttls: dict[str, int] = {}

    async def incr(self, key: str) -> int:
        self.counts[key] = self.counts.get(key, 0) + 1
        return self.counts[key]

    async def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return True

    async def ttl(self, key: str) -> int:
        return self.ttls.get(key, -1)


class TestInMemory:
    async def test_allows_up_to_limit(self) -> None:
        limiter = InMemoryRateLimiter(clock=FakeClock())
        decisions = [await limiter.hit("k", 3, 60) for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert [d.remaining for d in decisions] == [2, 1, 0, 0]

    async def test_window_resets(self) -> None:
        clock = FakeClock()
        limiter = InMemoryRateLimiter(clock=clock)
        await limiter.hit("k", 1, 60)
        assert not (await limiter.hit("k", 1, 60)).allowed

        clock.now += 60
        assert (await limiter.hit("k", 1, 60)).allowed

    async def test_keys_are_independent(self) -> None:
        limiter = InMemoryRateLimiter(clock=FakeClock())
        await limiter.hit("a", 1, 60)
        assert (await limiter.hit("b", 1, 60)).allowed


class TestRedis:
    async def test_first_hit_sets_expiry(self) -> None:
        redis = FakeRedis()
        limiter = RedisRateLimiter(redis, clock=FakeClock())  # type: ignore[arg-type]

        decision = await limiter.hit("ratelimit:verify:u1", 10, 60)

        assert decision.allowed
        assert decision.remaining == 9
        assert redis.ttls["ratelimit:verify:u1"] == 60

    async def test_denies_over_limit(self) -> None:
        limiter = RedisRateLimiter(FakeRedis(), clock=FakeClock())  # type: ignore[arg-type]
        for _ in range(2):
            await limiter.hit("k", 2, 60)

        decision = await limiter.hit("k", 2, 60)

        assert not decision.allowed
        assert decision.reset_at == 1_060.0

    async def test_restores_lost_expiry(self) -> None:
        redis = FakeRedis()
        redis.counts["k"] = 5
        limiter = RedisRateLimiter(redis, clock=FakeClock())  # type: ignore[arg-type]

        await limiter.hit("k", 10, 30)

        assert redis.ttls["k"] == 30


class TestGuard:
    async def test_raises_with_retry_after(self) -> None:
        clock = FakeClock()
        guard = RateLimitGuard(InMemoryRateLimiter(clock=clock), 1, 60, clock=clock)
        await guard.check("verify", "user-1")

        clock.now += 15
        with pytest.raises(RateLimitError) as exc_info:
            await guard.check("verify", "user-1")

        err = exc_info.value
        assert err.http_status == 429
        assert err.headers is not None
        assert err.headers["Retry-After"] == "45"
        assert err.headers["X-RateLimit-Limit"] == "1"

    async def test_scoped_per_user(self) -> None:
        clock = FakeClock()
        guard = RateLimitGuard(InMemoryRateLimiter(clock=clock), 1, 60, clock=clock)
        await guard.check("verify", "user-1")
        decision = await guard.check("verify", "user-2")
        assert decision.allowed
