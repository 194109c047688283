import pytest

from fitauth.service.rate_limit import (
    RATE_LIMIT_PRESETS,
    RateLimiter,
    RateLimitResult,
    RateLimitRule,
)


class SteppingClock:
    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCache:
    """Records calls made to the Redis-backed limiter surface."""

    def __init__(self, response=(True, 4, 0)):
        self.response = response
        self.hits = []
        self.resets = []

    async def fixed_window_hit(self, action, identifier, *, points, duration, block_duration=0):
        self.hits.append((action, identifier, points, duration, block_duration))
        return self.response

    async def reset_rate_limit(self, action, identifier):
        self.resets.append((action, identifier))


def test_presets_match_documented_windows():
    assert RATE_LIMIT_PRESETS["login"] == RateLimitRule(5, 900, 900)
    assert RATE_LIMIT_PRESETS["register"] == RateLimitRule(3, 3600, 3600)
    assert RATE_LIMIT_PRESETS["twoFactor"] == RateLimitRule(10, 300, 900)
    assert RATE_LIMIT_PRESETS["api"].points == 100


class TestMemoryLimiter:
    async def test_allows_up_to_points_then_blocks(self):
        clock = SteppingClock()
        limiter = RateLimiter(rules={"login": RateLimitRule(3, 60, 120)}, clock=clock)

        results = [await limiter.check("login", "10.0.0.1") for _ in range(3)]
        assert [r.allowed for r in results] == [True, True, True]
        assert [r.remaining for r in results] == [2, 1, 0]

        blocked = await limiter.check("login", "10.0.0.1")
        assert blocked.allowed is False
        assert blocked.retry_after_seconds == 120

    async def test_block_outlasts_window(self):
        clock = SteppingClock()
        limiter = RateLimiter(rules={"login": RateLimitRule(1, 60, 300)}, clock=clock)
        await limiter.check("login", "ip")
        assert not (await limiter.check("login", "ip")).allowed

        clock.advance(90)
        still_blocked = await limiter.check("login", "ip")
        assert still_blocked.allowed is False
        assert still_blocked.retry_after_seconds == 210

        clock.advance(210)
        assert (await limiter.check("login", "ip")).allowed

    async def test_window_resets_without_block(self):
        clock = SteppingClock()
        limiter = RateLimiter(rules={"api": RateLimitRule(2, 60)}, clock=clock)
        await limiter.check("api", "u")
        await limiter.check("api", "u")
        clock.advance(15)
        denied = await limiter.check("api", "u")
        assert denied.allowed is False
        assert denied.retry_after_seconds == 45

        clock.advance(45)
        assert (await limiter.check("api", "u")).allowed

    async def test_identifiers_and_actions_are_independent(self):
        limiter = RateLimiter(
            rules={"login": RateLimitRule(1, 60), "register": RateLimitRule(1, 60)},
            clock=SteppingClock(),
        )
        assert (await limiter.check("login", "a")).allowed
        assert (await limiter.check("login", "b")).allowed
        assert (await limiter.check("register", "a")).allowed
        assert not (await limiter.check("login", "a")).allowed

    async def test_reset_clears_counter(self):
        limiter = RateLimiter(rules={"login": RateLimitRule(1, 60, 60)}, clock=SteppingClock())
        await limiter.check("login", "ip")
        assert not (await limiter.check("login", "ip")).allowed
        await limiter.reset("login", "ip")
        assert (await limiter.check("login", "ip")).allowed

    async def test_unknown_action(self):
        limiter = RateLimiter()
        with pytest.raises(KeyError):
            await limiter.check("nope", "x")

    async def test_invalid_window_falls_back_to_a_minute(self):
        clock = SteppingClock()
        limiter = RateLimiter(rules={"odd": RateLimitRule(1, 0)}, clock=clock)
        assert limiter.rule_for("odd").duration == 60
        await limiter.check("odd", "x")
        denied = await limiter.check("odd", "x")
        assert denied.retry_after_seconds == 60


class TestCacheBackedLimiter:
    async def test_delegates_to_cache(self):
        cache = FakeCache(response=(False, 0, 42))
        limiter = RateLimiter(cache=cache)

        result = await limiter.check("login", "10.1.1.1")

        assert cache.hits == [("login", "10.1.1.1", 5, 900, 900)]
        assert result == RateLimitResult(
            allowed=False, remaining=0, retry_after_seconds=42, limit=5
        )

    async def test_reset_delegates_to_cache(self):
        cache = FakeCache()
        limiter = RateLimiter(cache=cache)
        await limiter.reset("login", "ip")
        assert cache.resets == [("login", "ip")]


class TestHeaders:
    def test_allowed_headers(self):
        headers = RateLimitResult(True, 3, 0, 5).headers()
        assert headers == {"X-RateLimit-Limit": "5", "X-RateLimit-Remaining": "3"}

    def test_denied_headers_include_retry_after(self):
        headers = RateLimitResult(False, 0, 30, 5).headers()
        assert headers["Retry-After"] == "30"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert int(headers["X-RateLimit-Reset"]) > 0
