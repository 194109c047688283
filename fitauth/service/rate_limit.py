from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from fitauth.logging import get_logger
from fitauth.storage.redis_cache import CacheBackend

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    points: int
    duration: int
    block_duration: int = 0


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int
    limit: int

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
            headers["X-RateLimit-Reset"] = str(int(time.time()) + self.retry_after_seconds)
        return headers


RATE_LIMIT_PRESETS: Dict[str, RateLimitRule] = {
    "login": RateLimitRule(points=5, duration=900, block_duration=900),
    "register": RateLimitRule(points=3, duration=3600, block_duration=3600),
    "passwordReset": RateLimitRule(points=3, duration=3600, block_duration=3600),
    "twoFactor": RateLimitRule(points=10, duration=300, block_duration=900),
    "api": RateLimitRule(points=100, duration=60, block_duration=60),
    "sensitive": RateLimitRule(points=20, duration=60, block_duration=300),
}


@dataclass
class _Window:
    consumed: int
    resets_at: float
    blocked_until: float = 0.0


class RateLimiter:
    """Fixed-window counter keyed by (action, identifier) with a block period.

    Once a window overflows, the identifier is blocked for the rule's
    ``block_duration`` regardless of window boundaries. Redis is used when a
    cache is supplied; otherwise counters live in this process.
    """

    def __init__(
        self,
        cache: CacheBackend = None,
        rules: Optional[Mapping[str, RateLimitRule]] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.rules: Dict[str, RateLimitRule] = dict(rules or RATE_LIMIT_PRESETS)
        self._clock = clock
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._lock = asyncio.Lock()
        self.logger = logger

    def rule_for(self, action: str) -> RateLimitRule:
        rule = self.rules.get(action)
        if rule is None:
            raise KeyError(f"unknown rate limit action: {action}")
        if rule.duration <= 0 or rule.points <= 0:
            self.logger.warning(
                "rate_limit_invalid_window",
                action=action,
                points=rule.points,
                duration=rule.duration,
            )
            rule = RateLimitRule(
                points=max(1, rule.points), duration=60, block_duration=rule.block_duration
            )
        return rule

    async def check(self, action: str, identifier: str) -> RateLimitResult:
        """Consume one point for ``identifier`` under ``action``."""
        rule = self.rule_for(action)
        if self.cache:
            allowed, remaining, retry_after = await self.cache.fixed_window_hit(
                action,
                identifier,
                points=rule.points,
                duration=rule.duration,
                block_duration=rule.block_duration,
            )
        else:
            allowed, remaining, retry_after = await self._memory_hit(action, identifier, rule)
        if not allowed:
            self.logger.warning(
                "rate_limit_exceeded",
                action=action,
                identifier=identifier,
                retry_after=retry_after,
            )
        return RateLimitResult(
            allowed=allowed,
            remaining=remaining,
            retry_after_seconds=retry_after,
            limit=rule.points,
        )

    async def reset(self, action: str, identifier: str) -> None:
        if self.cache:
            await self.cache.reset_rate_limit(action, identifier)
            return
        async with self._lock:
            self._windows.pop((action, identifier), None)

    async def _memory_hit(
        self, action: str, identifier: str, rule: RateLimitRule
    ) -> Tuple[bool, int, int]:
        now = self._clock()
        key = (action, identifier)
        async with self._lock:
            self._prune(now)
            window = self._windows.get(key)
            if window and window.blocked_until > now:
                return False, 0, math.ceil(window.blocked_until - now)
            if window is None or window.resets_at <= now:
                window = _Window(consumed=0, resets_at=now + rule.duration)
                self._windows[key] = window
            window.consumed += 1
            if window.consumed <= rule.points:
                return True, rule.points - window.consumed, 0
            if rule.block_duration > 0:
                window.blocked_until = now + rule.block_duration
                window.resets_at = window.blocked_until
                return False, 0, rule.block_duration
            return False, 0, max(1, math.ceil(window.resets_at - now))

    def _prune(self, now: float) -> None:
        expired = [
            key
            for key, window in self._windows.items()
            if window.resets_at <= now and window.blocked_until <= now
        ]
        for key in expired:
            del self._windows[key]
