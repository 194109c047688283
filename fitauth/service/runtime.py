from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from fitauth.config import Settings, get_settings
from fitauth.logging import get_logger
from fitauth.service.audit import AuditLogger
from fitauth.service.credentials import CredentialVerifier
from fitauth.service.rate_limit import RateLimiter
from fitauth.service.tokens import TokenService
from fitauth.service.two_factor import TwoFactorService
from fitauth.storage.common import AuthStore
from fitauth.storage.memory import MemoryStore
from fitauth.storage.postgres import PostgresStore
from fitauth.storage.redis_cache import CacheBackend, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Wires settings, store, cache and the auth services for one app instance.

    ``create_app`` builds one and stores it on ``app.state.runtime``; tests
    construct their own with a ``MemoryStore`` and an injected clock.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        cache: CacheBackend = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            environment=self.settings.environment.value,
        )
        self.store: AuthStore = store or self._build_store()
        self.cache = cache if cache is not None else self._build_cache()

        self.audit = AuditLogger(self.store)
        self.credentials = CredentialVerifier(
            self.store, self.settings, self.audit, clock=clock
        )
        self.tokens = TokenService(
            self.store, self.settings, self.audit, self.cache, clock=clock
        )
        self.two_factor = TwoFactorService(
            self.store, self.settings, self.audit, self.credentials, clock=clock
        )
        self.rate_limiter = RateLimiter(self.cache)

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            redis_enabled=self.cache is not None,
            rate_limit_enabled=self.settings.rate_limit_enabled,
        )

    def _build_store(self) -> AuthStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> CacheBackend:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client under tests avoids binding connections to a throwaway loop
                cache = (
                    SyncRedisCache(self.settings.redis_url)
                    if self.settings.test_mode
                    else RedisCache(self.settings.redis_url)
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limits and refresh revocation marks; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limits are per-process "
                "and refresh revocation relies on the store alone."
            ),
            mode=fallback_mode,
        )
        return None

    async def close(self) -> None:
        if self.cache is not None:
            try:
                await self.cache.close()
            except Exception as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))
        if isinstance(self.store, PostgresStore):
            self.store.close()
