from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from fitauth.logging import get_logger

logger = get_logger(__name__)


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


class Role(str, Enum):
    """Account roles on the scheduling platform."""

    CLIENT = "CLIENT"
    TRAINER = "TRAINER"
    ADMIN = "ADMIN"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    app_name: str = env_field(
        "Fitness Scheduler", "APP_NAME", description="Issuer shown in authenticator apps"
    )
    database_url: str = env_field(
        "postgresql://localhost:5432/fitauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    secrets_dir: str = env_field("/srv/fitauth", "SECRETS_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits running without Redis.",
    )
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(
        None, "JWT_REFRESH_SECRET", validate_default=True
    )
    jwt_algorithm: str = env_field("HS256", "JWT_ALGORITHM")
    access_token_ttl_minutes: int = env_field(
        60, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime in minutes"
    )
    refresh_token_ttl_days: int = env_field(7, "REFRESH_TOKEN_TTL_DAYS")
    refresh_token_remember_days: int = env_field(
        30,
        "REFRESH_TOKEN_REMEMBER_DAYS",
        description="Refresh token lifetime when the user ticks 'remember me'",
    )
    rotate_refresh_tokens: bool = env_field(False, "ROTATE_REFRESH_TOKENS")
    encryption_key: str | None = env_field(
        None, "ENCRYPTION_KEY", description="Key material for two-factor secrets at rest"
    )

    max_login_attempts: int = env_field(5, "MAX_LOGIN_ATTEMPTS")
    lockout_time_minutes: int = env_field(15, "LOCKOUT_TIME_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    rate_limit_enabled: bool = env_field(
        True,
        "RATE_LIMIT_ENABLED",
        description="Enforce per-route rate limits; the limiter itself is always available",
    )
    totp_valid_window: int = env_field(2, "TOTP_VALID_WINDOW")
    backup_code_count: int = env_field(8, "BACKUP_CODE_COUNT")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    def refresh_token_ttl_seconds(self, remember_me: bool = False) -> int:
        days = self.refresh_token_remember_days if remember_me else self.refresh_token_ttl_days
        return days * 24 * 60 * 60

    @field_validator("environment", mode="before")
    @classmethod
    def _validate_environment(cls, value: Any) -> Environment:
        if isinstance(value, str):
            value = value.strip().lower()
        return Environment(value)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return list(value)

    @field_validator("max_login_attempts", "lockout_time_minutes", "access_token_ttl_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info) -> str:
        if value:
            if len(value) < 32:
                logger.warning("jwt_secret_short", field=info.field_name, length=len(value))
            return value
        if info.data.get("environment") == Environment.PRODUCTION:
            raise ValueError(f"{info.field_name.upper()} must be set in production")
        return _load_or_create_secret(
            info.field_name, info.data.get("secrets_dir") or "/srv/fitauth"
        )


def _load_or_create_secret(name: str, directory: str) -> str:
    """Persist a generated secret so tokens survive a restart in development."""
    secrets_dir = Path(directory)
    secret_path = secrets_dir / f".{name}"
    try:
        secrets_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(secrets_dir, 0o700)
    except PermissionError:
        pass
    except OSError as exc:
        logger.warning("secret_dir_setup_failed", error=str(exc), path=str(secrets_dir))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= 32:
                return persisted
        except OSError as exc:
            logger.error("secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(secrets_dir), prefix=f".{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.warning(
            "secret_persist_failed",
            error=str(exc),
            path=str(secret_path),
            message="Using an ephemeral secret; issued tokens will not survive a restart",
        )
    return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
