from __future__ import annotations

import math
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from fitauth.config import Role, Settings
from fitauth.logging import get_logger
from fitauth.service.audit import AuditLogger
from fitauth.service.errors import (
    AccountLockedError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ValidationError,
)
from fitauth.storage.common import AuthStore, hash_token
from fitauth.storage.errors import ConstraintViolation
from fitauth.storage.models import User, utcnow

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6
SELF_ASSIGNABLE_ROLES = {Role.CLIENT.value, Role.TRAINER.value}


class CredentialVerifier:
    """Email/password checks with lock-out, plus registration and password reset."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        audit: AuditLogger,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self._clock = clock or utcnow
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        """Compare ``password`` with the stored argon2id hash; never raises on mismatch."""
        if not user.password_hash:
            self.logger.warning("password_record_missing", user_id=user.id)
            return False
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def verify(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        """Check credentials and return the user.

        Raises NotFoundError for an unknown email; the HTTP layer must turn it
        into the same generic message as a wrong password.
        """
        user = self.store.get_user_by_email(email)
        if not user:
            await self.audit.record(
                "login_failed",
                success=False,
                new_values={"email": email},
                ip_address=ip_address,
                user_agent=user_agent,
                error_message="User not found",
            )
            raise NotFoundError("User not found")

        now = self._now()
        if user.is_locked(now):
            retry_after = max(1, math.ceil((user.lockout_until - now).total_seconds()))
            minutes = max(1, math.ceil(retry_after / 60))
            await self.audit.record(
                "login_locked",
                user_id=user.id,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message="Account locked",
            )
            raise AccountLockedError(
                f"Account is locked. Try again in {minutes} minutes.",
                retry_after=retry_after,
            )

        if not self.verify_password(user, password):
            updated = self.store.record_failed_login(
                user.id,
                max_attempts=self.settings.max_login_attempts,
                lockout_until=now + timedelta(minutes=self.settings.lockout_time_minutes),
            )
            attempts = updated.login_attempts if updated else user.login_attempts + 1
            if updated and updated.is_locked(now):
                self.logger.warning("account_locked", user_id=user.id, attempts=attempts)
            await self.audit.record(
                "login_failed",
                user_id=user.id,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message=(
                    f"Invalid password (attempt {attempts}/{self.settings.max_login_attempts})"
                ),
            )
            raise InvalidCredentialsError()

        if not user.is_active:
            await self.audit.record(
                "login_failed",
                user_id=user.id,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message="Account inactive",
            )
            raise InvalidCredentialsError()

        refreshed = self.store.record_successful_login(user.id, now=now) or user
        await self.audit.record(
            "login_success",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return refreshed

    async def register(
        self,
        email: str,
        password: str,
        name: str,
        *,
        role: str = Role.CLIENT.value,
        phone: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        self._validate_password(password)
        role = (role or Role.CLIENT.value).upper()
        if role not in SELF_ASSIGNABLE_ROLES:
            raise ValidationError(
                "Invalid role", detail={"field": "role", "allowed": sorted(SELF_ASSIGNABLE_ROLES)}
            )
        if not name or not name.strip():
            raise ValidationError("Name is required", detail={"field": "name"})
        try:
            user = self.store.create_user(
                email, self.hash_password(password), name.strip(), role=role, phone=phone
            )
        except ConstraintViolation as exc:
            raise ConflictError("User already exists", detail={"field": exc.field or "email"})
        await self.audit.record(
            "user_registered",
            user_id=user.id,
            entity_type="User",
            entity_id=user.id,
            new_values={"email": user.email, "name": user.name, "role": user.role},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        self.logger.info("user_registered", user_id=user.id, role=user.role)
        return user

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Store a hashed one-time reset token and return the raw token for delivery."""
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email")
            raise NotFoundError("User not found")
        token = secrets.token_hex(32)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.set_password_reset_token(user.id, hash_token(token), expires_at)
        await self.audit.record(
            "password_reset_requested",
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return token

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        self._validate_password(new_password)
        user = self.store.get_user_by_reset_token(hash_token(token)) if token else None
        now = self._now()
        if not user or not user.password_reset_expiry or user.password_reset_expiry <= now:
            self.logger.warning("password_reset_invalid_token", token_prefix=(token or "")[:8])
            raise InvalidTokenError("Invalid or expired reset token")
        updated = self.store.update_password(user.id, self.hash_password(new_password)) or user
        revoked = self.store.revoke_user_refresh_tokens(user.id, now=now)
        await self.audit.record(
            "password_reset",
            user_id=user.id,
            entity_type="User",
            entity_id=user.id,
            new_values={"revokedSessions": len(revoked)},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return updated

    @staticmethod
    def _validate_password(password: str) -> None:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
