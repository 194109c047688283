from __future__ import annotations

import hashlib
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import jwt

from fitauth.config import Settings
from fitauth.logging import get_logger
from fitauth.service.audit import AuditLogger
from fitauth.service.errors import AuthenticationError, InvalidTokenError, TokenExpiredError
from fitauth.storage.common import AuthStore, hash_token
from fitauth.storage.models import RefreshToken, User, utcnow
from fitauth.storage.redis_cache import CacheBackend

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


def generate_device_id(user_agent: Optional[str], ip_address: Optional[str]) -> str:
    """Stable 16 hex char fingerprint of a client's user agent and address."""
    material = f"{user_agent or ''}{ip_address or ''}"
    return hashlib.sha256(material.encode()).hexdigest()[:16]


def access_claims_for(user: User, device_id: Optional[str] = None) -> dict[str, Any]:
    claims: dict[str, Any] = {"userId": user.id, "email": user.email, "role": user.role}
    if device_id:
        claims["deviceId"] = device_id
    return claims


@dataclass
class IssuedTokens:
    access_token: str
    refresh_token: str
    access_max_age: int
    refresh_max_age: int
    device_id: str


@dataclass
class RefreshResult:
    user: User
    access_token: str
    access_max_age: int
    # only set when the refresh token was rotated
    refresh_token: Optional[str] = None
    refresh_max_age: Optional[int] = None


class TokenService:
    """Issues, verifies, refreshes and revokes access/refresh token pairs.

    Access tokens are stateless JWTs validated by signature and expiry only.
    Refresh tokens are JWTs signed with their own secret whose SHA-256 digest
    is persisted so they can be revoked server-side.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        audit: AuditLogger,
        cache: CacheBackend = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.cache = cache
        self._clock = clock or utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # access tokens
    def issue_access_token(self, payload: dict[str, Any]) -> str:
        now = self._now()
        claims = dict(payload)
        claims["tokenType"] = ACCESS_TOKEN_TYPE
        claims["iat"] = int(now.timestamp())
        claims["exp"] = claims["iat"] + self.settings.access_token_ttl_seconds
        return jwt.encode(
            claims, self.settings.jwt_secret, algorithm=self.settings.jwt_algorithm
        )

    def verify(self, token: str) -> dict[str, Any]:
        """Return the decoded claims of a valid access token.

        Expiry is compared against the injected clock so a token is rejected
        at exactly ``exp``, without PyJWT's wall-clock check or leeway.
        """
        if not token:
            raise InvalidTokenError()
        claims = self._decode(token, self.settings.jwt_secret)
        if claims.get("tokenType") != ACCESS_TOKEN_TYPE:
            raise InvalidTokenError()
        self._check_expiry(claims)
        return claims

    def _decode(self, token: str, secret: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                secret,
                algorithms=[self.settings.jwt_algorithm],
                options={"verify_exp": False, "verify_iat": False, "require": ["exp"]},
            )
        except jwt.InvalidTokenError as exc:
            self.logger.info("jwt_decode_failed", reason=type(exc).__name__)
            raise InvalidTokenError()

    def _check_expiry(self, claims: dict[str, Any]) -> None:
        try:
            exp = float(claims["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError()
        if self._now().timestamp() >= exp:
            raise TokenExpiredError()

    # refresh tokens
    def issue_refresh_token(
        self,
        user: User,
        remember_me: bool = False,
        device_id: Optional[str] = None,
        device_info: Optional[dict[str, Any]] = None,
    ) -> tuple[str, RefreshToken]:
        now = self._now()
        ttl_seconds = self.settings.refresh_token_ttl_seconds(remember_me)
        jti = str(uuid.uuid4())
        iat = int(now.timestamp())
        token = jwt.encode(
            {
                "userId": user.id,
                "tokenType": REFRESH_TOKEN_TYPE,
                "rememberMe": bool(remember_me),
                "jti": jti,
                "iat": iat,
                "exp": iat + ttl_seconds,
            },
            self.settings.jwt_refresh_secret,
            algorithm=self.settings.jwt_algorithm,
        )
        record = RefreshToken.new(
            user.id,
            hash_token(token),
            jti,
            now + timedelta(seconds=ttl_seconds),
            device_id=device_id,
            device_info=device_info,
        )
        self.store.create_refresh_token(record)
        return token, record

    def issue_login_tokens(
        self,
        user: User,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedTokens:
        device_id = generate_device_id(user_agent, ip_address)
        access_token = self.issue_access_token(access_claims_for(user, device_id))
        refresh_token, _ = self.issue_refresh_token(
            user,
            remember_me,
            device_id,
            {"userAgent": user_agent, "ipAddress": ip_address},
        )
        return IssuedTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            access_max_age=self.settings.access_token_ttl_seconds,
            refresh_max_age=self.settings.refresh_token_ttl_seconds(remember_me),
            device_id=device_id,
        )

    async def refresh(
        self,
        refresh_token: str,
        *,
        rotate: Optional[bool] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshResult:
        if not refresh_token:
            raise InvalidTokenError("Invalid refresh token")
        rotate = self.settings.rotate_refresh_tokens if rotate is None else rotate
        try:
            claims = self._decode(refresh_token, self.settings.jwt_refresh_secret)
        except InvalidTokenError:
            raise InvalidTokenError("Invalid refresh token")
        jti = claims.get("jti")
        if claims.get("tokenType") != REFRESH_TOKEN_TYPE or not jti:
            raise InvalidTokenError("Invalid refresh token")
        if await self._is_marked_revoked(jti):
            self.logger.info("refresh_token_rejected", reason="revoked_cache")
            raise InvalidTokenError("Invalid refresh token")

        now = self._now()
        record = self.store.get_refresh_token(hash_token(refresh_token))
        if not record or record.jti != jti or not record.is_usable(now):
            self.logger.info(
                "refresh_token_rejected",
                reason="missing" if not record else "revoked_or_expired",
            )
            raise InvalidTokenError("Invalid refresh token")
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            raise InvalidTokenError("Invalid refresh token")

        result = RefreshResult(
            user=user,
            access_token=self.issue_access_token(access_claims_for(user, record.device_id)),
            access_max_age=self.settings.access_token_ttl_seconds,
        )
        if rotate:
            remember_me = bool(claims.get("rememberMe"))
            if not await self._revoke_record(record):
                # another worker rotated this token first
                self.logger.info("refresh_token_rejected", reason="already_rotated")
                raise InvalidTokenError("Invalid refresh token")
            result.refresh_token, _ = self.issue_refresh_token(
                user, remember_me, record.device_id, record.device_info
            )
            result.refresh_max_age = self.settings.refresh_token_ttl_seconds(remember_me)
        await self.audit.record(
            "token_refreshed",
            user_id=user.id,
            new_values={"rotated": bool(rotate)},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return result

    async def revoke(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Mark a refresh token revoked; unknown tokens are ignored."""
        if not refresh_token:
            return False
        record = self.store.revoke_refresh_token(hash_token(refresh_token), now=self._now())
        if not record:
            return False
        await self._mark_revoked(record)
        await self.audit.record(
            "logout",
            user_id=record.user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return True

    async def revoke_all(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id, now=self._now())
        for record in revoked:
            await self._mark_revoked(record)
        await self.audit.record(
            "logout_all_devices",
            user_id=user_id,
            new_values={"revokedSessions": len(revoked)},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return len(revoked)

    def session_owner(
        self, access_token: Optional[str], refresh_token: Optional[str]
    ) -> Optional[str]:
        """User id behind a session, from the access token or else the stored refresh token.

        An expired access token falls through to the refresh token, which must
        still be live server-side to count.
        """
        if access_token:
            try:
                user_id = self.verify(access_token).get("userId")
            except AuthenticationError:
                user_id = None
            if user_id:
                return str(user_id)
        if not refresh_token:
            return None
        try:
            claims = self._decode(refresh_token, self.settings.jwt_refresh_secret)
        except InvalidTokenError:
            return None
        record = self.store.get_refresh_token(hash_token(refresh_token))
        if not record or record.jti != claims.get("jti") or not record.is_usable(self._now()):
            return None
        return record.user_id

    async def _revoke_record(self, record: RefreshToken) -> bool:
        if not self.store.revoke_refresh_token(record.token_hash, now=self._now()):
            return False
        await self._mark_revoked(record)
        return True

    async def _mark_revoked(self, record: RefreshToken) -> None:
        if not self.cache:
            return
        ttl = math.ceil((record.expires_at - self._now()).total_seconds())
        try:
            await self.cache.mark_refresh_revoked(record.jti, ttl)
        except Exception as exc:
            # the store flag is authoritative; the cache mark only short-circuits lookups
            self.logger.warning("refresh_revocation_cache_failed", jti=record.jti, error=str(exc))

    async def _is_marked_revoked(self, jti: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_refresh_revoked(jti)
        except Exception as exc:
            self.logger.warning("refresh_revocation_cache_failed", jti=jti, error=str(exc))
            return False
