from __future__ import annotations

import base64
import hashlib
import re
import secrets
import string
from datetime import datetime
from io import BytesIO
from typing import Callable, List, Optional

import pyotp
import qrcode
from cryptography.fernet import Fernet, InvalidToken

from fitauth.config import Settings
from fitauth.logging import get_logger
from fitauth.service.audit import AuditLogger
from fitauth.service.credentials import CredentialVerifier
from fitauth.service.errors import (
    ConflictError,
    InvalidCodeError,
    InvalidPasswordError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from fitauth.storage.common import AuthStore, hash_token
from fitauth.storage.models import User, utcnow

logger = get_logger(__name__)

BACKUP_CODE_LENGTH = 6
BACKUP_CODE_ALPHABET = string.ascii_uppercase + string.digits
_BACKUP_CODE_RE = re.compile(r"^[A-Z0-9]{6}$")


def generate_backup_codes(count: int) -> List[str]:
    return [
        "".join(secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(BACKUP_CODE_LENGTH))
        for _ in range(count)
    ]


def qr_code_data_url(payload: str) -> str:
    qr = qrcode.QRCode(version=1, box_size=10, border=4)
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


class TwoFactorService:
    """TOTP enrollment and verification with single-use backup codes.

    The per-user state machine is derived from the stored fields:
    no secret means disabled, a secret without the enabled flag means setup is
    pending, and both means enabled. Secrets are Fernet-encrypted before they
    reach the store; backup codes are stored as SHA-256 digests.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        audit: AuditLogger,
        credentials: CredentialVerifier,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self.credentials = credentials
        self._clock = clock or utcnow
        self._cipher = self._build_cipher(settings.encryption_key or settings.jwt_secret)
        self.logger = logger

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: str) -> Fernet:
        try:
            return Fernet(key_material.encode())
        except (ValueError, TypeError):
            # not a urlsafe base64 32-byte key; stretch the material into one
            return Fernet(self._derive_cipher_key(key_material))

    def _encrypt(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, user: User) -> str:
        try:
            return self._cipher.decrypt(user.two_factor_secret.encode()).decode()
        except (InvalidToken, AttributeError):
            self.logger.error("totp_secret_decrypt_failed", user_id=user.id)
            raise ServerError("Two-factor secret unavailable")

    def _get_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def _verify_totp(self, secret: str, code: str) -> bool:
        if not code or not code.isdigit():
            return False
        return pyotp.TOTP(secret).verify(
            code, for_time=self._clock(), valid_window=self.settings.totp_valid_window
        )

    def _store_backup_codes(self, user_id: str) -> List[str]:
        codes = generate_backup_codes(self.settings.backup_code_count)
        self.store.replace_backup_codes(user_id, [hash_token(code) for code in codes])
        return codes

    async def setup(self, user_id: str) -> dict:
        """Start (or restart) enrollment: new secret, QR code and backup codes."""
        user = self._get_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        secret = pyotp.random_base32()
        otpauth_url = pyotp.TOTP(secret).provisioning_uri(
            name=user.email, issuer_name=self.settings.app_name
        )
        self.store.set_two_factor(user.id, secret=self._encrypt(secret), enabled=False)
        backup_codes = self._store_backup_codes(user.id)
        self.logger.info("two_factor_setup_started", user_id=user.id)
        return {
            "secret": secret,
            "qrCode": qr_code_data_url(otpauth_url),
            "otpauthUrl": otpauth_url,
            "backupCodes": backup_codes,
        }

    async def verify_and_enable(
        self,
        user_id: str,
        code: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = self._get_user(user_id)
        if user.two_factor_enabled:
            raise ConflictError("Two-factor authentication is already enabled")
        if not user.two_factor_secret:
            raise ValidationError(
                "Two-factor authentication has not been set up", error_code="not_set_up"
            )
        if not self._verify_totp(self._decrypt(user), code):
            await self.audit.record(
                "2fa_verification_failed",
                user_id=user.id,
                success=False,
                new_values={"action": "enable"},
                ip_address=ip_address,
                user_agent=user_agent,
                error_message="Invalid 2FA token",
            )
            raise InvalidCodeError()
        enabled = self.store.set_two_factor(
            user.id, secret=user.two_factor_secret, enabled=True
        )
        await self.audit.record(
            "2fa_enabled",
            user_id=user.id,
            entity_type="User",
            entity_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return enabled or user

    async def verify_login(
        self,
        user_id: str,
        code: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Validate a second factor at login; returns ``"backup_code"`` or ``"totp"``."""
        user = self._get_user(user_id)
        if not user.two_factor_enabled or not user.two_factor_secret:
            raise ValidationError(
                "Two-factor authentication is not enabled", error_code="not_enabled"
            )
        candidate = (code or "").strip().upper()
        if _BACKUP_CODE_RE.match(candidate) and self.store.consume_backup_code(
            user.id, hash_token(candidate), now=self._clock()
        ):
            await self.audit.record(
                "2fa_backup_code_used",
                user_id=user.id,
                new_values={"remaining": self.store.count_unused_backup_codes(user.id)},
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return "backup_code"
        if self._verify_totp(self._decrypt(user), candidate):
            await self.audit.record(
                "2fa_verification_success",
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            return "totp"
        await self.audit.record(
            "2fa_verification_failed",
            user_id=user.id,
            success=False,
            new_values={"action": "login"},
            ip_address=ip_address,
            user_agent=user_agent,
            error_message="Invalid 2FA token",
        )
        raise InvalidCodeError()

    async def disable(
        self,
        user_id: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> User:
        user = self._get_user(user_id)
        if not self.credentials.verify_password(user, password):
            await self.audit.record(
                "2fa_disable_failed",
                user_id=user.id,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message="Invalid password",
            )
            raise InvalidPasswordError()
        disabled = self.store.set_two_factor(user.id, secret=None, enabled=False)
        await self.audit.record(
            "2fa_disabled",
            user_id=user.id,
            entity_type="User",
            entity_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return disabled or user

    async def regenerate_backup_codes(
        self,
        user_id: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> List[str]:
        user = self._get_user(user_id)
        if not self.credentials.verify_password(user, password):
            await self.audit.record(
                "backup_codes_regenerate_failed",
                user_id=user.id,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                error_message="Invalid password",
            )
            raise InvalidPasswordError()
        if not user.two_factor_enabled:
            raise ValidationError(
                "Two-factor authentication is not enabled", error_code="not_enabled"
            )
        codes = self._store_backup_codes(user.id)
        await self.audit.record(
            "backup_codes_regenerated",
            user_id=user.id,
            new_values={"count": len(codes)},
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return codes

    def get_backup_codes_count(self, user_id: str) -> int:
        user = self._get_user(user_id)
        if not user.two_factor_enabled:
            return 0
        return self.store.count_unused_backup_codes(user.id)
