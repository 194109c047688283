from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: str
    name: str
    role: str = "CLIENT"
    phone: Optional[str] = None
    is_active: bool = True
    login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    # ciphertext; only the two-factor service decrypts it
    two_factor_secret: Optional[str] = None
    two_factor_enabled: bool = False
    password_reset_token_hash: Optional[str] = None
    password_reset_expiry: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.lockout_until is None:
            return False
        return self.lockout_until > (now or utcnow())

    @property
    def two_factor_state(self) -> str:
        if self.two_factor_enabled:
            return "enabled"
        if self.two_factor_secret:
            return "pending_setup"
        return "disabled"

    def public_dict(self) -> Dict:
        """Fields that are safe to return to the account owner."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "phone": self.phone,
            "isActive": self.is_active,
            "twoFactorEnabled": self.two_factor_enabled,
            "lastLoginAt": self.last_login_at.isoformat() if self.last_login_at else None,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    jti: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    device_id: Optional[str] = None
    device_info: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        jti: str,
        expires_at: datetime,
        *,
        device_id: Optional[str] = None,
        device_info: Dict | None = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            jti=jti,
            expires_at=expires_at,
            device_id=device_id,
            device_info=device_info,
        )

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and self.expires_at > (now or utcnow())


@dataclass
class BackupCode:
    id: str
    user_id: str
    code_hash: str
    created_at: datetime = field(default_factory=utcnow)
    used_at: Optional[datetime] = None


@dataclass
class AuditLogEntry:
    id: str
    action: str
    success: bool
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    old_values: Dict | None = None
    new_values: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "action": self.action,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "oldValues": self.old_values,
            "newValues": self.new_values,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "success": self.success,
            "errorMessage": self.error_message,
            "createdAt": self.created_at.isoformat(),
        }
