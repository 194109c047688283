"""Shared contract and helpers for the memory and postgres stores.

Both backends implement ``AuthStore``; the services only ever talk to that
protocol, so tests can run against ``MemoryStore`` while deployments use
``PostgresStore``.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from fitauth.storage.models import AuditLogEntry, RefreshToken, User


def hash_token(raw: str) -> str:
    """Digest stored in place of bearer secrets (refresh, reset and backup codes)."""
    return hashlib.sha256(raw.encode()).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def generate_uuid() -> str:
    return str(uuid.uuid4())


class AuthStore(Protocol):
    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        role: str = "CLIENT",
        phone: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[User]: ...

    def record_successful_login(self, user_id: str, *, now: datetime) -> Optional[User]: ...

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def set_password_reset_token(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None: ...

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]: ...

    # two-factor
    def set_two_factor(
        self, user_id: str, *, secret: Optional[str], enabled: bool
    ) -> Optional[User]: ...

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None: ...

    def consume_backup_code(self, user_id: str, code_hash: str, *, now: datetime) -> bool: ...

    def count_unused_backup_codes(self, user_id: str) -> int: ...

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[RefreshToken]: ...

    def revoke_user_refresh_tokens(self, user_id: str, *, now: datetime) -> List[RefreshToken]: ...

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_audit_logs(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]: ...
