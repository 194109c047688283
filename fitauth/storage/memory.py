from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from fitauth.logging import get_logger
from fitauth.storage.common import generate_uuid, normalize_email
from fitauth.storage.errors import ConstraintViolation
from fitauth.storage.models import (
    AuditLogEntry,
    BackupCode,
    RefreshToken,
    User,
    utcnow,
)


class MemoryStore:
    """In-process store for tests and local development.

    Every mutation happens under a single RLock, which gives the same
    per-record atomicity the Postgres store gets from single UPDATE
    statements. Returned objects are copies so callers cannot mutate
    stored state behind the lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.backup_codes: Dict[str, List[BackupCode]] = {}
        self.audit_logs: List[AuditLogEntry] = []
        self._data_lock = threading.RLock()

    @staticmethod
    def _copy(user: Optional[User]) -> Optional[User]:
        return replace(user) if user else None

    # users
    def create_user(
        self,
        email: str,
        password_hash: str,
        name: str,
        *,
        role: str = "CLIENT",
        phone: Optional[str] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=generate_uuid(),
                email=normalized,
                password_hash=password_hash,
                name=name,
                role=role,
                phone=phone,
            )
            self.users[user.id] = user
            return self._copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return self._copy(
                next((u for u in self.users.values() if u.email == normalized), None)
            )

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts += 1
            if user.login_attempts >= max_attempts:
                user.lockout_until = lockout_until
            user.updated_at = utcnow()
            return self._copy(user)

    def record_successful_login(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts = 0
            user.lockout_until = None
            user.last_login_at = now
            user.updated_at = now
            return self._copy(user)

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.password_hash = password_hash
            user.password_reset_token_hash = None
            user.password_reset_expiry = None
            user.login_attempts = 0
            user.lockout_until = None
            user.updated_at = utcnow()
            return self._copy(user)

    def set_password_reset_token(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            user.password_reset_token_hash = token_hash
            user.password_reset_expiry = expires_at
            user.updated_at = utcnow()

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._data_lock:
            return self._copy(
                next(
                    (
                        u
                        for u in self.users.values()
                        if u.password_reset_token_hash == token_hash
                    ),
                    None,
                )
            )

    # two-factor
    def set_two_factor(
        self, user_id: str, *, secret: Optional[str], enabled: bool
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.two_factor_secret = secret
            user.two_factor_enabled = enabled
            user.updated_at = utcnow()
            if secret is None:
                self.backup_codes.pop(user_id, None)
            return self._copy(user)

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            self.backup_codes[user_id] = [
                BackupCode(id=generate_uuid(), user_id=user_id, code_hash=code_hash)
                for code_hash in code_hashes
            ]

    def consume_backup_code(self, user_id: str, code_hash: str, *, now: datetime) -> bool:
        with self._data_lock:
            for code in self.backup_codes.get(user_id, []):
                if code.code_hash == code_hash and code.used_at is None:
                    code.used_at = now
                    return True
            return False

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for code in self.backup_codes.get(user_id, []) if code.used_at is None)

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("token user missing", {"user_id": token.user_id})
            if token.token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[token.token_hash] = token
            return replace(token)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            return replace(token) if token else None

    def revoke_refresh_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            token = self.refresh_tokens.get(token_hash)
            if not token or token.revoked:
                return None
            token.revoked = True
            token.revoked_at = now
            return replace(token)

    def revoke_user_refresh_tokens(self, user_id: str, *, now: datetime) -> List[RefreshToken]:
        revoked: List[RefreshToken] = []
        with self._data_lock:
            for token in self.refresh_tokens.values():
                if token.user_id == user_id and not token.revoked:
                    token.revoked = True
                    token.revoked_at = now
                    revoked.append(replace(token))
        return revoked

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_logs.append(entry)
            return entry

    def list_audit_logs(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            results = [
                entry
                for entry in self.audit_logs
                if (user_id is None or entry.user_id == user_id)
                and (action is None or entry.action == action)
            ]
        return sorted(results, key=lambda e: e.created_at, reverse=True)[:limit]
