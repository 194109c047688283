from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from fitauth.logging import get_logger
from fitauth.storage.common import generate_uuid, normalize_email
from fitauth.storage.errors import ConstraintViolation, SchemaMissing
from fitauth.storage.models import AuditLogEntry, RefreshToken, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        name TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'CLIENT',
        phone TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        lockout_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        two_factor_secret TEXT,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        password_reset_token_hash TEXT,
        password_reset_expiry TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        jti TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        device_id TEXT,
        device_info JSONB
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS backup_code (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        user_id UUID,
        action TEXT NOT NULL,
        entity_type TEXT,
        entity_id TEXT,
        old_values JSONB,
        new_values JSONB,
        ip_address TEXT,
        user_agent TEXT,
        success BOOLEAN NOT NULL,
        error_message TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_user_idx ON audit_log (user_id, created_at DESC)",
)

_REQUIRED_TABLES = ("app_user", "refresh_token", "backup_code", "audit_log")


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        name=row["name"],
        role=row.get("role", "CLIENT"),
        phone=row.get("phone"),
        is_active=row.get("is_active", True),
        login_attempts=row.get("login_attempts") or 0,
        lockout_until=row.get("lockout_until"),
        last_login_at=row.get("last_login_at"),
        two_factor_secret=row.get("two_factor_secret"),
        two_factor_enabled=bool(row.get("two_factor_enabled", False)),
        password_reset_token_hash=row.get("password_reset_token_hash"),
        password_reset_expiry=row.get("password_reset_expiry"),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
    )


def _refresh_from_row(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        jti=row["jti"],
        expires_at=row["expires_at"],
        created_at=row.get("created_at") or utcnow(),
        revoked=bool(row.get("revoked", False)),
        revoked_at=row.get("revoked_at"),
        device_id=row.get("device_id"),
        device_info=row.get("device_info"),
    )


def _audit_from_row(row: dict) -> AuditLogEntry:
    return AuditLogEntry(
        id=str(row["id"]),
        user_id=str(row["user_id"]) if row.get("user_id") else None,
        action=row["action"],
        entity_type=row.get("entity_type"),
        entity_id=row.get("entity_id"),
        old_values=row.get("old_values"),
        new_values=row.get("new_values"),
        ip_address=row.get("ip_address"),
        user_agent=row.get("user_agent"),
        success=bool(row["success"]),
        error_message=row.get("error_message"),
        created_at=row.get("created_at") or utcnow(),
    )


def _json_or_none(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


class PostgresStore:
    """Postgres-backed auth store.

    Counter and flag mutations are single UPDATE ... RETURNING statements so
    concurrent logins for the same user race safely on the row lock.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_schema = current_schema()"
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [table for table in _REQUIRED_TABLES if table not in present]
        if missing:
            self.logger.error("postgres_schema_missing", missing_tables=missing)
            raise SchemaMissing(f"missing tables: {', '.join(missing)}")

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, name, role, phone)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (generate_uuid(), normalize_email(email), password_hash, name, role, phone),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def record_failed_login(
        self, user_id: str, *, max_attempts: int, lockout_until: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = login_attempts + 1,
                    lockout_until = CASE
                        WHEN login_attempts + 1 >= %s THEN %s
                        ELSE lockout_until
                    END,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (max_attempts, lockout_until, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def record_successful_login(self, user_id: str, *, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = 0, lockout_until = NULL, last_login_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET password_hash = %s,
                    password_reset_token_hash = NULL,
                    password_reset_expiry = NULL,
                    login_attempts = 0,
                    lockout_until = NULL,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (password_hash, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_password_reset_token(
        self, user_id: str, token_hash: Optional[str], expires_at: Optional[datetime]
    ) -> None:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET password_reset_token_hash = %s, password_reset_expiry = %s, updated_at = now()
                WHERE id = %s
                """,
                (token_hash, expires_at, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def get_user_by_reset_token(self, token_hash: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE password_reset_token_hash = %s",
                (token_hash,),
            ).fetchone()
        return _user_from_row(row) if row else None

    # two-factor
    def set_two_factor(
        self, user_id: str, *, secret: Optional[str], enabled: bool
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET two_factor_secret = %s, two_factor_enabled = %s, updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (secret, enabled, user_id),
            ).fetchone()
            if row and secret is None:
                conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
        return _user_from_row(row) if row else None

    def replace_backup_codes(self, user_id: str, code_hashes: Sequence[str]) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
                with conn.cursor() as cur:
                    cur.executemany(
                        "INSERT INTO backup_code (id, user_id, code_hash) VALUES (%s, %s, %s)",
                        [(generate_uuid(), user_id, code_hash) for code_hash in code_hashes],
                    )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})

    def consume_backup_code(self, user_id: str, code_hash: str, *, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE backup_code SET used_at = %s
                WHERE id = (
                    SELECT id FROM backup_code
                    WHERE user_id = %s AND code_hash = %s AND used_at IS NULL
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                )
                RETURNING id
                """,
                (now, user_id, code_hash),
            ).fetchone()
        return row is not None

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS remaining FROM backup_code WHERE user_id = %s AND used_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row["remaining"]) if row else 0

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token
                        (id, user_id, token_hash, jti, expires_at, created_at, revoked, device_id, device_info)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.token_hash,
                        token.jti,
                        token.expires_at,
                        token.created_at,
                        token.revoked,
                        token.device_id,
                        _json_or_none(token.device_info),
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("token user missing", {"user_id": token.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return token

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def revoke_refresh_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token
                SET revoked = TRUE, revoked_at = %s
                WHERE token_hash = %s AND revoked = FALSE
                RETURNING *
                """,
                (now, token_hash),
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def revoke_user_refresh_tokens(self, user_id: str, *, now: datetime) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = %s
                WHERE user_id = %s AND revoked = FALSE
                RETURNING *
                """,
                (now, user_id),
            ).fetchall()
        return [_refresh_from_row(row) for row in rows]

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                    (id, user_id, action, entity_type, entity_id, old_values, new_values,
                     ip_address, user_agent, success, error_message, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.entity_type,
                    entry.entity_id,
                    _json_or_none(entry.old_values),
                    _json_or_none(entry.new_values),
                    entry.ip_address,
                    entry.user_agent,
                    entry.success,
                    entry.error_message,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(
        self,
        *,
        user_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if action:
            clauses.append("action = %s")
            params.append(action)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [_audit_from_row(row) for row in rows]
