"""PostgresStore behavior against a scripted connection, no database required."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors

from fitauth.logging import get_logger
from fitauth.storage.errors import ConstraintViolation, SchemaMissing
from fitauth.storage.models import AuditLogEntry, RefreshToken
from fitauth.storage.postgres import PostgresStore

NOW = datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows=None, rowcount=None):
        self.rows = list(rows or [])
        self.rowcount = len(self.rows) if rowcount is None else rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return self.rows


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def executemany(self, sql, rows):
        self.conn.calls.append((" ".join(sql.split()), list(rows)))


class FakeConnection:
    """Replays queued results (or raises queued exceptions) in call order."""

    def __init__(self):
        self.calls = []
        self.queue = []

    def execute(self, sql, params=None):
        self.calls.append((" ".join(sql.split()), params))
        if not self.queue:
            return FakeResult()
        outcome = self.queue.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def cursor(self):
        return FakeCursor(self)


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @contextmanager
    def connection(self):
        yield self.conn

    def close(self):
        self.closed = True


def _user_row(**overrides):
    row = {
        "id": "7f1c2f7e-0000-4000-8000-000000000001",
        "email": "pg@example.com",
        "password_hash": "hash",
        "name": "Pg",
        "role": "CLIENT",
        "phone": None,
        "is_active": True,
        "login_attempts": 0,
        "lockout_until": None,
        "last_login_at": None,
        "two_factor_secret": None,
        "two_factor_enabled": False,
        "password_reset_token_hash": None,
        "password_reset_expiry": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    row.update(overrides)
    return row


@pytest.fixture
def conn():
    return FakeConnection()


@pytest.fixture
def store(conn):
    instance = PostgresStore.__new__(PostgresStore)
    instance.dsn = "postgresql://fake"
    instance.logger = get_logger(__name__)
    instance.pool = FakePool(conn)
    return instance


class TestSchema:
    def test_missing_tables_raise(self, store, conn):
        conn.queue.append(FakeResult([{"table_name": "app_user"}]))
        with pytest.raises(SchemaMissing) as excinfo:
            store._verify_required_schema()
        assert "refresh_token" in str(excinfo.value)

    def test_all_tables_present(self, store, conn):
        conn.queue.append(
            FakeResult(
                [{"table_name": name} for name in ("app_user", "refresh_token", "backup_code", "audit_log")]
            )
        )
        store._verify_required_schema()

    def test_close_closes_pool(self, store):
        store.close()
        assert store.pool.closed


class TestUsers:
    def test_create_user_normalizes_email(self, store, conn):
        conn.queue.append(FakeResult([_user_row(email="pg@example.com")]))

        user = store.create_user(" PG@Example.com ", "hash", "Pg", role="TRAINER")

        assert user.email == "pg@example.com"
        sql, params = conn.calls[0]
        assert sql.startswith("INSERT INTO app_user")
        assert params[1] == "pg@example.com"
        assert params[4] == "TRAINER"

    def test_duplicate_email_maps_to_constraint(self, store, conn):
        conn.queue.append(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("pg@example.com", "hash", "Pg")
        assert excinfo.value.field == "email"

    def test_failed_login_is_single_update(self, store, conn):
        lockout = NOW + timedelta(minutes=15)
        conn.queue.append(FakeResult([_user_row(login_attempts=5, lockout_until=lockout)]))

        user = store.record_failed_login("u", max_attempts=5, lockout_until=lockout)

        assert user.login_attempts == 5
        assert user.lockout_until == lockout
        sql, params = conn.calls[0]
        assert "login_attempts = login_attempts + 1" in sql
        assert params == (5, lockout, "u")

    def test_missing_user_returns_none(self, store, conn):
        assert store.get_user("missing") is None
        assert store.record_successful_login("missing", now=NOW) is None

    def test_reset_token_for_missing_user(self, store, conn):
        conn.queue.append(FakeResult(rowcount=0))
        with pytest.raises(ConstraintViolation):
            store.set_password_reset_token("missing", "digest", NOW)


class TestTwoFactorAndCodes:
    def test_disabling_deletes_backup_codes(self, store, conn):
        conn.queue.append(FakeResult([_user_row()]))
        store.set_two_factor("u", secret=None, enabled=False)
        assert conn.calls[1][0] == "DELETE FROM backup_code WHERE user_id = %s"

    def test_replace_backup_codes_inserts_each_hash(self, store, conn):
        store.replace_backup_codes("u", ["h1", "h2"])
        delete_sql, _ = conn.calls[0]
        insert_sql, rows = conn.calls[1]
        assert delete_sql.startswith("DELETE FROM backup_code")
        assert insert_sql.startswith("INSERT INTO backup_code")
        assert [row[2] for row in rows] == ["h1", "h2"]

    def test_replace_backup_codes_unknown_user(self, store, conn):
        conn.queue.append(errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation):
            store.replace_backup_codes("missing", ["h1"])

    def test_consume_backup_code(self, store, conn):
        conn.queue.append(FakeResult([{"id": "code-1"}]))
        assert store.consume_backup_code("u", "h1", now=NOW) is True
        assert "FOR UPDATE SKIP LOCKED" in conn.calls[0][0]
        assert store.consume_backup_code("u", "h1", now=NOW) is False

    def test_count_unused(self, store, conn):
        conn.queue.append(FakeResult([{"remaining": 4}]))
        assert store.count_unused_backup_codes("u") == 4


class TestRefreshAndAudit:
    def test_create_refresh_token_serializes_device_info(self, store, conn):
        token = RefreshToken.new(
            "u", "digest", "jti", NOW + timedelta(days=7), device_info={"userAgent": "pytest"}
        )
        assert store.create_refresh_token(token) is token
        _, params = conn.calls[0]
        assert params[-1] == '{"userAgent": "pytest"}'

    def test_refresh_token_for_missing_user(self, store, conn):
        conn.queue.append(errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation):
            store.create_refresh_token(RefreshToken.new("missing", "d", "j", NOW))

    def test_revoke_all_returns_records(self, store, conn):
        rows = [
            {
                "id": f"id-{i}",
                "user_id": "u",
                "token_hash": f"h{i}",
                "jti": f"j{i}",
                "expires_at": NOW,
                "created_at": NOW,
                "revoked": True,
                "revoked_at": NOW,
                "device_id": None,
                "device_info": None,
            }
            for i in range(2)
        ]
        conn.queue.append(FakeResult(rows))
        revoked = store.revoke_user_refresh_tokens("u", now=NOW)
        assert [r.jti for r in revoked] == ["j0", "j1"]
        assert all(r.revoked for r in revoked)

    def test_revoke_only_matches_live_token(self, store, conn):
        assert store.revoke_refresh_token("digest", now=NOW) is None
        sql, params = conn.calls[0]
        assert "WHERE token_hash = %s AND revoked = FALSE" in sql
        assert params == (NOW, "digest")

    def test_list_audit_logs_builds_filters(self, store, conn):
        store.list_audit_logs(user_id="u", action="logout", limit=5)
        sql, params = conn.calls[0]
        assert "WHERE user_id = %s AND action = %s" in sql
        assert sql.endswith("ORDER BY created_at DESC LIMIT %s")
        assert params == ("u", "logout", 5)

    def test_append_audit_log_serializes_values(self, store, conn):
        entry = AuditLogEntry(
            id="a-1", action="login_success", success=True, new_values={"rotated": False}
        )
        store.append_audit_log(entry)
        _, params = conn.calls[0]
        assert params[5] is None
        assert params[6] == '{"rotated": false}'
