from fitauth.logging import mask_sensitive_data
from fitauth.service.audit import AuditLogger
from fitauth.storage.memory import MemoryStore


class BrokenStore(MemoryStore):
    def append_audit_log(self, entry):
        raise RuntimeError("audit table unavailable")


class TestAuditLogger:
    async def test_record_persists_entry(self):
        store = MemoryStore()
        audit = AuditLogger(store)

        entry = await audit.record(
            "login_success",
            user_id="u-1",
            ip_address="198.51.100.2",
            user_agent="pytest",
        )

        assert entry is not None
        assert store.list_audit_logs() == [entry]
        assert entry.success is True
        assert entry.to_dict()["ipAddress"] == "198.51.100.2"

    async def test_sensitive_values_are_masked(self):
        store = MemoryStore()
        audit = AuditLogger(store)

        entry = await audit.record(
            "password_changed",
            user_id="u-1",
            old_values={"password": "hunter2hunter2", "name": "Ana"},
            new_values={"nested": {"refreshToken": "abcdefgh"}, "count": 3},
        )

        assert entry.old_values == {"password": "**********ter2", "name": "Ana"}
        assert entry.new_values == {"nested": {"refreshToken": "****efgh"}, "count": 3}

    async def test_store_failure_is_swallowed(self):
        audit = AuditLogger(BrokenStore())
        assert await audit.record("logout", user_id="u-1") is None

    async def test_list_entries_filters_and_clamps(self):
        store = MemoryStore()
        audit = AuditLogger(store)
        for _ in range(3):
            await audit.record("login_failed", user_id="u-1", success=False)
        await audit.record("login_success", user_id="u-2")

        assert len(audit.list_entries(action="login_failed")) == 3
        assert [e.user_id for e in audit.list_entries(user_id="u-2")] == ["u-2"]
        assert len(audit.list_entries(limit=0)) == 1
        assert len(audit.list_entries(limit=10_000)) == 4


class TestMaskSensitiveData:
    def test_short_values_fully_masked(self):
        assert mask_sensitive_data({"secret": "abc"}) == {"secret": "***"}

    def test_non_string_values(self):
        assert mask_sensitive_data({"apiKey": 1234, "items": [{"password": None}]}) == {
            "apiKey": "[MASKED]",
            "items": [{"password": "[MASKED]"}],
        }

    def test_depth_limit(self):
        data = {"a": {"b": {"c": "d"}}}
        assert mask_sensitive_data(data, max_depth=1) == {"a": {"b": "[max depth exceeded]"}}
