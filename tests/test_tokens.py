from datetime import timedelta

import jwt
import pytest

from fitauth.service.errors import InvalidTokenError, TokenExpiredError
from fitauth.service.tokens import access_claims_for, generate_device_id
from fitauth.storage.common import hash_token


async def _user(runtime, email="coach@example.com"):
    return await runtime.credentials.register(email, "secret123", "Coach", role="TRAINER")


class RecordingCache:
    """Stands in for the Redis revocation marks."""

    def __init__(self):
        self.revoked = {}

    async def mark_refresh_revoked(self, jti, ttl_seconds):
        self.revoked[jti] = ttl_seconds

    async def is_refresh_revoked(self, jti):
        return jti in self.revoked


class TestAccessTokens:
    def test_issue_then_verify_returns_claims(self, clocked_runtime, clock):
        claims = {"userId": "u-1", "email": "a@b.co", "role": "CLIENT", "deviceId": "abc"}
        token = clocked_runtime.tokens.issue_access_token(claims)

        decoded = clocked_runtime.tokens.verify(token)

        iat = int(clock().timestamp())
        assert decoded == {**claims, "tokenType": "access", "iat": iat, "exp": iat + 3600}

    def test_expired_exactly_at_exp(self, clocked_runtime, clock):
        token = clocked_runtime.tokens.issue_access_token({"userId": "u-1"})
        clock.advance(seconds=3599)
        assert clocked_runtime.tokens.verify(token)["userId"] == "u-1"

        clock.advance(seconds=1)
        with pytest.raises(TokenExpiredError):
            clocked_runtime.tokens.verify(token)

    def test_bad_signature_is_invalid(self, runtime):
        forged = jwt.encode(
            {"userId": "u-1", "tokenType": "access", "exp": 9999999999},
            "some-other-secret-that-is-long-enough",
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            runtime.tokens.verify(forged)

    def test_malformed_token_is_invalid(self, runtime):
        with pytest.raises(InvalidTokenError):
            runtime.tokens.verify("not-a-jwt")
        with pytest.raises(InvalidTokenError):
            runtime.tokens.verify("")

    async def test_refresh_token_is_not_accepted_as_access(self, runtime):
        user = await _user(runtime)
        refresh_token, _ = runtime.tokens.issue_refresh_token(user)
        with pytest.raises(InvalidTokenError):
            runtime.tokens.verify(refresh_token)

    def test_wrong_token_type_with_valid_signature(self, runtime):
        token = jwt.encode(
            {"userId": "u-1", "tokenType": "refresh", "exp": 9999999999},
            runtime.settings.jwt_secret,
            algorithm="HS256",
        )
        with pytest.raises(InvalidTokenError):
            runtime.tokens.verify(token)


class TestRefreshTokens:
    async def test_refresh_token_persisted_by_hash(self, clocked_runtime, clock):
        user = await _user(clocked_runtime)
        token, record = clocked_runtime.tokens.issue_refresh_token(
            user, remember_me=False, device_id="dev-1", device_info={"userAgent": "pytest"}
        )

        stored = clocked_runtime.store.get_refresh_token(hash_token(token))
        assert stored.id == record.id
        assert stored.expires_at == clock() + timedelta(days=7)
        assert stored.device_id == "dev-1"
        assert stored.revoked is False

    async def test_remember_me_extends_lifetime(self, clocked_runtime, clock):
        user = await _user(clocked_runtime)
        _, record = clocked_runtime.tokens.issue_refresh_token(user, remember_me=True)
        assert record.expires_at == clock() + timedelta(days=30)

    async def test_refresh_issues_access_token_for_current_user(self, runtime):
        user = await _user(runtime)
        token, _ = runtime.tokens.issue_refresh_token(user, device_id="dev-9")

        result = await runtime.tokens.refresh(token)

        claims = runtime.tokens.verify(result.access_token)
        assert claims["userId"] == user.id
        assert claims["role"] == "TRAINER"
        assert claims["deviceId"] == "dev-9"
        assert result.refresh_token is None
        assert runtime.store.list_audit_logs(action="token_refreshed")

    async def test_revoked_token_cannot_refresh(self, runtime):
        user = await _user(runtime)
        token, _ = runtime.tokens.issue_refresh_token(user)

        assert await runtime.tokens.revoke(token) is True
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.refresh(token)
        assert runtime.store.list_audit_logs(action="logout")

    async def test_revoke_unknown_token_is_silent(self, runtime):
        assert await runtime.tokens.revoke("unknown") is False
        assert await runtime.tokens.revoke("") is False

    async def test_revoke_all_invalidates_every_token(self, runtime):
        user = await _user(runtime)
        tokens = [runtime.tokens.issue_refresh_token(user)[0] for _ in range(3)]
        other = await _user(runtime, email="other@example.com")
        other_token, _ = runtime.tokens.issue_refresh_token(other)

        assert await runtime.tokens.revoke_all(user.id) == 3

        for token in tokens:
            with pytest.raises(InvalidTokenError):
                await runtime.tokens.refresh(token)
        assert (await runtime.tokens.refresh(other_token)).user.id == other.id
        entry = runtime.store.list_audit_logs(action="logout_all_devices")[0]
        assert entry.new_values == {"revokedSessions": 3}

    async def test_expired_refresh_token_rejected(self, clocked_runtime, clock):
        user = await _user(clocked_runtime)
        token, _ = clocked_runtime.tokens.issue_refresh_token(user)
        clock.advance(days=7)
        with pytest.raises(InvalidTokenError):
            await clocked_runtime.tokens.refresh(token)

    async def test_access_token_rejected_as_refresh(self, runtime):
        user = await _user(runtime)
        access = runtime.tokens.issue_access_token(access_claims_for(user))
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.refresh(access)

    async def test_rotation_revokes_old_token(self, runtime):
        user = await _user(runtime)
        token, _ = runtime.tokens.issue_refresh_token(user, remember_me=True)

        result = await runtime.tokens.refresh(token, rotate=True)

        assert result.refresh_token and result.refresh_token != token
        assert result.refresh_max_age == 30 * 24 * 3600
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.refresh(token)
        assert (await runtime.tokens.refresh(result.refresh_token)).user.id == user.id

    async def test_rotated_token_cannot_rotate_again(self, runtime):
        user = await _user(runtime)
        token, _ = runtime.tokens.issue_refresh_token(user)
        await runtime.tokens.refresh(token, rotate=True)

        with pytest.raises(InvalidTokenError):
            await runtime.tokens.refresh(token, rotate=True)
        assert len(runtime.store.list_audit_logs(action="token_refreshed")) == 1

    async def test_concurrent_rotation_yields_one_chain(self, runtime, monkeypatch):
        user = await _user(runtime)
        token, _ = runtime.tokens.issue_refresh_token(user)
        stale = runtime.store.get_refresh_token(hash_token(token))
        # both workers read the live record before either revokes it
        monkeypatch.setattr(runtime.store, "get_refresh_token", lambda token_hash: stale)

        first = await runtime.tokens.refresh(token, rotate=True)
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.refresh(token, rotate=True)

        monkeypatch.undo()
        live = [t for t in runtime.store.refresh_tokens.values() if not t.revoked]
        assert [t.token_hash for t in live] == [hash_token(first.refresh_token)]

    async def test_revocation_marks_written_to_cache(self, runtime):
        cache = RecordingCache()
        runtime.tokens.cache = cache
        user = await _user(runtime)
        token, record = runtime.tokens.issue_refresh_token(user)

        await runtime.tokens.revoke(token)

        assert record.jti in cache.revoked
        assert cache.revoked[record.jti] > 0
        with pytest.raises(InvalidTokenError):
            await runtime.tokens.refresh(token)


class TestSessionOwner:
    async def test_prefers_access_token(self, runtime):
        user = await _user(runtime)
        access = runtime.tokens.issue_access_token(access_claims_for(user))
        assert runtime.tokens.session_owner(access, None) == user.id

    async def test_expired_access_falls_back_to_refresh(self, clocked_runtime, clock):
        user = await _user(clocked_runtime)
        issued = clocked_runtime.tokens.issue_login_tokens(user)
        clock.advance(hours=2)

        owner = clocked_runtime.tokens.session_owner(issued.access_token, issued.refresh_token)

        assert owner == user.id

    async def test_revoked_refresh_has_no_owner(self, runtime):
        user = await _user(runtime)
        token, _ = runtime.tokens.issue_refresh_token(user)
        await runtime.tokens.revoke(token)
        assert runtime.tokens.session_owner("garbage", token) is None
        assert runtime.tokens.session_owner(None, None) is None


class TestLoginTokens:
    async def test_issue_login_tokens_binds_device(self, runtime):
        user = await _user(runtime)
        issued = runtime.tokens.issue_login_tokens(
            user, remember_me=False, ip_address="192.0.2.4", user_agent="Mozilla/5.0"
        )
        assert issued.device_id == generate_device_id("Mozilla/5.0", "192.0.2.4")
        assert issued.access_max_age == 3600
        assert issued.refresh_max_age == 7 * 24 * 3600
        assert runtime.tokens.verify(issued.access_token)["deviceId"] == issued.device_id
        record = runtime.store.get_refresh_token(hash_token(issued.refresh_token))
        assert record.device_info == {"userAgent": "Mozilla/5.0", "ipAddress": "192.0.2.4"}


def test_device_id_is_16_hex_chars():
    device_id = generate_device_id("agent", "127.0.0.1")
    assert len(device_id) == 16
    assert int(device_id, 16) >= 0
    assert device_id == generate_device_id("agent", "127.0.0.1")
    assert device_id != generate_device_id("agent", "127.0.0.2")
