"""
Tests for the auth gate: API key material, permission scopes, project
restriction, session tokens, passwords and the account flows.
"""
import logging
import sqlite3
from datetime import timedelta
from unittest.mock import patch

import pytest
from jose import jwt

from huntly.auth import (
    ALGORITHM,
    API_KEY_PREFIX,
    PREFIX_BODY_CHARS,
    SessionTokens,
    has_project_access,
    hash_api_key,
    hash_password,
    issue_api_key,
    key_prefix,
    validate_permissions,
    verify_api_key,
    verify_password,
)
from huntly.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from huntly.schema import (
    FULL_ACCESS,
    ApiKey,
    ApiKeyAuth,
    MemberStatus,
    SessionAuth,
    has_permission,
    utc_now,
)
from huntly.store import new_id

from conftest import TEST_SECRET


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Key material
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestIssueApiKey:

    def test_format_and_prefix(self):
        issued = issue_api_key()
        assert issued.raw_key.startswith(API_KEY_PREFIX)
        assert issued.prefix == issued.raw_key[:len(API_KEY_PREFIX) + PREFIX_BODY_CHARS]
        assert len(issued.raw_key) > len(API_KEY_PREFIX) + 40

    def test_hash_is_sha256_of_raw_key(self):
        issued = issue_api_key()
        assert issued.key_hash == hash_api_key(issued.raw_key)
        assert len(issued.key_hash) == 64
        assert issued.raw_key not in issued.key_hash

    def test_keys_are_unique(self):
        keys = {issue_api_key().raw_key for _ in range(200)}
        assert len(keys) == 200

    def test_hash_is_deterministic(self):
        assert hash_api_key("hntly_abc") == hash_api_key("hntly_abc")
        assert hash_api_key("hntly_abc") != hash_api_key("hntly_abd")


def test_verify_api_key():
    issued = issue_api_key()
    assert verify_api_key(issued.raw_key, issued.key_hash)
    assert not verify_api_key(issued.raw_key + "x", issued.key_hash)


@pytest.mark.parametrize("raw", ["", "abc", "sk_12345678901234", "hntly_123"])
def test_key_prefix_rejects_malformed(raw):
    assert key_prefix(raw) is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Permissions
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPermissions:

    def test_exact_match_only(self):
        assert has_permission(["tasks:read"], "tasks:read")
        assert not has_permission(["tasks:read"], "tasks:write")
        assert not has_permission([], "tasks:read")

    def test_full_access_grants_everything(self):
        assert has_permission([FULL_ACCESS], "transactions:delete")

    def test_validate_rejects_unknown(self):
        with pytest.raises(ValidationError):
            validate_permissions(["tasks:read", "root"])

    def test_validate_rejects_non_list(self):
        with pytest.raises(ValidationError):
            validate_permissions("tasks:read")

    def test_validate_dedupes_in_order(self):
        assert validate_permissions(["tasks:write", "tasks:read", "tasks:write"]) == [
            "tasks:write", "tasks:read",
        ]


class TestProjectAccess:

    def test_session_sees_everything(self):
        assert has_project_access(SessionAuth("u1", "a@b.c"), "p1")

    def test_unrestricted_key_sees_everything(self):
        assert has_project_access(ApiKeyAuth("k1", "bot"), "p1")

    def test_restricted_key_sees_only_its_project(self):
        auth = ApiKeyAuth("k1", "bot", internal_project_id="p1")
        assert has_project_access(auth, "p1")
        assert not has_project_access(auth, "p2")

    def test_no_auth_sees_nothing(self):
        assert not has_project_access(None, "p1")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# AuthGate.authorize
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def store_key(store, **overrides):
    """Persist a key directly, bypassing create_api_key validation."""
    issued = issue_api_key()
    fields = dict(
        id=new_id(), name="bot", prefix=issued.prefix, key_hash=issued.key_hash,
        permissions=["tasks:read"],
    )
    fields.update(overrides)
    store.create_api_key(ApiKey(**fields))
    return fields["id"], issued.raw_key


class TestAuthorizeApiKey:

    def test_valid_key(self, gate):
        key, raw = gate.create_api_key("Zapier", ["tasks:read"])
        auth = gate.authorize(api_key=raw, required_permission="tasks:read")
        assert isinstance(auth, ApiKeyAuth)
        assert auth.key_id == key.id
        assert auth.name == "Zapier"
        assert auth.permissions == ("tasks:read",)
        assert auth.auth_type == "api-key"

    def test_missing_permission_is_denied(self, gate):
        _, raw = gate.create_api_key("reader", ["tasks:read"])
        assert gate.authorize(api_key=raw, required_permission="tasks:write") is None

    def test_no_required_permission_only_checks_key(self, gate):
        _, raw = gate.create_api_key("reader", ["tasks:read"])
        assert gate.authorize(api_key=raw) is not None

    def test_full_access_key(self, gate):
        _, raw = gate.create_api_key("admin", [FULL_ACCESS])
        assert gate.authorize(api_key=raw, required_permission="transactions:delete") is not None

    def test_unknown_key(self, gate):
        assert gate.authorize(api_key=issue_api_key().raw_key) is None

    def test_tampered_key_with_known_prefix(self, gate):
        _, raw = gate.create_api_key("bot")
        assert gate.authorize(api_key=raw[:-1] + ("A" if raw[-1] != "A" else "B")) is None

    def test_inactive_key(self, gate, store):
        key, raw = gate.create_api_key("bot")
        gate.update_api_key(key.id, {"is_active": False})
        assert gate.authorize(api_key=raw) is None

    def test_expired_key(self, gate, store):
        _, raw = store_key(store, expires_at=utc_now() - timedelta(seconds=1))
        assert gate.authorize(api_key=raw, required_permission="tasks:read") is None

    def test_unexpired_key(self, gate, store):
        _, raw = store_key(store, expires_at=utc_now() + timedelta(days=1))
        assert gate.authorize(api_key=raw, required_permission="tasks:read") is not None

    def test_key_is_judged_alone_even_with_valid_session(self, gate):
        _, raw = gate.create_api_key("reader", ["tasks:read"])
        token = gate.tokens.create("u1", "a@b.c")
        assert gate.authorize(api_key=raw, session_token=token,
                              required_permission="tasks:write") is None

    def test_internal_error_collapses_to_none(self, gate, store):
        _, raw = gate.create_api_key("bot")
        with patch.object(store, "find_active_api_keys", side_effect=sqlite3.OperationalError("locked")):
            assert gate.authorize(api_key=raw) is None

    def test_project_restriction_is_carried(self, gate, store):
        project = store.create_project("Ops", internal=True)
        _, raw = gate.create_api_key("scoped", internal_project_id=project["id"])
        auth = gate.authorize(api_key=raw)
        assert auth.internal_project_id == project["id"]


class TestUsageRecording:

    def test_last_used_at_written_after_success(self, gate, store):
        key, raw = gate.create_api_key("bot")
        assert store.get_api_key(key.id).last_used_at is None
        assert gate.authorize(api_key=raw) is not None
        gate.close()
        assert store.get_api_key(key.id).last_used_at is not None

    def test_denied_key_is_not_touched(self, gate, store):
        key, raw = gate.create_api_key("reader", ["tasks:read"])
        gate.authorize(api_key=raw, required_permission="tasks:write")
        gate.close()
        assert store.get_api_key(key.id).last_used_at is None

    def test_valid_key_accepted_after_executor_shutdown(self, gate, store, caplog):
        key, raw = gate.create_api_key("bot")
        gate.close()
        assert gate.record_usage(key.id) is None
        auth = gate.authorize(api_key=raw)
        assert isinstance(auth, ApiKeyAuth)
        assert auth.key_id == key.id
        assert "Could not record API key usage" in caplog.text

    def test_touch_failure_does_not_affect_verdict(self, gate, store, caplog):
        _, raw = gate.create_api_key("bot")
        with patch.object(store, "touch_api_key", side_effect=sqlite3.OperationalError("disk I/O error")):
            auth = gate.authorize(api_key=raw)
            gate.close()
        assert isinstance(auth, ApiKeyAuth)
        assert "Could not record API key usage" in caplog.text


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Session tokens
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestSessionTokens:

    def test_round_trip_claims(self):
        tokens = SessionTokens(TEST_SECRET)
        auth = tokens.verify(tokens.create("u1", "a@b.c", "m1"))
        assert auth == SessionAuth(user_id="u1", email="a@b.c", member_id="m1")
        assert auth.auth_type == "jwt"

    def test_expiry_is_seven_days(self):
        token = SessionTokens(TEST_SECRET).create("u1", "a@b.c")
        claims = jwt.decode(token, TEST_SECRET, algorithms=[ALGORITHM])
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_expired_token(self):
        now = utc_now()
        token = jwt.encode(
            {"userId": "u1", "email": "a@b.c", "iat": now - timedelta(days=8),
             "exp": now - timedelta(days=1)},
            TEST_SECRET, algorithm=ALGORITHM,
        )
        assert SessionTokens(TEST_SECRET).verify(token) is None

    def test_wrong_secret(self):
        token = SessionTokens("another-secret").create("u1", "a@b.c")
        assert SessionTokens(TEST_SECRET).verify(token) is None

    def test_tampered_token(self):
        token = SessionTokens(TEST_SECRET).create("u1", "a@b.c")
        header, payload, signature = token.split(".")
        forged = jwt.encode({"userId": "admin", "email": "x@y.z"}, "guess", algorithm=ALGORITHM)
        assert SessionTokens(TEST_SECRET).verify(f"{header}.{forged.split('.')[1]}.{signature}") is None

    def test_missing_claims(self):
        token = jwt.encode({"email": "a@b.c"}, TEST_SECRET, algorithm=ALGORITHM)
        assert SessionTokens(TEST_SECRET).verify(token) is None

    def test_garbage(self):
        assert SessionTokens(TEST_SECRET).verify("not-a-token") is None

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            SessionTokens("")

    def test_gate_accepts_session_cookie(self, gate):
        token = gate.tokens.create("u1", "a@b.c")
        auth = gate.authorize(session_token=token, required_permission="tasks:write")
        assert isinstance(auth, SessionAuth)

    def test_gate_without_credentials(self, gate):
        assert gate.authorize() is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Passwords and account flows
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


class TestPasswords:

    def test_hash_and_verify(self):
        digest = hash_password("hunter22")
        assert digest.startswith("$2")
        assert verify_password("hunter22", digest)
        assert not verify_password("hunter23", digest)

    def test_oversized_password_rejected(self):
        with pytest.raises(ValidationError):
            hash_password("x" * 73)

    def test_corrupt_digest_does_not_verify(self):
        assert not verify_password("hunter22", "not-a-bcrypt-hash")


class TestAccountFlows:

    def test_register_then_login(self, gate):
        user = gate.register("Ana@Example.com", "s3cret!")
        assert user.email == "ana@example.com"
        logged_in, token = gate.login("ana@example.com", "s3cret!")
        assert logged_in.id == user.id
        assert gate.tokens.verify(token).user_id == user.id

    def test_duplicate_email(self, gate):
        gate.register("ana@example.com", "s3cret!")
        with pytest.raises(ConflictError):
            gate.register("ANA@example.com", "another1")

    def test_short_password(self, gate):
        with pytest.raises(ValidationError):
            gate.register("ana@example.com", "12345")

    def test_wrong_password(self, gate):
        gate.register("ana@example.com", "s3cret!")
        with pytest.raises(AuthenticationError):
            gate.login("ana@example.com", "wrong!!")

    def test_unknown_email(self, gate):
        with pytest.raises(AuthenticationError):
            gate.login("nobody@example.com", "s3cret!")

    def test_member_link(self, gate, store):
        member = store.create_member("Ana", "ana@example.com")
        gate.register("ana@example.com", "s3cret!", member.id)
        user, token = gate.login("ana@example.com", "s3cret!")
        assert user.member.name == "Ana"
        assert gate.tokens.verify(token).member_id == member.id
        with pytest.raises(ConflictError):
            gate.register("other@example.com", "s3cret!", member.id)

    def test_unknown_member(self, gate):
        with pytest.raises(NotFoundError):
            gate.register("ana@example.com", "s3cret!", "no-such-member")

    def test_inactive_member_cannot_login(self, gate, store):
        member = store.create_member("Ana", "ana@example.com")
        gate.register("ana@example.com", "s3cret!", member.id)
        store.set_member_status(member.id, MemberStatus.INACTIVE)
        with pytest.raises(ForbiddenError):
            gate.login("ana@example.com", "s3cret!")

    def test_change_password(self, gate):
        user = gate.register("ana@example.com", "s3cret!")
        with pytest.raises(AuthenticationError):
            gate.change_password(user.id, "wrong!!", "newpass1")
        gate.change_password(user.id, "s3cret!", "newpass1")
        gate.login("ana@example.com", "newpass1")
        with pytest.raises(AuthenticationError):
            gate.login("ana@example.com", "s3cret!")


class TestApiKeyManagement:

    def test_defaults(self, gate, store):
        key, raw = gate.create_api_key("bot")
        assert key.permissions == ["transactions:read", "transactions:write"]
        assert key.expires_at is None
        stored = store.get_api_key(key.id)
        assert stored.key_hash == hash_api_key(raw)
        assert raw not in str(stored.to_dict())

    def test_expiry_choice(self, gate):
        key, _ = gate.create_api_key("bot", expires_in="30d")
        delta = key.expires_at - key.created_at
        assert delta == timedelta(days=30)

    def test_invalid_expiry(self, gate):
        with pytest.raises(ValidationError):
            gate.create_api_key("bot", expires_in="2w")

    def test_name_required(self, gate):
        with pytest.raises(ValidationError):
            gate.create_api_key("  ")

    def test_unknown_project(self, gate):
        with pytest.raises(NotFoundError):
            gate.create_api_key("bot", internal_project_id="missing")

    def test_update_and_delete(self, gate, store):
        key, _ = gate.create_api_key("bot")
        updated = gate.update_api_key(key.id, {"name": "renamed", "permissions": ["tasks:read"]})
        assert updated.name == "renamed"
        assert store.get_api_key(key.id).permissions == ["tasks:read"]
        gate.delete_api_key(key.id)
        assert store.get_api_key(key.id) is None
        with pytest.raises(NotFoundError):
            gate.delete_api_key(key.id)


def test_touch_failures_are_logged_at_warning(gate, store, caplog):
    caplog.set_level(logging.WARNING, logger="huntly.auth")
    key, _ = gate.create_api_key("bot")
    with patch.object(store, "touch_api_key", side_effect=RuntimeError("boom")):
        future = gate.record_usage(key.id)
        gate.close()
    assert isinstance(future.exception(), RuntimeError)
    assert any(r.levelno == logging.WARNING for r in caplog.records)
