"""Tests for the persisted in-memory store."""

from datetime import datetime, timedelta, timezone

import pytest

from shopauth.storage.errors import ConstraintViolation
from shopauth.storage.memory import MemoryStore
from shopauth.storage.models import SecurityEvent, Session

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def user(store):
    return store.create_user("alice@example.com", "alice", first_name="Alice", now=NOW)


def _session(user_id: str, token: str, *, ttl: int = 3600, now: datetime = NOW) -> Session:
    return Session.new(user_id, token, f"access-{token}", ttl_seconds=ttl, now=now)


class TestUsers:
    def test_email_and_username_are_unique_case_insensitively(self, store, user):
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("ALICE@example.com", "other")
        assert exc_info.value.field == "email"

        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_user("other@example.com", "Alice")
        assert exc_info.value.field == "username"

    def test_lookups(self, store, user):
        assert store.get_user(user.id).email == "alice@example.com"
        assert store.get_user_by_email("Alice@Example.com").id == user.id
        assert store.get_user_by_username("ALICE").id == user.id
        assert store.email_exists("alice@example.com")
        assert not store.username_exists("bob")

    def test_new_user_password_change_equals_creation(self, user):
        assert user.last_password_change == user.created_at == NOW

    def test_update_user_only_touches_mutable_fields(self, store, user):
        updated = store.update_user(user.id, is_locked=True, role="ADMIN")
        assert updated.is_locked is True
        assert updated.role == "ADMIN"
        with pytest.raises(ValueError):
            store.update_user(user.id, email="evil@example.com")
        assert store.update_user("missing", is_locked=True) is None

    def test_reads_return_copies(self, store, user):
        fetched = store.get_user(user.id)
        fetched.is_locked = True
        assert store.get_user(user.id).is_locked is False

    def test_password_requires_existing_user(self, store, user):
        store.save_password(user.id, "hash")
        assert store.get_password_hash(user.id) == "hash"
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash")


class TestSessions:
    def test_create_requires_known_user_and_unique_token(self, store, user):
        store.create_session(_session(user.id, "r1"))
        with pytest.raises(ConstraintViolation):
            store.create_session(_session(user.id, "r1"))
        with pytest.raises(ConstraintViolation):
            store.create_session(_session("missing", "r2"))

    def test_update_access_token_only_on_active_session(self, store, user):
        store.create_session(_session(user.id, "r1"))
        later = NOW + timedelta(minutes=5)
        assert store.update_session_access_token("r1", "access-new", later)
        sess = store.get_session_by_refresh_token("r1")
        assert sess.access_token == "access-new"
        assert sess.last_activity_at == later

        store.invalidate_session("r1", later)
        assert not store.update_session_access_token("r1", "access-newer", later)
        assert store.get_session_by_refresh_token("r1").access_token == "access-new"
        assert not store.update_session_access_token("missing", "x", later)

    def test_invalidate_session_keeps_first_logout_time(self, store, user):
        store.create_session(_session(user.id, "r1"))
        first = NOW + timedelta(minutes=1)
        assert store.invalidate_session("r1", first) is True
        assert store.invalidate_session("r1", first + timedelta(minutes=1)) is False
        sess = store.get_session_by_refresh_token("r1")
        assert sess.active is False
        assert sess.logged_out_at == first
        assert store.invalidate_session("missing", first) is False

    def test_invalidate_user_sessions(self, store, user):
        other = store.create_user("bob@example.com", "bob")
        store.create_session(_session(user.id, "a1"))
        store.create_session(_session(user.id, "a2"))
        store.create_session(_session(other.id, "b1"))

        assert store.invalidate_user_sessions(user.id, NOW) == 2
        assert store.invalidate_user_sessions(user.id, NOW) == 0
        assert store.get_session_by_refresh_token("b1").active is True

    def test_invalidate_expired_sessions(self, store, user):
        store.create_session(_session(user.id, "short", ttl=60))
        store.create_session(_session(user.id, "long", ttl=7200))

        assert store.invalidate_expired_sessions(NOW + timedelta(seconds=60)) == 1
        assert store.get_session_by_refresh_token("short").active is False
        assert store.get_session_by_refresh_token("long").active is True
        assert store.invalidate_expired_sessions(NOW + timedelta(seconds=60)) == 0


class TestSecurityEvents:
    def test_delete_before_cutoff(self, store):
        store.append_security_event(
            SecurityEvent("a@example.com", "LOGIN_SUCCESS", created_at=NOW - timedelta(days=40))
        )
        store.append_security_event(SecurityEvent("a@example.com", "LOGIN_SUCCESS", created_at=NOW))

        assert store.delete_security_events_before(NOW - timedelta(days=30)) == 1
        assert store.count_security_events() == 1

    def test_list_is_filtered_and_limited(self, store):
        for i in range(5):
            store.append_security_event(
                SecurityEvent("a@example.com", "LOGIN_FAILURE", reason=str(i), created_at=NOW)
            )
        store.append_security_event(SecurityEvent("b@example.com", "LOGIN_SUCCESS", created_at=NOW))

        recent = store.list_security_events("A@example.com", limit=2)
        assert [e.reason for e in recent] == ["3", "4"]
        assert len(store.list_security_events()) == 6


def test_state_survives_reload(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = store.create_user("alice@example.com", "alice", now=NOW)
    store.save_password(user.id, "hash")
    store.create_session(_session(user.id, "r1"))
    store.append_security_event(SecurityEvent("alice@example.com", "LOGIN_SUCCESS", created_at=NOW))

    reloaded = MemoryStore(fs_root=str(tmp_path))
    assert reloaded.get_user_by_email("alice@example.com").id == user.id
    assert reloaded.get_password_hash(user.id) == "hash"
    restored = reloaded.get_session_by_refresh_token("r1")
    assert restored.active is True
    assert restored.expires_at == NOW + timedelta(seconds=3600)
    assert reloaded.count_security_events() == 1
