"""Tests for the maintenance sweeper and its background loop."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from shopauth.config import Settings
from shopauth.service.auth import AuthService
from shopauth.service.blacklist import TokenBlacklist
from shopauth.service.isolation import run_isolated
from shopauth.service.maintenance import MaintenanceSweeper, run_maintenance_loop
from shopauth.service.security_events import SecurityEventLog
from shopauth.service.tokens import TokenCodec
from shopauth.storage.memory import MemoryStore
from shopauth.storage.models import SecurityEvent


class StubAuth:
    def __init__(self, result=0, error=None):
        self.calls = 0
        self.result = result
        self.error = error

    def invalidate_expired_sessions(self):
        self.calls += 1
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def blacklist(clock):
    return TokenBlacklist(clock=clock)


@pytest.fixture
def events(store, clock):
    return SecurityEventLog(store, clock=clock)


def test_run_isolated_returns_default_on_failure():
    def boom():
        raise RuntimeError("boom")

    assert run_isolated("step", lambda: 5) == 5
    assert run_isolated("step", boom) is None
    assert run_isolated("step", boom, default=0) == 0


def test_run_reports_each_step(store, blacklist, events, clock):
    blacklist.revoke("expired", 10)
    blacklist.revoke("live", 10_000)
    now = datetime.fromtimestamp(clock.now, tz=timezone.utc)
    store.append_security_event(
        SecurityEvent("a@example.com", "LOGIN_SUCCESS", created_at=now - timedelta(days=45))
    )
    store.append_security_event(SecurityEvent("a@example.com", "LOGIN_SUCCESS", created_at=now))
    clock.advance(20)

    sweeper = MaintenanceSweeper(StubAuth(result=3), blacklist, events, clock=clock)
    results = sweeper.run()

    assert results == {
        "sessions_invalidated": 3,
        "blacklist_removed": 1,
        "security_events_removed": 1,
    }


def test_failing_step_does_not_stop_the_others(store, blacklist, events, clock):
    auth = StubAuth(error=RuntimeError("store offline"))
    blacklist.revoke("expired", 1)
    clock.advance(2)

    results = MaintenanceSweeper(auth, blacklist, events, clock=clock).run()

    assert auth.calls == 1
    assert results["sessions_invalidated"] is None
    assert results["blacklist_removed"] == 1
    assert results["security_events_removed"] == 0


def test_retention_days_sets_the_cutoff(store, blacklist, events, clock):
    now = datetime.fromtimestamp(clock.now, tz=timezone.utc)
    store.append_security_event(
        SecurityEvent("a@example.com", "LOGIN_SUCCESS", created_at=now - timedelta(days=8))
    )
    sweeper = MaintenanceSweeper(StubAuth(), blacklist, events, retention_days=7, clock=clock)
    assert sweeper.run()["security_events_removed"] == 1


async def test_maintenance_loop_runs_until_cancelled():
    class CountingSweeper:
        def __init__(self):
            self.runs = 0

        def run(self):
            self.runs += 1
            return {}

    sweeper = CountingSweeper()
    task = asyncio.create_task(run_maintenance_loop(sweeper, 0))
    for _ in range(50):
        await asyncio.sleep(0.01)
        if sweeper.runs >= 2:
            break
    task.cancel()
    await task

    assert sweeper.runs >= 2
    assert task.done()


def test_sweep_with_real_auth_reports_blacklist_removals(store, blacklist, events, clock, tmp_path):
    settings = Settings(
        shared_fs_root=str(tmp_path),
        jwt_secret="Maintenance-Test-Secret_0123456789abcdefghijklmnop" * 2,
        access_token_ttl_seconds=900,
        refresh_token_ttl_seconds=3600,
    )
    codec = TokenCodec(
        settings.jwt_secret,
        issuer=settings.jwt_issuer,
        audience=settings.jwt_audience,
        ttl_seconds=settings.access_token_ttl_seconds,
        clock=clock,
    )
    auth = AuthService(store, store, codec, blacklist, events, settings, clock=clock)
    first = auth.register("carol@example.com", "carol", "CorrectHorse9!")
    clock.advance(1)
    second = auth.login("carol@example.com", "CorrectHorse9!")
    auth.logout(first.refresh_token)
    clock.advance(3601)

    results = MaintenanceSweeper(auth, blacklist, events, clock=clock).run()

    assert results["sessions_invalidated"] == 1
    assert results["blacklist_removed"] == 1
    assert store.get_session_by_refresh_token(second.refresh_token).active is False
