import asyncio
from datetime import timedelta

import pytest

from medguard.service.audit import SecurityEventRecorder
from medguard.service.credentials import DirectoryCredentialStore
from medguard.service.errors import Unauthenticated
from medguard.service.sessions import SessionRegistry
from medguard.service.timeout_monitor import (
    SessionState,
    SessionTimeoutMonitor,
    SessionTimeoutPolicy,
)
from medguard.storage.memory import MemoryStore

POLICY = SessionTimeoutPolicy(
    idle_timeout=timedelta(minutes=30), warning_lead_time=timedelta(minutes=5)
)


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def recorder(store, clock):
    return SecurityEventRecorder(store, clock)


@pytest.fixture
def registry(store, clock, recorder):
    return SessionRegistry(store, clock=clock, recorder=recorder)


@pytest.fixture
def user(store):
    return store.create_user("monitor@example.com", role="paciente")


@pytest.fixture
def session_id(registry, user):
    return registry.register(user.id, "navegador", None)


@pytest.fixture
def transitions():
    return []


@pytest.fixture
def monitor(session_id, registry, store, clock, recorder, transitions):
    return SessionTimeoutMonitor(
        session_id,
        registry,
        DirectoryCredentialStore(store),
        POLICY,
        clock=clock,
        recorder=recorder,
        on_state_change=lambda old, new: transitions.append((old, new)),
    )


def test_idle_session_warns_then_expires(monitor, registry, store, user, session_id, clock, transitions):
    assert monitor.evaluate() is SessionState.ACTIVE

    clock.advance(minutes=24, seconds=59)
    assert monitor.evaluate() is SessionState.ACTIVE

    clock.advance(seconds=1)
    assert monitor.evaluate() is SessionState.WARNING
    assert monitor.remaining() == timedelta(minutes=5)

    clock.advance(minutes=5)
    assert monitor.evaluate() is SessionState.EXPIRED
    assert registry.get(session_id) is None
    assert monitor.remaining() == timedelta(0)

    assert transitions == [
        (SessionState.ACTIVE, SessionState.WARNING),
        (SessionState.WARNING, SessionState.EXPIRED),
    ]
    timeouts = [e for e in store.list_security_events(user.id) if e.event_type == "session_timeout"]
    assert len(timeouts) == 1
    assert timeouts[0].meta["session_id"] == session_id


def test_expired_is_terminal(monitor, registry, store, user, clock):
    clock.advance(minutes=30)
    assert monitor.evaluate() is SessionState.EXPIRED
    # a later session for the user must not revive this monitor
    registry.register(user.id, None, None)
    assert monitor.evaluate() is SessionState.EXPIRED
    timeouts = [e for e in store.list_security_events(user.id) if e.event_type == "session_timeout"]
    assert len(timeouts) == 1


def test_extend_during_warning_restarts_idle_clock(monitor, store, user, clock):
    clock.advance(minutes=26)
    assert monitor.evaluate() is SessionState.WARNING

    assert monitor.extend() is SessionState.ACTIVE
    assert monitor.state is SessionState.ACTIVE
    assert monitor.remaining() == timedelta(minutes=30)
    assert "session_extended" in [e.event_type for e in store.list_security_events(user.id)]

    clock.advance(minutes=26)
    assert monitor.evaluate() is SessionState.WARNING
    clock.advance(minutes=4)
    assert monitor.evaluate() is SessionState.EXPIRED


def test_extend_after_expiry_is_unauthenticated(monitor, clock):
    clock.advance(minutes=31)
    with pytest.raises(Unauthenticated):
        monitor.extend()
    assert monitor.state is SessionState.EXPIRED


def test_session_terminated_elsewhere_evaluates_expired(monitor, registry, session_id, store, user):
    registry.terminate(session_id)
    assert monitor.evaluate() is SessionState.EXPIRED
    events = [e.event_type for e in store.list_security_events(user.id)]
    assert "session_timeout" not in events


def test_touch_racing_expiry_keeps_session(monitor, registry, session_id, store, user, clock, monkeypatch):
    clock.advance(minutes=31)
    original_get = registry.get
    reads = []

    def stale_get(sid):
        snapshot = original_get(sid)
        if not reads:
            # a request lands right after the monitor read the idle session
            store.touch_active_session(sid, clock.now())
        reads.append(sid)
        return snapshot

    monkeypatch.setattr(registry, "get", stale_get)
    assert monitor.evaluate() is SessionState.ACTIVE
    assert original_get(session_id) is not None
    events = [e.event_type for e in store.list_security_events(user.id)]
    assert "session_timeout" not in events


def test_activity_keeps_session_active(monitor, registry, session_id, clock):
    for _ in range(4):
        clock.advance(minutes=20)
        registry.touch(session_id)
        assert monitor.evaluate() is SessionState.ACTIVE


def test_policy_validation():
    with pytest.raises(ValueError):
        SessionTimeoutPolicy(idle_timeout=timedelta(0), warning_lead_time=timedelta(0))
    with pytest.raises(ValueError):
        SessionTimeoutPolicy(
            idle_timeout=timedelta(minutes=5), warning_lead_time=timedelta(minutes=5)
        )
    with pytest.raises(ValueError):
        SessionTimeoutPolicy(
            idle_timeout=timedelta(minutes=5), warning_lead_time=timedelta(seconds=-1)
        )
    assert POLICY.warning_after == timedelta(minutes=25)


def test_policy_for_role():
    assert SessionTimeoutPolicy.for_role("medico").idle_timeout == timedelta(hours=1)
    assert SessionTimeoutPolicy.for_role("paciente").idle_timeout == timedelta(minutes=30)
    fallback = SessionTimeoutPolicy.for_role(
        "desconocido", default_idle=timedelta(minutes=15), warning_lead_time=timedelta(minutes=2)
    )
    assert fallback.idle_timeout == timedelta(minutes=15)
    assert fallback.warning_lead_time == timedelta(minutes=2)


async def test_poller_expires_idle_session(monitor, registry, session_id, clock):
    monitor.poll_interval = 0.01
    clock.advance(minutes=30)
    await monitor.start()
    for _ in range(100):
        if monitor.state is SessionState.EXPIRED:
            break
        await asyncio.sleep(0.01)
    await monitor.stop()
    assert monitor.state is SessionState.EXPIRED
    assert registry.get(session_id) is None


async def test_poller_start_is_idempotent_and_stop_cancels(monitor):
    monitor.poll_interval = 0.01
    await monitor.start()
    first_task = monitor._task
    await monitor.start()
    assert monitor._task is first_task
    await monitor.stop()
    assert monitor._task is None
    assert monitor.state is SessionState.ACTIVE
