from datetime import timedelta

import pytest

from medguard.service.audit import SecurityEventRecorder
from medguard.service.errors import NotFoundError, Unauthenticated
from medguard.service.sessions import SessionContext, SessionRegistry
from medguard.storage.memory import MemoryStore


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def registry(store, clock):
    return SessionRegistry(store, clock=clock, recorder=SecurityEventRecorder(store, clock))


@pytest.fixture
def user(store):
    return store.create_user("sesiones@example.com")


def _events(store, user_id):
    return [e.event_type for e in store.list_security_events(user_id)]


def test_register_creates_session_and_records_login(registry, store, user, clock):
    session_id = registry.register(user.id, "Firefox en Linux", "192.168.1.10")
    session = registry.get(session_id)
    assert session.user_id == user.id
    assert session.device_info == "Firefox en Linux"
    assert session.created_at == clock.now()
    assert session.last_activity == clock.now()
    assert _events(store, user.id) == ["session_login"]


def test_register_normalizes_ip(registry, user):
    session_id = registry.register(user.id, None, "2001:0db8:0000:0000:0000:0000:0000:0001")
    assert registry.get(session_id).ip_address == "2001:db8::1"
    other = registry.register(user.id, None, "not-an-ip")
    assert registry.get(other).ip_address is None


def test_list_sessions_most_recent_first(registry, user, clock):
    first = registry.register(user.id, "telefono", None)
    clock.advance(minutes=1)
    second = registry.register(user.id, "portatil", None)
    clock.advance(minutes=1)
    registry.touch(first)
    assert [s.id for s in registry.list_sessions(user.id)] == [first, second]


def test_touch_updates_last_activity(registry, user, clock):
    session_id = registry.register(user.id, None, None)
    clock.advance(minutes=7)
    touched = registry.touch(session_id)
    assert touched.last_activity == clock.now()
    assert touched.created_at == clock.now() - timedelta(minutes=7)


@pytest.mark.parametrize("session_id", ["", "missing"])
def test_touch_unknown_session_is_unauthenticated(registry, session_id):
    with pytest.raises(Unauthenticated):
        registry.touch(session_id)


def test_touch_after_terminate_is_unauthenticated(registry, user):
    session_id = registry.register(user.id, None, None)
    assert registry.terminate(session_id) is True
    with pytest.raises(Unauthenticated):
        registry.touch(session_id)


def test_terminate_records_logout(registry, store, user):
    session_id = registry.register(user.id, None, None)
    registry.terminate(session_id)
    assert "session_logout" in _events(store, user.id)
    assert registry.terminate(session_id) is False


def test_terminate_foreign_session_is_not_found(registry, store, user):
    other = store.create_user("otra@example.com")
    foreign = registry.register(other.id, None, None)
    with pytest.raises(NotFoundError):
        registry.terminate(foreign, owner_user_id=user.id)
    assert registry.get(foreign) is not None
    with pytest.raises(NotFoundError):
        registry.terminate("missing", owner_user_id=user.id)


def test_revoking_from_another_device_records_revocation(registry, store, user):
    current = registry.register(user.id, "actual", None)
    other = registry.register(user.id, "otro", None)
    registry.terminate(other, owner_user_id=user.id, reason="revoked")
    assert registry.get(current) is not None
    assert "session_revoked" in _events(store, user.id)


def test_terminate_all_others_keeps_current(registry, store, user, clock):
    current = registry.register(user.id, "actual", None)
    for device in ("tablet", "telefono", "trabajo"):
        registry.register(user.id, device, None)
    other_user = store.create_user("vecino@example.com")
    untouched = registry.register(other_user.id, None, None)
    clock.advance(seconds=5)

    removed = registry.terminate_all_others(user.id, current)
    assert removed == 3
    assert [s.id for s in registry.list_sessions(user.id)] == [current]
    assert registry.get(untouched) is not None

    event = store.list_security_events(user.id)[0]
    assert event.event_type == "sessions_terminated"
    assert event.meta["count"] == 3


def test_session_context_exposes_ids(registry, user):
    session_id = registry.register(user.id, None, None)
    ctx = SessionContext(session=registry.get(session_id), role="medico")
    assert ctx.current_session_id == session_id
    assert ctx.user_id == user.id
    assert ctx.role == "medico"
