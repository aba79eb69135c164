from datetime import datetime, timezone

import pytest

from medguard.service.audit import SecurityEventRecorder
from medguard.service.credentials import DirectoryCredentialStore
from medguard.service.errors import PersistenceFailure, read_with_retry, retry_after_seconds, write_or_fail
from medguard.storage.errors import TransientStorageError
from medguard.storage.memory import MemoryStore
from medguard.storage.models import ActiveSession


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def credentials(store):
    return DirectoryCredentialStore(store)


def test_register_and_authenticate(credentials, store):
    user = credentials.register_user("Clinica@Example.com", "Segura-123", role="clinica")
    assert user.email == "clinica@example.com"
    hashed, algo = store.get_password_record(user.id)
    assert algo == "argon2id"
    assert hashed.startswith("$argon2id$")

    assert credentials.authenticate("clinica@example.com", "Segura-123").id == user.id
    assert credentials.authenticate("clinica@example.com", "otra") is None
    assert credentials.authenticate("nadie@example.com", "Segura-123") is None


def test_invalidate_single_session(credentials, store):
    user = credentials.register_user("inv@example.com", "Segura-123")
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    keep = store.create_active_session(ActiveSession.new(user.id, now=now))
    drop = store.create_active_session(ActiveSession.new(user.id, now=now))
    credentials.invalidate_credentials(user.id, drop.id)
    credentials.invalidate_credentials(user.id, drop.id)
    assert store.get_active_session(drop.id) is None
    assert store.get_active_session(keep.id) is not None

    credentials.invalidate_credentials(user.id)
    assert store.list_active_sessions(user.id) == []


def test_set_verified_phone(credentials, store):
    user = credentials.register_user("tel@example.com", "Segura-123")
    credentials.set_verified_phone(user.id, "+56912345678")
    refreshed = store.get_user(user.id)
    assert refreshed.phone_number == "+56912345678"
    assert refreshed.phone_verified is True


def test_recorder_persists_events(store, clock):
    recorder = SecurityEventRecorder(store, clock)
    event = recorder.record("u1", "session_login", "Signed in", status="success", meta={"a": 1})
    assert event.created_at == clock.now()
    assert recorder.recent("u1")[0].id == event.id


def test_recorder_rejects_unknown_status(store):
    with pytest.raises(ValueError):
        SecurityEventRecorder(store).record("u1", "x", "y", status="bogus")


class FlakySink(MemoryStore):
    def append_security_event(self, event):
        raise TransientStorageError("down", operation="append_security_event")


def test_recorder_survives_sink_outage(tmp_path):
    recorder = SecurityEventRecorder(FlakySink(fs_root=str(tmp_path)))
    event = recorder.record("u1", "phone_verified", "Phone number verified", status="success")
    assert event.event_type == "phone_verified"


def test_recent_clamps_limit(store, clock):
    recorder = SecurityEventRecorder(store, clock)
    for _ in range(3):
        recorder.record("u1", "session_login", "Signed in")
    assert len(recorder.recent("u1", limit=0)) == 1
    assert len(recorder.recent("u1", limit=1000)) == 3


def test_read_with_retry_retries_once():
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise TransientStorageError("blip")
        return "ok"

    assert read_with_retry("op", flaky) == "ok"
    assert len(calls) == 2


def test_read_with_retry_gives_up_after_second_failure():
    def down():
        raise TransientStorageError("down")

    with pytest.raises(PersistenceFailure) as excinfo:
        read_with_retry("get_thing", down)
    assert excinfo.value.detail == {"operation": "get_thing"}
    assert excinfo.value.status_code == 503


def test_write_or_fail_does_not_retry():
    calls = []

    def down():
        calls.append(1)
        raise TransientStorageError("down")

    with pytest.raises(PersistenceFailure):
        write_or_fail("put_thing", down)
    assert len(calls) == 1


def test_retry_after_seconds_rounds_up():
    from datetime import timedelta

    assert retry_after_seconds(timedelta(seconds=9.2)) == 10
    assert retry_after_seconds(timedelta(seconds=10)) == 10
    assert retry_after_seconds(timedelta(0)) == 1
