from datetime import timedelta

import httpx
import pytest

from medguard.service.audit import SecurityEventRecorder
from medguard.service.credentials import DirectoryCredentialStore
from medguard.service.errors import (
    AttemptsExhausted,
    DeliveryFailure,
    Expired,
    Mismatch,
    ValidationError,
)
from medguard.service.phone_otp import (
    REASON_EXPIRED,
    REASON_INVALID_CODE,
    REASON_NO_PENDING_CODE,
    REASON_TOO_MANY_ATTEMPTS,
    PhoneOtpVerifier,
    normalize_phone,
)
from medguard.service.sms import SmsService
from medguard.storage.memory import MemoryStore

PHONE = "+56 9 1234-5678"
NORMALIZED = "+56912345678"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def credentials(store):
    return DirectoryCredentialStore(store)


@pytest.fixture
def user(credentials):
    return credentials.register_user("paciente@example.com", "Contrasena-Segura-1")


@pytest.fixture
def sent_messages():
    return []


@pytest.fixture
def sms(sent_messages):
    def handler(request: httpx.Request) -> httpx.Response:
        sent_messages.append(request)
        return httpx.Response(200, json={"status": "queued"})

    return SmsService(
        provider_url="https://sms.example.test/messages",
        api_key="sms-key",
        transport=httpx.MockTransport(handler),
    )


@pytest.fixture
def verifier(store, credentials, sms, clock):
    return PhoneOtpVerifier(
        store,
        credentials,
        sms,
        clock=clock,
        recorder=SecurityEventRecorder(store, clock),
    )


def _pending_code(store, user_id, phone=NORMALIZED):
    return store.get_latest_unverified_phone_verification(user_id, phone).code


def _wrong(code):
    return "100000" if code != "100000" else "100001"


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("+56 9 1234-5678", "+56912345678"),
        ("(02) 2345.6789", "0223456789"),
        ("12345678", "12345678"),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


@pytest.mark.parametrize("raw", ["", "1234", "+1234567890123456", "call me", "++56912345678"])
def test_normalize_phone_rejects_invalid_numbers(raw):
    with pytest.raises(ValidationError):
        normalize_phone(raw)


def test_send_code_creates_pending_record_and_sends_sms(verifier, store, user, clock, sent_messages):
    issued = verifier.send_code(user.id, PHONE)
    assert issued.expires_at == clock.now() + timedelta(minutes=10)

    record = store.get_latest_unverified_phone_verification(user.id, NORMALIZED)
    assert record.id == issued.verification_id
    assert record.attempts == 0
    assert record.verified is False
    assert 100000 <= int(record.code) <= 999999

    assert len(sent_messages) == 1
    payload = sent_messages[0].read().decode()
    assert NORMALIZED in payload
    assert record.code in payload
    assert sent_messages[0].headers["Authorization"] == "Bearer sms-key"


def test_correct_code_within_ttl_verifies_phone(verifier, store, user, clock):
    verifier.send_code(user.id, PHONE)
    code = _pending_code(store, user.id)
    clock.advance(minutes=9)

    result = verifier.verify_code(user.id, PHONE, code)
    assert result.valid is True
    assert result.reason is None

    refreshed = store.get_user(user.id)
    assert refreshed.phone_number == NORMALIZED
    assert refreshed.phone_verified is True
    assert store.get_latest_unverified_phone_verification(user.id, NORMALIZED) is None
    assert "phone_verified" in [e.event_type for e in store.list_security_events(user.id)]


def test_code_after_ttl_is_expired(verifier, store, user, clock):
    verifier.send_code(user.id, PHONE)
    code = _pending_code(store, user.id)
    clock.advance(minutes=11)
    with pytest.raises(Expired) as excinfo:
        verifier.verify_code(user.id, PHONE, code)
    assert excinfo.value.detail["reason"] == REASON_EXPIRED


def test_code_exactly_at_expiry_is_still_valid(verifier, store, user, clock):
    verifier.send_code(user.id, PHONE)
    code = _pending_code(store, user.id)
    clock.advance(minutes=10)
    assert verifier.verify_code(user.id, PHONE, code).valid


def test_wrong_codes_count_attempts_until_exhausted(verifier, store, user):
    verifier.send_code(user.id, PHONE)
    code = _pending_code(store, user.id)
    wrong = _wrong(code)

    for remaining in (2, 1, 0):
        with pytest.raises(Mismatch) as excinfo:
            verifier.verify_code(user.id, PHONE, wrong)
        assert excinfo.value.detail["reason"] == REASON_INVALID_CODE
        assert excinfo.value.detail["attempts_remaining"] == remaining

    # the fourth attempt is refused without touching the counter, even with the right code
    with pytest.raises(AttemptsExhausted) as excinfo:
        verifier.verify_code(user.id, PHONE, code)
    assert excinfo.value.detail["reason"] == REASON_TOO_MANY_ATTEMPTS
    record = store.get_latest_unverified_phone_verification(user.id, NORMALIZED)
    assert record.attempts == 3

    failures = [
        e for e in store.list_security_events(user.id) if e.event_type == "phone_verification_failed"
    ]
    assert len(failures) == 4


def test_verify_without_pending_code(verifier, user):
    with pytest.raises(Mismatch) as excinfo:
        verifier.verify_code(user.id, PHONE, "123456")
    assert excinfo.value.detail["reason"] == REASON_NO_PENDING_CODE


def test_new_code_supersedes_previous(verifier, store, user, clock):
    verifier.send_code(user.id, PHONE)
    first = _pending_code(store, user.id)
    clock.advance(seconds=30)
    verifier.send_code(user.id, PHONE)
    second = _pending_code(store, user.id)
    if first != second:
        with pytest.raises(Mismatch):
            verifier.verify_code(user.id, PHONE, first)
    assert verifier.verify_code(user.id, PHONE, second).valid


@pytest.mark.parametrize("code", ["12345", "abcdef", "1234567", ""])
def test_malformed_code_is_validation_error(verifier, user, code):
    verifier.send_code(user.id, PHONE)
    with pytest.raises(ValidationError):
        verifier.verify_code(user.id, PHONE, code)


def test_provider_rejection_becomes_delivery_failure(store, credentials, user, clock):
    sms = SmsService(
        provider_url="https://sms.example.test/messages",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    verifier = PhoneOtpVerifier(store, credentials, sms, clock=clock)
    with pytest.raises(DeliveryFailure) as excinfo:
        verifier.send_code(user.id, PHONE)
    assert excinfo.value.detail["provider_status"] == 500
    assert store.get_latest_unverified_phone_verification(user.id, NORMALIZED) is None


def test_failed_resend_keeps_delivered_code_valid(store, credentials, user, clock):
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) > 1:
            return httpx.Response(500)
        return httpx.Response(200, json={"status": "queued"})

    sms = SmsService(
        provider_url="https://sms.example.test/messages",
        transport=httpx.MockTransport(handler),
    )
    verifier = PhoneOtpVerifier(store, credentials, sms, clock=clock)
    issued = verifier.send_code(user.id, PHONE)
    delivered = _pending_code(store, user.id)

    clock.advance(seconds=30)
    with pytest.raises(DeliveryFailure):
        verifier.send_code(user.id, PHONE)

    latest = store.get_latest_unverified_phone_verification(user.id, NORMALIZED)
    assert latest.id == issued.verification_id
    assert verifier.verify_code(user.id, PHONE, delivered).valid


def test_resend_in_same_instant_is_authoritative(verifier, store, user):
    first = verifier.send_code(user.id, PHONE)
    second = verifier.send_code(user.id, PHONE)

    latest = store.get_latest_unverified_phone_verification(user.id, NORMALIZED)
    assert latest.id == second.verification_id
    assert latest.id != first.verification_id
    assert verifier.verify_code(user.id, PHONE, latest.code).valid


def test_unreachable_provider_becomes_delivery_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    sms = SmsService(
        provider_url="https://sms.example.test/messages",
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(DeliveryFailure):
        sms.send_message(NORMALIZED, "hola")


def test_sms_dev_mode_sends_nothing():
    sms = SmsService()
    assert sms.is_configured is False
    assert sms.send_verification_code(NORMALIZED, "123456", 10) is True
