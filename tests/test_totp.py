from urllib.parse import parse_qs, urlparse

import pytest

from medguard.service.audit import SecurityEventRecorder
from medguard.service.credentials import DirectoryCredentialStore
from medguard.service.errors import Mismatch, NotFoundError, ValidationError
from medguard.service.totp import (
    TOTP_INTERVAL,
    TotpAuthenticator,
    generate_totp,
    hash_backup_code,
    normalize_backup_code,
)
from medguard.storage.memory import MemoryStore

PASSWORD = "Correcto-Caballo-42"


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def credentials(store):
    return DirectoryCredentialStore(store)


@pytest.fixture
def user(credentials):
    return credentials.register_user("medico@example.com", PASSWORD, role="medico")


@pytest.fixture
def totp(store, credentials, clock):
    return TotpAuthenticator(
        store, credentials, clock=clock, recorder=SecurityEventRecorder(store, clock)
    )


def _code_at(totp, secret, steps=0):
    return generate_totp(secret, totp.clock.now().timestamp() + steps * TOTP_INTERVAL)


def _event_types(store, user_id):
    return [e.event_type for e in store.list_security_events(user_id)]


def test_generate_totp_matches_rfc_6238_vectors():
    secret = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"
    assert generate_totp(secret, 59) == "287082"
    assert generate_totp(secret, 1111111109) == "081804"
    assert generate_totp(secret, 1234567890) == "005924"


def test_generate_totp_rejects_invalid_secret():
    assert generate_totp("not base32!", 59) == ""


def test_setup_stores_disabled_config_with_hashed_backup_codes(totp, store, user):
    setup = totp.setup(user.id, user.email)
    assert len(setup.secret) == 32
    assert len(setup.backup_codes) == 10
    assert len(set(setup.backup_codes)) == 10
    assert all(len(code) == 8 and code.isalnum() and code.upper() == code for code in setup.backup_codes)

    stored = store.get_two_factor(user.id)
    assert stored.enabled is False
    assert stored.secret == setup.secret
    assert stored.backup_codes == {hash_backup_code(c) for c in setup.backup_codes}
    # secrets are encrypted in the persisted state
    assert store.two_factor[user.id].secret != setup.secret


def test_qr_payload_is_otpauth_uri(totp, user):
    setup = totp.setup(user.id, user.email)
    parsed = urlparse(setup.qr_payload)
    assert parsed.scheme == "otpauth"
    assert parsed.netloc == "totp"
    assert parsed.path == "/RedSalud:medico%40example.com"
    query = parse_qs(parsed.query)
    assert query["secret"] == [setup.secret]
    assert query["issuer"] == ["RedSalud"]
    assert query["algorithm"] == ["SHA1"]
    assert query["digits"] == ["6"]
    assert query["period"] == ["30"]


def test_first_valid_code_enables_factor(totp, store, user, clock):
    setup = totp.setup(user.id, user.email)
    assert totp.verify(user.id, _code_at(totp, setup.secret)) is True
    stored = store.get_two_factor(user.id)
    assert stored.enabled is True
    assert stored.verified_at == clock.now()
    assert "2fa_enabled" in _event_types(store, user.id)
    assert totp.status(user.id).enabled is True


@pytest.mark.parametrize("steps", [-2, -1, 0, 1, 2])
def test_codes_within_two_steps_are_accepted(totp, user, steps):
    setup = totp.setup(user.id, user.email)
    assert totp.verify(user.id, _code_at(totp, setup.secret, steps)) is True


@pytest.mark.parametrize("steps", [-4, -3, 3, 4])
def test_codes_outside_window_are_rejected(totp, user, steps):
    setup = totp.setup(user.id, user.email)
    window = {_code_at(totp, setup.secret, s) for s in range(-2, 3)}
    code = _code_at(totp, setup.secret, steps)
    if code in window:
        pytest.skip("step collides with a code inside the window")
    assert totp.verify(user.id, code) is False


def test_wrong_code_does_not_enable(totp, store, user):
    setup = totp.setup(user.id, user.email)
    window = {_code_at(totp, setup.secret, s) for s in range(-2, 3)}
    wrong = next(f"{n:06d}" for n in range(1000000) if f"{n:06d}" not in window)
    assert totp.verify(user.id, wrong) is False
    assert store.get_two_factor(user.id).enabled is False


@pytest.mark.parametrize("code", ["12345", "1234567", "abc", "12 34", "ABCDEFG!"])
def test_malformed_codes_raise_validation_error(totp, user, code):
    totp.setup(user.id, user.email)
    with pytest.raises(ValidationError):
        totp.verify(user.id, code)


def test_verify_without_config_returns_false(totp, user):
    assert totp.verify(user.id, "123456") is False


def test_backup_code_is_single_use(totp, store, user):
    setup = totp.setup(user.id, user.email)
    totp.verify(user.id, _code_at(totp, setup.secret))
    backup = setup.backup_codes[0]

    assert totp.verify(user.id, backup) is True
    assert totp.verify(user.id, backup) is False
    assert totp.status(user.id).backup_codes_remaining == 9
    assert "backup_code_used" in _event_types(store, user.id)


def test_backup_code_is_normalized(totp, user):
    setup = totp.setup(user.id, user.email)
    totp.verify(user.id, _code_at(totp, setup.secret))
    backup = setup.backup_codes[1]
    spaced = f"{backup[:4].lower()}-{backup[4:].lower()}"
    assert normalize_backup_code(spaced) == backup
    assert totp.verify(user.id, spaced) is True


def test_backup_code_rejected_before_enrollment_completes(totp, user):
    setup = totp.setup(user.id, user.email)
    assert totp.verify(user.id, setup.backup_codes[0]) is False


def test_setup_rejected_while_enabled(totp, user):
    setup = totp.setup(user.id, user.email)
    totp.verify(user.id, _code_at(totp, setup.secret))
    with pytest.raises(ValidationError):
        totp.setup(user.id, user.email)


def test_setup_again_before_verification_replaces_secret(totp, store, user):
    first = totp.setup(user.id, user.email)
    second = totp.setup(user.id, user.email)
    assert first.secret != second.secret
    assert store.get_two_factor(user.id).secret == second.secret


def test_disable_requires_password(totp, store, user):
    setup = totp.setup(user.id, user.email)
    totp.verify(user.id, _code_at(totp, setup.secret))

    with pytest.raises(Mismatch):
        totp.disable(user.id, "wrong-password")
    assert store.get_two_factor(user.id) is not None
    assert "2fa_disable_failed" in _event_types(store, user.id)

    totp.disable(user.id, PASSWORD)
    assert store.get_two_factor(user.id) is None
    assert "2fa_disabled" in _event_types(store, user.id)
    status = totp.status(user.id)
    assert status.configured is False
    assert status.enabled is False


def test_disable_without_config_is_not_found(totp, user):
    with pytest.raises(NotFoundError):
        totp.disable(user.id, PASSWORD)
