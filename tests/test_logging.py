import structlog

from medguard.logging import (
    _redact_pii,
    bind_session_context,
    clear_request_context,
    get_correlation_id,
    sanitize_error_message,
    set_correlation_id,
)


def _redact(**fields):
    return _redact_pii(None, "info", dict(fields))


def test_one_time_codes_are_fully_masked():
    out = _redact(code="123456", confirmation_proof="Clave-Segura-2024", answer="firulais")
    assert out == {"code": "***", "confirmation_proof": "***", "answer": "***"}


def test_identifiers_keep_their_ends():
    out = _redact(email="paciente@example.com", session_id="0f8c2a7e-1111-2222-3333-9d4b5e6f7a8b")
    assert out["email"] == "paci***om"
    assert out["session_id"] == "0f8c***8b"


def test_status_fields_are_not_masked():
    out = _redact(event="service_error", status_code=429, error_code="rate_limited", failure_count=3)
    assert out == {"event": "service_error", "status_code": 429, "error_code": "rate_limited", "failure_count": 3}


def test_none_values_pass_through():
    assert _redact(code=None, phone=None) == {"code": None, "phone": None}


def test_session_context_is_bound_and_cleared():
    clear_request_context()
    bind_session_context("user-1", "session-abcdef")
    assert structlog.contextvars.get_contextvars() == {"user_id": "user-1", "session_id": "session-abcdef"}
    clear_request_context()
    assert structlog.contextvars.get_contextvars() == {}


def test_correlation_id_generated_when_missing():
    cid = set_correlation_id(None)
    assert cid and get_correlation_id() == cid
    assert set_correlation_id("req-1") == "req-1"


def test_sanitize_error_message():
    assert "s3cr3t" not in sanitize_error_message("password=s3cr3t rejected")
    assert "/srv/medguard" not in sanitize_error_message("cannot open /srv/medguard/state/x.json")
    assert sanitize_error_message("") == "An error occurred"
    assert len(sanitize_error_message("x" * 900)) == 500
