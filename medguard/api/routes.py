from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response

from medguard.api.schemas import (
    Envelope,
    LoginRequest,
    LoginResponse,
    PhoneSendCodeRequest,
    PhoneSendCodeResponse,
    PhoneVerifyCodeRequest,
    SecurityEventItem,
    SecurityEventListResponse,
    SecurityQuestionsResponse,
    SecurityQuestionsSaveRequest,
    SecurityQuestionsVerifyRequest,
    SessionInfo,
    SessionListResponse,
    SessionTimeoutResponse,
    SuccessResponse,
    TerminateOthersResponse,
    TotpDisableRequest,
    TotpSetupResponse,
    TotpVerifyRequest,
    TwoFactorStatusResponse,
)
from medguard.logging import bind_session_context, get_logger, sanitize_error_message
from medguard.service.errors import Mismatch, RateLimited, Unauthenticated, read_with_retry
from medguard.service.runtime import check_rate_limit, get_runtime
from medguard.service.sessions import SessionContext
from medguard.service.timeout_monitor import SessionState
from medguard.storage.common import normalize_ip

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_SESSION_SCHEME = "session"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce rate limit and optionally apply headers to response.

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after_seconds": max(1, reset_seconds)},
        )

    return info


def _client_ip(request: Request) -> Optional[str]:
    if request.client is None:
        return None
    return normalize_ip(request.client.host)


def _resolve_session_id(authorization: Optional[str], session_id: Optional[str]) -> Optional[str]:
    if session_id:
        return session_id.strip() or None
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == _SESSION_SCHEME and value.strip():
            return value.strip()
    return None


def _load_context(runtime, session_id: Optional[str], *, touch: bool) -> SessionContext:
    if not session_id:
        raise _http_error("unauthorized", "session required", status_code=401)
    session = runtime.sessions.get(session_id)
    if session is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    user = read_with_retry("get_user", lambda: runtime.store.get_user(session.user_id))
    if user is None:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    monitor = runtime.timeout_monitor(session_id, user.role)
    if monitor.evaluate() is SessionState.EXPIRED:
        raise _http_error("unauthorized", "session expired", status_code=401)
    if touch:
        try:
            session = runtime.sessions.touch(session_id)
        except Unauthenticated:
            raise _http_error("unauthorized", "invalid session", status_code=401)
    bind_session_context(user.id, session.id)
    return SessionContext(session=session, role=user.role)


async def get_session_context(
    authorization: Optional[str] = Header(None),
    session_id_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
) -> SessionContext:
    """Resolve the caller's session, expire it if idle, and record activity."""
    runtime = get_runtime()
    return _load_context(runtime, _resolve_session_id(authorization, session_id_header), touch=True)


async def peek_session_context(
    authorization: Optional[str] = Header(None),
    session_id_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
) -> SessionContext:
    """Like ``get_session_context`` but without counting the request as activity."""
    runtime = get_runtime()
    return _load_context(runtime, _resolve_session_id(authorization, session_id_header), touch=False)


def _timeout_payload(state: SessionState, monitor) -> SessionTimeoutResponse:
    policy = monitor.policy
    return SessionTimeoutResponse(
        state=state.value,
        remaining_seconds=int(monitor.remaining().total_seconds()),
        idle_timeout_seconds=int(policy.idle_timeout.total_seconds()),
        warning_lead_seconds=int(policy.warning_lead_time.total_seconds()),
    )


@router.get("/healthz", response_model=Envelope, tags=["health"])
async def healthz():
    runtime = get_runtime()
    checks = {"store": "ok", "cache": "disabled" if runtime.cache is None else "ok"}
    failures = {}
    try:
        runtime.store.verify_connection()
    except Exception as exc:
        logger.error("healthz_store_failed", error=str(exc), error_type=type(exc).__name__)
        checks["store"] = "error"
        failures["store"] = sanitize_error_message(str(exc))
    if runtime.cache is not None:
        try:
            runtime.cache.verify_connection()
        except Exception as exc:
            logger.error("healthz_cache_failed", error=str(exc), error_type=type(exc).__name__)
            checks["cache"] = "error"
            failures["cache"] = sanitize_error_message(str(exc))
    if failures:
        raise _http_error(
            "persistence_failure",
            "dependency unavailable",
            503,
            details={"checks": checks, "errors": failures},
        )
    return Envelope(status="ok", data={"status": "healthy", "checks": checks})


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password and open a session.

    Raises:
        401: If credentials are invalid
        429: While the account is locked out, or the request rate is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    identity_key = body.email
    runtime.lockout.ensure_allowed(identity_key)
    user = runtime.credentials.authenticate(body.email, body.password)
    if user is None:
        known = read_with_retry(
            "get_user_by_email", lambda: runtime.store.get_user_by_email(body.email)
        )
        outcome = runtime.lockout.record_failure(
            identity_key, user_id=known.id if known else None
        )
        if outcome.locked:
            raise RateLimited(outcome.message, retry_after=outcome.retry_after)
        raise _http_error(
            "unauthorized",
            outcome.message,
            status_code=401,
            details={"failure_count": outcome.failure_count},
        )
    runtime.lockout.reset(identity_key)
    session_id = runtime.sessions.register(
        user.id, device_info=body.device_info, ip_address=_client_ip(request)
    )
    two_factor = runtime.totp.status(user.id)
    policy = runtime.timeout_policy(user.role)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=user.id,
            session_id=session_id,
            role=user.role,
            two_factor_enabled=two_factor.enabled,
            idle_timeout_seconds=int(policy.idle_timeout.total_seconds()),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    runtime.sessions.terminate(ctx.current_session_id, reason="logout")
    return Envelope(status="ok", data=SuccessResponse(success=True))


@router.post("/2fa/setup", response_model=Envelope, tags=["2fa"])
async def setup_two_factor(ctx: SessionContext = Depends(get_session_context)):
    """Start TOTP enrollment; the secret and backup codes are shown only once."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:setup:{ctx.user_id}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    user = read_with_retry("get_user", lambda: runtime.store.get_user(ctx.user_id))
    label = user.email if user else ctx.user_id
    setup = runtime.totp.setup(ctx.user_id, label)
    return Envelope(
        status="ok",
        data=TotpSetupResponse(
            secret=setup.secret,
            qr_payload=setup.qr_payload,
            backup_codes=list(setup.backup_codes),
        ),
    )


@router.post("/2fa/verify", response_model=Envelope, tags=["2fa"])
async def verify_two_factor(
    body: TotpVerifyRequest, ctx: SessionContext = Depends(get_session_context)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:verify:{ctx.user_id}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    if not runtime.totp.verify(ctx.user_id, body.code):
        raise Mismatch("invalid verification code")
    return Envelope(
        status="ok",
        data=SuccessResponse(success=True, message="two-factor code accepted"),
    )


@router.post("/2fa/disable", response_model=Envelope, tags=["2fa"])
async def disable_two_factor(
    body: TotpDisableRequest, ctx: SessionContext = Depends(get_session_context)
):
    """Remove the TOTP factor. Requires the current account password."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"2fa:disable:{ctx.user_id}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    runtime.totp.disable(ctx.user_id, body.confirmation_proof)
    return Envelope(status="ok", data=SuccessResponse(success=True))


@router.get("/2fa/status", response_model=Envelope, tags=["2fa"])
async def two_factor_status(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    status = runtime.totp.status(ctx.user_id)
    return Envelope(
        status="ok",
        data=TwoFactorStatusResponse(
            enabled=status.enabled,
            configured=status.configured,
            backup_codes_remaining=status.backup_codes_remaining,
        ),
    )


@router.post("/phone/send-code", response_model=Envelope, tags=["phone"])
async def send_phone_code(
    body: PhoneSendCodeRequest,
    response: Response,
    ctx: SessionContext = Depends(get_session_context),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"phone:send:{ctx.user_id}",
        runtime.settings.send_code_rate_limit_per_minute,
        60,
        response=response,
    )
    # SMS delivery is a blocking HTTP call
    issued = await asyncio.to_thread(runtime.phone.send_code, ctx.user_id, body.phone_number)
    return Envelope(
        status="ok",
        data=PhoneSendCodeResponse(success=True, expires_at=issued.expires_at),
    )


@router.post("/phone/verify-code", response_model=Envelope, tags=["phone"])
async def verify_phone_code(
    body: PhoneVerifyCodeRequest, ctx: SessionContext = Depends(get_session_context)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"phone:verify:{ctx.user_id}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    runtime.phone.verify_code(ctx.user_id, body.phone_number, body.code)
    return Envelope(
        status="ok",
        data=SuccessResponse(success=True, message="phone number verified"),
    )


@router.get("/security-questions", response_model=Envelope, tags=["recovery"])
async def list_security_questions(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=SecurityQuestionsResponse(questions=runtime.recovery.questions(ctx.user_id)),
    )


@router.post("/security-questions/save", response_model=Envelope, tags=["recovery"])
async def save_security_questions(
    body: SecurityQuestionsSaveRequest, ctx: SessionContext = Depends(get_session_context)
):
    runtime = get_runtime()
    runtime.recovery.save(
        ctx.user_id, [(item.question, item.answer) for item in body.questions]
    )
    return Envelope(status="ok", data=SuccessResponse(success=True))


@router.post("/security-questions/verify", response_model=Envelope, tags=["recovery"])
async def verify_security_questions(body: SecurityQuestionsVerifyRequest, response: Response):
    """Check recovery answers for an account; repeated failures lock the account out.

    Raises:
        400: If the answers do not match
        429: While recovery for this account is locked out
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"recovery:{body.email}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
        response=response,
    )
    identity_key = f"recovery:{body.email}"
    runtime.lockout.ensure_allowed(identity_key)
    user = read_with_retry(
        "get_user_by_email", lambda: runtime.store.get_user_by_email(body.email)
    )
    ok = runtime.recovery.verify(user.id, body.answers) if user else False
    if not ok:
        outcome = runtime.lockout.record_failure(
            identity_key, user_id=user.id if user else None
        )
        if outcome.locked:
            raise RateLimited(outcome.message, retry_after=outcome.retry_after)
        raise Mismatch("security answers did not match")
    runtime.lockout.reset(identity_key)
    return Envelope(status="ok", data=SuccessResponse(success=True))


def _session_info(session, current_id: str) -> SessionInfo:
    return SessionInfo(
        id=session.id,
        device_info=session.device_info,
        ip_address=session.ip_address,
        created_at=session.created_at,
        last_activity=session.last_activity,
        current=session.id == current_id,
    )


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    sessions = runtime.sessions.list_sessions(ctx.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[_session_info(s, ctx.current_session_id) for s in sessions]
        ),
    )


@router.post("/sessions/terminate-others", response_model=Envelope, tags=["sessions"])
async def terminate_other_sessions(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    removed = runtime.sessions.terminate_all_others(ctx.user_id, ctx.current_session_id)
    return Envelope(status="ok", data=TerminateOthersResponse(terminated=removed))


@router.get("/sessions/current/timeout", response_model=Envelope, tags=["sessions"])
async def current_session_timeout(ctx: SessionContext = Depends(peek_session_context)):
    """Report the idle state without counting this poll as activity."""
    runtime = get_runtime()
    monitor = runtime.timeout_monitor(ctx.current_session_id, ctx.role)
    state = monitor.evaluate()
    return Envelope(status="ok", data=_timeout_payload(state, monitor))


@router.post("/sessions/current/extend", response_model=Envelope, tags=["sessions"])
async def extend_current_session(ctx: SessionContext = Depends(peek_session_context)):
    runtime = get_runtime()
    monitor = runtime.timeout_monitor(ctx.current_session_id, ctx.role)
    state = monitor.extend()
    return Envelope(status="ok", data=_timeout_payload(state, monitor))


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def terminate_session(session_id: str, ctx: SessionContext = Depends(get_session_context)):
    """End one of the caller's sessions; other users' sessions are not found."""
    runtime = get_runtime()
    reason = "logout" if session_id == ctx.current_session_id else "revoked"
    runtime.sessions.terminate(session_id, owner_user_id=ctx.user_id, reason=reason)
    return Envelope(status="ok", data=SuccessResponse(success=True))


@router.get("/security-events", response_model=Envelope, tags=["audit"])
async def list_security_events(
    limit: int = Query(50, ge=1, le=200),
    ctx: SessionContext = Depends(get_session_context),
):
    runtime = get_runtime()
    events = runtime.recorder.recent(ctx.user_id, limit)
    return Envelope(
        status="ok",
        data=SecurityEventListResponse(
            items=[
                SecurityEventItem(
                    id=event.id,
                    event_type=event.event_type,
                    description=event.description,
                    status=event.status,
                    created_at=event.created_at,
                    meta=event.meta or None,
                )
                for event in events
            ]
        ),
    )
