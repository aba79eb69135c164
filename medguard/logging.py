from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation ID, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Key fragments whose values are credentials: masked completely.
_SECRET_PARTS = {"password", "secret", "token", "code", "answer", "proof", "authorization"}
# Key fragments naming an account or a session: the ends stay for correlation.
_IDENTIFIER_PARTS = {"email", "phone", "session"}
# Keys that merely contain a fragment above
_NOT_SENSITIVE = {"event", "event_type", "error_code", "status_code", "provider_status"}


def _mask_identifier(value: Any) -> Any:
    if isinstance(value, str) and len(value) > 8:
        return value[:4] + "***" + value[-2:]
    return "***" if value is not None else None


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential values outright and shorten account identifiers."""
    for key in list(event_dict.keys()):
        if key in _NOT_SENSITIVE:
            continue
        parts = set(key.lower().split("_"))
        if parts & _SECRET_PARTS:
            if event_dict[key] is not None:
                event_dict[key] = "***"
        elif parts & _IDENTIFIER_PARTS:
            event_dict[key] = _mask_identifier(event_dict[key])
    return event_dict


def bind_session_context(user_id: str, session_id: str) -> None:
    """Attach the acting user and session to every log line of this request."""
    structlog.contextvars.bind_contextvars(user_id=user_id, session_id=session_id)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


_TRUTHY = {"1", "true", "yes", "on"}

# stdlib loggers whose INFO lines would echo SMS provider URLs or pool chatter
_QUIET_LOGGERS = ("httpx", "httpcore", "psycopg.pool")


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """Send structlog events and stdlib records through one redacting pipeline.

    Library records (httpx, psycopg, uvicorn) pass through the same
    correlation id and PII processors as our own events before rendering.
    """
    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
    ]
    if development_mode or not json_output:
        render = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        render = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=[structlog.stdlib.filter_by_level]
        + pre_chain
        + [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta] + render,
        )
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_ERROR_PATTERNS = [
    r'(?i)(sql|query|select|insert|update|delete|where|from|join)\s+.{0,50}',
    r'(?i)database\s+error',
    r'(?i)connection\s+.*\s+(failed|refused|timeout)',
    r'(?i)/(?:home|var|etc|usr|opt|tmp|srv)/[^\s]+',
    r'(?i)(password|secret|token|key|credential|code)\s*[:=]\s*[^\s]+',
    r'(?i)traceback\s*\(most recent call last\)',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip storage details, paths and credentials from a message meant for clients."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > 500:
        result = result[:497] + "..."

    return result
