from __future__ import annotations

import asyncio
import math
import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Deque, Dict, Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from medguard.config import get_settings, reset_settings_cache
from medguard.logging import get_logger
from medguard.service.audit import SecurityEventRecorder
from medguard.service.clock import ClockSource, SystemClock
from medguard.service.credentials import DirectoryCredentialStore
from medguard.service.lockout import LockoutGuard
from medguard.service.phone_otp import PhoneOtpVerifier
from medguard.service.recovery import RecoveryQuestionVault
from medguard.service.sessions import SessionRegistry
from medguard.service.sms import SmsService
from medguard.service.timeout_monitor import SessionTimeoutMonitor, SessionTimeoutPolicy
from medguard.service.totp import TotpAuthenticator
from medguard.storage.memory import MemoryStore
from medguard.storage.postgres import PostgresStore
from medguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, clock: Optional[ClockSource] = None):
        self.settings = get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    fs_root=self.settings.shared_fs_root,
                    mfa_encryption_key=self.settings.mfa_secret_key,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client under TEST_MODE keeps connections off pytest's loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url, clock=self.clock)
                else:
                    cache = RedisCache(self.settings.redis_url, clock=self.clock)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for request rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=f"Running without Redis under {fallback_mode}; rate limits are per-process only.",
                mode=fallback_mode,
            )

        self.recorder = SecurityEventRecorder(self.store, self.clock)
        self.credentials = DirectoryCredentialStore(self.store)
        self.lockout = LockoutGuard(
            self.store,
            clock=self.clock,
            thresholds=self.settings.lockout_thresholds,
            recorder=self.recorder,
        )
        self.totp = TotpAuthenticator(
            self.store,
            self.credentials,
            clock=self.clock,
            recorder=self.recorder,
            issuer=self.settings.totp_issuer,
            drift_steps=self.settings.totp_drift_steps,
            backup_code_count=self.settings.backup_code_count,
        )
        self.sms = SmsService(
            provider_url=self.settings.sms_provider_url,
            api_key=self.settings.sms_api_key,
            sender_id=self.settings.sms_sender_id,
        )
        self.phone = PhoneOtpVerifier(
            self.store,
            self.credentials,
            self.sms,
            clock=self.clock,
            recorder=self.recorder,
            code_ttl=timedelta(seconds=self.settings.phone_code_ttl_seconds),
            max_attempts=self.settings.phone_max_attempts,
        )
        self.recovery = RecoveryQuestionVault(
            self.store, clock=self.clock, recorder=self.recorder
        )
        self.sessions = SessionRegistry(self.store, clock=self.clock, recorder=self.recorder)

        self._local_rate_limits: Dict[str, Deque[datetime]] = {}
        self._local_rate_limit_lock = threading.Lock()

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            sms_configured=self.sms.is_configured,
        )

    def timeout_policy(self, role: Optional[str]) -> SessionTimeoutPolicy:
        return SessionTimeoutPolicy.for_role(
            role,
            default_idle=timedelta(seconds=self.settings.session_idle_timeout_seconds),
            warning_lead_time=timedelta(seconds=self.settings.session_warning_lead_seconds),
        )

    def timeout_monitor(self, session_id: str, role: Optional[str]) -> SessionTimeoutMonitor:
        return SessionTimeoutMonitor(
            session_id,
            self.sessions,
            self.credentials,
            self.timeout_policy(role),
            clock=self.clock,
            recorder=self.recorder,
            poll_interval=self.settings.session_poll_interval_seconds,
        )

    async def close(self) -> None:
        """Release the cache client and database pool."""
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache) -> None:
    if isinstance(cache, SyncRedisCache):
        cache._sync_client.close()
        return
    try:
        loop = asyncio.get_running_loop()
        loop.create_task(cache.close())
    except RuntimeError:
        asyncio.run(cache.close())


def reset_runtime_for_tests(clock: Optional[ClockSource] = None) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            try:
                _close_cache(runtime.cache)
            except (OSError, RuntimeError) as exc:
                logger.warning("runtime_cache_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(clock=clock)
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Allow at most ``limit`` requests per ``key`` in any ``window_seconds`` span.

    Delegates to Redis when configured; otherwise keeps a per-process log of
    request times read from the runtime clock.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", window_seconds=window_seconds)
        window_seconds = 60
    if runtime.cache:
        return await runtime.cache.check_rate_limit(
            key, limit, window_seconds, return_remaining=return_remaining, cost=cost
        )
    now = runtime.clock.now()
    window = timedelta(seconds=window_seconds)
    cost = max(1, cost)
    with runtime._local_rate_limit_lock:
        hits = runtime._local_rate_limits.setdefault(key, deque())
        while hits and hits[0] <= now - window:
            hits.popleft()
        allowed = len(hits) + cost <= limit
        if allowed:
            hits.extend([now] * cost)
            reset_seconds = 0
        elif hits:
            reset_seconds = max(1, math.ceil((hits[0] + window - now).total_seconds()))
        else:
            reset_seconds = window_seconds
        remaining = max(0, limit - len(hits))
    if return_remaining:
        return (allowed, remaining, reset_seconds)
    return allowed


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "check_rate_limit"]
