from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from ticketgate.config import Settings, get_settings
from ticketgate.logging import get_logger, redact_email
from ticketgate.service import events as event_names
from ticketgate.service.auth import AuthService
from ticketgate.service.context import RequestAuth
from ticketgate.service.credentials import CredentialService
from ticketgate.service.email import EmailService
from ticketgate.service.events import EventBus
from ticketgate.service.one_time_codes import OneTimeCodeService
from ticketgate.service.rate_limit import RateLimiter, fixed_window, sliding_window
from ticketgate.service.sessions import SessionService
from ticketgate.storage.common import AuthStore
from ticketgate.storage.counters import CounterStore, MemoryCounterStore
from ticketgate.storage.memory import MemoryStore
from ticketgate.storage.models import utcnow
from ticketgate.storage.postgres import PostgresStore
from ticketgate.storage.redis_cache import RedisCounterStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password of a connection URL with ``***`` for logging."""
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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the store, counters and services shared by every request.

    Built once per process and kept on ``app.state.runtime``. Tests pass a
    ``store``, ``counters`` or ``clock`` to control the collaborators.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        counters: Optional[CounterStore] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store if store is not None else self._build_store()
        self.counters = counters if counters is not None else self._build_counters()

        settings = self.settings
        self.sessions = SessionService(
            self.store,
            lifetime=timedelta(days=settings.session_lifetime_days),
            renewal_window=timedelta(days=settings.session_renewal_days),
            token_bytes=settings.token_bytes,
            clock=clock,
        )
        self.codes = OneTimeCodeService(self.store, token_bytes=settings.token_bytes, clock=clock)
        self.credentials = CredentialService(self.store, clock=clock)
        self.rate_limiter = RateLimiter(
            self.counters,
            timeout_seconds=settings.rate_limit_timeout_seconds,
            bypass_ips=settings.rate_limit_bypass_ips,
            combo_policy=fixed_window(
                settings.combo_rate_limit,
                timedelta(seconds=settings.combo_rate_limit_window_seconds),
            ),
            email_policy=sliding_window(
                settings.email_rate_limit,
                timedelta(seconds=settings.email_rate_limit_window_seconds),
            ),
            clock=clock,
        )
        self.events = EventBus()
        self.email = EmailService(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
        )
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.codes,
            self.credentials,
            self.rate_limiter,
            settings,
            events=self.events,
            clock=clock,
        )
        self._subscribe_notifications()
        logger.info("runtime_init_completed")

    def _build_store(self) -> AuthStore:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                store: AuthStore = MemoryStore()
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_counters(self) -> CounterStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                counters = RedisCounterStore(self.settings.redis_url)
                counters.verify_connection()
                return counters
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for rate limit counters; start Redis or set "
                "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; rate limit counters "
                "are per-process only."
            ),
            mode=fallback_mode,
        )
        return MemoryCounterStore()

    def request_auth(self, raw_token: Optional[str]) -> RequestAuth:
        return RequestAuth(self.sessions, raw_token)

    def _subscribe_notifications(self) -> None:
        self.events.subscribe(event_names.SIGN_UP, self._on_sign_up)
        self.events.subscribe(
            event_names.EMAIL_VERIFICATION_REQUESTED, self._on_verification_requested
        )
        self.events.subscribe(event_names.PASSWORD_RESET_REQUESTED, self._on_reset_requested)
        self.events.subscribe(event_names.EMAIL_CHANGE_REQUESTED, self._on_email_change_requested)

    async def _deliver(self, send: Callable[..., bool], *args: Any) -> None:
        # smtplib blocks; keep it off the event loop
        if not await asyncio.to_thread(send, *args):
            logger.warning(
                "email_delivery_failed",
                kind=send.__name__,
                to=redact_email(args[0]) if args else None,
            )

    async def _on_sign_up(self, payload: Dict[str, Any]) -> None:
        user = self.store.get_user(payload["user_id"])
        if not user:
            return
        otp = await self.auth.issue_email_verification(user)
        await self._deliver(self.email.send_email_verification, user.email, otp)
        await self._deliver(self.email.send_welcome, user.email, user.username)

    async def _on_verification_requested(self, payload: Dict[str, Any]) -> None:
        await self._deliver(self.email.send_email_verification, payload["email"], payload["otp"])

    async def _on_reset_requested(self, payload: Dict[str, Any]) -> None:
        await self._deliver(self.email.send_password_reset, payload["email"], payload["reset_link"])

    async def _on_email_change_requested(self, payload: Dict[str, Any]) -> None:
        await self._deliver(self.email.send_email_change, payload["email"], payload["otp"])

    async def close(self) -> None:
        await self.events.drain()
        if isinstance(self.counters, RedisCounterStore):
            await self.counters.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()
        logger.info("runtime_closed")


def build_runtime(settings: Optional[Settings] = None) -> Runtime:
    return Runtime(settings or get_settings())


__all__ = ["Runtime", "build_runtime"]
