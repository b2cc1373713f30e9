from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ticketgate.logging import get_logger
from ticketgate.service.tokens import MIN_TOKEN_BYTES, generate_token, hash_token
from ticketgate.storage.common import AuthStore, parse_ip_address
from ticketgate.storage.models import Session, User, utcnow

logger = get_logger(__name__)


@dataclass
class SessionValidation:
    """Outcome of reading a carrier token.

    An unknown, expired or orphaned token all produce the same empty result.
    ``fresh`` means the expiry moved and the carrier must be re-issued.
    """

    session: Optional[Session] = None
    user: Optional[User] = None
    fresh: bool = False

    @property
    def authenticated(self) -> bool:
        return self.session is not None and self.user is not None


class SessionService:
    """Creates, validates, extends and drops sessions keyed by token hash."""

    def __init__(
        self,
        store: AuthStore,
        *,
        lifetime: timedelta = timedelta(days=30),
        renewal_window: timedelta = timedelta(days=15),
        token_bytes: int = MIN_TOKEN_BYTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if renewal_window >= lifetime:
            raise ValueError("renewal window must be shorter than the session lifetime")
        self.store = store
        self.lifetime = lifetime
        self.renewal_window = renewal_window
        self.token_bytes = token_bytes
        self.clock = clock

    def generate_session_token(self) -> str:
        return generate_token(self.token_bytes)

    async def create_session(
        self,
        raw_token: str,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        return self._persist(raw_token, user_id, user_agent=user_agent, ip_addr=ip_addr)

    def _persist(
        self,
        raw_token: str,
        user_id: str,
        *,
        user_agent: Optional[str],
        ip_addr: Optional[str],
    ) -> Session:
        session = Session.new(
            hash_token(raw_token),
            user_id,
            lifetime=self.lifetime,
            now=self.clock(),
            user_agent=user_agent,
            ip_addr=parse_ip_address(ip_addr),
        )
        self.store.create_session(session)
        logger.info("session_created", user_id=user_id, expires_at=session.expires_at.isoformat())
        return session

    async def start_session(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[str, Session]:
        """Generate a carrier token and persist its session in one step."""
        return self.open_session(user_id, user_agent=user_agent, ip_addr=ip_addr)

    def open_session(
        self,
        user_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[str, Session]:
        """Synchronous form of ``start_session`` for use inside ``store.atomic()``."""
        raw_token = self.generate_session_token()
        session = self._persist(raw_token, user_id, user_agent=user_agent, ip_addr=ip_addr)
        return raw_token, session

    async def validate_session(self, raw_token: Optional[str]) -> SessionValidation:
        if not raw_token:
            return SessionValidation()
        session_id = hash_token(raw_token)
        session = self.store.get_session(session_id)
        if not session:
            return SessionValidation()

        now = self.clock()
        if session.is_expired(now):
            self.store.delete_session(session_id)
            logger.info("session_expired", user_id=session.user_id)
            return SessionValidation()

        user = self.store.get_user(session.user_id)
        if not user or not user.is_active:
            self.store.delete_session(session_id)
            logger.warning("session_user_unavailable", user_id=session.user_id)
            return SessionValidation()

        fresh = False
        renew_after = session.expires_at - self.renewal_window
        if now >= renew_after and (
            session.refreshed_at is None or session.refreshed_at < renew_after
        ):
            session.expires_at = now + self.lifetime
            session.refreshed_at = now
            self.store.update_session_expiry(session_id, session.expires_at, now)
            fresh = True
            logger.info("session_refreshed", user_id=session.user_id)

        return SessionValidation(session=session, user=user, fresh=fresh)

    async def invalidate_session(self, session_id: str) -> bool:
        removed = self.store.delete_session(session_id)
        logger.info("session_invalidated", removed=removed)
        return removed

    async def invalidate_all_sessions_for_user(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        return self.drop_user_sessions(user_id, except_session_id=except_session_id)

    def drop_user_sessions(self, user_id: str, *, except_session_id: Optional[str] = None) -> int:
        count = self.store.delete_user_sessions(user_id, except_session_id=except_session_id)
        logger.info("user_sessions_invalidated", user_id=user_id, count=count)
        return count
