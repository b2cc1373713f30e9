from __future__ import annotations

from typing import Optional

from ticketgate.service.errors import AuthenticationError, ForbiddenError
from ticketgate.service.sessions import SessionService, SessionValidation


class RequestAuth:
    """Auth state for one request, resolved at most once.

    Built per request from the carrier token and handed to whatever needs the
    caller's identity, so repeated lookups in one request share one store read.
    """

    def __init__(self, sessions: SessionService, raw_token: Optional[str]) -> None:
        self._sessions = sessions
        self._raw_token = raw_token or None
        self._result: Optional[SessionValidation] = None

    @property
    def raw_token(self) -> Optional[str]:
        return self._raw_token

    @property
    def resolved(self) -> bool:
        return self._result is not None

    @property
    def result(self) -> Optional[SessionValidation]:
        return self._result

    @property
    def needs_reissue(self) -> bool:
        """The carrier's session was extended during this request and must be sent again."""
        return (
            self._raw_token is not None
            and self._result is not None
            and self._result.authenticated
            and self._result.fresh
        )

    async def resolve(self) -> SessionValidation:
        if self._result is None:
            self._result = await self._sessions.validate_session(self._raw_token)
        return self._result

    async def require(self) -> SessionValidation:
        result = await self.resolve()
        if not result.authenticated:
            raise AuthenticationError("Not signed in")
        return result

    async def require_verified(self) -> SessionValidation:
        result = await self.require()
        if not result.user.email_verified:
            raise ForbiddenError("Email address not verified", detail={"reason": "email_unverified"})
        return result

    def rotate(self, raw_token: Optional[str], result: SessionValidation) -> None:
        """Point the context at a newly issued (or cleared) carrier."""
        self._raw_token = raw_token
        self._result = result

    @property
    def carrier_invalid(self) -> bool:
        """A token was presented but did not resolve to a session."""
        return (
            self._raw_token is not None
            and self._result is not None
            and not self._result.authenticated
        )
