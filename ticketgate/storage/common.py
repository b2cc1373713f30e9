"""Common storage contract and helpers shared between memory and postgres stores."""

from __future__ import annotations

import uuid
from contextlib import AbstractContextManager
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, List, Optional, Protocol

from ticketgate.storage.models import (
    Credential,
    Membership,
    OneTimeCode,
    Session,
    Ticket,
    User,
)


class AuthStore(Protocol):
    """Persistence contract for identities, sessions, codes and credentials.

    Every method is a single atomic write or read. ``atomic()`` groups several
    calls into one transaction; a nested ``atomic()`` joins the outer one.
    """

    def atomic(self) -> AbstractContextManager[None]: ...

    # users
    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> None: ...

    def update_user_email(self, user_id: str, email: str) -> bool: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session_expiry(
        self, session_id: str, expires_at: datetime, refreshed_at: datetime
    ) -> None: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int: ...

    # one-time codes
    def replace_one_time_code(self, code: OneTimeCode) -> OneTimeCode: ...

    def get_one_time_code(self, user_id: str, purpose: str) -> Optional[OneTimeCode]: ...

    def delete_one_time_code(self, code_id: str) -> bool: ...

    def pop_one_time_code_by_hash(
        self, purpose: str, code_hash: str
    ) -> Optional[OneTimeCode]: ...

    # credentials
    def create_credential(self, credential: Credential) -> Credential: ...

    def get_credential(self, credential_id: str) -> Optional[Credential]: ...

    def find_credential_by_hash(
        self, secret_hash: str, organization_id: Optional[str] = None
    ) -> Optional[Credential]: ...

    def list_credentials(self, organization_id: str) -> List[Credential]: ...

    def touch_credential(self, credential_id: str, used_at: datetime) -> bool: ...

    def revoke_credential(self, credential_id: str, revoked_at: datetime) -> bool: ...

    # memberships
    def upsert_membership(self, membership: Membership) -> Membership: ...

    def get_membership(
        self, user_id: str, organization_id: str
    ) -> Optional[Membership]: ...

    # tickets
    def create_ticket(
        self, organization_id: str, title: str, *, user_id: Optional[str] = None
    ) -> Ticket: ...

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]: ...

    def delete_ticket(self, ticket_id: str) -> bool: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps from older rows as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Return a normalized IP string, or None for junk like ``unknown``."""
    if raw_ip is None:
        return None
    try:
        return str(ip_address(str(raw_ip)))
    except ValueError:
        return None


def generate_uuid() -> str:
    return str(uuid.uuid4())
