from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    username: Optional[str] = None
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class Session:
    """A signed-in device. ``id`` is the hash of the carrier token, never the token."""

    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    refreshed_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        session_id: str,
        user_id: str,
        *,
        lifetime: timedelta,
        now: Optional[datetime] = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=session_id,
            user_id=user_id,
            created_at=created,
            expires_at=created + lifetime,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class OneTimeCode:
    id: str
    user_id: str
    purpose: str
    email: str
    code_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        purpose: str,
        email: str,
        code_hash: str,
        *,
        lifetime: timedelta,
        now: Optional[datetime] = None,
    ) -> "OneTimeCode":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            purpose=purpose,
            email=email,
            code_hash=code_hash,
            expires_at=created + lifetime,
            created_at=created,
        )


@dataclass
class Credential:
    id: str
    organization_id: str
    name: str
    secret_hash: str
    created_at: datetime = field(default_factory=utcnow)
    last_used: Optional[datetime] = None
    revoked_at: Optional[datetime] = None

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None


@dataclass
class Membership:
    user_id: str
    organization_id: str
    role: str = "MEMBER"
    can_delete_ticket: bool = True
    can_update_ticket: bool = True
    joined_at: datetime = field(default_factory=utcnow)


@dataclass
class Ticket:
    id: str
    organization_id: str
    title: str
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
