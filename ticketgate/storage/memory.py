from __future__ import annotations

import contextlib
import copy
import threading
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from ticketgate.logging import get_logger
from ticketgate.storage.common import generate_uuid, normalize_email
from ticketgate.storage.errors import ConstraintViolation
from ticketgate.storage.models import (
    Credential,
    Membership,
    OneTimeCode,
    Session,
    Ticket,
    User,
    UserAuthCredential,
    utcnow,
)


class MemoryStore:
    """In-process backing store for tests and local development."""

    _TABLES = (
        "users",
        "passwords",
        "sessions",
        "one_time_codes",
        "credentials",
        "memberships",
        "tickets",
    )

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.passwords: Dict[str, UserAuthCredential] = {}
        self.sessions: Dict[str, Session] = {}
        # (user_id, purpose) -> code; one live code per user and purpose
        self.one_time_codes: Dict[tuple[str, str], OneTimeCode] = {}
        self.credentials: Dict[str, Credential] = {}
        self.memberships: Dict[tuple[str, str], Membership] = {}
        self.tickets: Dict[str, Ticket] = {}
        # RLock so atomic() can wrap the per-method locking below
        self._data_lock = threading.RLock()

    @contextlib.contextmanager
    def atomic(self) -> Iterator[None]:
        """Run the enclosed calls as one unit, restoring every table on error.

        The body must not await; the lock is per thread, not per task.
        """
        with self._data_lock:
            snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}
            try:
                yield
            except BaseException as exc:
                self.logger.info("memory_store_rollback", error_type=type(exc).__name__)
                for name, table in snapshot.items():
                    setattr(self, name, table)
                raise

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User:
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and any(
                existing.username == username for existing in self.users.values()
            ):
                raise ConstraintViolation("username already exists", {"field": "username"})
            user = User(id=generate_uuid(), email=email, username=username)
            self.users[user.id] = user
            self.passwords[user.id] = UserAuthCredential(
                user_id=user.id, password_hash=password_hash, password_algo=password_algo
            )
            return copy.copy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.copy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return copy.copy(user)
        return None

    def mark_email_verified(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.email_verified = True

    def update_user_email(self, user_id: str, email: str) -> bool:
        """Move the account to a confirmed address; the new address counts as verified."""
        email = normalize_email(email)
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            if any(
                other.email == email and other.id != user_id for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user.email = email
            user.email_verified = True
            return True

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            record = self.passwords.get(user_id)
            if not record:
                return None
            return record.password_hash, record.password_algo

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            existing = self.passwords.get(user_id)
            created_at = existing.created_at if existing else utcnow()
            self.passwords[user_id] = UserAuthCredential(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
                created_at=created_at,
                last_updated_at=utcnow(),
            )

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("session user missing", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            self.sessions[session.id] = copy.copy(session)
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.copy(sess) if sess else None

    def update_session_expiry(
        self, session_id: str, expires_at: datetime, refreshed_at: datetime
    ) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess:
                sess.expires_at = expires_at
                sess.refreshed_at = refreshed_at

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            return self.sessions.pop(session_id, None) is not None

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            doomed = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in doomed:
                del self.sessions[sid]
            return len(doomed)

    # -- one-time codes ----------------------------------------------------

    def replace_one_time_code(self, code: OneTimeCode) -> OneTimeCode:
        with self._data_lock:
            self.one_time_codes[(code.user_id, code.purpose)] = copy.copy(code)
            return code

    def get_one_time_code(self, user_id: str, purpose: str) -> Optional[OneTimeCode]:
        with self._data_lock:
            code = self.one_time_codes.get((user_id, purpose))
            return copy.copy(code) if code else None

    def delete_one_time_code(self, code_id: str) -> bool:
        with self._data_lock:
            for key, code in list(self.one_time_codes.items()):
                if code.id == code_id:
                    del self.one_time_codes[key]
                    return True
            return False

    def pop_one_time_code_by_hash(
        self, purpose: str, code_hash: str
    ) -> Optional[OneTimeCode]:
        with self._data_lock:
            for key, code in list(self.one_time_codes.items()):
                if code.purpose == purpose and code.code_hash == code_hash:
                    return self.one_time_codes.pop(key)
            return None

    # -- credentials -------------------------------------------------------

    def create_credential(self, credential: Credential) -> Credential:
        with self._data_lock:
            if any(
                existing.secret_hash == credential.secret_hash
                for existing in self.credentials.values()
            ):
                raise ConstraintViolation("credential secret collision", {"field": "secret_hash"})
            self.credentials[credential.id] = copy.copy(credential)
            return credential

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            return copy.copy(cred) if cred else None

    def find_credential_by_hash(
        self, secret_hash: str, organization_id: Optional[str] = None
    ) -> Optional[Credential]:
        with self._data_lock:
            for cred in self.credentials.values():
                if cred.secret_hash != secret_hash:
                    continue
                if organization_id is not None and cred.organization_id != organization_id:
                    return None
                return copy.copy(cred)
        return None

    def list_credentials(self, organization_id: str) -> List[Credential]:
        with self._data_lock:
            creds = [
                copy.copy(cred)
                for cred in self.credentials.values()
                if cred.organization_id == organization_id
            ]
        return sorted(creds, key=lambda c: c.created_at, reverse=True)

    def touch_credential(self, credential_id: str, used_at: datetime) -> bool:
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            if not cred or cred.revoked_at is not None:
                return False
            cred.last_used = used_at
            return True

    def revoke_credential(self, credential_id: str, revoked_at: datetime) -> bool:
        with self._data_lock:
            cred = self.credentials.get(credential_id)
            if not cred or cred.revoked_at is not None:
                return False
            cred.revoked_at = revoked_at
            return True

    # -- memberships -------------------------------------------------------

    def upsert_membership(self, membership: Membership) -> Membership:
        with self._data_lock:
            self.memberships[(membership.user_id, membership.organization_id)] = copy.copy(
                membership
            )
            return membership

    def get_membership(self, user_id: str, organization_id: str) -> Optional[Membership]:
        with self._data_lock:
            membership = self.memberships.get((user_id, organization_id))
            return copy.copy(membership) if membership else None

    # -- tickets -----------------------------------------------------------

    def create_ticket(
        self, organization_id: str, title: str, *, user_id: Optional[str] = None
    ) -> Ticket:
        ticket = Ticket(
            id=generate_uuid(), organization_id=organization_id, title=title, user_id=user_id
        )
        with self._data_lock:
            self.tickets[ticket.id] = ticket
        return copy.copy(ticket)

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        with self._data_lock:
            ticket = self.tickets.get(ticket_id)
            return copy.copy(ticket) if ticket else None

    def delete_ticket(self, ticket_id: str) -> bool:
        with self._data_lock:
            return self.tickets.pop(ticket_id, None) is not None
