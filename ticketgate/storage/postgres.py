from __future__ import annotations

import contextlib
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from ticketgate.logging import get_logger
from ticketgate.storage.common import as_utc, generate_uuid, normalize_email
from ticketgate.storage.errors import ConstraintViolation
from ticketgate.storage.models import (
    Credential,
    Membership,
    OneTimeCode,
    Session,
    Ticket,
    User,
)

# Connection bound by atomic(); store calls made inside the block reuse it.
_active_conn: ContextVar[Optional[Any]] = ContextVar("ticketgate_pg_conn", default=None)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT UNIQUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        refreshed_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS one_time_code (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        purpose TEXT NOT NULL,
        email TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        UNIQUE (user_id, purpose)
    )
    """,
    "CREATE INDEX IF NOT EXISTS one_time_code_hash_idx ON one_time_code (purpose, code_hash)",
    """
    CREATE TABLE IF NOT EXISTS api_credential (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL,
        secret_hash TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL,
        last_used TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS membership (
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        organization_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'MEMBER',
        can_delete_ticket BOOLEAN NOT NULL DEFAULT TRUE,
        can_update_ticket BOOLEAN NOT NULL DEFAULT TRUE,
        joined_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (user_id, organization_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ticket (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        title TEXT NOT NULL,
        user_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for identities, sessions, codes and credentials."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        conn = _active_conn.get()
        if conn is not None:
            yield conn
            return
        with self.pool.connection() as conn:
            yield conn

    @contextlib.contextmanager
    def atomic(self) -> Iterator[None]:
        """Bind one transaction to the current context for the enclosed calls."""
        if _active_conn.get() is not None:
            yield
            return
        with self.pool.connection() as conn:
            with conn.transaction():
                token = _active_conn.set(conn)
                try:
                    yield
                finally:
                    _active_conn.reset(token)

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", statements=len(_SCHEMA))

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            email_verified=bool(row.get("email_verified", False)),
            created_at=as_utc(row["created_at"]),
            is_active=row.get("is_active", True),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        refreshed_at = row.get("refreshed_at")
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=as_utc(row["created_at"]),
            expires_at=as_utc(row["expires_at"]),
            refreshed_at=as_utc(refreshed_at) if refreshed_at else None,
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _row_to_code(row: dict) -> OneTimeCode:
        return OneTimeCode(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=row["purpose"],
            email=row["email"],
            code_hash=row["code_hash"],
            expires_at=as_utc(row["expires_at"]),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _row_to_credential(row: dict) -> Credential:
        last_used = row.get("last_used")
        revoked_at = row.get("revoked_at")
        return Credential(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            name=row["name"],
            secret_hash=row["secret_hash"],
            created_at=as_utc(row["created_at"]),
            last_used=as_utc(last_used) if last_used else None,
            revoked_at=as_utc(revoked_at) if revoked_at else None,
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: Optional[str] = None,
        *,
        password_hash: str,
        password_algo: str = "argon2id",
    ) -> User:
        user_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, username)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalize_email(email), username),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, %s)
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation as exc:
            field = "username" if "username" in str(exc) else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def mark_email_verified(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s", (user_id,)
            )

    def update_user_email(self, user_id: str, email: str) -> bool:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE app_user SET email = %s, email_verified = TRUE WHERE id = %s",
                    (normalize_email(email), user_id),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return cur.rowcount > 0

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.expires_at,
                        session.user_agent,
                        session.ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"field": "id"})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def update_session_expiry(
        self, session_id: str, expires_at: datetime, refreshed_at: datetime
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET expires_at = %s, refreshed_at = %s WHERE id = %s",
                (expires_at, refreshed_at, session_id),
            )

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
        return cur.rowcount > 0

    def delete_user_sessions(
        self, user_id: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
        return cur.rowcount

    # -- one-time codes ----------------------------------------------------

    def replace_one_time_code(self, code: OneTimeCode) -> OneTimeCode:
        # One statement so concurrent issues for a user cannot both insert
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO one_time_code (id, user_id, purpose, email, code_hash, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, purpose) DO UPDATE SET
                    id = EXCLUDED.id,
                    email = EXCLUDED.email,
                    code_hash = EXCLUDED.code_hash,
                    expires_at = EXCLUDED.expires_at,
                    created_at = EXCLUDED.created_at
                """,
                (
                    code.id,
                    code.user_id,
                    code.purpose,
                    code.email,
                    code.code_hash,
                    code.expires_at,
                    code.created_at,
                ),
            )
        return code

    def get_one_time_code(self, user_id: str, purpose: str) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_code WHERE user_id = %s AND purpose = %s",
                (user_id, purpose),
            ).fetchone()
        return self._row_to_code(row) if row else None

    def delete_one_time_code(self, code_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM one_time_code WHERE id = %s", (code_id,))
        return cur.rowcount > 0

    def pop_one_time_code_by_hash(
        self, purpose: str, code_hash: str
    ) -> Optional[OneTimeCode]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM one_time_code WHERE purpose = %s AND code_hash = %s RETURNING *",
                (purpose, code_hash),
            ).fetchone()
        return self._row_to_code(row) if row else None

    # -- credentials -------------------------------------------------------

    def create_credential(self, credential: Credential) -> Credential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_credential (id, organization_id, name, secret_hash, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        credential.id,
                        credential.organization_id,
                        credential.name,
                        credential.secret_hash,
                        credential.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("credential secret collision", {"field": "secret_hash"})
        return credential

    def get_credential(self, credential_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_credential WHERE id = %s", (credential_id,)
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def find_credential_by_hash(
        self, secret_hash: str, organization_id: Optional[str] = None
    ) -> Optional[Credential]:
        with self._connect() as conn:
            if organization_id is None:
                row = conn.execute(
                    "SELECT * FROM api_credential WHERE secret_hash = %s", (secret_hash,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT * FROM api_credential WHERE secret_hash = %s AND organization_id = %s",
                    (secret_hash, organization_id),
                ).fetchone()
        return self._row_to_credential(row) if row else None

    def list_credentials(self, organization_id: str) -> List[Credential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_credential WHERE organization_id = %s ORDER BY created_at DESC",
                (organization_id,),
            ).fetchall()
        return [self._row_to_credential(row) for row in rows]

    def touch_credential(self, credential_id: str, used_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE api_credential SET last_used = %s WHERE id = %s AND revoked_at IS NULL",
                (used_at, credential_id),
            )
        return cur.rowcount > 0

    def revoke_credential(self, credential_id: str, revoked_at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE api_credential SET revoked_at = %s WHERE id = %s AND revoked_at IS NULL",
                (revoked_at, credential_id),
            )
        return cur.rowcount > 0

    # -- memberships -------------------------------------------------------

    def upsert_membership(self, membership: Membership) -> Membership:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO membership (user_id, organization_id, role, can_delete_ticket, can_update_ticket, joined_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, organization_id) DO UPDATE
                    SET role = EXCLUDED.role,
                        can_delete_ticket = EXCLUDED.can_delete_ticket,
                        can_update_ticket = EXCLUDED.can_update_ticket
                    """,
                    (
                        membership.user_id,
                        membership.organization_id,
                        membership.role,
                        membership.can_delete_ticket,
                        membership.can_update_ticket,
                        membership.joined_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("membership user missing", {"user_id": membership.user_id})
        return membership

    def get_membership(self, user_id: str, organization_id: str) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM membership WHERE user_id = %s AND organization_id = %s",
                (user_id, organization_id),
            ).fetchone()
        if not row:
            return None
        return Membership(
            user_id=str(row["user_id"]),
            organization_id=str(row["organization_id"]),
            role=row["role"],
            can_delete_ticket=bool(row["can_delete_ticket"]),
            can_update_ticket=bool(row["can_update_ticket"]),
            joined_at=as_utc(row["joined_at"]),
        )

    # -- tickets -----------------------------------------------------------

    def create_ticket(
        self, organization_id: str, title: str, *, user_id: Optional[str] = None
    ) -> Ticket:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO ticket (id, organization_id, title, user_id)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (generate_uuid(), organization_id, title, user_id),
            ).fetchone()
        return Ticket(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            title=row["title"],
            user_id=row.get("user_id"),
            created_at=as_utc(row["created_at"]),
        )

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM ticket WHERE id = %s", (ticket_id,)).fetchone()
        if not row:
            return None
        return Ticket(
            id=str(row["id"]),
            organization_id=str(row["organization_id"]),
            title=row["title"],
            user_id=row.get("user_id"),
            created_at=as_utc(row["created_at"]),
        )

    def delete_ticket(self, ticket_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM ticket WHERE id = %s", (ticket_id,))
        return cur.rowcount > 0
