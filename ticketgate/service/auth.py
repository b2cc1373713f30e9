from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple, TypeVar

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from ticketgate.config import Settings
from ticketgate.logging import get_logger, redact_email
from ticketgate.service import events as event_names
from ticketgate.service.credentials import CredentialService
from ticketgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from ticketgate.service.events import EventBus
from ticketgate.service.one_time_codes import (
    EMAIL_CHANGE,
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    OneTimeCodeService,
)
from ticketgate.service.permissions import PermissionSet
from ticketgate.service.rate_limit import RateLimiter, raise_if_limited
from ticketgate.service.sessions import SessionService, SessionValidation
from ticketgate.service.validation import (
    validate_email,
    validate_password,
    validate_username,
)
from ticketgate.storage.common import AuthStore
from ticketgate.storage.errors import ConstraintViolation
from ticketgate.storage.models import Credential, Session, User, utcnow

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"
INVALID_SIGN_IN = "Incorrect email or password"
INVALID_CREDENTIAL = "Invalid credential"

T = TypeVar("T")


@dataclass
class AuthOutcome:
    """A user plus the session (and raw carrier) issued for them, if any."""

    user: User
    session: Optional[Session] = None
    token: Optional[str] = None


class AuthService:
    """Orders every auth flow as rate limit, validate, mutate, issue.

    Each flow charges the IP tier before looking at input, then the
    IP+identity tier once a well-formed identity is known. Failures surface
    as the service error taxonomy only; store errors never reach callers.
    """

    def __init__(
        self,
        store: AuthStore,
        sessions: SessionService,
        codes: OneTimeCodeService,
        credentials: CredentialService,
        rate_limiter: RateLimiter,
        settings: Settings,
        *,
        events: Optional[EventBus] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.codes = codes
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.settings = settings
        self.events = events or EventBus()
        self.clock = clock
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the account is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("ticketgate-dummy-password")

    async def _limit_ip(self, ip: str, scope: str, per_minute: int) -> None:
        raise_if_limited(
            await self.rate_limiter.limit_ip(ip, scope, per_minute, timedelta(minutes=1))
        )

    async def _limit_email(self, ip: str, email: str, scope: str) -> None:
        raise_if_limited(await self.rate_limiter.limit_email(ip, email, scope))

    @staticmethod
    def _require_session(current: Optional[SessionValidation]) -> SessionValidation:
        if current is None or not current.authenticated:
            raise AuthenticationError("Not signed in")
        return current

    def _issue_session(
        self, user: User, *, ip: Optional[str], user_agent: Optional[str]
    ) -> AuthOutcome:
        raw_token, session = self.sessions.open_session(
            user.id, user_agent=user_agent, ip_addr=ip
        )
        return AuthOutcome(user=user, session=session, token=raw_token)

    # --- sign-up / sign-in / sign-out ------------------------------------

    async def sign_up(
        self,
        email: str,
        password: str,
        username: Optional[str] = None,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthOutcome:
        await self._limit_ip(ip, "sign-up", self.settings.sign_up_rate_limit_per_minute)
        email = validate_email(email)
        password = validate_password(password)
        username = validate_username(username)
        await self._limit_email(ip, email, "sign-up")

        pwd_hash, algo = self._hash_password(password)
        try:
            with self.store.atomic():
                user = self.store.create_user(
                    email, username, password_hash=pwd_hash, password_algo=algo
                )
                outcome = self._issue_session(user, ip=ip, user_agent=user_agent)
        except ConstraintViolation as exc:
            logger.info("sign_up_conflict", account=redact_email(email))
            raise ConflictError(
                "Either email or username is already in use", detail=exc.detail
            ) from exc

        logger.info("user_signed_up", user_id=user.id)
        self.events.publish(
            event_names.SIGN_UP,
            {"user_id": user.id, "email": user.email, "username": user.username},
        )
        return outcome

    async def sign_in(
        self,
        email: str,
        password: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthOutcome:
        await self._limit_ip(ip, "sign-in", self.settings.sign_in_rate_limit_per_minute)
        email = validate_email(email)
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        await self._limit_email(ip, email, "sign-in")

        user = self.store.get_user_by_email(email)
        if not user:
            self._burn_dummy_verify(password)
            logger.info("sign_in_failed", reason="unknown_account")
            raise AuthenticationError(INVALID_SIGN_IN)
        if not self.verify_password(user.id, password) or not user.is_active:
            logger.info("sign_in_failed", user_id=user.id, reason="bad_password")
            raise AuthenticationError(INVALID_SIGN_IN)

        outcome = self._issue_session(user, ip=ip, user_agent=user_agent)
        logger.info("user_signed_in", user_id=user.id)
        return outcome

    async def sign_out(self, current: Optional[SessionValidation]) -> None:
        current = self._require_session(current)
        await self.sessions.invalidate_session(current.session.id)
        logger.info("user_signed_out", user_id=current.user.id)

    # --- email verification ----------------------------------------------

    async def issue_email_verification(self, user: User) -> str:
        return await self.codes.issue(
            user.id,
            user.email,
            purpose=EMAIL_VERIFICATION,
            lifetime=timedelta(minutes=self.settings.email_verification_ttl_minutes),
            code_length=self.settings.email_verification_code_length,
        )

    async def request_email_verification(
        self, current: Optional[SessionValidation], *, ip: str
    ) -> str:
        user = self._require_session(current).user
        await self._limit_ip(
            ip, "email-verification", self.settings.email_verification_rate_limit_per_minute
        )
        await self._limit_email(ip, user.email, "email-verification")
        if user.email_verified:
            raise ValidationError("Email address already verified")

        live = await self.codes.current(user.id, EMAIL_VERIFICATION)
        cooldown = timedelta(seconds=self.settings.email_verification_resend_seconds)
        if live and self.clock() - live.created_at < cooldown:
            raise ValidationError(
                "A verification code was sent recently, please wait before requesting another",
                detail={"retry_after": self.settings.email_verification_resend_seconds},
            )

        code = await self.issue_email_verification(user)
        self.events.publish(
            event_names.EMAIL_VERIFICATION_REQUESTED,
            {"user_id": user.id, "email": user.email, "otp": code},
        )
        return code

    async def verify_email(
        self,
        current: Optional[SessionValidation],
        otp: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthOutcome:
        user = self._require_session(current).user
        await self._limit_ip(
            ip, "email-verification", self.settings.email_verification_rate_limit_per_minute
        )
        await self._limit_email(ip, user.email, "email-verification")

        presented = (otp or "").strip().upper()
        if not await self.codes.consume(
            user.id, presented, user.email, purpose=EMAIL_VERIFICATION
        ):
            raise AuthenticationError("Invalid or expired verification code")

        with self.store.atomic():
            self.sessions.drop_user_sessions(user.id)
            self.store.mark_email_verified(user.id)
            user = self.store.get_user(user.id) or user
            outcome = self._issue_session(user, ip=ip, user_agent=user_agent)
        logger.info("email_verified", user_id=user.id)
        return outcome

    # --- email change -----------------------------------------------------

    async def request_email_change(
        self, current: Optional[SessionValidation], new_email: str, *, ip: str
    ) -> str:
        """Send a confirmation code to ``new_email``; the account keeps its address until verified."""
        user = self._require_session(current).user
        await self._limit_ip(ip, "change-email", self.settings.email_change_rate_limit_per_minute)
        new_email = validate_email(new_email)
        if new_email == user.email:
            raise ValidationError(
                "New email must be different from your current email",
                detail={"field": "new_email"},
            )
        if self.store.get_user_by_email(new_email):
            raise ConflictError("This email is already in use", detail={"field": "new_email"})
        await self._limit_email(ip, new_email, "change-email")

        code = await self.codes.issue(
            user.id,
            new_email,
            purpose=EMAIL_CHANGE,
            lifetime=timedelta(minutes=self.settings.email_verification_ttl_minutes),
            code_length=self.settings.email_verification_code_length,
        )
        self.events.publish(
            event_names.EMAIL_CHANGE_REQUESTED,
            {"user_id": user.id, "email": new_email, "otp": code},
        )
        logger.info("email_change_requested", user_id=user.id, to=redact_email(new_email))
        return code

    async def verify_email_change(
        self,
        current: Optional[SessionValidation],
        otp: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthOutcome:
        """Move the account to the confirmed address and replace every session."""
        user = self._require_session(current).user
        await self._limit_ip(
            ip, "verify-email-change", self.settings.email_change_verify_rate_limit_per_minute
        )

        presented = (otp or "").strip().upper()
        record = await self.codes.spend(user.id, presented, purpose=EMAIL_CHANGE)
        if record is None:
            raise AuthenticationError("Invalid or expired verification code")

        try:
            with self.store.atomic():
                if not self.store.update_user_email(user.id, record.email):
                    raise AuthenticationError("Not signed in")
                self.sessions.drop_user_sessions(user.id)
                user = self.store.get_user(user.id) or user
                outcome = self._issue_session(user, ip=ip, user_agent=user_agent)
        except ConstraintViolation as exc:
            logger.info("email_change_conflict", user_id=user.id)
            raise ConflictError(
                "This email is no longer available", detail={"field": "new_email"}
            ) from exc
        logger.info("email_changed", user_id=user.id)
        return outcome

    # --- password reset / change -----------------------------------------

    async def request_password_reset(self, email: str, *, ip: str) -> Optional[str]:
        """Issue a reset link token, or quietly do nothing for unknown addresses."""
        await self._limit_ip(
            ip, "password-forgot", self.settings.password_forgot_rate_limit_per_minute
        )
        email = validate_email(email)
        await self._limit_email(ip, email, "password-forgot")

        user = self.store.get_user_by_email(email)
        if not user or not user.is_active:
            logger.info("password_reset_unknown_account", account=redact_email(email))
            return None

        token = await self.codes.issue(
            user.id,
            user.email,
            purpose=PASSWORD_RESET,
            lifetime=timedelta(minutes=self.settings.password_reset_ttl_minutes),
        )
        link = f"{self.settings.app_base_url.rstrip('/')}/password-reset/{token}"
        self.events.publish(
            event_names.PASSWORD_RESET_REQUESTED,
            {"user_id": user.id, "email": user.email, "reset_link": link},
        )
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        ip: str,
        user_agent: Optional[str] = None,
    ) -> AuthOutcome:
        await self._limit_ip(
            ip, "password-reset", self.settings.password_reset_rate_limit_per_minute
        )
        new_password = validate_password(new_password, field="new_password")

        record = await self.codes.consume_token(token, purpose=PASSWORD_RESET)
        user = self.store.get_user(record.user_id) if record else None
        if not user:
            raise AuthenticationError("Invalid or expired reset link")
        await self._limit_email(ip, user.email, "password-reset")

        pwd_hash, algo = self._hash_password(new_password)
        outcome = AuthOutcome(user=user)
        with self.store.atomic():
            self.sessions.drop_user_sessions(user.id)
            self.store.save_password(user.id, pwd_hash, algo)
            if self.settings.password_reset_issues_session:
                outcome = self._issue_session(user, ip=ip, user_agent=user_agent)
        logger.info("password_reset_completed", user_id=user.id)
        return outcome

    async def change_password(
        self,
        current: Optional[SessionValidation],
        current_password: str,
        new_password: str,
        *,
        ip: str,
    ) -> int:
        """Replace the password and drop every other session; returns how many."""
        current = self._require_session(current)
        user = current.user
        await self._limit_ip(
            ip, "password-change", self.settings.password_change_rate_limit_per_minute
        )
        await self._limit_email(ip, user.email, "password-change")
        new_password = validate_password(new_password, field="new_password")

        if not current_password or not self.verify_password(user.id, current_password):
            raise AuthenticationError("Incorrect password")

        pwd_hash, algo = self._hash_password(new_password)
        with self.store.atomic():
            self.store.save_password(user.id, pwd_hash, algo)
            dropped = self.sessions.drop_user_sessions(
                user.id, except_session_id=current.session.id
            )
        logger.info("password_changed", user_id=user.id, other_sessions=dropped)
        return dropped

    # --- organizations and API credentials -------------------------------

    def permissions_for(self, user_id: str, organization_id: str) -> PermissionSet:
        membership = self.store.get_membership(user_id, organization_id)
        if membership is None:
            return PermissionSet.empty(None)
        return PermissionSet.for_membership(membership)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, value = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    async def authorize_api_call(
        self,
        authorization: Optional[str],
        *,
        ip: str,
        resolve_organization: Callable[[], Optional[str]],
        operation: Callable[[Credential], T],
        scope: str = "tickets",
    ) -> T:
        """Run ``operation`` under a bearer credential of the resource's organization.

        The credential check, the operation and the ``last_used`` update share
        one ``store.atomic()`` unit. An unknown resource and a credential of
        another organization fail identically.
        """
        await self._limit_ip(ip, scope, self.settings.api_rate_limit_per_minute)
        secret = self._extract_bearer(authorization)
        if not secret:
            raise AuthenticationError("Missing bearer credential")

        organization_id = resolve_organization()
        with self.store.atomic():
            credential = self.credentials.validate(secret, organization_id)
            if credential is None:
                logger.info("api_credential_rejected", scope=scope)
                raise AuthenticationError(INVALID_CREDENTIAL)
            result = operation(credential)
            self.credentials.touch_last_used(credential.id)
        logger.info(
            "api_call_authorized",
            scope=scope,
            credential_id=credential.id,
            organization_id=organization_id,
        )
        return result

    # --- passwords --------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def _burn_dummy_verify(self, password: str) -> None:
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except VerificationError:
            pass

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            self._burn_dummy_verify(password)
            return False
        stored_hash, algo = record
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            logger.info("password_verification_failed", user_id=user_id)
            return False


__all__ = ["AuthOutcome", "AuthService"]
