from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

from ticketgate.logging import get_logger
from ticketgate.service.tokens import (
    MIN_TOKEN_BYTES,
    generate_code,
    generate_token,
    hash_token,
    tokens_match,
)
from ticketgate.storage.common import AuthStore, normalize_email
from ticketgate.storage.models import OneTimeCode, utcnow

logger = get_logger(__name__)

EMAIL_VERIFICATION = "email_verification"
PASSWORD_RESET = "password_reset"
EMAIL_CHANGE = "email_change"


class OneTimeCodeService:
    """Expiring single-use codes, one live code per user and purpose.

    Codes are stored as hashes. Consumption deletes the record before the
    expiry and email checks run, so an expired or re-bound code is spent by
    the attempt that discovers it; the caller only ever learns "invalid".
    The store's conditional delete decides which of two racing consumers wins.
    """

    def __init__(
        self,
        store: AuthStore,
        *,
        token_bytes: int = MIN_TOKEN_BYTES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.token_bytes = token_bytes
        self.clock = clock

    async def issue(
        self,
        user_id: str,
        email: str,
        *,
        purpose: str,
        lifetime: timedelta,
        code_length: Optional[int] = None,
    ) -> str:
        """Replace any live code for ``(user_id, purpose)`` and return the new raw value.

        With ``code_length`` the value is a short typed code; otherwise a
        full-entropy token suitable for links.
        """
        raw = generate_code(code_length) if code_length else generate_token(self.token_bytes)
        record = OneTimeCode.new(
            user_id,
            purpose,
            normalize_email(email),
            hash_token(raw),
            lifetime=lifetime,
            now=self.clock(),
        )
        self.store.replace_one_time_code(record)
        logger.info(
            "one_time_code_issued",
            user_id=user_id,
            purpose=purpose,
            expires_at=record.expires_at.isoformat(),
        )
        return raw

    async def current(self, user_id: str, purpose: str) -> Optional[OneTimeCode]:
        return self.store.get_one_time_code(user_id, purpose)

    async def consume(self, user_id: str, presented: str, email: str, *, purpose: str) -> bool:
        record = await self.spend(user_id, presented, purpose=purpose)
        if record is None:
            return False
        if record.email != normalize_email(email):
            logger.warning("one_time_code_email_mismatch", user_id=user_id, purpose=purpose)
            return False
        logger.info("one_time_code_consumed", user_id=user_id, purpose=purpose)
        return True

    async def spend(self, user_id: str, presented: str, *, purpose: str) -> Optional[OneTimeCode]:
        """Spend the live code for ``(user_id, purpose)``; returns it only when still valid.

        The caller checks the bound address, which for an email change is the
        new address rather than the account's current one.
        """
        record = self.store.get_one_time_code(user_id, purpose)
        if not record or not presented or not tokens_match(presented, record.code_hash):
            logger.info("one_time_code_mismatch", user_id=user_id, purpose=purpose)
            return None

        if not self.store.delete_one_time_code(record.id):
            # Another request consumed it first
            logger.warning("one_time_code_race_lost", user_id=user_id, purpose=purpose)
            return None

        if self.clock() >= record.expires_at:
            logger.info("one_time_code_expired", user_id=user_id, purpose=purpose)
            return None
        return record

    async def consume_token(self, presented: str, *, purpose: str) -> Optional[OneTimeCode]:
        """Spend a link token found by its hash; returns the record only when still valid."""
        if not presented:
            return None
        record = self.store.pop_one_time_code_by_hash(purpose, hash_token(presented))
        if not record:
            logger.info("one_time_token_unknown", purpose=purpose)
            return None
        if self.clock() >= record.expires_at:
            logger.info("one_time_token_expired", user_id=record.user_id, purpose=purpose)
            return None
        logger.info("one_time_token_consumed", user_id=record.user_id, purpose=purpose)
        return record
