"""Tests for single-use expiring codes.

Consumption deletes the stored code before expiry and email are checked,
so a code is spent by the first matching attempt even when it turns out
to be expired or bound to another address.
"""

from datetime import timedelta

import pytest

from ticketgate.service.one_time_codes import (
    EMAIL_VERIFICATION,
    PASSWORD_RESET,
    OneTimeCodeService,
)
from ticketgate.service.tokens import CODE_ALPHABET, hash_token


@pytest.fixture
def codes(memory_store, clock):
    return OneTimeCodeService(memory_store, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user("coder@example.com", password_hash="x")


async def _issue_code(codes, user, lifetime=timedelta(hours=2)):
    return await codes.issue(
        user.id, user.email, purpose=EMAIL_VERIFICATION, lifetime=lifetime, code_length=8
    )


class TestIssue:
    """Tests for issuing codes."""

    @pytest.mark.asyncio
    async def test_code_is_stored_as_hash(self, codes, memory_store, user):
        code = await _issue_code(codes, user)

        assert len(code) == 8
        assert set(code) <= set(CODE_ALPHABET)
        record = memory_store.get_one_time_code(user.id, EMAIL_VERIFICATION)
        assert record.code_hash == hash_token(code)
        assert record.email == user.email

    @pytest.mark.asyncio
    async def test_issue_replaces_previous_code(self, codes, user):
        first = await _issue_code(codes, user)
        second = await _issue_code(codes, user)

        assert not await codes.consume(user.id, first, user.email, purpose=EMAIL_VERIFICATION)
        assert await codes.consume(user.id, second, user.email, purpose=EMAIL_VERIFICATION)

    @pytest.mark.asyncio
    async def test_purposes_do_not_replace_each_other(self, codes, memory_store, user):
        await _issue_code(codes, user)
        await codes.issue(user.id, user.email, purpose=PASSWORD_RESET, lifetime=timedelta(minutes=15))

        assert memory_store.get_one_time_code(user.id, EMAIL_VERIFICATION) is not None
        assert memory_store.get_one_time_code(user.id, PASSWORD_RESET) is not None

    @pytest.mark.asyncio
    async def test_token_form_without_length(self, codes, user):
        token = await codes.issue(
            user.id, user.email, purpose=PASSWORD_RESET, lifetime=timedelta(minutes=15)
        )
        assert len(token) == 32
        assert token == token.lower()


class TestConsume:
    """Tests for consuming codes."""

    @pytest.mark.asyncio
    async def test_valid_code_consumed_once(self, codes, user):
        code = await _issue_code(codes, user)

        assert await codes.consume(user.id, code, user.email, purpose=EMAIL_VERIFICATION)
        assert not await codes.consume(user.id, code, user.email, purpose=EMAIL_VERIFICATION)

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_stored_code(self, codes, memory_store, user):
        code = await _issue_code(codes, user)

        assert not await codes.consume(user.id, "WRONGONE", user.email, purpose=EMAIL_VERIFICATION)
        assert memory_store.get_one_time_code(user.id, EMAIL_VERIFICATION) is not None
        assert await codes.consume(user.id, code, user.email, purpose=EMAIL_VERIFICATION)

    @pytest.mark.asyncio
    async def test_expired_code_fails_and_is_spent(self, codes, memory_store, user, clock):
        code = await _issue_code(codes, user)
        clock.advance(hours=2)

        assert not await codes.consume(user.id, code, user.email, purpose=EMAIL_VERIFICATION)
        assert memory_store.get_one_time_code(user.id, EMAIL_VERIFICATION) is None

    @pytest.mark.asyncio
    async def test_code_valid_until_expiry(self, codes, user, clock):
        code = await _issue_code(codes, user)
        clock.advance(hours=2, seconds=-1)
        assert await codes.consume(user.id, code, user.email, purpose=EMAIL_VERIFICATION)

    @pytest.mark.asyncio
    async def test_email_change_invalidates_code(self, codes, memory_store, user):
        code = await _issue_code(codes, user)

        assert not await codes.consume(
            user.id, code, "new-address@example.com", purpose=EMAIL_VERIFICATION
        )
        # Spent even though the email did not match
        assert not await codes.consume(user.id, code, user.email, purpose=EMAIL_VERIFICATION)

    @pytest.mark.asyncio
    async def test_email_match_is_case_insensitive(self, codes, user):
        code = await _issue_code(codes, user)
        assert await codes.consume(user.id, code, "CODER@example.com", purpose=EMAIL_VERIFICATION)

    @pytest.mark.asyncio
    async def test_lost_delete_race_fails(self, codes, memory_store, user):
        code = await _issue_code(codes, user)
        original_delete = memory_store.delete_one_time_code

        def concurrent_delete(code_id):
            # Another consumer removes the code between read and delete
            original_delete(code_id)
            return original_delete(code_id)

        memory_store.delete_one_time_code = concurrent_delete
        assert not await codes.consume(user.id, code, user.email, purpose=EMAIL_VERIFICATION)

    @pytest.mark.asyncio
    async def test_missing_code(self, codes, user):
        assert not await codes.consume(user.id, "ANYTHING", user.email, purpose=EMAIL_VERIFICATION)
        assert not await codes.consume(user.id, "", user.email, purpose=EMAIL_VERIFICATION)


class TestConsumeToken:
    """Tests for link tokens looked up by hash."""

    @pytest.mark.asyncio
    async def test_token_consumed_once(self, codes, user):
        token = await codes.issue(
            user.id, user.email, purpose=PASSWORD_RESET, lifetime=timedelta(minutes=15)
        )

        record = await codes.consume_token(token, purpose=PASSWORD_RESET)
        assert record is not None
        assert record.user_id == user.id
        assert await codes.consume_token(token, purpose=PASSWORD_RESET) is None

    @pytest.mark.asyncio
    async def test_expired_token_is_spent(self, codes, memory_store, user, clock):
        token = await codes.issue(
            user.id, user.email, purpose=PASSWORD_RESET, lifetime=timedelta(minutes=15)
        )
        clock.advance(minutes=15)

        assert await codes.consume_token(token, purpose=PASSWORD_RESET) is None
        assert memory_store.get_one_time_code(user.id, PASSWORD_RESET) is None

    @pytest.mark.asyncio
    async def test_purpose_must_match(self, codes, user):
        token = await codes.issue(
            user.id, user.email, purpose=PASSWORD_RESET, lifetime=timedelta(minutes=15)
        )
        assert await codes.consume_token(token, purpose=EMAIL_VERIFICATION) is None
        assert await codes.consume_token(token, purpose=PASSWORD_RESET) is not None

    @pytest.mark.asyncio
    async def test_empty_token(self, codes):
        assert await codes.consume_token("", purpose=PASSWORD_RESET) is None
