"""Tests for session creation, validation, renewal and invalidation."""

from datetime import timedelta

import pytest

from ticketgate.service.sessions import SessionService
from ticketgate.service.tokens import hash_token


@pytest.fixture
def sessions(memory_store, clock):
    return SessionService(memory_store, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        "owner@example.com", password_hash="x", password_algo="argon2id"
    )


class TestCreateSession:
    """Tests for session creation."""

    @pytest.mark.asyncio
    async def test_session_id_is_token_hash(self, sessions, memory_store, user, clock):
        raw = sessions.generate_session_token()
        session = await sessions.create_session(raw, user.id, user_agent="pytest")

        assert session.id == hash_token(raw)
        assert session.id != raw
        assert session.expires_at == clock.now + timedelta(days=30)
        stored = memory_store.get_session(session.id)
        assert stored.user_id == user.id
        assert stored.user_agent == "pytest"

    @pytest.mark.asyncio
    async def test_start_session_returns_raw_token(self, sessions, user):
        raw, session = await sessions.start_session(user.id, ip_addr="10.0.0.1")
        assert session.id == hash_token(raw)
        assert session.ip_addr == "10.0.0.1"

    def test_open_session_inside_atomic_unit(self, sessions, memory_store, user):
        with memory_store.atomic():
            raw, session = sessions.open_session(user.id, user_agent="pytest")
        assert memory_store.get_session(hash_token(raw)).id == session.id

    @pytest.mark.asyncio
    async def test_unparseable_ip_is_not_stored(self, sessions, user):
        _, session = await sessions.start_session(user.id, ip_addr="unknown")
        assert session.ip_addr is None

    def test_renewal_must_be_shorter_than_lifetime(self, memory_store):
        with pytest.raises(ValueError):
            SessionService(
                memory_store, lifetime=timedelta(days=10), renewal_window=timedelta(days=10)
            )


class TestValidateSession:
    """Tests for reading a carrier token."""

    @pytest.mark.asyncio
    async def test_valid_session_is_not_fresh(self, sessions, user):
        raw, _ = await sessions.start_session(user.id)
        result = await sessions.validate_session(raw)

        assert result.authenticated
        assert result.user.id == user.id
        assert result.fresh is False

    @pytest.mark.asyncio
    async def test_unknown_or_missing_token(self, sessions):
        assert not (await sessions.validate_session(None)).authenticated
        assert not (await sessions.validate_session("")).authenticated
        assert not (await sessions.validate_session("not-a-session")).authenticated

    @pytest.mark.asyncio
    async def test_expired_session_is_deleted(self, sessions, memory_store, user, clock):
        raw, session = await sessions.start_session(user.id)
        clock.advance(days=30)

        result = await sessions.validate_session(raw)

        assert not result.authenticated
        assert memory_store.get_session(session.id) is None

    @pytest.mark.asyncio
    async def test_just_before_expiry_still_valid(self, sessions, user, clock):
        raw, _ = await sessions.start_session(user.id)
        clock.advance(days=30, seconds=-1)
        assert (await sessions.validate_session(raw)).authenticated

    @pytest.mark.asyncio
    async def test_outside_renewal_window_not_extended(self, sessions, memory_store, user, clock):
        raw, session = await sessions.start_session(user.id)
        clock.advance(days=14)

        result = await sessions.validate_session(raw)

        assert result.fresh is False
        assert memory_store.get_session(session.id).expires_at == session.expires_at

    @pytest.mark.asyncio
    async def test_inside_renewal_window_extends_once(self, sessions, memory_store, user, clock):
        raw, session = await sessions.start_session(user.id)
        clock.advance(days=16)

        first = await sessions.validate_session(raw)
        second = await sessions.validate_session(raw)

        assert first.fresh is True
        assert first.session.expires_at == clock.now + timedelta(days=30)
        assert second.fresh is False
        stored = memory_store.get_session(session.id)
        assert stored.expires_at == clock.now + timedelta(days=30)
        assert stored.refreshed_at == clock.now

    @pytest.mark.asyncio
    async def test_inactive_user_drops_session(self, sessions, memory_store, user):
        raw, session = await sessions.start_session(user.id)
        memory_store.users[user.id].is_active = False

        result = await sessions.validate_session(raw)

        assert not result.authenticated
        assert memory_store.get_session(session.id) is None


class TestInvalidate:
    """Tests for sign-out and mass invalidation."""

    @pytest.mark.asyncio
    async def test_invalidate_session(self, sessions, user):
        raw, session = await sessions.start_session(user.id)
        assert await sessions.invalidate_session(session.id) is True
        assert not (await sessions.validate_session(raw)).authenticated
        assert await sessions.invalidate_session(session.id) is False

    @pytest.mark.asyncio
    async def test_invalidate_all_for_user(self, sessions, memory_store, user):
        other = memory_store.create_user("other@example.com", password_hash="x", password_algo="argon2id")
        tokens = [(await sessions.start_session(user.id))[0] for _ in range(3)]
        other_raw, _ = await sessions.start_session(other.id)

        removed = await sessions.invalidate_all_sessions_for_user(user.id)

        assert removed == 3
        for raw in tokens:
            assert not (await sessions.validate_session(raw)).authenticated
        assert (await sessions.validate_session(other_raw)).authenticated

    @pytest.mark.asyncio
    async def test_invalidate_all_except_current(self, sessions, user):
        keep_raw, keep = await sessions.start_session(user.id)
        drop_raw, _ = await sessions.start_session(user.id)

        removed = await sessions.invalidate_all_sessions_for_user(
            user.id, except_session_id=keep.id
        )

        assert removed == 1
        assert (await sessions.validate_session(keep_raw)).authenticated
        assert not (await sessions.validate_session(drop_raw)).authenticated
