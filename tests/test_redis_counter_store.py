"""Unit tests for the Redis counter adapter with the scripts stubbed out."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from ticketgate.storage.errors import StoreUnavailable
from ticketgate.storage.redis_cache import RedisCounterStore


def _store(fixed=None, sliding=None) -> RedisCounterStore:
    store = RedisCounterStore.__new__(RedisCounterStore)
    store.redis_url = "redis://localhost:6379/0"
    store.client = MagicMock()
    store._fixed_window = fixed or AsyncMock(return_value=1)
    store._sliding_window = sliding or AsyncMock(return_value=0)
    return store


class TestKeys:
    def test_normalized_key_hides_identity(self):
        key = RedisCounterStore._normalize_rate_key("combo:sign-in:1.2.3.4:a@example.com")
        assert key.startswith("rate:")
        assert "example.com" not in key

    def test_delimiters_do_not_collide(self):
        a = RedisCounterStore._normalize_rate_key("combo:x:1:2:3")
        b = RedisCounterStore._normalize_rate_key("combo:x:1:2:4")
        assert a != b


class TestFixedWindow:
    @pytest.mark.asyncio
    async def test_under_limit(self):
        script = AsyncMock(return_value=3)
        store = _store(fixed=script)

        success, remaining, reset_ms = await store.fixed_window("k", 5, 300_000, 600_000)

        assert success is True
        assert remaining == 2
        assert reset_ms == 900_000
        kwargs = script.await_args.kwargs
        assert kwargs["keys"][0].endswith(":2")
        assert kwargs["args"] == [300_000]

    @pytest.mark.asyncio
    async def test_over_limit(self):
        store = _store(fixed=AsyncMock(return_value=6))
        success, remaining, _ = await store.fixed_window("k", 5, 300_000, 600_000)
        assert success is False
        assert remaining == 0

    @pytest.mark.asyncio
    async def test_redis_error_becomes_store_unavailable(self):
        store = _store(fixed=AsyncMock(side_effect=RedisConnectionError("down")))
        with pytest.raises(StoreUnavailable):
            await store.fixed_window("k", 5, 300_000, 600_000)


class TestSlidingWindow:
    @pytest.mark.asyncio
    async def test_passes_current_and_previous_bucket(self):
        script = AsyncMock(return_value=4)
        store = _store(sliding=script)

        success, remaining, reset_ms = await store.sliding_window("k", 10, 60_000, 125_000)

        assert (success, remaining, reset_ms) == (True, 4, 180_000)
        current, previous = script.await_args.kwargs["keys"]
        assert current.endswith(":2")
        assert previous.endswith(":1")
        assert script.await_args.kwargs["args"] == [10, 125_000, 60_000]

    @pytest.mark.asyncio
    async def test_rejection_sentinel(self):
        store = _store(sliding=AsyncMock(return_value=-1))
        success, remaining, _ = await store.sliding_window("k", 10, 60_000, 125_000)
        assert success is False
        assert remaining == 0

    @pytest.mark.asyncio
    async def test_redis_error_becomes_store_unavailable(self):
        store = _store(sliding=AsyncMock(side_effect=RedisConnectionError("down")))
        with pytest.raises(StoreUnavailable):
            await store.sliding_window("k", 10, 60_000, 125_000)


class TestLifecycle:
    def test_verify_connection_pings_with_sync_client(self):
        store = _store()
        sync_client = MagicMock()
        with patch("ticketgate.storage.redis_cache.Redis.from_url", return_value=sync_client):
            store.verify_connection()
        sync_client.ping.assert_called_once()
        sync_client.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_close_disconnects_pool(self):
        store = _store()
        store.client.close = AsyncMock()
        store.client.connection_pool.disconnect = AsyncMock()
        await store.close()
        store.client.close.assert_awaited_once()
        store.client.connection_pool.disconnect.assert_awaited_once()
