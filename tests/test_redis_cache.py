"""Unit tests for the Redis counter cache with the client mocked out."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from authkernel.storage.models import RateLimitCategory, RateLimitPolicy, RateLimitScope
from authkernel.storage.redis_cache import RedisCache, SyncRedisCache

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

POLICY = RateLimitPolicy(
    id="policy-1",
    code="login.actor",
    name="Login attempts",
    category=RateLimitCategory.LOGIN,
    scope=RateLimitScope.ACTOR,
    window_seconds=60,
    max_requests=10,
    sliding_window=True,
)


@pytest.fixture
def async_client():
    client = MagicMock()
    client.register_script.return_value = AsyncMock(
        return_value=[str(NOW.timestamp()), 3, 1, 0]
    )
    client.smembers = AsyncMock(return_value={"rate:policy-1:abc"})
    client.hgetall = AsyncMock(
        return_value={"ws": str(NOW.timestamp()), "count": "4", "prev": "2", "blocked": "1", "scope": "actor:k"}
    )
    client.delete = AsyncMock(return_value=1)
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def cache(async_client):
    with patch("authkernel.storage.redis_cache.aioredis.from_url", return_value=async_client):
        yield RedisCache("redis://localhost:6379/0")


class TestKeys:
    def test_scope_key_is_hashed_into_the_counter_key(self):
        key = RedisCache._normalize_rate_key("policy-1", "actor:user:a@x.com")

        assert key.startswith("rate:policy-1:")
        assert "a@x.com" not in key
        assert key != RedisCache._normalize_rate_key("policy-1", "actor:user:b@x.com")

    def test_delimiters_cannot_alias_another_policy(self):
        assert RedisCache._normalize_rate_key("a", "b:c") != RedisCache._normalize_rate_key(
            "a:b", "c"
        )

    def test_script_args(self):
        args = RedisCache._script_args(POLICY, "actor:k", NOW, 0)

        assert args == [NOW.timestamp(), 60, 10, 1, 1, "actor:k"]


class TestAsyncCache:
    async def test_hit_maps_script_result(self, cache, async_client):
        counter = await cache.hit_rate_counter(POLICY, "actor:k", now=NOW)

        script = async_client.register_script.return_value
        script.assert_awaited_once()
        keys = script.call_args.kwargs["keys"]
        assert keys[1] == "rate:index:policy-1"
        assert counter.window_started_at == NOW
        assert (counter.count, counter.previous_count, counter.blocked) == (3, 1, False)
        assert counter.scope_key == "actor:k"

    async def test_list_reads_index_members(self, cache, async_client):
        [counter] = await cache.list_rate_counters("policy-1")

        async_client.smembers.assert_awaited_once_with("rate:index:policy-1")
        assert counter.scope_key == "actor:k"
        assert counter.count == 4
        assert counter.blocked is True

    async def test_retire_deletes_counters_and_index(self, cache, async_client):
        removed = await cache.retire_rate_counters("policy-1")

        assert removed == 1
        assert async_client.delete.await_args_list[-1].args == ("rate:index:policy-1",)

    async def test_close(self, cache, async_client):
        await cache.close()

        async_client.aclose.assert_awaited_once()

    def test_verify_connection_uses_short_lived_sync_client(self, cache):
        sync_client = MagicMock()
        with patch("authkernel.storage.redis_cache.Redis.from_url", return_value=sync_client):
            cache.verify_connection()

        sync_client.ping.assert_called_once()
        sync_client.close.assert_called_once()


class TestSyncCache:
    async def test_sync_cache_exposes_the_same_surface(self):
        client = MagicMock()
        client.register_script.return_value = MagicMock(
            return_value=[str(NOW.timestamp()), 11, 0, 1]
        )
        client.smembers.return_value = set()
        with patch("authkernel.storage.redis_cache.Redis.from_url", return_value=client):
            cache = SyncRedisCache("redis://localhost:6379/0")

        counter = await cache.hit_rate_counter(POLICY, "actor:k", now=NOW)

        assert counter.blocked is True
        assert await cache.list_rate_counters("policy-1") == []
        assert await cache.retire_rate_counters("policy-1") == 0
        client.delete.assert_called_once_with("rate:index:policy-1")
