from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any, List, Sequence

import redis.asyncio as aioredis
from redis import Redis

from authkernel.storage.models import RateCounter, RateLimitPolicy


class RedisCache:
    """Thin Redis wrapper holding rate-limit counters.

    Counters mirror the store's RateCounter rows: one hash per
    (policy, scope key) plus a per-policy index set used for listing and
    retirement.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0  # seconds

    # Atomic window advance + increment + compare. Fixed windows restart at
    # ``now``; sliding windows advance by whole windows and keep the
    # previous window's count for weighting.
    _COUNTER_SCRIPT = """
local key = KEYS[1]
local index = KEYS[2]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local sliding = tonumber(ARGV[4])
local cost = tonumber(ARGV[5])
local scope_key = ARGV[6]

local data = redis.call('HMGET', key, 'ws', 'count', 'prev')
local ws = tonumber(data[1])
local count = tonumber(data[2])
local prev = tonumber(data[3]) or 0

if ws == nil or count == nil then
  ws = now
  count = 0
  prev = 0
elseif now - ws >= window then
  if sliding == 1 then
    local passed = math.floor((now - ws) / window)
    if passed == 1 then
      prev = count
    else
      prev = 0
    end
    ws = ws + passed * window
  else
    prev = 0
    ws = now
  end
  count = 0
end

count = count + cost
local effective = count
if sliding == 1 then
  local overlap = math.max(0, 1 - ((now - ws) / window))
  effective = prev * overlap + count
end
local blocked = 0
if effective > limit then
  blocked = 1
end

redis.call('HSET', key, 'ws', tostring(ws), 'count', count, 'prev', prev, 'blocked', blocked, 'scope', scope_key)
redis.call('EXPIRE', key, math.ceil(window * 2))
redis.call('SADD', index, key)
redis.call('EXPIRE', index, math.ceil(window * 2))
return {tostring(ws), count, prev, blocked}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._counter_script = self.client.register_script(self._COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Use a short-lived synchronous client to avoid binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(policy_id: str, scope_key: str) -> str:
        """Collision-resistant counter key; the scope key is hashed so
        delimiters inside it cannot alias another policy's counter."""

        digest = hashlib.sha256(scope_key.encode()).hexdigest()
        return f"rate:{policy_id}:{digest}"

    @staticmethod
    def _index_key(policy_id: str) -> str:
        return f"rate:index:{policy_id}"

    @staticmethod
    def _script_args(
        policy: RateLimitPolicy, scope_key: str, now: datetime, cost: int
    ) -> List[Any]:
        return [
            now.timestamp(),
            policy.window_seconds,
            policy.max_requests,
            1 if policy.sliding_window else 0,
            max(1, cost),
            scope_key,
        ]

    @staticmethod
    def _counter_from_script(
        policy_id: str, scope_key: str, result: Sequence[Any]
    ) -> RateCounter:
        window_start, count, previous, blocked = result
        return RateCounter(
            policy_id=policy_id,
            scope_key=scope_key,
            window_started_at=datetime.fromtimestamp(float(window_start), tz=timezone.utc),
            count=int(count),
            previous_count=int(previous),
            blocked=bool(int(blocked)),
        )

    @staticmethod
    def _counter_from_hash(policy_id: str, data: dict) -> RateCounter:
        return RateCounter(
            policy_id=policy_id,
            scope_key=data.get("scope", ""),
            window_started_at=datetime.fromtimestamp(float(data["ws"]), tz=timezone.utc),
            count=int(data.get("count", 0)),
            previous_count=int(data.get("prev", 0)),
            blocked=bool(int(data.get("blocked", 0))),
        )

    async def hit_rate_counter(
        self, policy: RateLimitPolicy, scope_key: str, *, now: datetime, cost: int = 1
    ) -> RateCounter:
        result = await self._counter_script(
            keys=[self._normalize_rate_key(policy.id, scope_key), self._index_key(policy.id)],
            args=self._script_args(policy, scope_key, now, cost),
        )
        return self._counter_from_script(policy.id, scope_key, result)

    async def list_rate_counters(self, policy_id: str) -> List[RateCounter]:
        counters: List[RateCounter] = []
        for key in await self.client.smembers(self._index_key(policy_id)):
            data = await self.client.hgetall(key)
            if data:
                counters.append(self._counter_from_hash(policy_id, data))
        return sorted(counters, key=lambda c: c.scope_key)

    async def retire_rate_counters(self, policy_id: str) -> int:
        index = self._index_key(policy_id)
        keys = await self.client.smembers(index)
        if keys:
            await self.client.delete(*keys)
        await self.client.delete(index)
        return len(keys)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so they can be awaited
    uniformly like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = RedisCache.DEFAULT_OPERATION_TIMEOUT

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._counter_script = self._sync_client.register_script(RedisCache._COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def hit_rate_counter(
        self, policy: RateLimitPolicy, scope_key: str, *, now: datetime, cost: int = 1
    ) -> RateCounter:
        result = self._counter_script(
            keys=[
                RedisCache._normalize_rate_key(policy.id, scope_key),
                RedisCache._index_key(policy.id),
            ],
            args=RedisCache._script_args(policy, scope_key, now, cost),
        )
        return RedisCache._counter_from_script(policy.id, scope_key, result)

    async def list_rate_counters(self, policy_id: str) -> List[RateCounter]:
        counters: List[RateCounter] = []
        for key in self._sync_client.smembers(RedisCache._index_key(policy_id)):
            data = self._sync_client.hgetall(key)
            if data:
                counters.append(RedisCache._counter_from_hash(policy_id, data))
        return sorted(counters, key=lambda c: c.scope_key)

    async def retire_rate_counters(self, policy_id: str) -> int:
        index = RedisCache._index_key(policy_id)
        keys = self._sync_client.smembers(index)
        if keys:
            self._sync_client.delete(*keys)
        self._sync_client.delete(index)
        return len(keys)

    async def close(self) -> None:
        self._sync_client.close()
