"""Tests for rate limit policies, counters and retirement."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import RedisError

from authkernel.service.errors import ErrorKind
from authkernel.service.rate_limit import RateLimiter, default_policy_specs, scope_key_for
from authkernel.storage.errors import StoreTimeout
from authkernel.storage.models import RateLimitCategory, RateLimitScope


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, clock=clock)


def _policy(limiter, **overrides):
    spec = {
        "code": "login.test",
        "name": "Test policy",
        "category": RateLimitCategory.LOGIN,
        "scope": RateLimitScope.ACTOR,
        "window_seconds": 60,
        "max_requests": 3,
    }
    spec.update(overrides)
    return limiter.create_policy(**spec).unwrap()


class TestCounting:
    async def test_admits_up_to_the_limit(self, limiter):
        policy = _policy(limiter)
        key = scope_key_for(RateLimitScope.ACTOR, "user:a@x.com")

        decisions = [await limiter.check(key, policy.id) for _ in range(4)]

        assert [d.admitted for d in decisions] == [True, True, True, False]
        assert decisions[0].remaining == 2
        assert decisions[3].policy_code == "login.test"
        assert decisions[3].reset_seconds == 60

    async def test_fixed_window_restarts(self, limiter, clock):
        policy = _policy(limiter)
        key = scope_key_for(RateLimitScope.ACTOR, "k")
        for _ in range(4):
            await limiter.check(key, policy.id)

        clock.advance(seconds=60)

        assert (await limiter.check(key, policy.id)).admitted is True

    async def test_sliding_window_weights_previous_window(self, limiter, clock):
        policy = _policy(limiter, sliding_window=True)
        key = scope_key_for(RateLimitScope.ACTOR, "k")
        for _ in range(4):
            await limiter.check(key, policy.id)

        clock.advance(seconds=60)
        assert (await limiter.check(key, policy.id)).admitted is False

        clock.advance(seconds=120)
        assert (await limiter.check(key, policy.id)).admitted is True

    async def test_scope_keys_are_counted_separately(self, limiter):
        policy = _policy(limiter, max_requests=1)

        first = await limiter.check(scope_key_for(RateLimitScope.ACTOR, "a"), policy.id)
        second = await limiter.check(scope_key_for(RateLimitScope.ACTOR, "b"), policy.id)

        assert first.admitted and second.admitted

    async def test_disabled_and_missing_policies_admit(self, limiter):
        policy = _policy(limiter, max_requests=1, enabled=False)

        for _ in range(3):
            assert (await limiter.check("actor:k", policy.id)).admitted
        assert (await limiter.check("actor:k", "missing")).admitted


class TestEnforce:
    async def test_first_rejection_wins(self, limiter):
        _policy(limiter, code="login.actor", max_requests=5)
        _policy(limiter, code="login.ip", scope=RateLimitScope.IP, max_requests=1)

        await limiter.enforce(RateLimitCategory.LOGIN, actor_key="user:a", ip="10.0.0.1")
        decision = await limiter.enforce(
            RateLimitCategory.LOGIN, actor_key="user:b", ip="10.0.0.1"
        )

        assert decision.admitted is False
        assert decision.policy_code == "login.ip"

    async def test_returns_tightest_admitted_decision(self, limiter):
        _policy(limiter, code="login.actor", max_requests=5)
        _policy(limiter, code="login.ip", scope=RateLimitScope.IP, max_requests=2)

        decision = await limiter.enforce(
            RateLimitCategory.LOGIN, actor_key="user:a", ip="10.0.0.1"
        )

        assert decision.admitted is True
        assert decision.policy_code == "login.ip"
        assert decision.remaining == 1

    async def test_missing_scope_value_skips_policy(self, limiter):
        _policy(limiter, code="login.ip", scope=RateLimitScope.IP, max_requests=1)

        for _ in range(3):
            assert (await limiter.enforce(RateLimitCategory.LOGIN, actor_key="user:a")).admitted

    async def test_other_categories_are_unaffected(self, limiter):
        _policy(limiter, max_requests=1)

        for _ in range(3):
            assert (
                await limiter.enforce(RateLimitCategory.JOIN, actor_key="user:a")
            ).admitted


class TestScopeKeys:
    def test_scope_key_hides_the_raw_value(self):
        key = scope_key_for(RateLimitScope.ACTOR, "user:a@x.com")

        assert key.startswith("actor:")
        assert "@" not in key
        assert key == scope_key_for(RateLimitScope.ACTOR, " USER:A@X.COM ")


class TestPolicyAdministration:
    def test_duplicate_code_is_a_conflict(self, limiter):
        _policy(limiter)

        outcome = limiter.create_policy(
            code="login.test",
            name="again",
            category=RateLimitCategory.LOGIN,
            scope=RateLimitScope.ACTOR,
            window_seconds=60,
            max_requests=3,
        )

        assert outcome.error == ErrorKind.CONFLICT

    @pytest.mark.parametrize(
        "window,limit,field",
        [(0, 3, "window_seconds"), (8 * 24 * 3600, 3, "window_seconds"), (60, 0, "max_requests")],
    )
    def test_invalid_fields(self, limiter, window, limit, field):
        outcome = limiter.create_policy(
            code="bad",
            name="bad",
            category=RateLimitCategory.LOGIN,
            scope=RateLimitScope.ACTOR,
            window_seconds=window,
            max_requests=limit,
        )

        assert outcome.error == ErrorKind.VALIDATION
        assert outcome.detail == {"field": field}

    def test_update_policy(self, limiter):
        policy = _policy(limiter)

        updated = limiter.update_policy(policy.id, max_requests=10, name=None).unwrap()

        assert updated.max_requests == 10
        assert updated.name == policy.name

    def test_update_missing_policy(self, limiter):
        assert limiter.update_policy("missing", enabled=False).error == ErrorKind.NOT_FOUND

    def test_seed_is_idempotent(self, limiter, settings):
        seeded = limiter.seed_default_policies(settings)

        assert sorted(p.code for p in seeded) == sorted(
            spec["code"] for spec in default_policy_specs(settings)
        )
        assert limiter.seed_default_policies(settings) == []


class TestRetirement:
    async def test_enabled_policy_cannot_be_retired(self, limiter):
        policy = _policy(limiter)

        outcome = await limiter.retire_policy(policy.id)

        assert outcome.error == ErrorKind.CONFLICT

    async def test_disable_then_retire_then_retire_again(self, limiter, clock):
        policy = _policy(limiter)
        limiter.update_policy(policy.id, enabled=False).unwrap()

        retired = (await limiter.retire_policy(policy.id)).unwrap()
        clock.advance(seconds=30)
        again = (await limiter.retire_policy(policy.id)).unwrap()

        assert retired.deleted_at is not None
        assert again.deleted_at == retired.deleted_at
        assert again.updated_at == retired.updated_at

    async def test_retire_missing_policy(self, limiter):
        assert (await limiter.retire_policy("missing")).error == ErrorKind.NOT_FOUND

    async def test_retirement_soft_deletes_counters(self, limiter, store):
        policy = _policy(limiter)
        await limiter.check("actor:k", policy.id)
        assert len((await limiter.list_counters(policy.id)).unwrap()) == 1
        limiter.update_policy(policy.id, enabled=False)

        await limiter.retire_policy(policy.id)

        assert (await limiter.list_counters(policy.id)).unwrap() == []
        retired_counters = store.list_rate_counters(policy.id, include_retired=True)
        assert retired_counters and all(c.deleted_at is not None for c in retired_counters)
        assert (await limiter.check("actor:k", policy.id)).admitted

    async def test_retired_policy_cannot_be_updated(self, limiter):
        policy = _policy(limiter)
        limiter.update_policy(policy.id, enabled=False)
        await limiter.retire_policy(policy.id)

        assert limiter.update_policy(policy.id, enabled=True).error == ErrorKind.NOT_FOUND

    async def test_list_counters_for_missing_policy(self, limiter):
        assert (await limiter.list_counters("missing")).error == ErrorKind.NOT_FOUND


class TestCacheBackedCounters:
    @pytest.fixture
    def cache(self):
        cache = MagicMock()
        cache.DEFAULT_OPERATION_TIMEOUT = 5.0
        cache.hit_rate_counter = AsyncMock()
        cache.list_rate_counters = AsyncMock(return_value=[])
        cache.retire_rate_counters = AsyncMock(return_value=0)
        return cache

    async def test_redis_errors_surface_as_store_timeouts(self, store, clock, cache):
        cache.hit_rate_counter.side_effect = RedisError("connection reset")
        limiter = RateLimiter(store, cache=cache, clock=clock)
        policy = _policy(limiter)

        with pytest.raises(StoreTimeout):
            await limiter.check("actor:k", policy.id)

    async def test_counters_are_read_from_the_cache(self, store, clock, cache):
        limiter = RateLimiter(store, cache=cache, clock=clock)
        policy = _policy(limiter)

        assert (await limiter.list_counters(policy.id)).unwrap() == []
        cache.list_rate_counters.assert_awaited_once_with(policy.id)

    async def test_cache_cleanup_failure_does_not_undo_retirement(self, store, clock, cache):
        cache.retire_rate_counters.side_effect = RedisError("down")
        limiter = RateLimiter(store, cache=cache, clock=clock)
        policy = _policy(limiter, enabled=False)

        retired = (await limiter.retire_policy(policy.id)).unwrap()

        assert retired.is_retired
