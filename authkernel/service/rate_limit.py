from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

from redis.exceptions import RedisError

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.clock import SystemClock
from authkernel.service.errors import ErrorKind, Outcome
from authkernel.storage.common import remaining_requests, seconds_until_reset
from authkernel.storage.errors import ConstraintViolation, StoreTimeout
from authkernel.storage.models import (
    RateCounter,
    RateLimitCategory,
    RateLimitPolicy,
    RateLimitScope,
)

logger = get_logger(__name__)

_MAX_WINDOW_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class RateDecision:
    admitted: bool
    limit: int
    remaining: int
    reset_seconds: int
    policy_code: Optional[str] = None

    @classmethod
    def unrestricted(cls) -> "RateDecision":
        return cls(admitted=True, limit=0, remaining=0, reset_seconds=0)


def default_policy_specs(settings: Settings) -> List[dict]:
    """Policies every deployment starts with, derived from settings."""
    return [
        {
            "code": "login.actor",
            "name": "Login attempts per account",
            "category": RateLimitCategory.LOGIN,
            "scope": RateLimitScope.ACTOR,
            "window_seconds": 60,
            "max_requests": settings.login_rate_limit_per_minute,
            "sliding_window": True,
        },
        {
            "code": "login.ip",
            "name": "Login attempts per client address",
            "category": RateLimitCategory.LOGIN,
            "scope": RateLimitScope.IP,
            "window_seconds": 60,
            "max_requests": settings.login_ip_rate_limit_per_minute,
            "sliding_window": True,
        },
        {
            "code": "join.ip",
            "name": "Sign-ups per client address",
            "category": RateLimitCategory.JOIN,
            "scope": RateLimitScope.IP,
            "window_seconds": 60,
            "max_requests": settings.join_rate_limit_per_minute,
        },
        {
            "code": "password_reset.actor",
            "name": "Password reset requests per email",
            "category": RateLimitCategory.PASSWORD_RESET,
            "scope": RateLimitScope.ACTOR,
            "window_seconds": 3600,
            "max_requests": settings.reset_rate_limit_per_hour,
        },
        {
            "code": "email_verification.actor",
            "name": "Verification resends per email",
            "category": RateLimitCategory.EMAIL_VERIFICATION,
            "scope": RateLimitScope.ACTOR,
            "window_seconds": 3600,
            "max_requests": settings.verification_rate_limit_per_hour,
        },
    ]


def scope_key_for(scope: RateLimitScope, value: str) -> str:
    # Actor keys are often emails; counters only ever see a digest.
    digest = hashlib.sha256(value.strip().lower().encode("utf-8")).hexdigest()[:32]
    return f"{scope.value}:{digest}"


def _policy_field_error(window_seconds: Any, max_requests: Any) -> Optional[Tuple[str, str]]:
    if window_seconds is not None and (
        not isinstance(window_seconds, int) or not 0 < window_seconds <= _MAX_WINDOW_SECONDS
    ):
        return "window_seconds", f"window_seconds must be between 1 and {_MAX_WINDOW_SECONDS}"
    if max_requests is not None and (not isinstance(max_requests, int) or max_requests <= 0):
        return "max_requests", "max_requests must be positive"
    return None


class RateLimiter:
    """Counts attempts against configurable policies.

    Counters live in Redis when a cache is wired in, otherwise in the
    record store. Either way the increment and the comparison against the
    limit happen as one atomic step per (policy, scope key).
    """

    def __init__(
        self,
        store,
        *,
        cache=None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.clock = clock or SystemClock()

    async def _hit(self, policy: RateLimitPolicy, scope_key: str) -> RateCounter:
        now = self.clock.now()
        if self.cache is None:
            return self.store.hit_rate_counter(policy, scope_key, now=now)
        try:
            return await self.cache.hit_rate_counter(policy, scope_key, now=now)
        except RedisError as exc:
            logger.warning(
                "rate_limit_cache_error", policy_code=policy.code, error=str(exc)
            )
            raise StoreTimeout(
                "hit_rate_counter", self.cache.DEFAULT_OPERATION_TIMEOUT
            ) from exc

    async def _decide(self, policy: RateLimitPolicy, scope_key: str) -> RateDecision:
        counter = await self._hit(policy, scope_key)
        now = self.clock.now()
        decision = RateDecision(
            admitted=not counter.blocked,
            limit=policy.max_requests,
            remaining=remaining_requests(
                counter, now, policy.window_seconds, policy.max_requests, policy.sliding_window
            ),
            reset_seconds=seconds_until_reset(counter, now, policy.window_seconds),
            policy_code=policy.code,
        )
        if not decision.admitted:
            logger.warning(
                "rate_limited",
                policy_code=policy.code,
                category=policy.category.value,
                reset_seconds=decision.reset_seconds,
            )
        return decision

    async def check(self, scope_key: str, policy_id: str) -> RateDecision:
        policy = self.store.get_rate_limit_policy(policy_id)
        if policy is None or policy.is_retired or not policy.enabled:
            return RateDecision.unrestricted()
        return await self._decide(policy, scope_key)

    async def enforce(
        self,
        category: RateLimitCategory,
        *,
        actor_key: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> RateDecision:
        """Apply every enabled policy of ``category``; the first rejection wins.

        When all admit, the decision with the fewest remaining requests is
        returned so callers can surface it as headers.
        """
        tightest: Optional[RateDecision] = None
        for policy in self.store.list_rate_limit_policies(category=category):
            if not policy.enabled:
                continue
            value = actor_key if policy.scope == RateLimitScope.ACTOR else ip
            if not value:
                continue
            decision = await self._decide(policy, scope_key_for(policy.scope, value))
            if not decision.admitted:
                return decision
            if tightest is None or decision.remaining < tightest.remaining:
                tightest = decision
        return tightest or RateDecision.unrestricted()

    # -- policy administration ----------------------------------------------

    def create_policy(
        self,
        *,
        code: str,
        name: str,
        category: RateLimitCategory,
        scope: RateLimitScope,
        window_seconds: int,
        max_requests: int,
        sliding_window: bool = False,
        enabled: bool = True,
        description: Optional[str] = None,
    ) -> Outcome[RateLimitPolicy]:
        code = (code or "").strip()
        if not code or not (name or "").strip():
            return Outcome.reject(ErrorKind.VALIDATION, "code and name are required")
        field_error = _policy_field_error(window_seconds, max_requests)
        if field_error:
            return Outcome.reject(ErrorKind.VALIDATION, field_error[1], {"field": field_error[0]})
        now = self.clock.now()
        policy = RateLimitPolicy(
            id=self.clock.new_id(),
            code=code,
            name=name.strip(),
            category=category,
            scope=scope,
            window_seconds=window_seconds,
            max_requests=max_requests,
            sliding_window=sliding_window,
            enabled=enabled,
            description=description,
            created_at=now,
            updated_at=now,
        )
        try:
            created = self.store.create_rate_limit_policy(policy)
        except ConstraintViolation as exc:
            return Outcome.reject(ErrorKind.CONFLICT, exc.message, exc.detail)
        logger.info("rate_limit_policy_created", policy_id=created.id, policy_code=code)
        return Outcome.success(created)

    def update_policy(self, policy_id: str, **changes: Any) -> Outcome[RateLimitPolicy]:
        field_error = _policy_field_error(
            changes.get("window_seconds"), changes.get("max_requests")
        )
        if field_error:
            return Outcome.reject(ErrorKind.VALIDATION, field_error[1], {"field": field_error[0]})
        changes = {key: value for key, value in changes.items() if value is not None}
        if "name" in changes and not str(changes["name"]).strip():
            return Outcome.reject(ErrorKind.VALIDATION, "name cannot be blank", {"field": "name"})
        updated = self.store.update_rate_limit_policy(
            policy_id, now=self.clock.now(), **changes
        )
        if updated is None:
            return Outcome.reject(ErrorKind.NOT_FOUND, "rate limit policy not found")
        logger.info(
            "rate_limit_policy_updated", policy_id=policy_id, fields=sorted(changes)
        )
        return Outcome.success(updated)

    def list_policies(
        self,
        *,
        category: Optional[RateLimitCategory] = None,
        include_retired: bool = False,
    ) -> List[RateLimitPolicy]:
        return self.store.list_rate_limit_policies(
            category=category, include_retired=include_retired
        )

    async def list_counters(self, policy_id: str) -> Outcome[List[RateCounter]]:
        policy = self.store.get_rate_limit_policy(policy_id)
        if policy is None:
            return Outcome.reject(ErrorKind.NOT_FOUND, "rate limit policy not found")
        if policy.is_retired:
            return Outcome.success([])
        if self.cache is not None:
            try:
                return Outcome.success(await self.cache.list_rate_counters(policy_id))
            except RedisError as exc:
                raise StoreTimeout(
                    "list_rate_counters", self.cache.DEFAULT_OPERATION_TIMEOUT
                ) from exc
        return Outcome.success(self.store.list_rate_counters(policy_id))

    async def retire_policy(self, policy_id: str) -> Outcome[RateLimitPolicy]:
        """Soft-delete a policy and its counters.

        Only a disabled policy can be retired; retiring one that is
        already retired changes nothing and still succeeds.
        """
        policy = self.store.get_rate_limit_policy(policy_id)
        if policy is None:
            return Outcome.reject(ErrorKind.NOT_FOUND, "rate limit policy not found")
        if policy.is_retired:
            return Outcome.success(policy)
        if policy.enabled:
            return Outcome.reject(
                ErrorKind.CONFLICT,
                "disable the policy before retiring it",
                {"policy_id": policy_id},
            )
        retired = self.store.retire_rate_limit_policy(policy_id, now=self.clock.now())
        if retired is None:
            # Lost a race: someone re-enabled or retired it in between.
            current = self.store.get_rate_limit_policy(policy_id)
            if current is not None and current.is_retired:
                return Outcome.success(current)
            return Outcome.reject(
                ErrorKind.CONFLICT,
                "disable the policy before retiring it",
                {"policy_id": policy_id},
            )
        if self.cache is not None:
            try:
                await self.cache.retire_rate_counters(policy_id)
            except RedisError as exc:
                # Policy is already retired; stale keys expire on their own.
                logger.warning(
                    "rate_limit_counter_cleanup_failed", policy_id=policy_id, error=str(exc)
                )
        logger.info("rate_limit_policy_retired", policy_id=policy_id, policy_code=policy.code)
        return Outcome.success(retired)

    def seed_default_policies(self, settings: Settings) -> List[RateLimitPolicy]:
        seeded: List[RateLimitPolicy] = []
        for spec in default_policy_specs(settings):
            if self.store.get_rate_limit_policy_by_code(spec["code"]) is not None:
                continue
            outcome = self.create_policy(**spec)
            if outcome.ok:
                seeded.append(outcome.value)
            elif outcome.error != ErrorKind.CONFLICT:
                # Another worker seeding concurrently is fine; bad settings are not.
                raise RuntimeError(f"invalid default rate limit {spec['code']}: {outcome.message}")
        if seeded:
            logger.info("rate_limit_policies_seeded", codes=[p.code for p in seeded])
        return seeded
