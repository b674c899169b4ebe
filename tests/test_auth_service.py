"""Unit tests for the AuthService facade.

Covers:
- join / login / refresh for every actor kind
- bearer authentication and actor-kind authorization
- logout, bulk session revocation and session listing
- audit trail search
- password change
- rate limiting and store failure translation
- rate limit administration
"""

from unittest.mock import patch

import pytest

from authkernel.service.auth import (
    INVALID_CREDENTIALS_MESSAGE,
    INVALID_TOKEN_MESSAGE,
    AuthService,
    Credentials,
    LogoutOptions,
    RevokeOptions,
)
from authkernel.service.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from authkernel.service.sessions import ClientContext, SessionState, SessionStatus
from authkernel.storage.errors import StoreTimeout
from authkernel.storage.models import (
    ActorKind,
    ActorRef,
    IdentityStatus,
    RateLimitCategory,
    RateLimitScope,
)

PASSWORD = "password123"


def _service(store, settings, notifier, clock, **overrides):
    service = AuthService(
        store, settings.model_copy(update=overrides), notifier=notifier, clock=clock
    )
    service.rate_limiter.seed_default_policies(service.settings)
    return service


async def _join(auth, email="a@x.com", kind=ActorKind.USER, password=PASSWORD):
    authorized = await auth.join(kind, Credentials(email=email, password=password))
    await auth.recovery.drain()
    return authorized


async def _ctx(auth, authorized):
    return await auth.authenticate(f"Bearer {authorized.access_token}")


async def _system_admin(auth, store):
    digest, algo = auth.hasher.hash_password(PASSWORD)
    store.create_identity(
        ActorKind.SYSTEM_ADMIN, email="root@x.com", password_hash=digest, password_algo=algo
    )
    authorized = await auth.login(
        ActorKind.SYSTEM_ADMIN, Credentials(email="root@x.com", password=PASSWORD)
    )
    return await _ctx(auth, authorized)


class TestJoinLoginRefreshScenario:
    async def test_join_login_refresh(self, auth_service):
        joined = await _join(auth_service)

        login = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )
        with pytest.raises(AuthError) as exc_info:
            await auth_service.login(
                ActorKind.USER, Credentials(email="a@x.com", password="wrong-password")
            )
        refreshed = await auth_service.refresh(ActorKind.USER, login.refresh_token)

        assert joined.identity_id == login.identity_id
        assert joined.session_id != login.session_id
        assert exc_info.value.message == INVALID_CREDENTIALS_MESSAGE
        assert refreshed.refresh_token != login.refresh_token
        assert refreshed.session_id == login.session_id

    async def test_refresh_token_is_single_use(self, auth_service):
        joined = await _join(auth_service)
        await auth_service.refresh(ActorKind.USER, joined.refresh_token)

        with pytest.raises(AuthError) as exc_info:
            await auth_service.refresh(ActorKind.USER, joined.refresh_token)
        assert exc_info.value.message == INVALID_TOKEN_MESSAGE

    async def test_expired_session_matches_unknown_token(self, auth_service, clock, settings):
        joined = await _join(auth_service)
        clock.advance(minutes=settings.refresh_token_ttl_minutes + 1)

        with pytest.raises(AuthError) as expired:
            await auth_service.refresh(ActorKind.USER, joined.refresh_token)
        with pytest.raises(AuthError) as unknown:
            await auth_service.refresh(ActorKind.USER, "not-a-token")
        assert expired.value.message == unknown.value.message

    async def test_refresh_under_wrong_kind(self, auth_service):
        joined = await _join(auth_service)

        with pytest.raises(AuthError):
            await auth_service.refresh(ActorKind.ADMIN, joined.refresh_token)

    async def test_refresh_for_suspended_identity_revokes_session(
        self, auth_service, store, clock
    ):
        joined = await _join(auth_service)
        actor = (await _ctx(auth_service, joined)).actor
        store.set_identity_status(actor, IdentityStatus.SUSPENDED, now=clock.now())

        with pytest.raises(AuthError):
            await auth_service.refresh(ActorKind.USER, joined.refresh_token)
        assert store.get_session(joined.session_id).revoked_reason == "identity_inactive"


class TestJoin:
    async def test_duplicate_email_is_a_conflict(self, auth_service):
        await _join(auth_service)

        with pytest.raises(ConflictError):
            await _join(auth_service, email="A@x.com")

    async def test_same_email_under_another_kind(self, auth_service):
        user = await _join(auth_service)
        admin = await _join(auth_service, kind=ActorKind.ADMIN)

        assert user.identity_id != admin.identity_id
        assert admin.actor_kind == ActorKind.ADMIN

    @pytest.mark.parametrize(
        "email,password",
        [(None, PASSWORD), ("not-an-email", PASSWORD), ("a@x.com", "short"), ("a@x.com", None)],
    )
    async def test_invalid_credentials_are_rejected(self, auth_service, email, password):
        with pytest.raises(ValidationError):
            await auth_service.join(ActorKind.USER, Credentials(email=email, password=password))

    async def test_guest_join_without_credentials(self, auth_service, store):
        guest = await auth_service.join(ActorKind.GUEST, Credentials())

        ctx = await _ctx(auth_service, guest)
        identity = store.get_identity(ctx.actor)
        assert identity.email.endswith("@guest.local")
        assert identity.password_hash is None

    async def test_guest_cannot_log_in(self, auth_service):
        await auth_service.join(ActorKind.GUEST, Credentials(email="g@x.com"))

        with pytest.raises(AuthError):
            await auth_service.login(
                ActorKind.GUEST, Credentials(email="g@x.com", password=PASSWORD)
            )

    async def test_join_sends_verification_for_real_email(self, auth_service, notifier):
        await _join(auth_service)
        await auth_service.join(ActorKind.GUEST, Credentials())

        assert notifier.send_email_verification.call_count == 1

    async def test_signup_disabled(self, store, settings, notifier, clock):
        auth = _service(store, settings, notifier, clock, allow_signup=False)

        with pytest.raises(ForbiddenError):
            await _join(auth)
        assert (await auth.join(ActorKind.GUEST, Credentials())).actor_kind == ActorKind.GUEST

    async def test_system_admin_join_needs_flag(self, store, settings, notifier, clock):
        auth = _service(store, settings, notifier, clock)
        with pytest.raises(ForbiddenError):
            await _join(auth, kind=ActorKind.SYSTEM_ADMIN)

        allowed = _service(store, settings, notifier, clock, allow_system_admin_signup=True)
        joined = await _join(allowed, kind=ActorKind.SYSTEM_ADMIN)
        assert joined.actor_kind == ActorKind.SYSTEM_ADMIN


class TestLogin:
    async def test_unknown_email_matches_wrong_password(self, auth_service):
        await _join(auth_service)

        with pytest.raises(AuthError) as unknown:
            await auth_service.login(
                ActorKind.USER, Credentials(email="nobody@x.com", password=PASSWORD)
            )
        with pytest.raises(AuthError) as wrong:
            await auth_service.login(
                ActorKind.USER, Credentials(email="a@x.com", password="password124")
            )
        assert unknown.value.message == wrong.value.message

    @pytest.mark.parametrize("case", ["wrong_password", "unknown", "suspended", "guest"])
    async def test_every_rejection_pays_one_password_verification(
        self, auth_service, store, clock, case
    ):
        await _join(auth_service)
        kind, email, password = ActorKind.USER, "a@x.com", "password124"
        if case == "unknown":
            email = "nobody@x.com"
        elif case == "suspended":
            identity = store.get_identity_by_email(ActorKind.USER, "a@x.com")
            store.set_identity_status(identity.actor, IdentityStatus.SUSPENDED, now=clock.now())
            password = PASSWORD
        elif case == "guest":
            kind, password = ActorKind.GUEST, PASSWORD
        hasher = auth_service.hasher

        with patch.object(hasher, "verify_password", wraps=hasher.verify_password) as verify:
            with pytest.raises(AuthError) as exc_info:
                await auth_service.login(kind, Credentials(email=email, password=password))

        verify.assert_called_once()
        assert exc_info.value.message == INVALID_CREDENTIALS_MESSAGE

    async def test_kind_is_part_of_the_identity(self, auth_service):
        await _join(auth_service)

        with pytest.raises(AuthError):
            await auth_service.login(
                ActorKind.ADMIN, Credentials(email="a@x.com", password=PASSWORD)
            )

    async def test_login_records_last_login(self, auth_service, store, clock):
        joined = await _join(auth_service)
        clock.advance(minutes=5)

        await auth_service.login(ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD))

        actor = (await _ctx(auth_service, joined)).actor
        assert store.get_identity(actor).last_login_at == clock.now()

    async def test_remember_extends_refresh_expiry(self, auth_service, clock, settings):
        await _join(auth_service)

        remembered = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD), remember=True
        )

        delta = remembered.refresh_expiry - clock.now()
        assert delta.total_seconds() == settings.remember_me_refresh_ttl_minutes * 60

    async def test_verified_email_required(self, store, settings, notifier, clock):
        auth = _service(
            store, settings, notifier, clock, require_verified_email_for_login=True
        )
        await _join(auth)

        with pytest.raises(ForbiddenError):
            await auth.login(ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD))

        token = notifier.send_email_verification.call_args.args[1]
        await auth.confirm_email_verification(token)
        assert await auth.login(ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD))

    async def test_login_is_rate_limited(self, store, settings, notifier, clock):
        auth = _service(store, settings, notifier, clock, login_rate_limit_per_minute=2)
        credentials = Credentials(email="a@x.com", password="wrong-password")

        for _ in range(2):
            with pytest.raises(AuthError):
                await auth.login(ActorKind.USER, credentials)
        with pytest.raises(RateLimitedError) as exc_info:
            await auth.login(ActorKind.USER, credentials)

        assert exc_info.value.detail["policy"] == "login.actor"
        assert exc_info.value.detail["retry_after"] == 60
        assert store.list_audit_events(event_type="rate_limited")

    async def test_login_ip_limit_spans_accounts(self, store, settings, notifier, clock):
        auth = _service(store, settings, notifier, clock, login_ip_rate_limit_per_minute=1)
        client = ClientContext(ip="10.0.0.9")

        with pytest.raises(AuthError):
            await auth.login(ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD), client)
        with pytest.raises(RateLimitedError):
            await auth.login(ActorKind.USER, Credentials(email="b@x.com", password=PASSWORD), client)

    async def test_store_timeout_becomes_transient_error(self, auth_service, store):
        with patch.object(
            store, "get_identity_by_email", side_effect=StoreTimeout("get_identity_by_email", 5.0)
        ):
            with pytest.raises(TransientError) as exc_info:
                await auth_service.login(
                    ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
                )
        assert exc_info.value.status_code == 503

    async def test_login_events_are_audited(self, auth_service, store):
        await _join(auth_service)
        await auth_service.login(ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD))
        with pytest.raises(AuthError):
            await auth_service.login(ActorKind.USER, Credentials(email="a@x.com", password="x" * 9))

        types = {e.event_type for e in store.list_audit_events()}
        assert {"join", "login", "login_failed", "email_verification_sent"} <= types


class TestAuthenticate:
    async def test_valid_bearer(self, auth_service):
        joined = await _join(auth_service)

        ctx = await _ctx(auth_service, joined)

        assert ctx.identity_id == joined.identity_id
        assert ctx.session_id == joined.session_id
        assert ctx.email == "a@x.com"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer garbage"])
    async def test_bad_headers(self, auth_service, header):
        with pytest.raises(AuthError):
            await auth_service.authenticate(header)

    async def test_required_kinds(self, auth_service):
        joined = await _join(auth_service)

        with pytest.raises(ForbiddenError):
            await auth_service.authenticate(
                f"Bearer {joined.access_token}", required_kinds={ActorKind.SYSTEM_ADMIN}
            )


class TestLogoutAndRevocation:
    async def test_logout_revokes_current_session_only(self, auth_service):
        first = await _join(auth_service)
        second = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )
        ctx = await _ctx(auth_service, first)

        ack = await auth_service.logout(ctx)

        assert ack.success
        with pytest.raises(AuthError):
            await _ctx(auth_service, first)
        assert (await _ctx(auth_service, second)).session_id == second.session_id

    async def test_logout_is_idempotent(self, auth_service):
        ctx = await _ctx(auth_service, await _join(auth_service))

        assert (await auth_service.logout(ctx)).success
        assert (await auth_service.logout(ctx)).success

    async def test_logout_all_sessions(self, auth_service):
        first = await _join(auth_service)
        second = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )

        await auth_service.logout(await _ctx(auth_service, first), LogoutOptions(all_sessions=True))

        for authorized in (first, second):
            with pytest.raises(AuthError):
                await auth_service.refresh(ActorKind.USER, authorized.refresh_token)

    async def test_revoke_sessions_keeps_current(self, auth_service):
        current = await _join(auth_service)
        other = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )

        result = await auth_service.revoke_sessions(await _ctx(auth_service, current))

        assert result.revoked_count == 1
        assert result.revoked_session_ids == [other.session_id]
        assert result.message == "revoked 1 session"
        assert (await _ctx(auth_service, current)).session_id == current.session_id

    async def test_revoke_sessions_including_current(self, auth_service):
        current = await _join(auth_service)
        ctx = await _ctx(auth_service, current)

        result = await auth_service.revoke_sessions(ctx, RevokeOptions(include_current=True))

        assert result.revoked_session_ids == [current.session_id]
        with pytest.raises(AuthError):
            await _ctx(auth_service, current)


class TestSessionListing:
    async def test_lists_own_sessions_newest_first(self, auth_service, clock):
        first = await _join(auth_service)
        clock.advance(minutes=1)
        second = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )
        await _join(auth_service, email="b@x.com")

        sessions = await auth_service.list_sessions(await _ctx(auth_service, first))

        assert [s.id for s in sessions] == [second.session_id, first.session_id]
        assert {s.state for s in sessions} == {SessionState.ISSUED}
        assert all(not hasattr(s, "refresh_hash") for s in sessions)

    async def test_filter_by_status(self, auth_service, clock, settings):
        current = await _join(auth_service)
        ctx = await _ctx(auth_service, current)
        logged_out = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )
        await auth_service.logout(await _ctx(auth_service, logged_out))
        rotated = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )
        await auth_service.refresh(ActorKind.USER, rotated.refresh_token)

        active = await auth_service.list_sessions(ctx, status=SessionStatus.ACTIVE)
        revoked = await auth_service.list_sessions(ctx, status=SessionStatus.REVOKED)

        assert {s.id for s in active} == {current.session_id, rotated.session_id}
        assert {s.id: s.state for s in active}[rotated.session_id] == SessionState.ROTATED
        assert [s.id for s in revoked] == [logged_out.session_id]
        assert revoked[0].revoked_at is not None

        clock.advance(minutes=settings.refresh_token_ttl_minutes + 1)
        expired = await auth_service.list_sessions(ctx, status=SessionStatus.EXPIRED)
        assert {s.id for s in expired} == {current.session_id, rotated.session_id}
        assert await auth_service.list_sessions(ctx, status=SessionStatus.ACTIVE) == []


class TestAuditTrail:
    async def test_requires_system_admin(self, auth_service):
        ctx = await _ctx(auth_service, await _join(auth_service))

        with pytest.raises(ForbiddenError):
            await auth_service.list_audit_events(ctx)

    async def test_filters_by_actor_and_type(self, auth_service, store):
        joined = await _join(auth_service)
        with pytest.raises(AuthError):
            await auth_service.login(
                ActorKind.USER, Credentials(email="a@x.com", password="password124")
            )
        admin = await _system_admin(auth_service, store)
        user = ActorRef(kind=ActorKind.USER, id=joined.identity_id)

        mine = await auth_service.list_audit_events(admin, actor=user)
        failed = await auth_service.list_audit_events(admin, event_type="login_failed")
        latest = await auth_service.list_audit_events(admin, limit=1)

        assert mine[0].event_type == "login_failed"
        assert {e.event_type for e in mine} == {"join", "email_verification_sent", "login_failed"}
        assert [e.actor for e in failed] == [user]
        assert len(latest) == 1

    @pytest.mark.parametrize(
        "filters,field",
        [({"event_type": "nope"}, "event_type"), ({"limit": 0}, "limit"), ({"limit": 501}, "limit")],
    )
    async def test_rejects_bad_filters(self, auth_service, store, filters, field):
        admin = await _system_admin(auth_service, store)

        with pytest.raises(ValidationError) as exc_info:
            await auth_service.list_audit_events(admin, **filters)

        assert exc_info.value.detail == {"field": field}


class TestChangePassword:
    async def test_change_password_revokes_other_sessions(self, auth_service):
        current = await _join(auth_service)
        other = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )
        ctx = await _ctx(auth_service, current)

        ack = await auth_service.change_password(ctx, PASSWORD, "new-password-1")

        assert ack.success
        assert (await _ctx(auth_service, current)).session_id == current.session_id
        with pytest.raises(AuthError):
            await _ctx(auth_service, other)
        assert await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password="new-password-1")
        )

    async def test_wrong_current_password(self, auth_service):
        ctx = await _ctx(auth_service, await _join(auth_service))

        with pytest.raises(AuthError):
            await auth_service.change_password(ctx, "wrong-password", "new-password-1")

    async def test_new_password_must_differ(self, auth_service):
        ctx = await _ctx(auth_service, await _join(auth_service))

        with pytest.raises(ValidationError):
            await auth_service.change_password(ctx, PASSWORD, PASSWORD)

    async def test_new_password_policy(self, auth_service):
        ctx = await _ctx(auth_service, await _join(auth_service))

        with pytest.raises(ValidationError) as exc_info:
            await auth_service.change_password(ctx, PASSWORD, "short")
        assert exc_info.value.detail == {"field": "new_password"}

    async def test_keep_other_sessions_when_asked(self, auth_service):
        current = await _join(auth_service)
        other = await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password=PASSWORD)
        )

        await auth_service.change_password(
            await _ctx(auth_service, current),
            PASSWORD,
            "new-password-1",
            revoke_other_sessions=False,
        )

        assert (await _ctx(auth_service, other)).session_id == other.session_id


class TestRecoveryThroughFacade:
    async def test_reset_request_is_identical_and_rate_limited(
        self, store, settings, notifier, clock
    ):
        auth = _service(store, settings, notifier, clock, reset_rate_limit_per_hour=1)
        await _join(auth)

        known = await auth.request_password_reset("a@x.com")
        unknown = await auth.request_password_reset("nobody@x.com")
        assert known == unknown
        with pytest.raises(RateLimitedError):
            await auth.request_password_reset("a@x.com")

    async def test_reset_then_login_with_new_password(self, auth_service, notifier):
        joined = await _join(auth_service)
        await auth_service.request_password_reset("a@x.com")
        await auth_service.recovery.drain()
        token = notifier.send_password_reset.call_args.args[1]

        await auth_service.confirm_password_reset(token, "new-password-1")

        with pytest.raises(AuthError):
            await auth_service.confirm_password_reset(token, "new-password-2")
        with pytest.raises(AuthError):
            await _ctx(auth_service, joined)
        assert await auth_service.login(
            ActorKind.USER, Credentials(email="a@x.com", password="new-password-1")
        )


class TestRateLimitAdministration:
    async def test_requires_system_admin(self, auth_service):
        ctx = await _ctx(auth_service, await _join(auth_service, kind=ActorKind.ADMIN))

        with pytest.raises(ForbiddenError):
            await auth_service.list_rate_limit_policies(ctx)
        with pytest.raises(ForbiddenError):
            await auth_service.retire_rate_limit_policy(ctx, "any")

    async def test_policy_lifecycle(self, auth_service, store):
        admin = await _system_admin(auth_service, store)

        created = await auth_service.create_rate_limit_policy(
            admin,
            code="refresh.ip",
            name="Refreshes per address",
            category=RateLimitCategory.REFRESH,
            scope=RateLimitScope.IP,
            window_seconds=60,
            max_requests=100,
        )
        with pytest.raises(ConflictError):
            await auth_service.retire_rate_limit_policy(admin, created.id)
        await auth_service.update_rate_limit_policy(admin, created.id, enabled=False)
        retired = await auth_service.retire_rate_limit_policy(admin, created.id)
        again = await auth_service.retire_rate_limit_policy(admin, created.id)

        assert again.deleted_at == retired.deleted_at
        assert await auth_service.list_rate_limit_counters(admin, created.id) == []
        live_codes = {p.code for p in await auth_service.list_rate_limit_policies(admin)}
        assert "refresh.ip" not in live_codes
        changes = store.list_audit_events(event_type="rate_limit_policy_changed")
        assert [e.metadata["action"] for e in changes] == ["retired", "retired", "updated", "created"]

    async def test_duplicate_policy_code(self, auth_service, store):
        admin = await _system_admin(auth_service, store)

        with pytest.raises(ConflictError):
            await auth_service.create_rate_limit_policy(
                admin,
                code="login.actor",
                name="dup",
                category=RateLimitCategory.LOGIN,
                scope=RateLimitScope.ACTOR,
                window_seconds=60,
                max_requests=1,
            )
