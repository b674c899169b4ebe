"""Tests for session creation, refresh rotation and revocation."""

import threading
from datetime import timedelta

import pytest

from authkernel.service.errors import ErrorKind
from authkernel.service.hashing import CredentialHasher
from authkernel.service.sessions import (
    INVALID_REFRESH_MESSAGE,
    ClientContext,
    SessionRegistry,
    SessionState,
    can_transition,
    session_state,
)
from authkernel.service.tokens import TokenIssuer
from authkernel.storage.models import ActorKind


@pytest.fixture
def registry(store, settings, clock):
    issuer = TokenIssuer(settings, clock=clock)
    return SessionRegistry(store, issuer)


@pytest.fixture
def identity(store):
    return store.create_identity(ActorKind.USER, email="a@x.com")


class TestCreate:
    def test_stores_only_the_refresh_hash(self, registry, store, identity):
        issued = registry.create(identity.actor, ClientContext(ip="10.0.0.1", user_agent="ua"))

        stored = store.get_session(issued.session.id)
        assert stored.refresh_hash == CredentialHasher.hash_token(issued.tokens.refresh_token)
        assert stored.refresh_hash != issued.tokens.refresh_token
        assert stored.ip == "10.0.0.1"
        assert stored.actor == identity.actor
        assert registry.state_of(stored.id) == SessionState.ISSUED

    def test_access_token_names_the_session(self, registry, identity):
        issued = registry.create(identity.actor)

        claims = registry.issuer.decode_access_token(issued.tokens.access_token)
        assert claims.session_id == issued.session.id


class TestRotate:
    def test_refresh_token_works_exactly_once(self, registry, identity):
        issued = registry.create(identity.actor)

        first = registry.rotate(issued.tokens.refresh_token)
        second = registry.rotate(issued.tokens.refresh_token)

        assert first.ok
        assert first.value.tokens.refresh_token != issued.tokens.refresh_token
        assert first.value.session.id == issued.session.id
        assert first.value.session.rotation_count == 1
        assert second.error == ErrorKind.AUTH
        assert second.message == INVALID_REFRESH_MESSAGE

    def test_rotated_token_continues_the_chain(self, registry, identity):
        issued = registry.create(identity.actor)
        rotated = registry.rotate(issued.tokens.refresh_token).unwrap()

        again = registry.rotate(rotated.tokens.refresh_token)

        assert again.ok
        assert registry.state_of(issued.session.id) == SessionState.ROTATED

    def test_concurrent_presentations_admit_one(self, registry, identity):
        issued = registry.create(identity.actor)
        barrier = threading.Barrier(8)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            outcome = registry.rotate(issued.tokens.refresh_token)
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r.ok) == 1
        assert all(r.error == ErrorKind.AUTH for r in results if not r.ok)

    def test_expired_session_fails_like_unknown_token(self, registry, identity, clock, settings):
        issued = registry.create(identity.actor)
        clock.advance(minutes=settings.refresh_token_ttl_minutes + 1)

        expired = registry.rotate(issued.tokens.refresh_token)
        unknown = registry.rotate("never-issued")

        assert expired.error == unknown.error == ErrorKind.AUTH
        assert expired.message == unknown.message
        assert registry.state_of(issued.session.id) == SessionState.EXPIRED

    def test_empty_token_is_rejected(self, registry):
        assert registry.rotate("").error == ErrorKind.AUTH

    def test_kind_mismatch_is_rejected(self, registry, identity):
        issued = registry.create(identity.actor)

        outcome = registry.rotate(issued.tokens.refresh_token, expected_kind=ActorKind.ADMIN)

        assert outcome.error == ErrorKind.AUTH
        # The token is still usable under the right kind
        assert registry.rotate(
            issued.tokens.refresh_token, expected_kind=ActorKind.USER
        ).ok

    def test_revoked_session_cannot_rotate(self, registry, identity):
        issued = registry.create(identity.actor)
        registry.revoke(issued.session.id)

        assert registry.rotate(issued.tokens.refresh_token).error == ErrorKind.AUTH

    def test_rotation_keeps_remember_window(self, registry, identity, clock, settings):
        issued = registry.create(identity.actor, remember=True)
        clock.advance(hours=2)

        rotated = registry.rotate(issued.tokens.refresh_token).unwrap()

        assert rotated.session.expires_at == clock.now() + timedelta(
            minutes=settings.remember_me_refresh_ttl_minutes
        )


class TestRevoke:
    def test_revoke_is_idempotent(self, registry, identity):
        issued = registry.create(identity.actor)

        assert registry.revoke(issued.session.id).value == 1
        assert registry.revoke(issued.session.id).value == 0
        assert registry.state_of(issued.session.id) == SessionState.REVOKED

    def test_revoke_unknown_session(self, registry):
        assert registry.revoke("missing").error == ErrorKind.NOT_FOUND

    def test_revoke_for_actor_keeps_current_by_default(self, registry, identity):
        current = registry.create(identity.actor)
        others = [registry.create(identity.actor) for _ in range(2)]

        revoked = registry.revoke_for_actor(
            identity.actor, reason="user_revoke", current_session_id=current.session.id
        ).unwrap()

        assert sorted(revoked) == sorted(o.session.id for o in others)
        assert registry.find_usable_by_id(current.session.id) is not None

    def test_revoke_for_actor_filters(self, registry, identity, store):
        office = registry.create(identity.actor, ClientContext(ip="10.0.0.1"))
        home = registry.create(identity.actor, ClientContext(ip="192.168.1.5"))
        stranger = store.create_identity(ActorKind.USER, email="b@x.com")
        foreign = registry.create(stranger.actor, ClientContext(ip="10.0.0.1"))

        revoked = registry.revoke_for_actor(
            identity.actor, reason="user_revoke", ip="10.0.0.1", include_current=True
        ).unwrap()

        assert revoked == [office.session.id]
        assert registry.find_usable_by_id(home.session.id) is not None
        assert registry.find_usable_by_id(foreign.session.id) is not None

    def test_find_usable_by_token(self, registry, identity):
        issued = registry.create(identity.actor)

        assert registry.find_usable_by_token(issued.tokens.refresh_token).ok
        registry.revoke(issued.session.id)
        assert registry.find_usable_by_token(issued.tokens.refresh_token).error == (
            ErrorKind.NOT_FOUND
        )


class TestStateMachine:
    def test_transitions(self):
        assert can_transition(SessionState.ISSUED, SessionState.ROTATED)
        assert can_transition(SessionState.ROTATED, SessionState.ROTATED)
        assert can_transition(SessionState.EXPIRED, SessionState.REVOKED)
        assert not can_transition(SessionState.EXPIRED, SessionState.ROTATED)
        assert not can_transition(SessionState.REVOKED, SessionState.ROTATED)
        assert not can_transition(SessionState.REVOKED, SessionState.REVOKED)

    def test_revocation_wins_over_expiry(self, registry, identity, clock, settings):
        issued = registry.create(identity.actor)
        registry.revoke(issued.session.id)
        clock.advance(minutes=settings.refresh_token_ttl_minutes + 1)

        session = registry.store.get_session(issued.session.id)
        assert session_state(session, clock.now()) == SessionState.REVOKED
