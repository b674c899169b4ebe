"""Tests for access token signing and refresh TTL policy."""

import base64
import json
from datetime import timedelta

import pytest

from authkernel.service.tokens import TokenIssuer
from authkernel.storage.models import ActorKind


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestIssue:
    def test_access_token_round_trips_claims(self, issuer):
        pair = issuer.issue("identity-1", ActorKind.USER, session_id="session-1")

        claims = issuer.decode_access_token(pair.access_token)
        assert claims is not None
        assert claims.actor_id == "identity-1"
        assert claims.actor_kind == ActorKind.USER
        assert claims.session_id == "session-1"
        assert claims.expires_at == pair.access_expiry.replace(microsecond=0)

    def test_refresh_token_is_opaque(self, issuer):
        pair = issuer.issue("identity-1", ActorKind.USER, session_id="session-1")

        assert pair.refresh_token.count(".") == 0
        assert issuer.decode_access_token(pair.refresh_token) is None

    def test_explicit_refresh_expiry_is_kept(self, issuer, clock):
        fixed = clock.now() + timedelta(hours=3)

        pair = issuer.issue("identity-1", ActorKind.USER, refresh_expiry=fixed)

        assert pair.refresh_expiry == fixed


class TestRefreshTtl:
    def test_user_default_and_remember(self, issuer, settings):
        assert issuer.refresh_ttl(ActorKind.USER) == timedelta(
            minutes=settings.refresh_token_ttl_minutes
        )
        assert issuer.refresh_ttl(ActorKind.USER, remember=True) == timedelta(
            minutes=settings.remember_me_refresh_ttl_minutes
        )

    @pytest.mark.parametrize("kind", [ActorKind.ADMIN, ActorKind.SYSTEM_ADMIN])
    def test_administrative_kinds_ignore_remember(self, issuer, settings, kind):
        expected = timedelta(minutes=settings.admin_refresh_token_ttl_minutes)

        assert issuer.refresh_ttl(kind) == expected
        assert issuer.refresh_ttl(kind, remember=True) == expected


class TestDecodeRejections:
    def test_tampered_payload_is_rejected(self, issuer):
        token = issuer.issue("identity-1", ActorKind.USER, session_id="s").access_token
        header, _, signature = token.split(".")
        forged = _b64({"sub": "identity-2", "kind": "system_admin", "typ": "access"})

        assert issuer.decode_access_token(f"{header}.{forged}.{signature}") is None

    def test_none_algorithm_is_rejected(self, issuer):
        token = issuer.issue("identity-1", ActorKind.USER, session_id="s").access_token
        _, payload, signature = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})

        assert issuer.decode_access_token(f"{header}.{payload}.{signature}") is None

    def test_expired_token_is_rejected(self, issuer, clock, settings):
        token = issuer.issue("identity-1", ActorKind.USER, session_id="s").access_token

        clock.advance(minutes=settings.access_token_ttl_minutes + 5)

        assert issuer.decode_access_token(token) is None

    def test_other_audience_is_rejected(self, issuer, settings, clock):
        token = issuer.issue("identity-1", ActorKind.USER, session_id="s").access_token
        other = TokenIssuer(settings.model_copy(update={"jwt_audience": "other"}), clock=clock)

        assert other.decode_access_token(token) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens(self, issuer, garbage):
        assert issuer.decode_access_token(garbage) is None


def test_short_secret_refuses_to_start(settings):
    with pytest.raises(RuntimeError):
        TokenIssuer(settings.model_copy(update={"jwt_secret": "short"}))
