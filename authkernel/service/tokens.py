from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.clock import SystemClock
from authkernel.service.hashing import CredentialHasher
from authkernel.storage.models import ActorKind

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expiry: datetime
    refresh_expiry: datetime


@dataclass(frozen=True)
class AccessClaims:
    actor_id: str
    actor_kind: ActorKind
    session_id: Optional[str]
    expires_at: datetime
    jti: str


class TokenIssuer:
    """Builds signed access tokens and opaque refresh tokens.

    Access tokens are compact HS256 JWTs carrying the actor id, kind and
    session id. Refresh tokens carry no claims at all: the registry stores
    their hash and resolves them by lookup.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[SystemClock] = None,
        hasher: Optional[CredentialHasher] = None,
    ) -> None:
        if not settings.jwt_secret or len(settings.jwt_secret) < _MIN_SECRET_LENGTH:
            # No signing key means no auth at all; refuse to start.
            raise RuntimeError("JWT signing secret is missing or too short")
        self.settings = settings
        self.clock = clock or SystemClock()
        self.hasher = hasher or CredentialHasher(settings)
        self._secret = settings.jwt_secret.encode()
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def access_ttl(self, kind: ActorKind) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def refresh_ttl(self, kind: ActorKind, *, remember: bool = False) -> timedelta:
        if kind.is_administrative:
            minutes = self.settings.admin_refresh_token_ttl_minutes
        elif remember:
            minutes = self.settings.remember_me_refresh_ttl_minutes
        else:
            minutes = self.settings.refresh_token_ttl_minutes
        return timedelta(minutes=minutes)

    def issue(
        self,
        actor_id: str,
        actor_kind: ActorKind,
        *,
        session_id: Optional[str] = None,
        remember: bool = False,
        refresh_expiry: Optional[datetime] = None,
    ) -> TokenPair:
        now = self.clock.now()
        access_expiry = now + self.access_ttl(actor_kind)
        if refresh_expiry is None:
            refresh_expiry = now + self.refresh_ttl(actor_kind, remember=remember)
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": actor_id,
            "kind": actor_kind.value,
            "sid": session_id,
            "iat": int(now.timestamp()),
            "exp": int(access_expiry.timestamp()),
            "jti": str(uuid.uuid4()),
            "typ": "access",
        }
        return TokenPair(
            access_token=self._encode_jwt(payload),
            refresh_token=self.hasher.new_opaque_token(),
            access_expiry=access_expiry,
            refresh_expiry=refresh_expiry,
        )

    def decode_access_token(self, token: str) -> Optional[AccessClaims]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("typ") != "access":
            return None
        try:
            kind = ActorKind(payload.get("kind"))
        except ValueError:
            return None
        subject = payload.get("sub")
        if not subject:
            return None
        return AccessClaims(
            actor_id=str(subject),
            actor_kind=kind,
            session_id=payload.get("sid"),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            jti=str(payload.get("jti") or ""),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        now_ts = self.clock.now().timestamp()
        if exp_ts <= now_ts - self._clock_skew_leeway.total_seconds():
            return None
        return payload
