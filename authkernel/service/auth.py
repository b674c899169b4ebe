from __future__ import annotations

import functools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Collection, List, NoReturn, Optional

from authkernel.config import Settings
from authkernel.logging import get_logger
from authkernel.service.audit import AUDIT_EVENT_TYPES, AuditRecorder
from authkernel.service.clock import SystemClock
from authkernel.service.email import EmailService
from authkernel.service.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    RateLimitedError,
    TransientError,
    ValidationError,
)
from authkernel.service.hashing import CredentialHasher, password_policy_violation
from authkernel.service.rate_limit import RateDecision, RateLimiter
from authkernel.service.recovery import Ack, Notifier, RecoveryFlows
from authkernel.service.sessions import (
    ClientContext,
    IssuedSession,
    SessionRegistry,
    SessionStatus,
    SessionSummary,
)
from authkernel.service.tokens import TokenIssuer
from authkernel.storage.common import normalize_email
from authkernel.storage.errors import ConstraintViolation, StoreTimeout
from authkernel.storage.models import (
    ActorKind,
    ActorRef,
    AuditEvent,
    Identity,
    RateCounter,
    RateLimitCategory,
    RateLimitPolicy,
    RateLimitScope,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "invalid credentials"
INVALID_TOKEN_MESSAGE = "invalid or expired token"

_MAX_EMAIL_LENGTH = 254
_MAX_DISPLAY_NAME_LENGTH = 100
_GUEST_EMAIL_DOMAIN = "guest.local"
_MAX_AUDIT_PAGE = 500


@dataclass(frozen=True)
class Credentials:
    email: Optional[str] = None
    password: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class AuthorizedSession:
    identity_id: str
    actor_kind: ActorKind
    session_id: str
    access_token: str
    refresh_token: str
    access_expiry: datetime
    refresh_expiry: datetime

    @classmethod
    def from_issued(cls, issued: IssuedSession) -> "AuthorizedSession":
        return cls(
            identity_id=issued.session.actor.id,
            actor_kind=issued.session.actor.kind,
            session_id=issued.session.id,
            access_token=issued.tokens.access_token,
            refresh_token=issued.tokens.refresh_token,
            access_expiry=issued.tokens.access_expiry,
            refresh_expiry=issued.tokens.refresh_expiry,
        )


@dataclass(frozen=True)
class ActorContext:
    """Authenticated caller, resolved from a bearer access token."""

    actor: ActorRef
    session_id: str
    email: Optional[str] = None

    @property
    def identity_id(self) -> str:
        return self.actor.id

    @property
    def actor_kind(self) -> ActorKind:
        return self.actor.kind


@dataclass(frozen=True)
class LogoutOptions:
    all_sessions: bool = False


@dataclass(frozen=True)
class RevokeOptions:
    include_current: bool = False
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    issued_before: Optional[datetime] = None
    expires_before: Optional[datetime] = None
    reason: str = "user_revoke"


@dataclass(frozen=True)
class RevokeResult:
    revoked_count: int
    revoked_session_ids: List[str] = field(default_factory=list)
    message: Optional[str] = None


def _translate_store_errors(func):
    """Map storage failures onto the service error taxonomy."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except StoreTimeout as exc:
            logger.warning(
                "store_timeout", operation=exc.operation, timeout_seconds=exc.timeout_seconds
            )
            raise TransientError(
                "service temporarily unavailable, please retry",
                detail={"operation": exc.operation},
            ) from exc
        except ConstraintViolation as exc:
            raise ConflictError(exc.message, detail=exc.detail) from exc

    return wrapper


def _check_email(email: Optional[str]) -> str:
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("email is required", detail={"field": "email"})
    local, _, domain = normalized.partition("@")
    if (
        not local
        or "." not in domain
        or any(ch.isspace() for ch in normalized)
        or len(normalized) > _MAX_EMAIL_LENGTH
    ):
        raise ValidationError("email is invalid", detail={"field": "email"})
    return normalized


def _check_password(password: Optional[str], field_name: str = "password") -> str:
    violation = password_policy_violation(password)
    if violation:
        raise ValidationError(violation, detail={"field": field_name})
    return password  # type: ignore[return-value]


def _check_display_name(display_name: Optional[str]) -> Optional[str]:
    if display_name is None:
        return None
    cleaned = display_name.strip()
    if len(cleaned) > _MAX_DISPLAY_NAME_LENGTH:
        raise ValidationError(
            f"display_name must be at most {_MAX_DISPLAY_NAME_LENGTH} characters",
            detail={"field": "display_name"},
        )
    return cleaned or None


def _is_synthetic_email(email: Optional[str]) -> bool:
    return bool(email) and email.endswith(f"@{_GUEST_EMAIL_DOMAIN}")


class AuthService:
    """Entry point for every authentication and session operation.

    Components below this layer return Outcome values for business
    rejections; this class unwraps them, which raises the matching
    ServiceError for callers (HTTP routes, scripts).
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        cache=None,
        notifier: Optional[Notifier] = None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.clock = clock or SystemClock()
        self.hasher = CredentialHasher(settings)
        self.issuer = TokenIssuer(settings, clock=self.clock, hasher=self.hasher)
        self.sessions = SessionRegistry(
            store, self.issuer, hasher=self.hasher, clock=self.clock
        )
        self.audit = AuditRecorder(store, clock=self.clock)
        self.notifier = notifier or EmailService.from_settings(settings)
        self.recovery = RecoveryFlows(
            store,
            hasher=self.hasher,
            settings=settings,
            notifier=self.notifier,
            registry=self.sessions,
            audit=self.audit,
            clock=self.clock,
        )
        self.rate_limiter = RateLimiter(store, cache=cache, clock=self.clock)

    # -- helpers ------------------------------------------------------------

    async def _rate_limit(
        self,
        category: RateLimitCategory,
        *,
        actor_key: Optional[str] = None,
        ip: Optional[str] = None,
        actor: Optional[ActorRef] = None,
    ) -> RateDecision:
        decision = await self.rate_limiter.enforce(category, actor_key=actor_key, ip=ip)
        if not decision.admitted:
            self.audit.record(
                "rate_limited",
                actor,
                {"category": category.value, "policy_code": decision.policy_code},
            )
            raise RateLimitedError(
                "too many requests, try again later",
                detail={
                    "retry_after": decision.reset_seconds,
                    "policy": decision.policy_code,
                },
            )
        return decision

    @staticmethod
    def _actor_key(kind: ActorKind, email: Optional[str]) -> Optional[str]:
        normalized = normalize_email(email)
        return f"{kind.value}:{normalized}" if normalized else None

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def _require_system_admin(self, ctx: ActorContext) -> None:
        if ctx.actor_kind != ActorKind.SYSTEM_ADMIN:
            logger.warning(
                "admin_access_denied", actor_kind=ctx.actor_kind.value, actor_id=ctx.identity_id
            )
            raise ForbiddenError("system administrator access required")

    # -- join / login / refresh ---------------------------------------------

    @_translate_store_errors
    async def join(
        self,
        kind: ActorKind,
        credentials: Credentials,
        client: Optional[ClientContext] = None,
    ) -> AuthorizedSession:
        client = client or ClientContext()
        await self._rate_limit(
            RateLimitCategory.JOIN,
            actor_key=self._actor_key(kind, credentials.email),
            ip=client.ip,
        )
        if kind != ActorKind.GUEST and not self.settings.allow_signup:
            raise ForbiddenError("signup is disabled")
        if kind == ActorKind.SYSTEM_ADMIN and not self.settings.allow_system_admin_signup:
            raise ForbiddenError("system administrator signup is disabled")

        display_name = _check_display_name(credentials.display_name)
        identity_id = self.clock.new_id()
        now = self.clock.now()
        if kind == ActorKind.GUEST:
            email = (
                _check_email(credentials.email)
                if credentials.email
                else f"guest+{identity_id}@{_GUEST_EMAIL_DOMAIN}"
            )
            password_hash = password_algo = None
        else:
            email = _check_email(credentials.email)
            password_hash, password_algo = self.hasher.hash_password(
                _check_password(credentials.password)
            )

        try:
            identity = self.store.create_identity(
                kind,
                email=email,
                password_hash=password_hash,
                password_algo=password_algo,
                display_name=display_name,
                now=now,
                identity_id=identity_id,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "an account with this email already exists", detail=exc.detail
            ) from exc

        issued = self.sessions.create(identity.actor, client)
        logger.info("identity_joined", actor_kind=kind.value, actor_id=identity.id)
        self.audit.record(
            "join", identity.actor, {"session_id": issued.session.id, "ip": client.ip}
        )
        if not _is_synthetic_email(identity.email):
            await self.recovery.issue_verification(identity)
        return AuthorizedSession.from_issued(issued)

    @_translate_store_errors
    async def login(
        self,
        kind: ActorKind,
        credentials: Credentials,
        client: Optional[ClientContext] = None,
        *,
        remember: bool = False,
    ) -> AuthorizedSession:
        client = client or ClientContext()
        await self._rate_limit(
            RateLimitCategory.LOGIN,
            actor_key=self._actor_key(kind, credentials.email),
            ip=client.ip,
        )
        email = normalize_email(credentials.email)
        identity = (
            self.store.get_identity_by_email(kind, email)
            if email and kind.uses_password
            else None
        )
        if identity is None or not identity.is_active or not identity.password_hash:
            self.hasher.verify_against_decoy(credentials.password or "")
            reason = "unknown" if identity is None else "ineligible"
            self._reject_login(kind, identity, reason, client)
        if not self.hasher.verify_password(
            identity.password_hash, identity.password_algo, credentials.password or ""
        ):
            self._reject_login(kind, identity, "bad_password", client)
        if self.settings.require_verified_email_for_login and not identity.email_verified:
            logger.info("login_requires_verified_email", actor_id=identity.id)
            raise ForbiddenError("email address is not verified")

        now = self.clock.now()
        if self.hasher.needs_rehash(identity.password_hash):
            digest, algo = self.hasher.hash_password(credentials.password)
            self.store.update_identity_password(identity.actor, digest, algo, now=now)
            logger.info("password_rehashed", actor_id=identity.id)
        self.store.mark_identity_login(identity.actor, now=now)

        issued = self.sessions.create(identity.actor, client, remember=remember)
        logger.info(
            "login_succeeded",
            actor_kind=kind.value,
            actor_id=identity.id,
            session_id=issued.session.id,
            remember=remember,
        )
        self.audit.record(
            "login",
            identity.actor,
            {"session_id": issued.session.id, "ip": client.ip, "remember": remember},
        )
        return AuthorizedSession.from_issued(issued)

    def _reject_login(
        self,
        kind: ActorKind,
        identity: Optional[Identity],
        reason: str,
        client: ClientContext,
    ) -> NoReturn:
        logger.warning("login_failed", actor_kind=kind.value, reason=reason)
        self.audit.record(
            "login_failed",
            identity.actor if identity else None,
            {"actor_kind": kind.value, "reason": reason, "ip": client.ip},
        )
        raise AuthError(INVALID_CREDENTIALS_MESSAGE)

    @_translate_store_errors
    async def refresh(
        self,
        kind: ActorKind,
        refresh_token: Optional[str],
        client: Optional[ClientContext] = None,
    ) -> AuthorizedSession:
        client = client or ClientContext()
        await self._rate_limit(RateLimitCategory.REFRESH, ip=client.ip)
        outcome = self.sessions.rotate(refresh_token or "", expected_kind=kind)
        if not outcome.ok:
            self.audit.record("refresh_failed", None, {"actor_kind": kind.value, "ip": client.ip})
            raise AuthError(INVALID_TOKEN_MESSAGE)
        issued = outcome.value
        identity = self.store.get_identity(issued.session.actor)
        if identity is None or not identity.is_active:
            self.sessions.revoke(issued.session.id, reason="identity_inactive")
            logger.warning(
                "refresh_identity_inactive",
                session_id=issued.session.id,
                actor_id=issued.session.actor.id,
            )
            self.audit.record(
                "refresh_failed",
                issued.session.actor,
                {"session_id": issued.session.id, "reason": "identity_inactive"},
            )
            raise AuthError(INVALID_TOKEN_MESSAGE)
        self.audit.record("refresh", identity.actor, {"session_id": issued.session.id})
        return AuthorizedSession.from_issued(issued)

    # -- bearer authentication ----------------------------------------------

    @_translate_store_errors
    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        required_kinds: Optional[Collection[ActorKind]] = None,
    ) -> ActorContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthError("missing bearer token")
        claims = self.issuer.decode_access_token(token)
        if claims is None or not claims.session_id:
            raise AuthError(INVALID_TOKEN_MESSAGE)
        actor = ActorRef(kind=claims.actor_kind, id=claims.actor_id)
        session = self.sessions.find_usable_by_id(claims.session_id)
        if session is None or session.actor != actor:
            raise AuthError(INVALID_TOKEN_MESSAGE)
        identity = self.store.get_identity(actor)
        if identity is None or not identity.is_active:
            raise AuthError(INVALID_TOKEN_MESSAGE)
        if required_kinds is not None and actor.kind not in required_kinds:
            raise ForbiddenError("actor kind not permitted for this operation")
        return ActorContext(actor=actor, session_id=session.id, email=identity.email)

    @_translate_store_errors
    async def current_identity(self, ctx: ActorContext) -> Identity:
        identity = self.store.get_identity(ctx.actor)
        if identity is None or not identity.is_active:
            raise AuthError(INVALID_TOKEN_MESSAGE)
        return identity

    # -- logout / revocation ------------------------------------------------

    @_translate_store_errors
    async def logout(
        self, ctx: ActorContext, options: Optional[LogoutOptions] = None
    ) -> Ack:
        options = options or LogoutOptions()
        if options.all_sessions:
            revoked = self.sessions.revoke_for_actor(
                ctx.actor,
                reason="logout",
                current_session_id=ctx.session_id,
                include_current=True,
            ).unwrap()
            revoked_count = len(revoked)
        else:
            outcome = self.sessions.revoke(ctx.session_id, reason="logout")
            # A session that vanished is as logged out as a revoked one.
            revoked_count = outcome.value or 0
        self.audit.record(
            "logout",
            ctx.actor,
            {
                "session_id": ctx.session_id,
                "all_sessions": options.all_sessions,
                "revoked_count": revoked_count,
            },
        )
        return Ack(success=True, message="logged out")

    @_translate_store_errors
    async def revoke_sessions(
        self, ctx: ActorContext, options: Optional[RevokeOptions] = None
    ) -> RevokeResult:
        options = options or RevokeOptions()
        revoked = self.sessions.revoke_for_actor(
            ctx.actor,
            reason=options.reason or "user_revoke",
            current_session_id=ctx.session_id,
            include_current=options.include_current,
            ip=options.ip,
            user_agent=options.user_agent,
            issued_before=options.issued_before,
            expires_before=options.expires_before,
        ).unwrap()
        self.audit.record(
            "sessions_revoked",
            ctx.actor,
            {
                "revoked_session_ids": revoked,
                "include_current": options.include_current,
                "reason": options.reason,
            },
        )
        noun = "session" if len(revoked) == 1 else "sessions"
        return RevokeResult(
            revoked_count=len(revoked),
            revoked_session_ids=revoked,
            message=f"revoked {len(revoked)} {noun}",
        )

    @_translate_store_errors
    async def list_sessions(
        self, ctx: ActorContext, *, status: Optional[SessionStatus] = None
    ) -> List[SessionSummary]:
        """The caller's own sessions, newest first."""
        return self.sessions.list_for_actor(ctx.actor, status=status)

    # -- credential recovery ------------------------------------------------

    @_translate_store_errors
    async def request_password_reset(
        self,
        email: Optional[str],
        kind: ActorKind = ActorKind.USER,
        client: Optional[ClientContext] = None,
    ) -> Ack:
        client = client or ClientContext()
        await self._rate_limit(
            RateLimitCategory.PASSWORD_RESET,
            actor_key=self._actor_key(kind, email),
            ip=client.ip,
        )
        return (await self.recovery.request_reset(email, kind)).unwrap()

    @_translate_store_errors
    async def confirm_password_reset(
        self, token: Optional[str], new_password: Optional[str]
    ) -> Ack:
        return (await self.recovery.confirm_reset(token, new_password)).unwrap()

    @_translate_store_errors
    async def resend_email_verification(
        self,
        email: Optional[str],
        kind: ActorKind = ActorKind.USER,
        client: Optional[ClientContext] = None,
    ) -> Ack:
        client = client or ClientContext()
        await self._rate_limit(
            RateLimitCategory.EMAIL_VERIFICATION,
            actor_key=self._actor_key(kind, email),
            ip=client.ip,
        )
        return (await self.recovery.resend_verification(email, kind)).unwrap()

    @_translate_store_errors
    async def confirm_email_verification(self, token: Optional[str]) -> Ack:
        return (await self.recovery.confirm_verification(token)).unwrap()

    @_translate_store_errors
    async def change_password(
        self,
        ctx: ActorContext,
        current_password: Optional[str],
        new_password: Optional[str],
        *,
        revoke_other_sessions: bool = True,
    ) -> Ack:
        await self._rate_limit(
            RateLimitCategory.PASSWORD_CHANGE, actor_key=ctx.identity_id, actor=ctx.actor
        )
        new_password = _check_password(new_password, "new_password")
        identity = self.store.get_identity(ctx.actor)
        if identity is None or not identity.is_active or not identity.password_hash:
            raise AuthError(INVALID_CREDENTIALS_MESSAGE)
        if not self.hasher.verify_password(
            identity.password_hash, identity.password_algo, current_password or ""
        ):
            logger.warning("password_change_rejected", actor_id=identity.id)
            raise AuthError(INVALID_CREDENTIALS_MESSAGE)
        if new_password == current_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )

        digest, algo = self.hasher.hash_password(new_password)
        self.store.update_identity_password(identity.actor, digest, algo, now=self.clock.now())
        revoked: List[str] = []
        if revoke_other_sessions and self.settings.revoke_sessions_on_password_change:
            revoked = self.sessions.revoke_for_actor(
                identity.actor,
                reason="password_change",
                current_session_id=ctx.session_id,
            ).unwrap()
        logger.info(
            "password_changed", actor_id=identity.id, revoked_count=len(revoked)
        )
        self.audit.record("password_changed", identity.actor, {"revoked_count": len(revoked)})
        return Ack(success=True, message="password changed")

    # -- rate limit administration ------------------------------------------

    def _record_policy_change(
        self, ctx: ActorContext, action: str, policy: RateLimitPolicy
    ) -> None:
        self.audit.record(
            "rate_limit_policy_changed",
            ctx.actor,
            {"action": action, "policy_id": policy.id, "policy_code": policy.code},
        )

    @_translate_store_errors
    async def list_rate_limit_policies(
        self,
        ctx: ActorContext,
        *,
        category: Optional[RateLimitCategory] = None,
        include_retired: bool = False,
    ) -> List[RateLimitPolicy]:
        self._require_system_admin(ctx)
        return self.rate_limiter.list_policies(
            category=category, include_retired=include_retired
        )

    @_translate_store_errors
    async def create_rate_limit_policy(
        self,
        ctx: ActorContext,
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
    ) -> RateLimitPolicy:
        self._require_system_admin(ctx)
        policy = self.rate_limiter.create_policy(
            code=code,
            name=name,
            category=category,
            scope=scope,
            window_seconds=window_seconds,
            max_requests=max_requests,
            sliding_window=sliding_window,
            enabled=enabled,
            description=description,
        ).unwrap()
        self._record_policy_change(ctx, "created", policy)
        return policy

    @_translate_store_errors
    async def update_rate_limit_policy(
        self, ctx: ActorContext, policy_id: str, **changes: Any
    ) -> RateLimitPolicy:
        self._require_system_admin(ctx)
        policy = self.rate_limiter.update_policy(policy_id, **changes).unwrap()
        self._record_policy_change(ctx, "updated", policy)
        return policy

    @_translate_store_errors
    async def retire_rate_limit_policy(
        self, ctx: ActorContext, policy_id: str
    ) -> RateLimitPolicy:
        self._require_system_admin(ctx)
        policy = (await self.rate_limiter.retire_policy(policy_id)).unwrap()
        self._record_policy_change(ctx, "retired", policy)
        return policy

    @_translate_store_errors
    async def list_rate_limit_counters(
        self, ctx: ActorContext, policy_id: str
    ) -> List[RateCounter]:
        self._require_system_admin(ctx)
        return (await self.rate_limiter.list_counters(policy_id)).unwrap()

    # -- audit trail --------------------------------------------------------

    @_translate_store_errors
    async def list_audit_events(
        self,
        ctx: ActorContext,
        *,
        actor: Optional[ActorRef] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        self._require_system_admin(ctx)
        if event_type is not None and event_type not in AUDIT_EVENT_TYPES:
            raise ValidationError("unknown audit event type", detail={"field": "event_type"})
        if not 0 < limit <= _MAX_AUDIT_PAGE:
            raise ValidationError(
                f"limit must be between 1 and {_MAX_AUDIT_PAGE}", detail={"field": "limit"}
            )
        return self.audit.recent(actor=actor, event_type=event_type, limit=limit)


__all__ = [
    "Ack",
    "ActorContext",
    "AuthService",
    "AuthorizedSession",
    "Credentials",
    "LogoutOptions",
    "RevokeOptions",
    "RevokeResult",
]
