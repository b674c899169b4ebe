from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authkernel.service.auth import AuthorizedSession, RevokeResult
from authkernel.service.recovery import Ack
from authkernel.service.sessions import SessionSummary
from authkernel.storage.models import (
    AuditEvent,
    Identity,
    RateCounter,
    RateLimitCategory,
    RateLimitPolicy,
    RateLimitScope,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# -- requests ---------------------------------------------------------------


class JoinRequest(BaseModel):
    # Optional at the schema level: guests may join without either.
    email: Optional[str] = None
    password: Optional[str] = Field(default=None, max_length=256)
    display_name: Optional[str] = Field(default=None, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_join_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("display_name")
    @classmethod
    def _normalize_display_name(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value).strip() if value is not None else None


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=256)
    remember: bool = False


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class LogoutRequest(BaseModel):
    all_sessions: bool = False


class RevokeSessionsRequest(BaseModel):
    include_current: bool = False
    ip: Optional[str] = Field(default=None, max_length=64)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    issued_before: Optional[datetime] = None
    expires_before: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=64)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=512)
    new_password: str = Field(..., max_length=256)


class EmailVerificationResend(BaseModel):
    email: str = Field(..., max_length=254)


class EmailVerificationConfirm(BaseModel):
    token: str = Field(..., max_length=512)


class PasswordChangeRequest(BaseModel):
    """Request to change password (requires current password)."""

    current_password: str = Field(..., min_length=1, max_length=256)
    new_password: str = Field(..., max_length=256)
    revoke_other_sessions: bool = True


class RateLimitPolicyCreate(BaseModel):
    code: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9_.-]+$")
    name: str = Field(..., min_length=1, max_length=128)
    category: RateLimitCategory
    scope: RateLimitScope
    window_seconds: int = Field(..., gt=0)
    max_requests: int = Field(..., gt=0)
    sliding_window: bool = False
    enabled: bool = True
    description: Optional[str] = Field(default=None, max_length=512)


class RateLimitPolicyPatch(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=128)
    category: Optional[RateLimitCategory] = None
    scope: Optional[RateLimitScope] = None
    window_seconds: Optional[int] = Field(default=None, gt=0)
    max_requests: Optional[int] = Field(default=None, gt=0)
    sliding_window: Optional[bool] = None
    enabled: Optional[bool] = None
    description: Optional[str] = Field(default=None, max_length=512)


# -- responses --------------------------------------------------------------


class AuthorizedSessionResponse(BaseModel):
    identity_id: str
    actor_kind: str
    session_id: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expiry: datetime
    refresh_expiry: datetime

    @classmethod
    def from_session(cls, authorized: AuthorizedSession) -> "AuthorizedSessionResponse":
        return cls(
            identity_id=authorized.identity_id,
            actor_kind=authorized.actor_kind.value,
            session_id=authorized.session_id,
            access_token=authorized.access_token,
            refresh_token=authorized.refresh_token,
            access_expiry=authorized.access_expiry,
            refresh_expiry=authorized.refresh_expiry,
        )


class AckResponse(BaseModel):
    success: bool
    message: Optional[str] = None

    @classmethod
    def from_ack(cls, ack: Ack) -> "AckResponse":
        return cls(success=ack.success, message=ack.message)


class RevokeSessionsResponse(BaseModel):
    revoked_count: int
    revoked_session_ids: List[str]
    message: Optional[str] = None

    @classmethod
    def from_result(cls, result: RevokeResult) -> "RevokeSessionsResponse":
        return cls(
            revoked_count=result.revoked_count,
            revoked_session_ids=list(result.revoked_session_ids),
            message=result.message,
        )


class IdentityResponse(BaseModel):
    identity_id: str
    actor_kind: str
    session_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    email_verified: bool = False
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: Identity, session_id: str) -> "IdentityResponse":
        return cls(
            identity_id=identity.id,
            actor_kind=identity.kind.value,
            session_id=session_id,
            email=identity.email,
            display_name=identity.display_name,
            email_verified=identity.email_verified,
            created_at=identity.created_at,
            last_login_at=identity.last_login_at,
        )


class RateLimitPolicyResponse(BaseModel):
    id: str
    code: str
    name: str
    category: str
    scope: str
    window_seconds: int
    max_requests: int
    sliding_window: bool
    enabled: bool
    description: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None

    @classmethod
    def from_policy(cls, policy: RateLimitPolicy) -> "RateLimitPolicyResponse":
        return cls(
            id=policy.id,
            code=policy.code,
            name=policy.name,
            category=policy.category.value,
            scope=policy.scope.value,
            window_seconds=policy.window_seconds,
            max_requests=policy.max_requests,
            sliding_window=policy.sliding_window,
            enabled=policy.enabled,
            description=policy.description,
            created_at=policy.created_at,
            updated_at=policy.updated_at,
            deleted_at=policy.deleted_at,
        )


class RateLimitPolicyListResponse(BaseModel):
    items: List[RateLimitPolicyResponse]


class RateCounterResponse(BaseModel):
    scope_key: str
    window_started_at: datetime
    count: int
    previous_count: int
    blocked: bool

    @classmethod
    def from_counter(cls, counter: RateCounter) -> "RateCounterResponse":
        return cls(
            scope_key=counter.scope_key,
            window_started_at=counter.window_started_at,
            count=counter.count,
            previous_count=counter.previous_count,
            blocked=counter.blocked,
        )


class RateCounterListResponse(BaseModel):
    policy_id: str
    items: List[RateCounterResponse]


class SessionResponse(BaseModel):
    id: str
    status: str
    state: str
    current: bool = False
    issued_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    revoked_at: Optional[datetime] = None
    rotation_count: int
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def from_summary(
        cls, summary: SessionSummary, current_session_id: Optional[str] = None
    ) -> "SessionResponse":
        return cls(
            id=summary.id,
            status=summary.status.value,
            state=summary.state.value,
            current=summary.id == current_session_id,
            issued_at=summary.issued_at,
            expires_at=summary.expires_at,
            last_accessed_at=summary.last_accessed_at,
            revoked_at=summary.revoked_at,
            rotation_count=summary.rotation_count,
            ip=summary.ip,
            user_agent=summary.user_agent,
        )


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class AuditEventResponse(BaseModel):
    id: str
    event_type: str
    actor_kind: Optional[str] = None
    actor_id: Optional[str] = None
    metadata: dict
    created_at: datetime

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEventResponse":
        return cls(
            id=event.id,
            event_type=event.event_type,
            actor_kind=event.actor.kind.value if event.actor else None,
            actor_id=event.actor.id if event.actor else None,
            metadata=dict(event.metadata),
            created_at=event.created_at,
        )


class AuditEventListResponse(BaseModel):
    items: List[AuditEventResponse]
