from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActorKind(str, Enum):
    GUEST = "guest"
    USER = "user"
    ADMIN = "admin"
    SYSTEM_ADMIN = "system_admin"

    @property
    def uses_password(self) -> bool:
        return self is not ActorKind.GUEST

    @property
    def is_administrative(self) -> bool:
        return self in (ActorKind.ADMIN, ActorKind.SYSTEM_ADMIN)

    @classmethod
    def parse(cls, value: "str | ActorKind") -> "ActorKind":
        """Accept enum values as well as the dashed URL form (``system-admin``)."""
        if isinstance(value, ActorKind):
            return value
        return cls(str(value).strip().lower().replace("-", "_"))


@dataclass(frozen=True)
class ActorRef:
    """Tagged reference to exactly one identity of one kind."""

    kind: ActorKind
    id: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "id": self.id}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "ActorRef":
        return cls(kind=ActorKind.parse(data["kind"]), id=str(data["id"]))


class IdentityStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


@dataclass
class Identity:
    id: str
    kind: ActorKind
    email: Optional[str] = None
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    status: IdentityStatus = IdentityStatus.ACTIVE
    email_verified: bool = False
    verified_at: Optional[datetime] = None
    display_name: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    @property
    def actor(self) -> ActorRef:
        return ActorRef(kind=self.kind, id=self.id)

    @property
    def is_active(self) -> bool:
        return self.status == IdentityStatus.ACTIVE and self.deleted_at is None


@dataclass
class Session:
    id: str
    actor: ActorRef
    refresh_hash: str
    issued_at: datetime
    last_accessed_at: datetime
    expires_at: datetime
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    rotation_count: int = 0
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        actor: ActorRef,
        refresh_hash: str,
        expires_at: datetime,
        *,
        now: datetime | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
    ) -> "Session":
        now = now or _utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            actor=actor,
            refresh_hash=refresh_hash,
            issued_at=now,
            last_accessed_at=now,
            expires_at=expires_at,
            ip=ip,
            user_agent=user_agent,
        )

    def is_usable(self, now: datetime) -> bool:
        return self.revoked_at is None and now < self.expires_at


@dataclass
class RecoveryToken:
    """One-time token row; only the hash of the raw token is kept."""

    id: str
    actor: ActorRef
    email: str
    token_hash: str
    requested_at: datetime
    expires_at: datetime
    consumed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        actor: ActorRef,
        email: str,
        token_hash: str,
        ttl: timedelta,
        *,
        now: datetime | None = None,
    ):
        now = now or _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            actor=actor,
            email=email,
            token_hash=token_hash,
            requested_at=now,
            expires_at=now + ttl,
        )

    def is_consumable(self, now: datetime) -> bool:
        return self.consumed_at is None and now < self.expires_at


@dataclass
class PasswordResetRequest(RecoveryToken):
    pass


@dataclass
class EmailVerification(RecoveryToken):
    pass


class RateLimitScope(str, Enum):
    ACTOR = "actor"
    IP = "ip"


class RateLimitCategory(str, Enum):
    JOIN = "join"
    LOGIN = "login"
    REFRESH = "refresh"
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_CHANGE = "password_change"


@dataclass
class RateLimitPolicy:
    id: str
    code: str
    name: str
    category: RateLimitCategory
    scope: RateLimitScope
    window_seconds: int
    max_requests: int
    sliding_window: bool = False
    enabled: bool = True
    description: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    deleted_at: Optional[datetime] = None

    @property
    def is_retired(self) -> bool:
        return self.deleted_at is not None


@dataclass
class RateCounter:
    policy_id: str
    scope_key: str
    window_started_at: datetime
    count: int = 0
    previous_count: int = 0
    blocked: bool = False
    deleted_at: Optional[datetime] = None


@dataclass
class AuditEvent:
    id: str
    event_type: str
    actor: Optional[ActorRef] = None
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
