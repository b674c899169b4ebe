from __future__ import annotations

import json
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from authkernel.logging import get_logger
from authkernel.storage.common import (
    advance_rate_counter,
    from_iso,
    normalize_email,
    to_iso,
)
from authkernel.storage.errors import ConstraintViolation, StoreTimeout
from authkernel.storage.models import (
    ActorKind,
    ActorRef,
    AuditEvent,
    EmailVerification,
    Identity,
    IdentityStatus,
    PasswordResetRequest,
    RateCounter,
    RateLimitCategory,
    RateLimitPolicy,
    RateLimitScope,
    RecoveryToken,
    Session,
)

_POLICY_FIELDS = {
    "name",
    "description",
    "window_seconds",
    "max_requests",
    "sliding_window",
    "enabled",
    "scope",
    "category",
}


class MemoryStore:
    """In-memory backing store with a JSON snapshot for restarts.

    Every method runs under one re-entrant lock, acquired with a bounded
    wait; compare-and-swap style writes (session rotation, token
    consumption, counter hits) therefore happen as a single critical
    section.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/authkernel",
        *,
        lock_timeout: float = 5.0,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self.sessions: Dict[str, Session] = {}
        self.password_resets: Dict[str, PasswordResetRequest] = {}
        self.email_verifications: Dict[str, EmailVerification] = {}
        self.rate_limit_policies: Dict[str, RateLimitPolicy] = {}
        self.rate_counters: Dict[Tuple[str, str], RateCounter] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.lock_timeout = lock_timeout
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if not self._load_state():
                self._persist_state()

    @contextmanager
    def _locked(self, operation: str) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self.lock_timeout):
            self.logger.warning(
                "memory_store_lock_timeout", operation=operation, timeout=self.lock_timeout
            )
            raise StoreTimeout(operation, self.lock_timeout)
        try:
            yield
        finally:
            self._data_lock.release()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def ping(self) -> bool:
        with self._locked("ping"):
            return True

    # -- identities -------------------------------------------------------

    def create_identity(
        self,
        kind: ActorKind,
        *,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        display_name: Optional[str] = None,
        email_verified: bool = False,
        now: Optional[datetime] = None,
        identity_id: Optional[str] = None,
    ) -> Identity:
        email = normalize_email(email)
        with self._locked("create_identity"):
            if email and self._find_identity_by_email(kind, email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            identity = Identity(
                id=identity_id or str(uuid.uuid4()),
                kind=kind,
                email=email,
                password_hash=password_hash,
                password_algo=password_algo,
                display_name=display_name,
                email_verified=email_verified,
                verified_at=now if email_verified else None,
            )
            if now:
                identity.created_at = now
                identity.updated_at = now
            self.identities[identity.id] = identity
            self._persist_state()
            return replace(identity)

    def _find_identity_by_email(self, kind: ActorKind, email: str) -> Optional[Identity]:
        for identity in self.identities.values():
            if identity.kind == kind and identity.email == email and identity.deleted_at is None:
                return identity
        return None

    def get_identity(self, actor: ActorRef) -> Optional[Identity]:
        with self._locked("get_identity"):
            identity = self.identities.get(actor.id)
            if identity is None or identity.kind != actor.kind:
                return None
            return replace(identity)

    def get_identity_by_email(self, kind: ActorKind, email: str) -> Optional[Identity]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._locked("get_identity_by_email"):
            identity = self._find_identity_by_email(kind, normalized)
            return replace(identity) if identity else None

    def _update_identity(self, actor: ActorRef, operation: str, **changes) -> Optional[Identity]:
        with self._locked(operation):
            identity = self.identities.get(actor.id)
            if identity is None or identity.kind != actor.kind or identity.deleted_at is not None:
                return None
            updated = replace(identity, **changes)
            self.identities[actor.id] = updated
            self._persist_state()
            return replace(updated)

    def update_identity_password(
        self, actor: ActorRef, password_hash: str, password_algo: str, *, now: datetime
    ) -> Optional[Identity]:
        return self._update_identity(
            actor,
            "update_identity_password",
            password_hash=password_hash,
            password_algo=password_algo,
            password_changed_at=now,
            updated_at=now,
        )

    def mark_identity_login(self, actor: ActorRef, *, now: datetime) -> Optional[Identity]:
        return self._update_identity(actor, "mark_identity_login", last_login_at=now)

    def mark_identity_email_verified(
        self, actor: ActorRef, *, now: datetime
    ) -> Optional[Identity]:
        return self._update_identity(
            actor,
            "mark_identity_email_verified",
            email_verified=True,
            verified_at=now,
            updated_at=now,
        )

    def set_identity_status(
        self, actor: ActorRef, status: IdentityStatus, *, now: datetime
    ) -> Optional[Identity]:
        return self._update_identity(actor, "set_identity_status", status=status, updated_at=now)

    def delete_identity(self, actor: ActorRef, *, now: datetime) -> Optional[Identity]:
        return self._update_identity(actor, "delete_identity", deleted_at=now, updated_at=now)

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._locked("create_session"):
            identity = self.identities.get(session.actor.id)
            if identity is None or identity.kind != session.actor.kind:
                raise ConstraintViolation(
                    "identity does not exist", {"actor": session.actor.to_dict()}
                )
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._locked("get_session"):
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]:
        with self._locked("get_session_by_refresh_hash"):
            for sess in self.sessions.values():
                if sess.refresh_hash == refresh_hash:
                    return replace(sess)
            return None

    def list_sessions_for_actor(self, actor: ActorRef) -> List[Session]:
        with self._locked("list_sessions_for_actor"):
            return sorted(
                (replace(s) for s in self.sessions.values() if s.actor == actor),
                key=lambda s: s.issued_at,
            )

    def rotate_session_refresh(
        self, old_hash: str, new_hash: str, *, now: datetime, expires_at: datetime
    ) -> Optional[Session]:
        """Swap the refresh hash only if ``old_hash`` still names a usable session."""
        with self._locked("rotate_session_refresh"):
            for session_id, sess in self.sessions.items():
                if sess.refresh_hash != old_hash:
                    continue
                if not sess.is_usable(now):
                    return None
                updated = replace(
                    sess,
                    refresh_hash=new_hash,
                    last_accessed_at=now,
                    expires_at=expires_at,
                    rotation_count=sess.rotation_count + 1,
                )
                self.sessions[session_id] = updated
                self._persist_state()
                return replace(updated)
            return None

    def revoke_session(self, session_id: str, *, now: datetime, reason: str) -> bool:
        """Set revoked_at if still unset; returns whether this call revoked it."""
        with self._locked("revoke_session"):
            sess = self.sessions.get(session_id)
            if sess is None or sess.revoked_at is not None:
                return False
            self.sessions[session_id] = replace(sess, revoked_at=now, revoked_reason=reason)
            self._persist_state()
            return True

    def revoke_sessions_for_actor(
        self,
        actor: ActorRef,
        *,
        now: datetime,
        reason: str,
        except_session_id: Optional[str] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        issued_before: Optional[datetime] = None,
        expires_before: Optional[datetime] = None,
    ) -> List[str]:
        with self._locked("revoke_sessions_for_actor"):
            revoked: List[str] = []
            for session_id, sess in self.sessions.items():
                if sess.actor != actor or not sess.is_usable(now):
                    continue
                if except_session_id and session_id == except_session_id:
                    continue
                if ip is not None and sess.ip != ip:
                    continue
                if user_agent is not None and sess.user_agent != user_agent:
                    continue
                if issued_before is not None and sess.issued_at >= issued_before:
                    continue
                if expires_before is not None and sess.expires_at >= expires_before:
                    continue
                self.sessions[session_id] = replace(sess, revoked_at=now, revoked_reason=reason)
                revoked.append(session_id)
            if revoked:
                self._persist_state()
            return revoked

    # -- recovery tokens --------------------------------------------------

    def _recovery_table(self, token_type: type) -> Dict[str, RecoveryToken]:
        if token_type is PasswordResetRequest:
            return self.password_resets  # type: ignore[return-value]
        return self.email_verifications  # type: ignore[return-value]

    def _create_recovery(self, row: RecoveryToken) -> RecoveryToken:
        with self._locked(f"create_{type(row).__name__}"):
            if self.identities.get(row.actor.id) is None:
                raise ConstraintViolation(
                    "identity does not exist", {"actor": row.actor.to_dict()}
                )
            self._recovery_table(type(row))[row.id] = replace(row)
            self._persist_state()
            return replace(row)

    def _get_recovery_by_hash(self, token_type: type, token_hash: str):
        with self._locked(f"get_{token_type.__name__}"):
            for row in self._recovery_table(token_type).values():
                if row.token_hash == token_hash:
                    return replace(row)
            return None

    def _consume_recovery(self, token_type: type, token_hash: str, now: datetime):
        with self._locked(f"consume_{token_type.__name__}"):
            table = self._recovery_table(token_type)
            for row_id, row in table.items():
                if row.token_hash != token_hash:
                    continue
                if not row.is_consumable(now):
                    return None
                consumed = replace(row, consumed_at=now)
                table[row_id] = consumed
                self._persist_state()
                return replace(consumed)
            return None

    def create_password_reset(self, request: PasswordResetRequest) -> PasswordResetRequest:
        return self._create_recovery(request)  # type: ignore[return-value]

    def get_password_reset_by_hash(self, token_hash: str) -> Optional[PasswordResetRequest]:
        return self._get_recovery_by_hash(PasswordResetRequest, token_hash)

    def consume_password_reset(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetRequest]:
        return self._consume_recovery(PasswordResetRequest, token_hash, now)

    def create_email_verification(self, verification: EmailVerification) -> EmailVerification:
        return self._create_recovery(verification)  # type: ignore[return-value]

    def get_email_verification_by_hash(self, token_hash: str) -> Optional[EmailVerification]:
        return self._get_recovery_by_hash(EmailVerification, token_hash)

    def consume_email_verification(
        self, token_hash: str, *, now: datetime
    ) -> Optional[EmailVerification]:
        return self._consume_recovery(EmailVerification, token_hash, now)

    # -- rate limiting ----------------------------------------------------

    def create_rate_limit_policy(self, policy: RateLimitPolicy) -> RateLimitPolicy:
        with self._locked("create_rate_limit_policy"):
            for existing in self.rate_limit_policies.values():
                if existing.code == policy.code and existing.deleted_at is None:
                    raise ConstraintViolation("rate limit code already exists", {"field": "code"})
            self.rate_limit_policies[policy.id] = replace(policy)
            self._persist_state()
            return replace(policy)

    def get_rate_limit_policy(self, policy_id: str) -> Optional[RateLimitPolicy]:
        with self._locked("get_rate_limit_policy"):
            policy = self.rate_limit_policies.get(policy_id)
            return replace(policy) if policy else None

    def get_rate_limit_policy_by_code(self, code: str) -> Optional[RateLimitPolicy]:
        with self._locked("get_rate_limit_policy_by_code"):
            for policy in self.rate_limit_policies.values():
                if policy.code == code and policy.deleted_at is None:
                    return replace(policy)
            return None

    def list_rate_limit_policies(
        self,
        *,
        category: Optional[RateLimitCategory] = None,
        include_retired: bool = False,
    ) -> List[RateLimitPolicy]:
        with self._locked("list_rate_limit_policies"):
            policies = [
                replace(p)
                for p in self.rate_limit_policies.values()
                if (include_retired or p.deleted_at is None)
                and (category is None or p.category == category)
            ]
        return sorted(policies, key=lambda p: (p.created_at, p.code))

    def update_rate_limit_policy(
        self, policy_id: str, *, now: datetime, **changes
    ) -> Optional[RateLimitPolicy]:
        unknown = set(changes) - _POLICY_FIELDS
        if unknown:
            raise ValueError(f"unsupported policy fields: {sorted(unknown)}")
        with self._locked("update_rate_limit_policy"):
            policy = self.rate_limit_policies.get(policy_id)
            if policy is None or policy.deleted_at is not None:
                return None
            updated = replace(policy, updated_at=now, **changes)
            self.rate_limit_policies[policy_id] = updated
            self._persist_state()
            return replace(updated)

    def retire_rate_limit_policy(
        self, policy_id: str, *, now: datetime
    ) -> Optional[RateLimitPolicy]:
        """Soft-delete a disabled, live policy together with its counters."""
        with self._locked("retire_rate_limit_policy"):
            policy = self.rate_limit_policies.get(policy_id)
            if policy is None or policy.enabled or policy.deleted_at is not None:
                return None
            retired = replace(policy, deleted_at=now, updated_at=now)
            self.rate_limit_policies[policy_id] = retired
            for key, counter in self.rate_counters.items():
                if key[0] == policy_id and counter.deleted_at is None:
                    self.rate_counters[key] = replace(counter, deleted_at=now)
            self._persist_state()
            return replace(retired)

    def hit_rate_counter(
        self, policy: RateLimitPolicy, scope_key: str, *, now: datetime, cost: int = 1
    ) -> RateCounter:
        with self._locked("hit_rate_counter"):
            key = (policy.id, scope_key)
            counter = advance_rate_counter(
                self.rate_counters.get(key),
                policy_id=policy.id,
                scope_key=scope_key,
                now=now,
                window_seconds=policy.window_seconds,
                max_requests=policy.max_requests,
                sliding=policy.sliding_window,
                cost=cost,
            )
            self.rate_counters[key] = counter
            self._persist_state()
            return replace(counter)

    def list_rate_counters(
        self, policy_id: str, *, include_retired: bool = False
    ) -> List[RateCounter]:
        with self._locked("list_rate_counters"):
            return [
                replace(c)
                for (pid, _), c in self.rate_counters.items()
                if pid == policy_id and (include_retired or c.deleted_at is None)
            ]

    # -- audit ------------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._locked("append_audit_event"):
            self.audit_events.append(replace(event, metadata=dict(event.metadata)))
            self._persist_state()
            return event

    def list_audit_events(
        self,
        *,
        actor: Optional[ActorRef] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        with self._locked("list_audit_events"):
            matches = [
                e
                for e in self.audit_events
                if (actor is None or e.actor == actor)
                and (event_type is None or e.event_type == event_type)
            ]
        return [replace(e) for e in matches[-limit:]][::-1]

    # -- snapshot ---------------------------------------------------------

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "identities": [self._serialize_identity(i) for i in self.identities.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "password_resets": [
                self._serialize_recovery(r) for r in self.password_resets.values()
            ],
            "email_verifications": [
                self._serialize_recovery(r) for r in self.email_verifications.values()
            ],
            "rate_limit_policies": [
                self._serialize_policy(p) for p in self.rate_limit_policies.values()
            ],
            "rate_counters": [
                self._serialize_counter(c) for c in self.rate_counters.values()
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            i["id"]: self._deserialize_identity(i) for i in data.get("identities", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.password_resets = {
            r["id"]: self._deserialize_recovery(PasswordResetRequest, r)
            for r in data.get("password_resets", [])
        }
        self.email_verifications = {
            r["id"]: self._deserialize_recovery(EmailVerification, r)
            for r in data.get("email_verifications", [])
        }
        self.rate_limit_policies = {
            p["id"]: self._deserialize_policy(p) for p in data.get("rate_limit_policies", [])
        }
        counters = [self._deserialize_counter(c) for c in data.get("rate_counters", [])]
        self.rate_counters = {(c.policy_id, c.scope_key): c for c in counters}
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        return True

    def _serialize_identity(self, identity: Identity) -> dict:
        return {
            "id": identity.id,
            "kind": identity.kind.value,
            "email": identity.email,
            "password_hash": identity.password_hash,
            "password_algo": identity.password_algo,
            "status": identity.status.value,
            "email_verified": identity.email_verified,
            "verified_at": to_iso(identity.verified_at),
            "display_name": identity.display_name,
            "created_at": to_iso(identity.created_at),
            "updated_at": to_iso(identity.updated_at),
            "last_login_at": to_iso(identity.last_login_at),
            "password_changed_at": to_iso(identity.password_changed_at),
            "deleted_at": to_iso(identity.deleted_at),
        }

    def _deserialize_identity(self, data: dict) -> Identity:
        return Identity(
            id=data["id"],
            kind=ActorKind(data["kind"]),
            email=data.get("email"),
            password_hash=data.get("password_hash"),
            password_algo=data.get("password_algo"),
            status=IdentityStatus(data.get("status", "active")),
            email_verified=data.get("email_verified", False),
            verified_at=from_iso(data.get("verified_at")),
            display_name=data.get("display_name"),
            created_at=from_iso(data["created_at"]),
            updated_at=from_iso(data["updated_at"]),
            last_login_at=from_iso(data.get("last_login_at")),
            password_changed_at=from_iso(data.get("password_changed_at")),
            deleted_at=from_iso(data.get("deleted_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "actor": session.actor.to_dict(),
            "refresh_hash": session.refresh_hash,
            "issued_at": to_iso(session.issued_at),
            "last_accessed_at": to_iso(session.last_accessed_at),
            "expires_at": to_iso(session.expires_at),
            "revoked_at": to_iso(session.revoked_at),
            "revoked_reason": session.revoked_reason,
            "rotation_count": session.rotation_count,
            "ip": session.ip,
            "user_agent": session.user_agent,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            actor=ActorRef.from_dict(data["actor"]),
            refresh_hash=data["refresh_hash"],
            issued_at=from_iso(data["issued_at"]),
            last_accessed_at=from_iso(data["last_accessed_at"]),
            expires_at=from_iso(data["expires_at"]),
            revoked_at=from_iso(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
            rotation_count=data.get("rotation_count", 0),
            ip=data.get("ip"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_recovery(self, row: RecoveryToken) -> dict:
        return {
            "id": row.id,
            "actor": row.actor.to_dict(),
            "email": row.email,
            "token_hash": row.token_hash,
            "requested_at": to_iso(row.requested_at),
            "expires_at": to_iso(row.expires_at),
            "consumed_at": to_iso(row.consumed_at),
        }

    def _deserialize_recovery(self, token_type: type, data: dict):
        return token_type(
            id=data["id"],
            actor=ActorRef.from_dict(data["actor"]),
            email=data["email"],
            token_hash=data["token_hash"],
            requested_at=from_iso(data["requested_at"]),
            expires_at=from_iso(data["expires_at"]),
            consumed_at=from_iso(data.get("consumed_at")),
        )

    def _serialize_policy(self, policy: RateLimitPolicy) -> dict:
        return {
            "id": policy.id,
            "code": policy.code,
            "name": policy.name,
            "category": policy.category.value,
            "scope": policy.scope.value,
            "window_seconds": policy.window_seconds,
            "max_requests": policy.max_requests,
            "sliding_window": policy.sliding_window,
            "enabled": policy.enabled,
            "description": policy.description,
            "created_at": to_iso(policy.created_at),
            "updated_at": to_iso(policy.updated_at),
            "deleted_at": to_iso(policy.deleted_at),
        }

    def _deserialize_policy(self, data: dict) -> RateLimitPolicy:
        return RateLimitPolicy(
            id=data["id"],
            code=data["code"],
            name=data["name"],
            category=RateLimitCategory(data["category"]),
            scope=RateLimitScope(data["scope"]),
            window_seconds=data["window_seconds"],
            max_requests=data["max_requests"],
            sliding_window=data.get("sliding_window", False),
            enabled=data.get("enabled", True),
            description=data.get("description"),
            created_at=from_iso(data["created_at"]),
            updated_at=from_iso(data["updated_at"]),
            deleted_at=from_iso(data.get("deleted_at")),
        )

    def _serialize_counter(self, counter: RateCounter) -> dict:
        return {
            "policy_id": counter.policy_id,
            "scope_key": counter.scope_key,
            "window_started_at": to_iso(counter.window_started_at),
            "count": counter.count,
            "previous_count": counter.previous_count,
            "blocked": counter.blocked,
            "deleted_at": to_iso(counter.deleted_at),
        }

    def _deserialize_counter(self, data: dict) -> RateCounter:
        return RateCounter(
            policy_id=data["policy_id"],
            scope_key=data["scope_key"],
            window_started_at=from_iso(data["window_started_at"]),
            count=data.get("count", 0),
            previous_count=data.get("previous_count", 0),
            blocked=data.get("blocked", False),
            deleted_at=from_iso(data.get("deleted_at")),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "event_type": event.event_type,
            "actor": event.actor.to_dict() if event.actor else None,
            "metadata": event.metadata,
            "created_at": to_iso(event.created_at),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        actor = data.get("actor")
        return AuditEvent(
            id=data["id"],
            event_type=data["event_type"],
            actor=ActorRef.from_dict(actor) if actor else None,
            metadata=data.get("metadata") or {},
            created_at=from_iso(data["created_at"]),
        )
