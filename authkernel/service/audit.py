from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol

from authkernel.logging import get_logger
from authkernel.service.clock import SystemClock
from authkernel.storage.models import ActorRef, AuditEvent

logger = get_logger(__name__)

AUDIT_EVENT_TYPES = frozenset(
    {
        "join",
        "login",
        "login_failed",
        "refresh",
        "refresh_failed",
        "logout",
        "sessions_revoked",
        "password_reset_requested",
        "password_reset",
        "email_verification_sent",
        "email_verified",
        "password_changed",
        "rate_limited",
        "rate_limit_policy_changed",
    }
)


class AuditStore(Protocol):
    def append_audit_event(self, event: AuditEvent) -> AuditEvent: ...

    def list_audit_events(
        self,
        *,
        actor: Optional[ActorRef] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]: ...


def _json_safe(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not metadata:
        return {}
    # Round-trip so datetimes/enums land as strings in either backend
    return json.loads(json.dumps(metadata, default=str))


class AuditRecorder:
    """Append-only audit trail.

    Recording never fails the caller: the audited operation has already
    happened, so a store error is logged and dropped.
    """

    def __init__(self, store: AuditStore, *, clock: Optional[SystemClock] = None) -> None:
        self.store = store
        self.clock = clock or SystemClock()

    def record(
        self,
        event_type: str,
        actor: Optional[ActorRef] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[AuditEvent]:
        try:
            if event_type not in AUDIT_EVENT_TYPES:
                raise ValueError(f"unknown audit event type: {event_type}")
            event = AuditEvent(
                id=self.clock.new_id(),
                event_type=event_type,
                actor=actor,
                metadata=_json_safe(metadata),
                created_at=self.clock.now(),
            )
            return self.store.append_audit_event(event)
        except Exception as exc:
            logger.error(
                "audit_record_failed",
                event_type=event_type,
                actor_kind=actor.kind.value if actor else None,
                actor_id=actor.id if actor else None,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    def recent(
        self,
        *,
        actor: Optional[ActorRef] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        return self.store.list_audit_events(actor=actor, event_type=event_type, limit=limit)
