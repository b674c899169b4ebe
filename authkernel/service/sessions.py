from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Protocol

from authkernel.logging import get_logger, token_fingerprint
from authkernel.service.clock import SystemClock
from authkernel.service.errors import ErrorKind, Outcome
from authkernel.service.hashing import CredentialHasher
from authkernel.service.tokens import TokenIssuer, TokenPair
from authkernel.storage.models import ActorKind, ActorRef, Session

logger = get_logger(__name__)

# Single message for every refresh rejection so callers cannot tell an
# unknown token from a revoked, rotated-away or expired one.
INVALID_REFRESH_MESSAGE = "invalid or expired token"


class SessionState(str, Enum):
    ISSUED = "issued"
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"


_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.ISSUED: frozenset({SessionState.ROTATED, SessionState.REVOKED}),
    SessionState.ROTATED: frozenset({SessionState.ROTATED, SessionState.REVOKED}),
    SessionState.EXPIRED: frozenset({SessionState.REVOKED}),
    SessionState.REVOKED: frozenset(),
}


def session_state(session: Session, now: datetime) -> SessionState:
    """Derive the lifecycle state; expiry is never written, only observed."""
    if session.revoked_at is not None:
        return SessionState.REVOKED
    if now >= session.expires_at:
        return SessionState.EXPIRED
    if session.rotation_count > 0:
        return SessionState.ROTATED
    return SessionState.ISSUED


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in _TRANSITIONS[current]


def can_rotate(current: SessionState) -> bool:
    return can_transition(current, SessionState.ROTATED)


class SessionStatus(str, Enum):
    """Coarse filter for session listings."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"

    @classmethod
    def of(cls, state: SessionState) -> "SessionStatus":
        if state == SessionState.REVOKED:
            return cls.REVOKED
        if state == SessionState.EXPIRED:
            return cls.EXPIRED
        return cls.ACTIVE


@dataclass(frozen=True)
class SessionSummary:
    """What an owner may see about a session; never the refresh hash."""

    id: str
    state: SessionState
    issued_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    revoked_at: Optional[datetime]
    rotation_count: int
    ip: Optional[str]
    user_agent: Optional[str]

    @property
    def status(self) -> SessionStatus:
        return SessionStatus.of(self.state)

    @classmethod
    def describe(cls, session: Session, now: datetime) -> "SessionSummary":
        return cls(
            id=session.id,
            state=session_state(session, now),
            issued_at=session.issued_at,
            expires_at=session.expires_at,
            last_accessed_at=session.last_accessed_at,
            revoked_at=session.revoked_at,
            rotation_count=session.rotation_count,
            ip=session.ip,
            user_agent=session.user_agent,
        )


@dataclass(frozen=True)
class ClientContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class IssuedSession:
    session: Session
    tokens: TokenPair


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]: ...

    def list_sessions_for_actor(self, actor: ActorRef) -> List[Session]: ...

    def rotate_session_refresh(
        self, old_hash: str, new_hash: str, *, now: datetime, expires_at: datetime
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, *, now: datetime, reason: str) -> bool: ...

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
    ) -> List[str]: ...


class SessionRegistry:
    """Sole writer of session rows.

    Rotation is a compare-and-swap on the stored refresh hash: the store
    only replaces the hash if the presented (old) hash still names a usable
    session, so of several concurrent callers presenting the same token at
    most one succeeds.
    """

    def __init__(
        self,
        store: SessionStore,
        issuer: TokenIssuer,
        *,
        hasher: Optional[CredentialHasher] = None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.hasher = hasher or issuer.hasher
        self.clock = clock or issuer.clock

    def create(
        self,
        actor: ActorRef,
        client: Optional[ClientContext] = None,
        *,
        remember: bool = False,
    ) -> IssuedSession:
        client = client or ClientContext()
        now = self.clock.now()
        session_id = self.clock.new_id()
        tokens = self.issuer.issue(
            actor.id, actor.kind, session_id=session_id, remember=remember
        )
        session = Session.new(
            actor,
            self.hasher.hash_token(tokens.refresh_token),
            tokens.refresh_expiry,
            now=now,
            ip=client.ip,
            user_agent=client.user_agent,
            session_id=session_id,
        )
        stored = self.store.create_session(session)
        logger.info(
            "session_created",
            session_id=stored.id,
            actor_kind=actor.kind.value,
            actor_id=actor.id,
        )
        return IssuedSession(session=stored, tokens=tokens)

    def rotate(
        self, presented_refresh_token: str, *, expected_kind: Optional[ActorKind] = None
    ) -> Outcome[IssuedSession]:
        if not presented_refresh_token:
            return Outcome.reject(ErrorKind.AUTH, INVALID_REFRESH_MESSAGE)
        old_hash = self.hasher.hash_token(presented_refresh_token)
        now = self.clock.now()
        current = self.store.get_session_by_refresh_hash(old_hash)
        if current is None:
            logger.warning(
                "session_rotation_rejected",
                reason="unknown",
                token_fingerprint=token_fingerprint(presented_refresh_token),
            )
            return Outcome.reject(ErrorKind.AUTH, INVALID_REFRESH_MESSAGE)
        state = session_state(current, now)
        if not can_rotate(state) or (
            expected_kind is not None and current.actor.kind != expected_kind
        ):
            logger.warning(
                "session_rotation_rejected",
                reason=state.value if not can_rotate(state) else "kind_mismatch",
                session_id=current.id,
            )
            return Outcome.reject(ErrorKind.AUTH, INVALID_REFRESH_MESSAGE)

        # Keep the window the session was issued with (e.g. remember-me).
        window = current.expires_at - current.last_accessed_at
        max_window = self.issuer.refresh_ttl(current.actor.kind, remember=True)
        window = min(window, max_window)
        tokens = self.issuer.issue(
            current.actor.id,
            current.actor.kind,
            session_id=current.id,
            refresh_expiry=now + window,
        )
        rotated = self.store.rotate_session_refresh(
            old_hash,
            self.hasher.hash_token(tokens.refresh_token),
            now=now,
            expires_at=tokens.refresh_expiry,
        )
        if rotated is None:
            # Another caller swapped the hash (or revoked) between read and write.
            logger.warning("session_rotation_lost_race", session_id=current.id)
            return Outcome.reject(ErrorKind.AUTH, INVALID_REFRESH_MESSAGE)
        logger.info(
            "session_rotated", session_id=rotated.id, rotation_count=rotated.rotation_count
        )
        return Outcome.success(IssuedSession(session=rotated, tokens=tokens))

    def revoke(self, session_id: str, *, reason: str = "logout") -> Outcome[int]:
        """Revoke one session. Returns the number of rows this call changed
        (0 when it was already revoked)."""
        current = self.store.get_session(session_id)
        if current is None:
            return Outcome.reject(ErrorKind.NOT_FOUND, "session not found")
        if current.revoked_at is not None:
            return Outcome.success(0)
        changed = self.store.revoke_session(session_id, now=self.clock.now(), reason=reason)
        if changed:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return Outcome.success(1 if changed else 0)

    def revoke_for_actor(
        self,
        actor: ActorRef,
        *,
        reason: str,
        current_session_id: Optional[str] = None,
        include_current: bool = False,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        issued_before: Optional[datetime] = None,
        expires_before: Optional[datetime] = None,
    ) -> Outcome[List[str]]:
        except_session_id = None if include_current else current_session_id
        revoked = self.store.revoke_sessions_for_actor(
            actor,
            now=self.clock.now(),
            reason=reason,
            except_session_id=except_session_id,
            ip=ip,
            user_agent=user_agent,
            issued_before=issued_before,
            expires_before=expires_before,
        )
        logger.info(
            "sessions_revoked",
            actor_kind=actor.kind.value,
            actor_id=actor.id,
            revoked_count=len(revoked),
            include_current=include_current,
            reason=reason,
        )
        return Outcome.success(revoked)

    def find_usable_by_token(self, presented_refresh_token: str) -> Outcome[Session]:
        if presented_refresh_token:
            session = self.store.get_session_by_refresh_hash(
                self.hasher.hash_token(presented_refresh_token)
            )
            if session is not None and session.is_usable(self.clock.now()):
                return Outcome.success(session)
        return Outcome.reject(ErrorKind.NOT_FOUND, "session not found")

    def find_usable_by_id(self, session_id: str) -> Optional[Session]:
        session = self.store.get_session(session_id)
        if session is None or not session.is_usable(self.clock.now()):
            return None
        return session

    def state_of(self, session_id: str) -> Optional[SessionState]:
        session = self.store.get_session(session_id)
        if session is None:
            return None
        return session_state(session, self.clock.now())

    def list_for_actor(
        self, actor: ActorRef, *, status: Optional[SessionStatus] = None
    ) -> List[SessionSummary]:
        """Newest first, optionally narrowed to one status."""
        now = self.clock.now()
        summaries = [
            SessionSummary.describe(session, now)
            for session in self.store.list_sessions_for_actor(actor)
        ]
        if status is not None:
            summaries = [s for s in summaries if s.status == status]
        return sorted(summaries, key=lambda s: s.issued_at, reverse=True)
