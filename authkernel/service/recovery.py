from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Coroutine, Optional, Protocol, Set

from authkernel.config import Settings
from authkernel.logging import get_logger, token_fingerprint
from authkernel.service.audit import AuditRecorder
from authkernel.service.clock import SystemClock
from authkernel.service.errors import ErrorKind, Outcome
from authkernel.service.hashing import CredentialHasher, password_policy_violation
from authkernel.service.sessions import SessionRegistry
from authkernel.storage.common import normalize_email
from authkernel.storage.models import (
    ActorKind,
    EmailVerification,
    Identity,
    PasswordResetRequest,
)

logger = get_logger(__name__)

# Raw recovery tokens are 43 characters; anything far beyond that is junk.
MAX_TOKEN_LENGTH = 512

INVALID_TOKEN_MESSAGE = "invalid or expired token"
RESET_REQUESTED_MESSAGE = "If an account exists for that email, a reset link has been sent."
VERIFICATION_REQUESTED_MESSAGE = (
    "If an unverified account exists for that email, a verification link has been sent."
)


@dataclass(frozen=True)
class Ack:
    success: bool
    message: Optional[str] = None


class Notifier(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...

    def send_email_verification(self, to_email: str, token: str) -> bool: ...


def _token_shape_error(token: Optional[str]) -> Optional[str]:
    if not token or not token.strip():
        return "token is required"
    if len(token) > MAX_TOKEN_LENGTH:
        return "token is too long"
    return None


class RecoveryFlows:
    """Password reset and email verification.

    Requests always acknowledge with the same message so callers cannot
    learn which emails are registered. Both branches do the same lookup and
    token work; storing and sending for a registered email happen in a
    background task, so neither the mail server nor the store write shows
    up in response latency. Confirmations consume the stored token through
    a conditional update, which makes every token single use even when two
    confirmations race.
    """

    def __init__(
        self,
        store,
        *,
        hasher: CredentialHasher,
        settings: Settings,
        notifier: Notifier,
        registry: SessionRegistry,
        audit: Optional[AuditRecorder] = None,
        clock: Optional[SystemClock] = None,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.notifier = notifier
        self.registry = registry
        self.audit = audit
        self.clock = clock or SystemClock()
        self._deliveries: Set[asyncio.Task] = set()

    def _record(self, event_type: str, identity: Identity, **metadata) -> None:
        if self.audit is not None:
            self.audit.record(event_type, identity.actor, metadata)

    # -- background delivery --------------------------------------------------

    def _spawn(self, job: Coroutine[Any, Any, None], *, purpose: str) -> None:
        task = asyncio.create_task(job, name=f"recovery-{purpose}")
        self._deliveries.add(task)
        task.add_done_callback(functools.partial(self._job_finished, purpose))

    def _job_finished(self, purpose: str, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            logger.warning("recovery_job_cancelled", purpose=purpose)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "recovery_job_failed",
                purpose=purpose,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def drain(self) -> None:
        """Wait for background jobs started on the running event loop."""
        loop = asyncio.get_running_loop()
        pending = [task for task in self._deliveries if task.get_loop() is loop]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _deliver(self, send, email: str, raw_token: str, *, purpose: str) -> bool:
        try:
            delivered = await asyncio.to_thread(send, email, raw_token)
        except Exception as exc:
            logger.error(
                "recovery_delivery_failed",
                purpose=purpose,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not delivered:
            logger.warning("recovery_delivery_failed", purpose=purpose)
        return bool(delivered)

    # -- password reset -----------------------------------------------------

    async def request_reset(
        self, email: Optional[str], kind: ActorKind = ActorKind.USER
    ) -> Outcome[Ack]:
        ack = Ack(success=True, message=RESET_REQUESTED_MESSAGE)
        normalized = normalize_email(email)
        if not normalized or not kind.uses_password:
            return Outcome.success(ack)
        identity = self.store.get_identity_by_email(kind, normalized)
        raw_token = self.hasher.new_opaque_token()
        token_hash = self.hasher.hash_token(raw_token)
        if identity is None or not identity.is_active or not identity.password_hash:
            logger.info("password_reset_no_eligible_identity", actor_kind=kind.value)
            return Outcome.success(ack)
        self._spawn(
            self._complete_reset(identity, normalized, raw_token, token_hash),
            purpose="password_reset",
        )
        return Outcome.success(ack)

    async def _complete_reset(
        self, identity: Identity, email: str, raw_token: str, token_hash: str
    ) -> None:
        request = PasswordResetRequest.new(
            identity.actor,
            email,
            token_hash,
            timedelta(minutes=self.settings.password_reset_ttl_minutes),
            now=self.clock.now(),
        )
        self.store.create_password_reset(request)
        logger.info(
            "password_reset_requested",
            actor_kind=identity.kind.value,
            actor_id=identity.id,
            request_id=request.id,
        )
        delivered = await self._deliver(
            self.notifier.send_password_reset, email, raw_token, purpose="password_reset"
        )
        self._record("password_reset_requested", identity, delivered=delivered)

    async def confirm_reset(
        self, token: Optional[str], new_password: Optional[str]
    ) -> Outcome[Ack]:
        shape_error = _token_shape_error(token)
        if shape_error:
            return Outcome.reject(ErrorKind.VALIDATION, shape_error, {"field": "token"})
        policy_error = password_policy_violation(new_password)
        if policy_error:
            return Outcome.reject(ErrorKind.VALIDATION, policy_error, {"field": "new_password"})

        token_hash = self.hasher.hash_token(token)
        now = self.clock.now()
        pending = self.store.get_password_reset_by_hash(token_hash)
        identity = self.store.get_identity(pending.actor) if pending else None
        if pending is None or not pending.is_consumable(now) or identity is None or not identity.is_active:
            logger.warning(
                "password_reset_invalid_token", token_fingerprint=token_fingerprint(token)
            )
            return Outcome.reject(ErrorKind.AUTH, INVALID_TOKEN_MESSAGE)

        consumed = self.store.consume_password_reset(token_hash, now=now)
        if consumed is None:
            logger.warning(
                "password_reset_token_already_consumed", request_id=pending.id
            )
            return Outcome.reject(ErrorKind.AUTH, INVALID_TOKEN_MESSAGE)

        digest, algo = self.hasher.hash_password(new_password)
        updated = self.store.update_identity_password(identity.actor, digest, algo, now=now)
        if updated is None:
            # Token is already burned; the identity went away after the check.
            logger.warning(
                "password_reset_identity_vanished",
                actor_kind=identity.kind.value,
                actor_id=identity.id,
                request_id=consumed.id,
            )
            return Outcome.reject(ErrorKind.AUTH, INVALID_TOKEN_MESSAGE)

        revoked_count = 0
        if self.settings.revoke_sessions_on_password_reset:
            revoked = self.registry.revoke_for_actor(
                identity.actor, reason="password_reset", include_current=True
            )
            revoked_count = len(revoked.value or [])
        logger.info(
            "password_reset_completed",
            actor_kind=identity.kind.value,
            actor_id=identity.id,
            revoked_count=revoked_count,
        )
        self._record("password_reset", identity, revoked_count=revoked_count)
        return Outcome.success(Ack(success=True, message="password updated"))

    # -- email verification ---------------------------------------------------

    def _store_verification(self, identity: Identity, token_hash: str) -> EmailVerification:
        verification = EmailVerification.new(
            identity.actor,
            identity.email,
            token_hash,
            timedelta(hours=self.settings.email_verification_ttl_hours),
            now=self.clock.now(),
        )
        self.store.create_email_verification(verification)
        logger.info(
            "email_verification_issued",
            actor_kind=identity.kind.value,
            actor_id=identity.id,
            verification_id=verification.id,
        )
        return verification

    async def _send_verification(self, identity: Identity, raw_token: str) -> None:
        delivered = await self._deliver(
            self.notifier.send_email_verification,
            identity.email,
            raw_token,
            purpose="email_verification",
        )
        self._record("email_verification_sent", identity, delivered=delivered)

    async def _complete_verification(
        self, identity: Identity, raw_token: str, token_hash: str
    ) -> None:
        self._store_verification(identity, token_hash)
        await self._send_verification(identity, raw_token)

    async def issue_verification(self, identity: Identity) -> Outcome[str]:
        """Create a verification token for ``identity`` and queue its email.

        The token row exists when this returns; sending happens in the
        background. Returns the raw token, which exists nowhere else.
        """
        if not identity.email:
            return Outcome.reject(ErrorKind.VALIDATION, "identity has no email")
        raw_token = self.hasher.new_opaque_token()
        self._store_verification(identity, self.hasher.hash_token(raw_token))
        self._spawn(self._send_verification(identity, raw_token), purpose="email_verification")
        return Outcome.success(raw_token)

    async def resend_verification(
        self, email: Optional[str], kind: ActorKind = ActorKind.USER
    ) -> Outcome[Ack]:
        ack = Ack(success=True, message=VERIFICATION_REQUESTED_MESSAGE)
        normalized = normalize_email(email)
        if not normalized:
            return Outcome.success(ack)
        identity = self.store.get_identity_by_email(kind, normalized)
        raw_token = self.hasher.new_opaque_token()
        token_hash = self.hasher.hash_token(raw_token)
        if identity is None or not identity.is_active or identity.email_verified:
            return Outcome.success(ack)
        # Earlier tokens stay valid until they expire or one is used.
        self._spawn(
            self._complete_verification(identity, raw_token, token_hash),
            purpose="email_verification",
        )
        return Outcome.success(ack)

    async def confirm_verification(self, token: Optional[str]) -> Outcome[Ack]:
        shape_error = _token_shape_error(token)
        if shape_error:
            return Outcome.reject(ErrorKind.VALIDATION, shape_error, {"field": "token"})

        token_hash = self.hasher.hash_token(token)
        now = self.clock.now()
        pending = self.store.get_email_verification_by_hash(token_hash)
        identity = self.store.get_identity(pending.actor) if pending else None
        if (
            pending is None
            or not pending.is_consumable(now)
            or identity is None
            or not identity.is_active
            or identity.email != pending.email
        ):
            logger.warning(
                "email_verification_invalid_token", token_fingerprint=token_fingerprint(token)
            )
            return Outcome.reject(ErrorKind.AUTH, INVALID_TOKEN_MESSAGE)

        if self.store.consume_email_verification(token_hash, now=now) is None:
            logger.warning(
                "email_verification_token_already_consumed", verification_id=pending.id
            )
            return Outcome.reject(ErrorKind.AUTH, INVALID_TOKEN_MESSAGE)
        self.store.mark_identity_email_verified(identity.actor, now=now)
        logger.info("email_verified", actor_kind=identity.kind.value, actor_id=identity.id)
        self._record("email_verified", identity)
        return Outcome.success(Ack(success=True, message="email verified"))
