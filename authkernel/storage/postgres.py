from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authkernel.logging import get_logger, sanitize_error_message
from authkernel.storage.common import (
    advance_rate_counter,
    ensure_aware,
    normalize_email,
    parse_json_meta,
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

_SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS auth_identity (
        id TEXT PRIMARY KEY,
        kind TEXT NOT NULL CHECK (kind IN ('guest', 'user', 'admin', 'system_admin')),
        email TEXT,
        password_hash TEXT,
        password_algo TEXT,
        status TEXT NOT NULL DEFAULT 'active',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        verified_at TIMESTAMPTZ,
        display_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        deleted_at TIMESTAMPTZ,
        UNIQUE (kind, id)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_identity_live_email
        ON auth_identity (kind, email)
        WHERE deleted_at IS NULL AND email IS NOT NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        actor_kind TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        refresh_hash TEXT NOT NULL UNIQUE,
        issued_at TIMESTAMPTZ NOT NULL,
        last_accessed_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        rotation_count INTEGER NOT NULL DEFAULT 0,
        ip TEXT,
        user_agent TEXT,
        FOREIGN KEY (actor_kind, actor_id) REFERENCES auth_identity (kind, id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_actor ON auth_session (actor_kind, actor_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_request (
        id TEXT PRIMARY KEY,
        actor_kind TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        email TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        requested_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ,
        FOREIGN KEY (actor_kind, actor_id) REFERENCES auth_identity (kind, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS email_verification (
        id TEXT PRIMARY KEY,
        actor_kind TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        email TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        requested_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        consumed_at TIMESTAMPTZ,
        FOREIGN KEY (actor_kind, actor_id) REFERENCES auth_identity (kind, id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_limit_policy (
        id TEXT PRIMARY KEY,
        code TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        category TEXT NOT NULL,
        scope TEXT NOT NULL,
        window_seconds INTEGER NOT NULL CHECK (window_seconds > 0),
        max_requests INTEGER NOT NULL CHECK (max_requests > 0),
        sliding_window BOOLEAN NOT NULL DEFAULT FALSE,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        deleted_at TIMESTAMPTZ
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS rate_limit_policy_live_code
        ON rate_limit_policy (code) WHERE deleted_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS rate_counter (
        policy_id TEXT NOT NULL REFERENCES rate_limit_policy (id),
        scope_key TEXT NOT NULL,
        window_started_at TIMESTAMPTZ NOT NULL,
        count INTEGER NOT NULL DEFAULT 0,
        previous_count INTEGER NOT NULL DEFAULT 0,
        blocked BOOLEAN NOT NULL DEFAULT FALSE,
        deleted_at TIMESTAMPTZ,
        PRIMARY KEY (policy_id, scope_key)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_event (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        actor_kind TEXT,
        actor_id TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_event_actor ON audit_event (actor_kind, actor_id, created_at)",
]

_REQUIRED_TABLES = [
    "auth_identity",
    "auth_session",
    "password_reset_request",
    "email_verification",
    "rate_limit_policy",
    "rate_counter",
    "audit_event",
]

_POLICY_COLUMNS = {
    "name",
    "description",
    "window_seconds",
    "max_requests",
    "sliding_window",
    "enabled",
    "scope",
    "category",
}

_RECOVERY_TABLES = {
    PasswordResetRequest: "password_reset_request",
    EmailVerification: "email_verification",
}


class PostgresStore:
    """Postgres-backed record store.

    Each public method is one transaction on a pooled connection. Waiting
    for a connection and each statement are both bounded by
    ``timeout_seconds``; exceeding either raises StoreTimeout and the
    transaction is rolled back by the pool context manager.
    """

    def __init__(
        self,
        dsn: str,
        fs_root: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.warning("postgres_pool_timeout", operation=operation)
            raise StoreTimeout(operation, self.timeout_seconds) from exc
        except errors.QueryCanceled as exc:
            self.logger.warning("postgres_statement_timeout", operation=operation)
            raise StoreTimeout(operation, self.timeout_seconds) from exc
        except psycopg.OperationalError as exc:
            self.logger.warning(
                "postgres_operational_error",
                operation=operation,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreTimeout(operation, self.timeout_seconds) from exc

    def _ensure_schema(self) -> None:
        with self._transaction("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Ensure auth tables exist before serving requests."""

        with self._transaction("verify_schema") as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    def ping(self) -> bool:
        with self._transaction("ping") as conn:
            row = conn.execute("SELECT 1 AS ok").fetchone()
        return bool(row and row.get("ok") == 1)

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ------------------------------------------------------

    @staticmethod
    def _row_to_identity(row: Dict[str, Any]) -> Identity:
        return Identity(
            id=str(row["id"]),
            kind=ActorKind(row["kind"]),
            email=row.get("email"),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo"),
            status=IdentityStatus(row.get("status") or "active"),
            email_verified=bool(row.get("email_verified")),
            verified_at=ensure_aware(row.get("verified_at")),
            display_name=row.get("display_name"),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
            last_login_at=ensure_aware(row.get("last_login_at")),
            password_changed_at=ensure_aware(row.get("password_changed_at")),
            deleted_at=ensure_aware(row.get("deleted_at")),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            actor=ActorRef(kind=ActorKind(row["actor_kind"]), id=str(row["actor_id"])),
            refresh_hash=row["refresh_hash"],
            issued_at=ensure_aware(row["issued_at"]),
            last_accessed_at=ensure_aware(row["last_accessed_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            revoked_at=ensure_aware(row.get("revoked_at")),
            revoked_reason=row.get("revoked_reason"),
            rotation_count=row.get("rotation_count") or 0,
            ip=row.get("ip"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _row_to_recovery(token_type: type, row: Dict[str, Any]) -> RecoveryToken:
        return token_type(
            id=str(row["id"]),
            actor=ActorRef(kind=ActorKind(row["actor_kind"]), id=str(row["actor_id"])),
            email=row["email"],
            token_hash=row["token_hash"],
            requested_at=ensure_aware(row["requested_at"]),
            expires_at=ensure_aware(row["expires_at"]),
            consumed_at=ensure_aware(row.get("consumed_at")),
        )

    @staticmethod
    def _row_to_policy(row: Dict[str, Any]) -> RateLimitPolicy:
        return RateLimitPolicy(
            id=str(row["id"]),
            code=row["code"],
            name=row["name"],
            description=row.get("description"),
            category=RateLimitCategory(row["category"]),
            scope=RateLimitScope(row["scope"]),
            window_seconds=row["window_seconds"],
            max_requests=row["max_requests"],
            sliding_window=bool(row.get("sliding_window")),
            enabled=bool(row.get("enabled")),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
            deleted_at=ensure_aware(row.get("deleted_at")),
        )

    @staticmethod
    def _row_to_counter(row: Dict[str, Any]) -> RateCounter:
        return RateCounter(
            policy_id=str(row["policy_id"]),
            scope_key=row["scope_key"],
            window_started_at=ensure_aware(row["window_started_at"]),
            count=row.get("count") or 0,
            previous_count=row.get("previous_count") or 0,
            blocked=bool(row.get("blocked")),
            deleted_at=ensure_aware(row.get("deleted_at")),
        )

    @staticmethod
    def _row_to_audit_event(row: Dict[str, Any]) -> AuditEvent:
        actor = None
        if row.get("actor_kind") and row.get("actor_id"):
            actor = ActorRef(kind=ActorKind(row["actor_kind"]), id=str(row["actor_id"]))
        return AuditEvent(
            id=str(row["id"]),
            event_type=row["event_type"],
            actor=actor,
            metadata=parse_json_meta(row.get("metadata")),
            created_at=ensure_aware(row["created_at"]),
        )

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
        identity_id = identity_id or str(uuid.uuid4())
        try:
            with self._transaction("create_identity") as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_identity (
                        id, kind, email, password_hash, password_algo, display_name,
                        email_verified, verified_at, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()), COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (
                        identity_id,
                        kind.value,
                        normalize_email(email),
                        password_hash,
                        password_algo,
                        display_name,
                        email_verified,
                        now if email_verified else None,
                        now,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_identity(row)

    def get_identity(self, actor: ActorRef) -> Optional[Identity]:
        with self._transaction("get_identity") as conn:
            row = conn.execute(
                "SELECT * FROM auth_identity WHERE id = %s AND kind = %s",
                (actor.id, actor.kind.value),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def get_identity_by_email(self, kind: ActorKind, email: str) -> Optional[Identity]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self._transaction("get_identity_by_email") as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_identity
                WHERE kind = %s AND email = %s AND deleted_at IS NULL
                """,
                (kind.value, normalized),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def _update_identity(
        self, actor: ActorRef, operation: str, assignments: str, params: tuple
    ) -> Optional[Identity]:
        with self._transaction(operation) as conn:
            row = conn.execute(
                f"""
                UPDATE auth_identity SET {assignments}
                WHERE id = %s AND kind = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (*params, actor.id, actor.kind.value),
            ).fetchone()
        return self._row_to_identity(row) if row else None

    def update_identity_password(
        self, actor: ActorRef, password_hash: str, password_algo: str, *, now: datetime
    ) -> Optional[Identity]:
        return self._update_identity(
            actor,
            "update_identity_password",
            "password_hash = %s, password_algo = %s, password_changed_at = %s, updated_at = %s",
            (password_hash, password_algo, now, now),
        )

    def mark_identity_login(self, actor: ActorRef, *, now: datetime) -> Optional[Identity]:
        return self._update_identity(actor, "mark_identity_login", "last_login_at = %s", (now,))

    def mark_identity_email_verified(
        self, actor: ActorRef, *, now: datetime
    ) -> Optional[Identity]:
        return self._update_identity(
            actor,
            "mark_identity_email_verified",
            "email_verified = TRUE, verified_at = %s, updated_at = %s",
            (now, now),
        )

    def set_identity_status(
        self, actor: ActorRef, status: IdentityStatus, *, now: datetime
    ) -> Optional[Identity]:
        return self._update_identity(
            actor, "set_identity_status", "status = %s, updated_at = %s", (status.value, now)
        )

    def delete_identity(self, actor: ActorRef, *, now: datetime) -> Optional[Identity]:
        return self._update_identity(
            actor, "delete_identity", "deleted_at = %s, updated_at = %s", (now, now)
        )

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._transaction("create_session") as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, actor_kind, actor_id, refresh_hash, issued_at,
                        last_accessed_at, expires_at, ip, user_agent
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.actor.kind.value,
                        session.actor.id,
                        session.refresh_hash,
                        session.issued_at,
                        session.last_accessed_at,
                        session.expires_at,
                        session.ip,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "identity does not exist", {"actor": session.actor.to_dict()}
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._transaction("get_session") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_refresh_hash(self, refresh_hash: str) -> Optional[Session]:
        with self._transaction("get_session_by_refresh_hash") as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_hash = %s", (refresh_hash,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions_for_actor(self, actor: ActorRef) -> List[Session]:
        with self._transaction("list_sessions_for_actor") as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE actor_kind = %s AND actor_id = %s
                ORDER BY issued_at
                """,
                (actor.kind.value, actor.id),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def rotate_session_refresh(
        self, old_hash: str, new_hash: str, *, now: datetime, expires_at: datetime
    ) -> Optional[Session]:
        """Compare-and-swap the refresh hash in a single UPDATE.

        Row locking makes concurrent callers presenting the same old hash
        serialize; only the first sees a matching row.
        """
        with self._transaction("rotate_session_refresh") as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_hash = %s,
                    last_accessed_at = %s,
                    expires_at = %s,
                    rotation_count = rotation_count + 1
                WHERE refresh_hash = %s
                  AND revoked_at IS NULL
                  AND expires_at > %s
                RETURNING *
                """,
                (new_hash, now, expires_at, old_hash, now),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session(self, session_id: str, *, now: datetime, reason: str) -> bool:
        with self._transaction("revoke_session") as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING id
                """,
                (now, reason, session_id),
            ).fetchone()
        return row is not None

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
        clauses = [
            "actor_kind = %s",
            "actor_id = %s",
            "revoked_at IS NULL",
            "expires_at > %s",
        ]
        params: List[Any] = [actor.kind.value, actor.id, now]
        if except_session_id:
            clauses.append("id <> %s")
            params.append(except_session_id)
        if ip is not None:
            clauses.append("ip = %s")
            params.append(ip)
        if user_agent is not None:
            clauses.append("user_agent = %s")
            params.append(user_agent)
        if issued_before is not None:
            clauses.append("issued_at < %s")
            params.append(issued_before)
        if expires_before is not None:
            clauses.append("expires_at < %s")
            params.append(expires_before)
        with self._transaction("revoke_sessions_for_actor") as conn:
            rows = conn.execute(
                f"""
                UPDATE auth_session SET revoked_at = %s, revoked_reason = %s
                WHERE {' AND '.join(clauses)}
                RETURNING id
                """,
                (now, reason, *params),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    # -- recovery tokens --------------------------------------------------

    def _create_recovery(self, row: RecoveryToken) -> RecoveryToken:
        table = _RECOVERY_TABLES[type(row)]
        try:
            with self._transaction(f"create_{table}") as conn:
                conn.execute(
                    f"""
                    INSERT INTO {table} (
                        id, actor_kind, actor_id, email, token_hash, requested_at, expires_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        row.id,
                        row.actor.kind.value,
                        row.actor.id,
                        row.email,
                        row.token_hash,
                        row.requested_at,
                        row.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("identity does not exist", {"actor": row.actor.to_dict()})
        return row

    def _get_recovery_by_hash(self, token_type: type, token_hash: str):
        table = _RECOVERY_TABLES[token_type]
        with self._transaction(f"get_{table}") as conn:
            row = conn.execute(
                f"SELECT * FROM {table} WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._row_to_recovery(token_type, row) if row else None

    def _consume_recovery(self, token_type: type, token_hash: str, now: datetime):
        table = _RECOVERY_TABLES[token_type]
        with self._transaction(f"consume_{table}") as conn:
            row = conn.execute(
                f"""
                UPDATE {table} SET consumed_at = %s
                WHERE token_hash = %s AND consumed_at IS NULL AND expires_at > %s
                RETURNING *
                """,
                (now, token_hash, now),
            ).fetchone()
        return self._row_to_recovery(token_type, row) if row else None

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
        try:
            with self._transaction("create_rate_limit_policy") as conn:
                row = conn.execute(
                    """
                    INSERT INTO rate_limit_policy (
                        id, code, name, description, category, scope, window_seconds,
                        max_requests, sliding_window, enabled, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        policy.id,
                        policy.code,
                        policy.name,
                        policy.description,
                        policy.category.value,
                        policy.scope.value,
                        policy.window_seconds,
                        policy.max_requests,
                        policy.sliding_window,
                        policy.enabled,
                        policy.created_at,
                        policy.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("rate limit code already exists", {"field": "code"})
        return self._row_to_policy(row)

    def get_rate_limit_policy(self, policy_id: str) -> Optional[RateLimitPolicy]:
        with self._transaction("get_rate_limit_policy") as conn:
            row = conn.execute(
                "SELECT * FROM rate_limit_policy WHERE id = %s", (policy_id,)
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def get_rate_limit_policy_by_code(self, code: str) -> Optional[RateLimitPolicy]:
        with self._transaction("get_rate_limit_policy_by_code") as conn:
            row = conn.execute(
                "SELECT * FROM rate_limit_policy WHERE code = %s AND deleted_at IS NULL",
                (code,),
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def list_rate_limit_policies(
        self,
        *,
        category: Optional[RateLimitCategory] = None,
        include_retired: bool = False,
    ) -> List[RateLimitPolicy]:
        clauses: List[str] = []
        params: List[Any] = []
        if category is not None:
            clauses.append("category = %s")
            params.append(category.value)
        if not include_retired:
            clauses.append("deleted_at IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction("list_rate_limit_policies") as conn:
            rows = conn.execute(
                f"SELECT * FROM rate_limit_policy {where} ORDER BY created_at, code",
                tuple(params),
            ).fetchall()
        return [self._row_to_policy(row) for row in rows]

    def update_rate_limit_policy(
        self, policy_id: str, *, now: datetime, **changes
    ) -> Optional[RateLimitPolicy]:
        unknown = set(changes) - _POLICY_COLUMNS
        if unknown:
            raise ValueError(f"unsupported policy fields: {sorted(unknown)}")
        columns = sorted(changes)
        assignments = [f"{column} = %s" for column in columns] + ["updated_at = %s"]
        values = [
            changes[c].value if isinstance(changes[c], Enum) else changes[c] for c in columns
        ]
        with self._transaction("update_rate_limit_policy") as conn:
            row = conn.execute(
                f"""
                UPDATE rate_limit_policy SET {', '.join(assignments)}
                WHERE id = %s AND deleted_at IS NULL
                RETURNING *
                """,
                (*values, now, policy_id),
            ).fetchone()
        return self._row_to_policy(row) if row else None

    def retire_rate_limit_policy(
        self, policy_id: str, *, now: datetime
    ) -> Optional[RateLimitPolicy]:
        with self._transaction("retire_rate_limit_policy") as conn:
            row = conn.execute(
                """
                UPDATE rate_limit_policy SET deleted_at = %s, updated_at = %s
                WHERE id = %s AND enabled = FALSE AND deleted_at IS NULL
                RETURNING *
                """,
                (now, now, policy_id),
            ).fetchone()
            if row:
                conn.execute(
                    """
                    UPDATE rate_counter SET deleted_at = %s
                    WHERE policy_id = %s AND deleted_at IS NULL
                    """,
                    (now, policy_id),
                )
        return self._row_to_policy(row) if row else None

    def hit_rate_counter(
        self, policy: RateLimitPolicy, scope_key: str, *, now: datetime, cost: int = 1
    ) -> RateCounter:
        with self._transaction("hit_rate_counter") as conn:
            conn.execute(
                """
                INSERT INTO rate_counter (policy_id, scope_key, window_started_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (policy_id, scope_key) DO NOTHING
                """,
                (policy.id, scope_key, now),
            )
            row = conn.execute(
                """
                SELECT * FROM rate_counter
                WHERE policy_id = %s AND scope_key = %s
                FOR UPDATE
                """,
                (policy.id, scope_key),
            ).fetchone()
            counter = advance_rate_counter(
                self._row_to_counter(row),
                policy_id=policy.id,
                scope_key=scope_key,
                now=now,
                window_seconds=policy.window_seconds,
                max_requests=policy.max_requests,
                sliding=policy.sliding_window,
                cost=cost,
            )
            conn.execute(
                """
                UPDATE rate_counter
                SET window_started_at = %s, count = %s, previous_count = %s,
                    blocked = %s, deleted_at = NULL
                WHERE policy_id = %s AND scope_key = %s
                """,
                (
                    counter.window_started_at,
                    counter.count,
                    counter.previous_count,
                    counter.blocked,
                    policy.id,
                    scope_key,
                ),
            )
        return counter

    def list_rate_counters(
        self, policy_id: str, *, include_retired: bool = False
    ) -> List[RateCounter]:
        retired_clause = "" if include_retired else "AND deleted_at IS NULL"
        with self._transaction("list_rate_counters") as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM rate_counter
                WHERE policy_id = %s {retired_clause}
                ORDER BY scope_key
                """,
                (policy_id,),
            ).fetchall()
        return [self._row_to_counter(row) for row in rows]

    # -- audit ------------------------------------------------------------

    def append_audit_event(self, event: AuditEvent) -> AuditEvent:
        with self._transaction("append_audit_event") as conn:
            conn.execute(
                """
                INSERT INTO audit_event (id, event_type, actor_kind, actor_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    event.event_type,
                    event.actor.kind.value if event.actor else None,
                    event.actor.id if event.actor else None,
                    json.dumps(event.metadata),
                    event.created_at,
                ),
            )
        return event

    def list_audit_events(
        self,
        *,
        actor: Optional[ActorRef] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if actor is not None:
            clauses.append("actor_kind = %s AND actor_id = %s")
            params.extend([actor.kind.value, actor.id])
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(event_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._transaction("list_audit_events") as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_event {where} ORDER BY created_at DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [self._row_to_audit_event(row) for row in rows]
