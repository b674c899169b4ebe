from __future__ import annotations

from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    Header,
    HTTPException,
    Path,
    Query,
    Request,
)

from authkernel.api.schemas import (
    AckResponse,
    AuditEventListResponse,
    AuditEventResponse,
    AuthorizedSessionResponse,
    EmailVerificationConfirm,
    EmailVerificationResend,
    Envelope,
    IdentityResponse,
    JoinRequest,
    LoginRequest,
    LogoutRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RateCounterListResponse,
    RateCounterResponse,
    RateLimitPolicyCreate,
    RateLimitPolicyListResponse,
    RateLimitPolicyPatch,
    RateLimitPolicyResponse,
    RefreshRequest,
    RevokeSessionsRequest,
    RevokeSessionsResponse,
    SessionListResponse,
    SessionResponse,
)
from authkernel.service.auth import ActorContext, Credentials, LogoutOptions, RevokeOptions
from authkernel.service.runtime import get_runtime
from authkernel.service.sessions import ClientContext, SessionStatus
from authkernel.storage.models import ActorKind, ActorRef, RateLimitCategory

router = APIRouter(prefix="/v1")

_KIND_DESCRIPTION = "Actor kind: guest, user, admin or system-admin"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _parse_kind(kind: str) -> ActorKind:
    try:
        return ActorKind.parse(kind)
    except ValueError:
        raise _http_error(
            "not_found", "unknown actor kind", status_code=404, details={"kind": kind}
        ) from None


def _client_context(request: Request) -> ClientContext:
    user_agent = request.headers.get("User-Agent")
    return ClientContext(
        ip=request.client.host if request.client else None,
        user_agent=user_agent[:512] if user_agent else None,
    )


async def get_actor(authorization: Optional[str] = Header(None)) -> ActorContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


async def get_system_admin(authorization: Optional[str] = Header(None)) -> ActorContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization, required_kinds={ActorKind.SYSTEM_ADMIN}
    )


def _deliver_after_response(background_tasks: BackgroundTasks) -> None:
    # Recovery emails go out once the response has been sent.
    background_tasks.add_task(get_runtime().auth.recovery.drain)


# -- join / login / refresh -------------------------------------------------


@router.post("/auth/{kind}/join", response_model=Envelope, status_code=201, tags=["auth"])
async def join(
    body: JoinRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    kind: str = Path(..., description=_KIND_DESCRIPTION),
):
    """Create an identity of the given kind and open its first session.

    Raises:
        400: If the email or password is invalid
        403: If signup is disabled for this kind
        409: If the email is already registered for this kind
        429: If the join rate limit is exceeded
    """
    runtime = get_runtime()
    authorized = await runtime.auth.join(
        _parse_kind(kind),
        Credentials(email=body.email, password=body.password, display_name=body.display_name),
        _client_context(request),
    )
    _deliver_after_response(background_tasks)
    return Envelope(status="ok", data=AuthorizedSessionResponse.from_session(authorized))


@router.post("/auth/{kind}/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    kind: str = Path(..., description=_KIND_DESCRIPTION),
):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email or address
    """
    runtime = get_runtime()
    authorized = await runtime.auth.login(
        _parse_kind(kind),
        Credentials(email=body.email, password=body.password),
        _client_context(request),
        remember=body.remember,
    )
    return Envelope(status="ok", data=AuthorizedSessionResponse.from_session(authorized))


@router.post("/auth/{kind}/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: RefreshRequest,
    request: Request,
    kind: str = Path(..., description=_KIND_DESCRIPTION),
):
    """Exchange a refresh token for a new token pair; the old one stops working."""
    runtime = get_runtime()
    authorized = await runtime.auth.refresh(
        _parse_kind(kind), body.refresh_token, _client_context(request)
    )
    return Envelope(status="ok", data=AuthorizedSessionResponse.from_session(authorized))


# -- sessions ---------------------------------------------------------------


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None, actor: ActorContext = Depends(get_actor)
):
    runtime = get_runtime()
    options = LogoutOptions(all_sessions=body.all_sessions if body else False)
    ack = await runtime.auth.logout(actor, options)
    return Envelope(status="ok", data=AckResponse.from_ack(ack))


@router.post("/auth/sessions/revoke", response_model=Envelope, tags=["auth"])
async def revoke_sessions(
    body: RevokeSessionsRequest, actor: ActorContext = Depends(get_actor)
):
    """Revoke the caller's other sessions, optionally filtered.

    The current session is kept unless ``include_current`` is set.
    """
    runtime = get_runtime()
    result = await runtime.auth.revoke_sessions(
        actor,
        RevokeOptions(
            include_current=body.include_current,
            ip=body.ip,
            user_agent=body.user_agent,
            issued_before=body.issued_before,
            expires_before=body.expires_before,
            reason=body.reason or "user_revoke",
        ),
    )
    return Envelope(status="ok", data=RevokeSessionsResponse.from_result(result))


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(
    status: Optional[SessionStatus] = Query(None),
    actor: ActorContext = Depends(get_actor),
):
    """List the caller's sessions, newest first.

    Refresh token hashes are never included.
    """
    runtime = get_runtime()
    summaries = await runtime.auth.list_sessions(actor, status=status)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[SessionResponse.from_summary(s, actor.session_id) for s in summaries]
        ),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(actor: ActorContext = Depends(get_actor)):
    runtime = get_runtime()
    identity = await runtime.auth.current_identity(actor)
    return Envelope(
        status="ok", data=IdentityResponse.from_identity(identity, actor.session_id)
    )


# -- credential recovery ----------------------------------------------------


@router.post("/auth/{kind}/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    kind: str = Path(..., description=_KIND_DESCRIPTION),
):
    """Start a password reset.

    The response is identical whether or not the email is registered.
    """
    runtime = get_runtime()
    ack = await runtime.auth.request_password_reset(
        body.email, _parse_kind(kind), _client_context(request)
    )
    _deliver_after_response(background_tasks)
    return Envelope(status="ok", data=AckResponse.from_ack(ack))


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(body: PasswordResetConfirm):
    runtime = get_runtime()
    ack = await runtime.auth.confirm_password_reset(body.token, body.new_password)
    return Envelope(status="ok", data=AckResponse.from_ack(ack))


@router.post("/auth/{kind}/email/verify/resend", response_model=Envelope, tags=["auth"])
async def resend_email_verification(
    body: EmailVerificationResend,
    request: Request,
    background_tasks: BackgroundTasks,
    kind: str = Path(..., description=_KIND_DESCRIPTION),
):
    runtime = get_runtime()
    ack = await runtime.auth.resend_email_verification(
        body.email, _parse_kind(kind), _client_context(request)
    )
    _deliver_after_response(background_tasks)
    return Envelope(status="ok", data=AckResponse.from_ack(ack))


@router.post("/auth/email/verify/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_verification(body: EmailVerificationConfirm):
    runtime = get_runtime()
    ack = await runtime.auth.confirm_email_verification(body.token)
    return Envelope(status="ok", data=AckResponse.from_ack(ack))


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, actor: ActorContext = Depends(get_actor)
):
    """Change the caller's password.

    Raises:
        400: If the new password is invalid or equals the current one
        401: If the current password is wrong
    """
    runtime = get_runtime()
    ack = await runtime.auth.change_password(
        actor,
        body.current_password,
        body.new_password,
        revoke_other_sessions=body.revoke_other_sessions,
    )
    return Envelope(status="ok", data=AckResponse.from_ack(ack))


# -- rate limit administration ----------------------------------------------


@router.get("/admin/rate-limits", response_model=Envelope, tags=["admin"])
async def list_rate_limit_policies(
    category: Optional[RateLimitCategory] = Query(None),
    include_retired: bool = Query(False),
    admin: ActorContext = Depends(get_system_admin),
):
    runtime = get_runtime()
    policies = await runtime.auth.list_rate_limit_policies(
        admin, category=category, include_retired=include_retired
    )
    return Envelope(
        status="ok",
        data=RateLimitPolicyListResponse(
            items=[RateLimitPolicyResponse.from_policy(p) for p in policies]
        ),
    )


@router.post("/admin/rate-limits", response_model=Envelope, status_code=201, tags=["admin"])
async def create_rate_limit_policy(
    body: RateLimitPolicyCreate, admin: ActorContext = Depends(get_system_admin)
):
    runtime = get_runtime()
    policy = await runtime.auth.create_rate_limit_policy(admin, **body.model_dump())
    return Envelope(status="ok", data=RateLimitPolicyResponse.from_policy(policy))


@router.patch("/admin/rate-limits/{policy_id}", response_model=Envelope, tags=["admin"])
async def update_rate_limit_policy(
    body: RateLimitPolicyPatch,
    policy_id: str = Path(..., max_length=64),
    admin: ActorContext = Depends(get_system_admin),
):
    changes = body.model_dump(exclude_unset=True)
    if not changes:
        raise _http_error("validation_error", "no fields to update", status_code=400)
    runtime = get_runtime()
    policy = await runtime.auth.update_rate_limit_policy(admin, policy_id, **changes)
    return Envelope(status="ok", data=RateLimitPolicyResponse.from_policy(policy))


@router.delete("/admin/rate-limits/{policy_id}", response_model=Envelope, tags=["admin"])
async def retire_rate_limit_policy(
    policy_id: str = Path(..., max_length=64),
    admin: ActorContext = Depends(get_system_admin),
):
    """Retire a disabled policy.

    Raises:
        404: If the policy does not exist
        409: If the policy is still enabled
    """
    runtime = get_runtime()
    policy = await runtime.auth.retire_rate_limit_policy(admin, policy_id)
    return Envelope(status="ok", data=RateLimitPolicyResponse.from_policy(policy))


@router.get(
    "/admin/rate-limits/{policy_id}/counters", response_model=Envelope, tags=["admin"]
)
async def list_rate_limit_counters(
    policy_id: str = Path(..., max_length=64),
    admin: ActorContext = Depends(get_system_admin),
):
    runtime = get_runtime()
    counters = await runtime.auth.list_rate_limit_counters(admin, policy_id)
    return Envelope(
        status="ok",
        data=RateCounterListResponse(
            policy_id=policy_id,
            items=[RateCounterResponse.from_counter(c) for c in counters],
        ),
    )


# -- audit trail ------------------------------------------------------------


@router.get("/admin/audit-events", response_model=Envelope, tags=["admin"])
async def list_audit_events(
    actor_kind: Optional[str] = Query(None, description=_KIND_DESCRIPTION),
    actor_id: Optional[str] = Query(None, max_length=64),
    event_type: Optional[str] = Query(None, max_length=64),
    limit: int = Query(100, ge=1, le=500),
    admin: ActorContext = Depends(get_system_admin),
):
    """Search the audit trail, newest first.

    Raises:
        400: If only one of actor_kind and actor_id is given
        403: If the caller is not a system administrator
    """
    actor = None
    if actor_kind is not None or actor_id is not None:
        if actor_kind is None or actor_id is None:
            raise _http_error(
                "validation_error",
                "actor_kind and actor_id must be given together",
                status_code=400,
            )
        try:
            kind = ActorKind.parse(actor_kind)
        except ValueError:
            raise _http_error(
                "validation_error",
                "unknown actor kind",
                status_code=400,
                details={"field": "actor_kind"},
            ) from None
        actor = ActorRef(kind=kind, id=actor_id)
    runtime = get_runtime()
    events = await runtime.auth.list_audit_events(
        admin, actor=actor, event_type=event_type, limit=limit
    )
    return Envelope(
        status="ok",
        data=AuditEventListResponse(items=[AuditEventResponse.from_event(e) for e in events]),
    )
