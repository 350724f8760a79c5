from __future__ import annotations

from dataclasses import asdict
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from hiq.api.schemas import (
    AccessRequestCreate,
    AccessRequestListResponse,
    AccessRequestResponse,
    DeviceInfoRequest,
    Envelope,
    InterviewAccessResponse,
    InterviewCreate,
    InterviewListResponse,
    InterviewResponse,
    InvitationResponse,
    PublicInterviewResponse,
    RegisterRequest,
    RejectRequest,
    RoleUpdateRequest,
    SessionActivityResponse,
    SessionAnalyticsResponse,
    SessionListResponse,
    SessionResponse,
    SessionSummary,
    SweepResponse,
    UserResponse,
)
from hiq.logging import get_logger
from hiq.service.access_requests import AccessRequestSubmission
from hiq.service.errors import ForbiddenError, NotFoundError, RateLimitedError, ServerError
from hiq.service.identity import (
    Identity,
    ProviderError,
    ProviderUser,
    ProviderUserNotFound,
    Role,
)
from hiq.service.interviews import InterviewRequest
from hiq.service.runtime import check_rate_limit, get_runtime
from hiq.service.sessions import SessionHandle
from hiq.storage.models import AccessRequest, DeviceInfo, Interview, SessionRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_HEADER = "X-Session-Token"


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError("rate limit exceeded", detail={"retry_after": reset_seconds})
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def get_identity(authorization: Optional[str] = Header(None)) -> Identity:
    return get_runtime().verifier.verify(authorization)


async def get_verified_identity(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.email_verified:
        raise ForbiddenError("email address not verified")
    return identity


async def get_admin(identity: Identity = Depends(get_identity)) -> ProviderUser:
    return get_runtime().roles.require_admin(identity)


def require_capabilities(*capabilities: str) -> Callable:
    """Dependency factory: admin plus every named capability."""

    async def _dependency(identity: Identity = Depends(get_identity)) -> ProviderUser:
        return get_runtime().roles.require_capabilities(identity, capabilities)

    return _dependency


async def get_session(
    x_session_token: Optional[str] = Header(None, alias=SESSION_HEADER),
) -> SessionRecord:
    return await get_runtime().sessions.validate(x_session_token)


def _access_request_response(request: AccessRequest) -> AccessRequestResponse:
    return AccessRequestResponse(
        id=request.id,
        email=request.email,
        work_domain=request.work_domain,
        status=request.status,
        team_size=request.team_size,
        message=request.message,
        created_at=request.created_at,
        approved_at=request.approved_at,
        rejected_at=request.rejected_at,
        rejection_reason=request.rejection_reason,
    )


def _interview_response(interview: Interview) -> InterviewResponse:
    return InterviewResponse(
        id=interview.id,
        session_id=interview.session_id,
        candidate_name=interview.candidate_name,
        candidate_email=interview.candidate_email,
        interviewer_id=interview.interviewer_id,
        date=interview.date,
        status=interview.status,
        type=interview.type,
        level=interview.level,
        duration=interview.duration,
        started_at=interview.started_at,
        completed_at=interview.completed_at,
        actual_duration=interview.actual_duration,
        cancelled_at=interview.cancelled_at,
    )


def _session_response(handle: SessionHandle) -> SessionResponse:
    return SessionResponse(
        session_token=handle.session_token,
        user_id=handle.user_id,
        expires_at=handle.expires_at,
    )


def _user_response(user: ProviderUser, is_admin: bool) -> UserResponse:
    return UserResponse(
        uid=user.uid,
        email=user.email,
        email_verified=user.email_verified,
        display_name=user.display_name,
        role=user.claims.role.value,
        is_admin=is_admin,
    )


@router.post("/access-requests", response_model=Envelope, status_code=201, tags=["access"])
async def submit_access_request(body: AccessRequestCreate, request: Request, response: Response):
    """Public endpoint: ask for an account for a work email address."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"access_request:{_client_ip(request)}",
        runtime.settings.access_request_rate_limit_per_hour,
        3600,
        response=response,
    )
    created = await runtime.access_requests.submit(
        AccessRequestSubmission(
            email=body.email,
            work_domain=body.work_domain,
            team_size=body.team_size,
            message=body.message,
        )
    )
    return Envelope(status="ok", data=_access_request_response(created))


@router.get("/admin/access-requests", response_model=Envelope, tags=["admin"])
async def list_access_requests(
    status: Optional[str] = Query("pending"),
    admin: ProviderUser = Depends(get_admin),
):
    items = get_runtime().access_requests.list_requests(status or None)
    return Envelope(
        status="ok",
        data=AccessRequestListResponse(items=[_access_request_response(i) for i in items]),
    )


@router.post("/admin/access-requests/{request_id}/approve", response_model=Envelope, tags=["admin"])
async def approve_access_request(
    request_id: str = Path(..., max_length=128),
    admin: ProviderUser = Depends(get_admin),
):
    approved = await get_runtime().access_requests.approve(request_id, admin.uid)
    return Envelope(status="ok", data=_access_request_response(approved))


@router.post("/admin/access-requests/{request_id}/reject", response_model=Envelope, tags=["admin"])
async def reject_access_request(
    body: RejectRequest,
    request_id: str = Path(..., max_length=128),
    admin: ProviderUser = Depends(get_admin),
):
    rejected = await get_runtime().access_requests.reject(request_id, admin.uid, body.reason)
    return Envelope(status="ok", data=_access_request_response(rejected))


@router.get("/auth/registration/{token}", response_model=Envelope, tags=["auth"])
async def lookup_registration(
    request: Request,
    response: Response,
    token: str = Path(..., max_length=128),
):
    """Validate a registration link and return the email it was issued for."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"registration:{_client_ip(request)}",
        runtime.settings.registration_rate_limit_per_15m,
        15 * 60,
        response=response,
    )
    email = runtime.access_requests.lookup_invitation(token)
    return Envelope(status="ok", data=InvitationResponse(email=email))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"registration:{_client_ip(request)}",
        runtime.settings.registration_rate_limit_per_15m,
        15 * 60,
        response=response,
    )
    user = await runtime.access_requests.register(
        body.token, body.email, body.password, body.display_name
    )
    return Envelope(status="ok", data=_user_response(user, is_admin=False))


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(identity: Identity = Depends(get_identity)):
    runtime = get_runtime()
    try:
        user = runtime.provider.get_user(identity.uid)
    except ProviderUserNotFound as exc:
        raise NotFoundError("user not found") from exc
    except ProviderError as exc:
        raise ServerError("failed to load user") from exc
    return Envelope(status="ok", data=_user_response(user, runtime.roles.is_admin(user.uid)))


@router.post("/sessions", response_model=Envelope, status_code=201, tags=["sessions"])
async def create_session(
    body: DeviceInfoRequest,
    request: Request,
    identity: Identity = Depends(get_identity),
    user_agent: Optional[str] = Header(None),
):
    handle = await get_runtime().sessions.login(
        identity.uid,
        DeviceInfo(
            user_agent=user_agent,
            ip=_client_ip(request),
            location=body.location,
            device=body.device,
        ),
    )
    return Envelope(status="ok", data=_session_response(handle))


@router.get("/sessions/current", response_model=Envelope, tags=["sessions"])
async def current_session(
    x_session_token: Optional[str] = Header(None, alias=SESSION_HEADER),
):
    """Heartbeat: validates the session and records activity."""
    activity = await get_runtime().sessions.check_activity(x_session_token)
    return Envelope(status="ok", data=SessionActivityResponse(**asdict(activity)))


@router.post("/sessions/refresh", response_model=Envelope, tags=["sessions"])
async def refresh_session(
    x_session_token: Optional[str] = Header(None, alias=SESSION_HEADER),
):
    handle = await get_runtime().sessions.refresh(x_session_token)
    return Envelope(status="ok", data=_session_response(handle))


@router.post("/sessions/logout", response_model=Envelope, tags=["sessions"])
async def logout(
    x_session_token: Optional[str] = Header(None, alias=SESSION_HEADER),
):
    await get_runtime().sessions.logout(x_session_token)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/sessions/logout-all", response_model=Envelope, tags=["sessions"])
async def logout_all(identity: Identity = Depends(get_identity)):
    count = await get_runtime().sessions.terminate_all(identity.uid)
    return Envelope(status="ok", data={"terminated": count})


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(session: SessionRecord = Depends(get_session)):
    records = get_runtime().sessions.list_sessions(session.user_id)
    items = [
        SessionSummary(
            created_at=record.created_at,
            last_activity_at=record.last_activity_at,
            expires_at=record.expires_at,
            user_agent=record.device_info.user_agent,
            ip=record.device_info.ip,
            device=record.device_info.device,
            location=record.device_info.location,
            current=record.token == session.token,
        )
        for record in records
    ]
    return Envelope(status="ok", data=SessionListResponse(items=items))


@router.post("/interviews", response_model=Envelope, status_code=201, tags=["interviews"])
async def schedule_interview(
    body: InterviewCreate,
    identity: Identity = Depends(get_verified_identity),
):
    interview = await get_runtime().interviews.schedule(
        identity,
        InterviewRequest(
            candidate_name=body.candidate_name,
            candidate_email=body.candidate_email,
            date=body.date,
            type=body.type,
            level=body.level,
            duration=body.duration,
        ),
    )
    return Envelope(status="ok", data=_interview_response(interview))


@router.get("/interviews", response_model=Envelope, tags=["interviews"])
async def list_interviews(
    status: Optional[str] = Query(None),
    identity: Identity = Depends(get_verified_identity),
):
    items = get_runtime().interviews.list_for_interviewer(identity.uid, status)
    return Envelope(
        status="ok",
        data=InterviewListResponse(items=[_interview_response(i) for i in items]),
    )


@router.post("/interviews/{interview_id}/access", response_model=Envelope, tags=["interviews"])
async def access_interview(
    interview_id: str = Path(..., max_length=128),
    identity: Identity = Depends(get_identity),
):
    """Check the access window and participation without changing status."""
    access = get_runtime().gate.authorize(identity, interview_id)
    return Envelope(
        status="ok",
        data=InterviewAccessResponse(
            access_type=access.access_type, interview=_interview_response(access.interview)
        ),
    )


@router.post("/interviews/{interview_id}/start", response_model=Envelope, tags=["interviews"])
async def start_interview(
    interview_id: str = Path(..., max_length=128),
    identity: Identity = Depends(get_identity),
):
    access = get_runtime().interviews.start(identity, interview_id)
    return Envelope(
        status="ok",
        data=InterviewAccessResponse(
            access_type=access.access_type, interview=_interview_response(access.interview)
        ),
    )


@router.post("/interviews/{interview_id}/cancel", response_model=Envelope, tags=["interviews"])
async def cancel_interview(
    interview_id: str = Path(..., max_length=128),
    identity: Identity = Depends(get_verified_identity),
):
    interview = await get_runtime().interviews.cancel(identity, interview_id)
    return Envelope(status="ok", data=_interview_response(interview))


@router.post("/interviews/{interview_id}/complete", response_model=Envelope, tags=["interviews"])
async def complete_interview(
    interview_id: str = Path(..., max_length=128),
    identity: Identity = Depends(get_identity),
):
    interview = await get_runtime().interviews.complete(identity, interview_id)
    return Envelope(status="ok", data=_interview_response(interview))


@router.get("/public/interviews/{session_id}", response_model=Envelope, tags=["interviews"])
async def public_interview(session_id: str = Path(..., max_length=32)):
    details = get_runtime().interviews.public_details(session_id)
    return Envelope(status="ok", data=PublicInterviewResponse(**details))


@router.get("/admin/users/{uid}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    uid: str = Path(..., max_length=128),
    admin: ProviderUser = Depends(get_admin),
):
    runtime = get_runtime()
    try:
        user = runtime.provider.get_user(uid)
    except ProviderUserNotFound as exc:
        raise NotFoundError("user not found") from exc
    except ProviderError as exc:
        raise ServerError("failed to load user") from exc
    return Envelope(status="ok", data=_user_response(user, runtime.roles.is_admin(uid)))


@router.put("/admin/users/{uid}/role", response_model=Envelope, tags=["admin"])
async def admin_update_role(
    body: RoleUpdateRequest,
    uid: str = Path(..., max_length=128),
    admin: ProviderUser = Depends(require_capabilities("manage_users")),
):
    runtime = get_runtime()
    runtime.roles.assign_role(uid, Role(body.role))
    logger.info("user_role_updated", user_id=uid, role=body.role, admin_id=admin.uid)
    user = runtime.provider.get_user(uid)
    return Envelope(status="ok", data=_user_response(user, runtime.roles.is_admin(uid)))


@router.get("/admin/sessions/analytics", response_model=Envelope, tags=["admin"])
async def session_analytics(admin: ProviderUser = Depends(get_admin)):
    return Envelope(
        status="ok", data=SessionAnalyticsResponse(**get_runtime().sessions.analytics())
    )


@router.post("/admin/maintenance/sweep", response_model=Envelope, tags=["admin"])
async def run_sweep(admin: ProviderUser = Depends(get_admin)):
    result = await get_runtime().sessions.sweep_expired()
    return Envelope(status="ok", data=SweepResponse(**asdict(result)))
