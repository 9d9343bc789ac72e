from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from authmail.api.schemas import (
    ChangePasswordRequest,
    EmailRequest,
    Envelope,
    FailedMailJobResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
    VerifyEmailRequest,
)
from authmail.logging import get_logger, sanitize_error_message
from authmail.service.auth import AuthContext, extract_bearer
from authmail.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    UserNotFound,
)
from authmail.service.runtime import check_rate_limit, get_runtime
from authmail.storage.models import UserRole

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

AUTH_RATE_LIMIT_WINDOW_SECONDS = 60


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise RateLimitedError once ``key`` exceeds ``limit`` per window."""
    allowed, remaining, reset_after = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, retry_after=reset_after)
        raise RateLimitedError(detail={"retry_after": reset_after})


async def _enforce_auth_rate_limit(request: Request, action: str, response: Response) -> None:
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"auth:{action}:{_client_ip(request) or 'unknown'}",
        runtime.settings.auth_rate_limit_per_minute,
        AUTH_RATE_LIMIT_WINDOW_SECONDS,
        response=response,
    )


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("missing bearer token")
    runtime = get_runtime()
    return await runtime.auth.authenticate(token)


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != UserRole.ADMIN.value:
        raise ForbiddenError("admin access required")
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    await _enforce_auth_rate_limit(request, "register", response)
    runtime = get_runtime()
    result = await runtime.auth.register(
        body.email,
        body.password,
        username=body.username,
        first_name=body.first_name,
        last_name=body.last_name,
        phone=body.phone,
    )
    return Envelope(status="ok", data=result)


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, request: Request, response: Response):
    await _enforce_auth_rate_limit(request, "verify-email", response)
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.auth.verify_email(body.email, body.code))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: EmailRequest, request: Request, response: Response):
    await _enforce_auth_rate_limit(request, "resend-verification", response)
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.auth.resend_verification(body.email))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    await _enforce_auth_rate_limit(request, "login", response)
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email, body.password, ip=_client_ip(request), user_agent=user_agent
    )
    payload = LoginResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        user=UserResponse(**result.user.public_view()),
    )
    return Envelope(status="ok", data=payload.model_dump())


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: RefreshRequest, request: Request, response: Response):
    await _enforce_auth_rate_limit(request, "refresh", response)
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token, ip=_client_ip(request))
    return Envelope(status="ok", data=TokenResponse(**tokens).model_dump())


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token, ip=_client_ip(request))
    return Envelope(status="ok", data={"message": "auth.logout.success"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data={"message": "auth.logout.all", "sessions_revoked": revoked})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions = [SessionResponse(**s) for s in await runtime.auth.list_sessions(principal.user_id)]
    payload = SessionListResponse(sessions=sessions, count=len(sessions))
    return Envelope(status="ok", data=payload.model_dump())


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str, request: Request, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, session_id, ip=_client_ip(request))
    return Envelope(status="ok", data={"message": "session.revoked", "id": session_id})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request, response: Response):
    await _enforce_auth_rate_limit(request, "forgot-password", response)
    runtime = get_runtime()
    return Envelope(status="ok", data=await runtime.auth.forgot_password(body.email))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, request: Request, response: Response):
    await _enforce_auth_rate_limit(request, "reset-password", response)
    runtime = get_runtime()
    result = await runtime.auth.reset_password(body.email, body.code, body.new_password)
    return Envelope(status="ok", data=result)


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=result)


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.find_user_by_id(principal.user_id)
    if not user:
        raise UserNotFound()
    return Envelope(status="ok", data=UserResponse(**user.public_view()).model_dump())


@router.get("/admin/mail/failed", response_model=Envelope, tags=["admin"])
async def list_failed_mail(
    limit: int = Query(default=50, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    jobs = [
        FailedMailJobResponse(
            id=job.id,
            to=job.to,
            subject=job.subject,
            template=job.template,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            last_error=sanitize_error_message(job.last_error) if job.last_error else None,
            failed_at=job.failed_at.isoformat() if job.failed_at else None,
        ).model_dump()
        for job in runtime.mail_queue.list_failed(limit=limit)
    ]
    return Envelope(status="ok", data={"jobs": jobs, "counts": runtime.mail_queue.counts()})
