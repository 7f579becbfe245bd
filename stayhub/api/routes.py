from __future__ import annotations

from typing import AbstractSet, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response

from stayhub.api.schemas import (
    AccountListResponse,
    AccountResponse,
    AdminAccountUpdate,
    AuthResponse,
    EmailRequest,
    EmailSendRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenRevokeRequest,
)
from stayhub.config import get_settings
from stayhub.logging import get_logger
from stayhub.service.auth import AuthResult
from stayhub.service.authorization import AuthorizationGate, CallerIdentity, extract_bearer
from stayhub.service.email import EmailKind
from stayhub.service.errors import RateLimitedError
from stayhub.service.runtime import Runtime, check_rate_limit, get_runtime
from stayhub.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


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
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError if the bucket for ``key`` is empty
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "Too many requests, please try again later",
            detail={"retry_after": reset_seconds},
        )

    return info


def _client_key(request: Request, subject: Optional[str] = None) -> str:
    host = request.client.host if request.client else "unknown"
    if subject:
        return f"{host}:{subject.strip().lower()}"
    return host


def _request_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    return extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)


async def get_caller(
    request: Request, authorization: Optional[str] = Header(None)
) -> CallerIdentity:
    runtime = get_runtime()
    return await runtime.gate.authenticate(_request_token(request, authorization))


def require_roles(allowed_roles: AbstractSet[Role]):
    """Dependency factory admitting only callers whose role is in ``allowed_roles``."""

    async def _dependency(caller: CallerIdentity = Depends(get_caller)) -> CallerIdentity:
        return AuthorizationGate.require_role(caller, allowed_roles)

    return _dependency


get_admin = require_roles(frozenset({Role.ADMIN}))


def _apply_session_cookies(response: Response, result: AuthResult) -> None:
    settings = get_settings()
    response.set_cookie(
        ACCESS_COOKIE,
        result.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        result.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    secure = get_settings().cookie_secure
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=secure, samesite="lax")


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=AccountResponse(**result.account),
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
    )


def _message(text: str) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=text))


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a renter account and start a session.

    A verification link is mailed on a best-effort basis; a mail failure
    does not fail the registration.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If rate limit exceeded
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_key(request)}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.sessions.register(
        name=body.name,
        email=body.email,
        phone=body.phone,
        password=body.password,
        address=body.address.model_dump() if body.address else None,
    )
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        403: If the account is banned
        429: If rate limit exceeded for this client and email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_key(request, body.email)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.sessions.login(body.email, body.password)
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_payload(result))


@router.get("/auth/verify-email/{token}", response_model=Envelope, tags=["auth"])
async def verify_email(request: Request, token: str = Path(..., max_length=4096)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify:{_client_key(request)}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    account = await runtime.sessions.verify_email(token)
    return Envelope(
        status="ok",
        data={"message": "Email verified successfully", "user": AccountResponse(**account)},
    )


@router.post("/auth/send-verification-email", response_model=Envelope, tags=["auth"])
async def send_verification_email(
    request: Request, caller: CallerIdentity = Depends(get_caller)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify-mail:{caller.account_id}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    profile = runtime.sessions.get_profile(caller.account_id)
    await runtime.sessions.send_verification_email(profile["email"])
    return _message("Verification email sent")


@router.post("/auth/resend-verification-email", response_model=Envelope, tags=["auth"])
async def resend_verification_email(body: EmailRequest, request: Request):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify-mail:{_client_key(request, body.email)}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    await runtime.sessions.resend_verification_email(body.email)
    return _message("Verification email sent")


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: EmailRequest, request: Request):
    """Start a password reset.

    The answer is identical whether or not the email belongs to an account.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_key(request, body.email)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.sessions.forgot_password(body.email)
    return _message("If that email is registered, a password reset link has been sent")


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset-confirm:{_client_key(request)}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )
    await runtime.sessions.reset_password(body.token, body.new_password)
    _clear_session_cookies(response)
    return _message("Password has been reset")


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request, response: Response, body: Optional[TokenRefreshRequest] = None
):
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    result = await runtime.sessions.refresh(token)
    _apply_session_cookies(response, result)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, caller: CallerIdentity = Depends(get_caller)):
    runtime = get_runtime()
    await runtime.sessions.logout(caller.account_id, caller.token)
    _clear_session_cookies(response)
    return _message("Logged out successfully")


@router.post("/auth/revoke-token", response_model=Envelope, tags=["auth"])
async def revoke_token(
    response: Response,
    body: Optional[TokenRevokeRequest] = None,
    caller: CallerIdentity = Depends(get_caller),
):
    runtime = get_runtime()
    token = (body.token if body else None) or caller.token
    await runtime.sessions.revoke_token(token)
    _clear_session_cookies(response)
    return _message("Token revoked successfully")


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(caller: CallerIdentity = Depends(get_caller)):
    runtime = get_runtime()
    account = runtime.sessions.get_profile(caller.account_id)
    return Envelope(status="ok", data=AccountResponse(**account))


@router.put("/auth/profile", response_model=Envelope, tags=["auth"])
async def update_profile(
    body: ProfileUpdateRequest, caller: CallerIdentity = Depends(get_caller)
):
    runtime = get_runtime()
    account = runtime.sessions.update_profile(
        caller.account_id, body.model_dump(exclude_none=True)
    )
    return Envelope(status="ok", data=AccountResponse(**account))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    response: Response,
    caller: CallerIdentity = Depends(get_caller),
):
    runtime = get_runtime()
    await runtime.sessions.change_password(
        caller.account_id, body.new_password, current_password=body.old_password
    )
    _clear_session_cookies(response)
    return _message("Password changed successfully")


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    role: Optional[str] = Query(None, max_length=32),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    caller: CallerIdentity = Depends(get_admin),
):
    runtime = get_runtime()
    accounts = runtime.sessions.list_accounts(role=role, limit=limit, offset=offset)
    return Envelope(
        status="ok",
        data=AccountListResponse(
            items=[AccountResponse(**a) for a in accounts], limit=limit, offset=offset
        ),
    )


@router.get("/admin/users/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    account_id: str = Path(..., max_length=64),
    caller: CallerIdentity = Depends(get_admin),
):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=AccountResponse(**runtime.sessions.get_account(account_id))
    )


@router.patch("/admin/users/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_update_user(
    body: AdminAccountUpdate,
    account_id: str = Path(..., max_length=64),
    caller: CallerIdentity = Depends(get_admin),
):
    runtime = get_runtime()
    account = runtime.sessions.admin_update_account(
        account_id,
        is_banned=body.is_banned,
        is_verified=body.is_verified,
        role=body.role,
    )
    logger.info("admin_account_change", admin_id=caller.account_id, account_id=account_id)
    return Envelope(status="ok", data=AccountResponse(**account))


@router.delete("/admin/users/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    account_id: str = Path(..., max_length=64),
    caller: CallerIdentity = Depends(get_admin),
):
    runtime = get_runtime()
    if account_id == caller.account_id:
        raise _http_error("forbidden", "cannot delete your own account", status_code=403)
    runtime.sessions.delete_account(account_id)
    return _message("User deleted")


@router.post("/email/send", response_model=Envelope, tags=["email"])
async def send_email(
    body: EmailSendRequest, caller: CallerIdentity = Depends(get_admin)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mail:{caller.account_id}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    await runtime.sessions.send_templated_email(
        body.email, body.template_type, body.template_data
    )
    return _message("Email sent successfully")


@router.post("/email/test", response_model=Envelope, tags=["email"])
async def send_test_email(
    body: EmailRequest, caller: CallerIdentity = Depends(get_admin)
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"mail:{caller.account_id}",
        runtime.settings.verify_rate_limit_per_minute,
        60,
    )
    await runtime.sessions.send_templated_email(body.email, EmailKind.TEST.value)
    return _message("Test email sent successfully")
