from __future__ import annotations

from typing import Callable, Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response

from susi_auth.api.schemas import (
    AdminCreateRequest,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PaginationResponse,
    PasswordResetAcceptedResponse,
    PasswordResetConfirm,
    PasswordResetRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    TokenRefreshRequest,
    TokenResponse,
    TOTPEnrollmentResponse,
    UpdateUserRoleRequest,
    UpdateUserStatusRequest,
    UserListResponse,
    UserResponse,
    ValidateTokenRequest,
    ValidateTokenResponse,
)
from susi_auth.service.auth import TokenPair, TokenValidation
from susi_auth.service.errors import InvalidTokenError
from susi_auth.service.runtime import check_rate_limit, get_runtime
from susi_auth.storage.models import PERM_ADMIN_CREATE, PERM_USER_READ, PERM_USER_UPDATE, User

router = APIRouter(prefix="/v1")

RATE_WINDOW_SECONDS = 60


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int = RATE_WINDOW_SECONDS, *, response: Optional[Response] = None
) -> int:
    """Consume one token from ``key`` or raise a 429.

    Returns the remaining budget and, when ``response`` is given, mirrors it
    in ``X-RateLimit-*`` headers.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
    if not allowed:
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            headers={"Retry-After": str(max(1, reset_seconds))},
        )
    return remaining


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(authorization: Optional[str] = Header(None)) -> TokenValidation:
    token = _bearer_token(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    return await get_runtime().auth.validate_token(token)


def require_permission(*permissions: str) -> Callable:
    """Dependency factory: the caller's current role must grant every permission."""

    async def _dependency(authorization: Optional[str] = Header(None)) -> TokenValidation:
        token = _bearer_token(authorization)
        if not token:
            raise _http_error("unauthorized", "missing bearer token", status_code=401)
        return await get_runtime().auth.validate_token(token, permissions)

    return _dependency


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        phone=user.phone,
        role=user.role.value,
        status=user.status.value,
        permissions=user.permissions(),
        last_login=user.last_login,
        created_at=user.created_at,
        updated_at=user.updated_at,
        created_by=user.created_by,
        updated_by=user.updated_by,
    )


def _tokens_to_response(tokens: TokenPair) -> TokenResponse:
    return TokenResponse(**tokens.as_dict())


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create a user account and open a session for it.

    The TOTP shared secret is returned once, here, for enrollment in an
    authenticator app.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"signup:{body.email}", runtime.settings.signup_rate_limit_per_minute
    )
    result = await runtime.auth.register_and_login(
        body.name, body.email, body.password, body.phone
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=_user_to_response(result.user),
            tokens=_tokens_to_response(result.tokens),
            totp=TOTPEnrollmentResponse(
                secret=result.totp_secret, provisioning_uri=result.provisioning_uri
            ),
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        totp_code=body.totp_code,
        expected_role=body.expected_role,
    )
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=_user_to_response(result.user), tokens=_tokens_to_response(result.tokens)
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=RefreshResponse(tokens=_tokens_to_response(tokens)))


@router.post("/auth/validate", response_model=Envelope, tags=["auth"])
async def validate_token(
    body: ValidateTokenRequest, authorization: Optional[str] = Header(None)
):
    """Check an access token and report the caller's current permissions.

    The token is taken from the body, falling back to the bearer header.
    """
    token = body.access_token or _bearer_token(authorization)
    if not token:
        raise InvalidTokenError("missing access token")
    runtime = get_runtime()
    result = await runtime.auth.validate_token(token, body.required_permissions)
    return Envelope(
        status="ok",
        data=ValidateTokenResponse(
            valid=result.valid,
            user=_user_to_response(result.user),
            permissions=result.permissions,
            expires_at=result.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest):
    runtime = get_runtime()
    await runtime.auth.logout(body.refresh_token)
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime, f"reset:{body.email}", runtime.settings.reset_rate_limit_per_minute
    )
    # the token is delivered out of band through the PasswordResetRequested event
    ticket = await runtime.auth.forgot_password(body.email)
    return Envelope(status="ok", data=PasswordResetAcceptedResponse(expires_at=ticket.expires_at))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data={"reset": True})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: TokenValidation = Depends(get_principal)):
    return Envelope(status="ok", data=_user_to_response(principal.user))


@router.post("/admin/admins", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_admin(
    body: AdminCreateRequest,
    principal: TokenValidation = Depends(require_permission(PERM_ADMIN_CREATE)),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:create_admin:{principal.user.id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    admin = await runtime.auth.create_admin(
        principal.user.id, body.name, body.email, body.password, body.phone, body.role
    )
    return Envelope(status="ok", data=_user_to_response(admin))


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    page: int = Query(1),
    limit: Optional[int] = Query(None),
    role: Optional[Literal["user", "admin", "super_admin"]] = Query(None),
    status: Optional[Literal["active", "inactive", "suspended"]] = Query(None),
    principal: TokenValidation = Depends(require_permission(PERM_USER_READ)),
):
    """List accounts newest first; out-of-range paging falls back to defaults."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:read:{principal.user.id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    users, pagination = await runtime.auth.list_users(page, limit, role, status)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[_user_to_response(u) for u in users],
            pagination=PaginationResponse(
                page=pagination.page,
                limit=pagination.limit,
                total=pagination.total,
                total_pages=pagination.total_pages,
            ),
        ),
    )


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    user_id: str,
    body: UpdateUserRoleRequest,
    principal: TokenValidation = Depends(require_permission(PERM_USER_UPDATE)),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:set_role:{principal.user.id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    user = await runtime.auth.update_user_role(user_id, body.role, principal.user.id)
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def admin_set_status(
    user_id: str,
    body: UpdateUserStatusRequest,
    principal: TokenValidation = Depends(require_permission(PERM_USER_UPDATE)),
):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"admin:set_status:{principal.user.id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    user = await runtime.auth.deactivate_user(
        user_id, body.status, body.reason, principal.user.id
    )
    return Envelope(status="ok", data=_user_to_response(user))
