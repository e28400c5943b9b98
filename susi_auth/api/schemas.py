from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "​‌‍﻿"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable machine-readable code."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name is required")
    if len(cleaned) > 100:
        raise ValueError("name must be at most 100 characters")
    return cleaned


class RegisterRequest(BaseModel):
    """Public self-registration; the role is always ``user``."""

    name: str = Field(..., max_length=256)
    email: str
    password: str
    phone: str = Field(default="", max_length=32)

    @field_validator("name")
    @classmethod
    def _validate_register_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_register_password(cls, value: str) -> str:
        return _validate_password(value)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., max_length=128)
    totp_code: Optional[str] = Field(default=None, max_length=10)
    expected_role: Optional[Literal["user", "admin", "super_admin"]] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class ValidateTokenRequest(BaseModel):
    access_token: Optional[str] = Field(default=None, max_length=4096)
    required_permissions: List[str] = Field(default_factory=list, max_length=32)


class LogoutRequest(BaseModel):
    refresh_token: str = Field(..., max_length=2048)


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password(value)


class AdminCreateRequest(BaseModel):
    name: str = Field(..., max_length=256)
    email: str
    password: str
    phone: str = Field(default="", max_length=32)
    role: Literal["admin", "super_admin"] = "admin"

    @field_validator("name")
    @classmethod
    def _validate_admin_name(cls, value: str) -> str:
        return _validate_name(value)

    @field_validator("email")
    @classmethod
    def _validate_admin_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_admin_password(cls, value: str) -> str:
        return _validate_password(value)


class UpdateUserRoleRequest(BaseModel):
    role: Literal["user", "admin", "super_admin"]


class UpdateUserStatusRequest(BaseModel):
    status: Literal["active", "inactive", "suspended"]
    reason: str = Field(default="", max_length=500)


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    phone: str = ""
    role: str
    status: str
    permissions: List[str] = Field(default_factory=list)
    last_login: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None
    updated_by: Optional[str] = None


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class TOTPEnrollmentResponse(BaseModel):
    secret: str
    provisioning_uri: str


class AuthResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class RegisterResponse(AuthResponse):
    totp: TOTPEnrollmentResponse


class RefreshResponse(BaseModel):
    tokens: TokenResponse


class ValidateTokenResponse(BaseModel):
    valid: bool
    user: UserResponse
    permissions: List[str]
    expires_at: datetime


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class UserListResponse(BaseModel):
    items: List[UserResponse]
    pagination: PaginationResponse


class PasswordResetAcceptedResponse(BaseModel):
    status: str = "sent"
    expires_at: datetime
