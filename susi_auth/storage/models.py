from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Authorization tier; wire values are the lowercase strings."""

    USER = "user"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown role '{value}'") from None


class UserStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"

    @classmethod
    def parse(cls, value: Any) -> "UserStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"unknown status '{value}'") from None


PERM_USER_CREATE = "user:create"
PERM_USER_READ = "user:read"
PERM_USER_UPDATE = "user:update"
PERM_USER_DELETE = "user:delete"
PERM_ADMIN_CREATE = "admin:create"
PERM_ADMIN_READ = "admin:read"
PERM_ADMIN_UPDATE = "admin:update"
PERM_ADMIN_DELETE = "admin:delete"
PERM_SYSTEM_MANAGE = "system:manage"
PERM_PROFILE_READ = "profile:read"
PERM_PROFILE_UPDATE = "profile:update"

_USER_MANAGEMENT = (PERM_USER_CREATE, PERM_USER_READ, PERM_USER_UPDATE, PERM_USER_DELETE)
_ADMIN_MANAGEMENT = (
    PERM_ADMIN_CREATE,
    PERM_ADMIN_READ,
    PERM_ADMIN_UPDATE,
    PERM_ADMIN_DELETE,
)

# Permissions are derived from the role on every read and never persisted.
ROLE_PERMISSIONS: Dict[Role, tuple[str, ...]] = {
    Role.SUPER_ADMIN: _USER_MANAGEMENT + _ADMIN_MANAGEMENT + (PERM_SYSTEM_MANAGE,),
    Role.ADMIN: _USER_MANAGEMENT,
    Role.USER: (PERM_PROFILE_READ, PERM_PROFILE_UPDATE),
}

ALL_PERMISSIONS: FrozenSet[str] = frozenset(
    perm for perms in ROLE_PERMISSIONS.values() for perm in perms
)


def permissions_for(role: Role) -> List[str]:
    return list(ROLE_PERMISSIONS[Role.parse(role)])


def role_satisfies(role: Role, required: Role) -> bool:
    """Whether ``role`` may use a surface restricted to ``required``.

    ``user`` is satisfied by anyone, ``admin`` by admins and super admins,
    ``super_admin`` only by super admins.
    """
    role = Role.parse(role)
    required = Role.parse(required)
    if required is Role.USER:
        return True
    if required is Role.ADMIN:
        return role in (Role.ADMIN, Role.SUPER_ADMIN)
    return role is Role.SUPER_ADMIN


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str = field(default="", repr=False)
    phone: str = ""
    totp_secret: str = field(default="", repr=False)
    role: Role = Role.USER
    status: UserStatus = UserStatus.ACTIVE
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None

    def is_admin(self) -> bool:
        return self.role in (Role.ADMIN, Role.SUPER_ADMIN)

    def is_super_admin(self) -> bool:
        return self.role is Role.SUPER_ADMIN

    def is_active(self) -> bool:
        return self.status is UserStatus.ACTIVE

    def can_access_admin_panel(self) -> bool:
        return self.is_admin() and self.is_active()

    def permissions(self) -> List[str]:
        return permissions_for(self.role)

    def has_permission(self, permission: str) -> bool:
        return permission in ROLE_PERMISSIONS[self.role]


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token: str = field(repr=False)
    expires_at: datetime
    revoked: bool = False
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, user_id: str, token: str, expires_at: datetime) -> "RefreshToken":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and (now or _utcnow()) < self.expires_at


@dataclass
class PasswordResetToken:
    id: str
    user_id: str
    token: str = field(repr=False)
    expires_at: datetime
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, user_id: str, token: str, expires_at: datetime) -> "PasswordResetToken":
        now = _utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at
