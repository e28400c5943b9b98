from __future__ import annotations

import asyncio
import math
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional, Protocol, Tuple, TypeVar

from susi_auth.config import Settings
from susi_auth.logging import get_logger, sanitize_error_message
from susi_auth.service.errors import (
    AccountNotActiveError,
    DuplicateEmailError,
    ForbiddenError,
    InsufficientPrivilegeError,
    InternalError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidRefreshTokenError,
    InvalidTOTPError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    TokenExpiredError,
    UnavailableError,
    ValidationError,
)
from susi_auth.service.events import EventPublisher, EventType
from susi_auth.service.passwords import CredentialHasher, HashingError
from susi_auth.service.tokens import (
    SigningKey,
    TokenError,
    TokenExpired,
    TokenSigner,
)
from susi_auth.service.totp import TOTPManager
from susi_auth.storage.errors import ConstraintViolation, StoreUnavailable
from susi_auth.storage.models import (
    PasswordResetToken,
    RefreshToken,
    Role,
    User,
    UserStatus,
    permissions_for,
    role_satisfies,
)

logger = get_logger(__name__)

T = TypeVar("T")

EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_NAME_LENGTH = 100
MAX_PAGE_LIMIT = 100
DEFAULT_PAGE_LIMIT = 10

_INVALID_CREDENTIALS = "invalid email or password"


class AuthStore(Protocol):
    def create_user(
        self,
        *,
        email: str,
        name: str,
        password_hash: str,
        phone: str = "",
        totp_secret: str = "",
        role: Role = Role.USER,
        status: UserStatus = UserStatus.ACTIVE,
        created_by: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
    ) -> Tuple[List[User], int]: ...

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
        updated_by: Optional[str] = None,
    ) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> bool: ...

    def set_last_login(self, user_id: str, at: datetime) -> None: ...

    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken: ...

    def rotate_refresh_token(
        self, old_token: str, new_token: str, expires_at: datetime, *, now: datetime
    ) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> bool: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken: ...

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]: ...

    def delete_password_reset_token(self, token: str) -> bool: ...

    def purge_expired_tokens(self, now: datetime) -> int: ...


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "access_expires_at": self.access_expires_at,
            "refresh_expires_at": self.refresh_expires_at,
        }


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


@dataclass
class RegistrationResult:
    user: User
    totp_secret: str = field(repr=False)
    provisioning_uri: str = field(repr=False)
    tokens: Optional[TokenPair] = None


@dataclass
class TokenValidation:
    valid: bool
    user: User
    permissions: List[str]
    expires_at: datetime


@dataclass
class Pagination:
    page: int
    limit: int
    total: int
    total_pages: int


@dataclass
class PasswordResetTicket:
    token: str = field(repr=False)
    expires_at: datetime


def normalize_page(
    page: Optional[int],
    limit: Optional[int],
    *,
    default: int = DEFAULT_PAGE_LIMIT,
    maximum: int = MAX_PAGE_LIMIT,
) -> Tuple[int, int]:
    """Clamp paging input: page below 1 becomes 1, limit outside [1, maximum] becomes default."""
    page = page if page and page >= 1 else 1
    if not limit or limit < 1 or limit > maximum:
        limit = default
    return page, limit


class AuthService:
    """Account registration, login and session lifecycle over a user/token store.

    All store access goes through ``_store`` which moves the blocking call to
    a worker thread and bounds it by ``store_timeout_seconds``. Password
    hashing also runs off the event loop and never under a lock.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        signer: Optional[TokenSigner] = None,
        hasher: Optional[CredentialHasher] = None,
        totp: Optional[TOTPManager] = None,
        events: Optional[EventPublisher] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.signer = signer or TokenSigner(
            SigningKey.from_secret(settings.jwt_secret),
            issuer=settings.jwt_issuer,
            leeway_seconds=settings.clock_skew_leeway_seconds,
        )
        self.hasher = hasher or CredentialHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
        )
        self.totp = totp or TOTPManager(settings.totp_issuer)
        self.events = events or EventPublisher(
            channel=settings.events_channel,
            timeout=settings.events_publish_timeout_seconds,
        )
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _store(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.settings.store_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            self.logger.warning(
                "store_call_timeout",
                operation=operation,
                timeout_seconds=self.settings.store_timeout_seconds,
            )
            raise UnavailableError("service temporarily unavailable") from exc
        except StoreUnavailable as exc:
            self.logger.warning("store_unavailable", operation=operation, reason=exc.reason)
            raise UnavailableError("service temporarily unavailable") from exc
        except (ConstraintViolation, ServiceError):
            raise
        except Exception as exc:
            self.logger.error(
                "store_call_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise InternalError("internal error") from exc

    async def _hash_password(self, password: str) -> str:
        try:
            return await asyncio.to_thread(self.hasher.hash, password)
        except HashingError as exc:
            raise InternalError("internal error") from exc

    async def _verify_password(self, digest: str, password: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, digest, password)

    # validation
    @staticmethod
    def _validate_name(name: str) -> str:
        cleaned = (name or "").strip()
        if not cleaned:
            raise ValidationError("name is required", detail={"field": "name"})
        if len(cleaned) > MAX_NAME_LENGTH:
            raise ValidationError(
                f"name must be at most {MAX_NAME_LENGTH} characters",
                detail={"field": "name"},
            )
        return cleaned

    @staticmethod
    def _validate_email(email: str) -> str:
        cleaned = (email or "").strip().lower()
        if not cleaned or not EMAIL_PATTERN.match(cleaned):
            raise ValidationError("invalid email address", detail={"field": "email"})
        return cleaned

    @staticmethod
    def _validate_password(password: str) -> str:
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        if len(password) > MAX_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at most {MAX_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )
        return password

    @staticmethod
    def _parse_role(role: Any) -> Role:
        try:
            return Role.parse(role)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "role"}) from exc

    @staticmethod
    def _parse_status(status: Any) -> UserStatus:
        try:
            return UserStatus.parse(status)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "status"}) from exc

    async def _require_super_admin(self, actor_id: str, action: str) -> User:
        actor = await self._store("get_user", self.store.get_user, actor_id)
        if not actor or not actor.is_active() or not actor.is_super_admin():
            self.logger.warning("privileged_action_denied", actor_id=actor_id, action=action)
            raise InsufficientPrivilegeError("super admin privileges required")
        return actor

    # registration
    async def register(
        self,
        name: str,
        email: str,
        password: str,
        phone: str = "",
        role: Any = Role.USER,
        *,
        created_by: Optional[str] = None,
    ) -> RegistrationResult:
        name = self._validate_name(name)
        email = self._validate_email(email)
        self._validate_password(password)
        role = self._parse_role(role)

        existing = await self._store("get_user_by_email", self.store.get_user_by_email, email)
        if existing:
            raise DuplicateEmailError("email already exists", detail={"field": "email"})

        totp_secret, provisioning_uri = self.totp.generate_secret(email)
        password_hash = await self._hash_password(password)
        try:
            user = await self._store(
                "create_user",
                self.store.create_user,
                email=email,
                name=name,
                password_hash=password_hash,
                phone=(phone or "").strip(),
                totp_secret=totp_secret,
                role=role,
                status=UserStatus.ACTIVE,
                created_by=created_by,
            )
        except ConstraintViolation as exc:
            raise DuplicateEmailError("email already exists", detail={"field": "email"}) from exc

        self.logger.info("user_registered", user_id=user.id, role=user.role.value)
        await self.events.publish(
            EventType.USER_REGISTERED,
            {"user_id": user.id, "role": user.role.value, "created_by": created_by},
        )
        return RegistrationResult(
            user=user, totp_secret=totp_secret, provisioning_uri=provisioning_uri
        )

    async def register_and_login(
        self, name: str, email: str, password: str, phone: str = ""
    ) -> RegistrationResult:
        """Register a plain user and open a session for them straight away.

        The one-time code check is skipped because the caller has only just
        received the shared secret.
        """
        result = await self.register(name, email, password, phone)
        result.tokens = await self._issue_session(result.user)
        return result

    # sessions
    async def _issue_session(self, user: User) -> TokenPair:
        now = self._now()
        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_ttl = timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        access_token = self.signer.issue(user.id, access_ttl, now=now.timestamp())
        refresh_token = secrets.token_urlsafe(32)
        refresh_expires_at = now + refresh_ttl
        try:
            await self._store(
                "create_refresh_token",
                self.store.create_refresh_token,
                user.id,
                refresh_token,
                refresh_expires_at,
            )
            await self._store("set_last_login", self.store.set_last_login, user.id, now)
        except ConstraintViolation as exc:
            self.logger.error("session_issue_rejected", user_id=user.id)
            raise InternalError("internal error") from exc
        user.last_login = now
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=now + access_ttl,
            refresh_expires_at=refresh_expires_at,
        )

    async def login(
        self,
        email: str,
        password: str,
        totp_code: Optional[str] = None,
        expected_role: Optional[Any] = None,
    ) -> LoginResult:
        """Authenticate by email and password and open a session.

        Checks run in a fixed order and stop at the first failure; an unknown
        email and a wrong password produce the same error.
        """
        normalized = (email or "").strip().lower()
        user = await self._store("get_user_by_email", self.store.get_user_by_email, normalized)
        if not user:
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if not user.is_active():
            self.logger.info("login_failed", reason="not_active", user_id=user.id)
            raise AccountNotActiveError("account is not active")
        if not await self._verify_password(user.password_hash, password or ""):
            self.logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError(_INVALID_CREDENTIALS)
        if self.settings.require_totp and not self.totp.validate_code(
            totp_code or "", user.totp_secret
        ):
            self.logger.info("login_failed", reason="bad_totp", user_id=user.id)
            raise InvalidTOTPError("invalid one-time code")
        if expected_role is not None:
            required = self._parse_role(expected_role)
            if not role_satisfies(user.role, required):
                self.logger.info(
                    "login_failed",
                    reason="insufficient_role",
                    user_id=user.id,
                    required_role=required.value,
                )
                raise InsufficientPrivilegeError("insufficient privileges for this login")

        await self._maybe_rehash(user, password)
        tokens = await self._issue_session(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return LoginResult(user=user, tokens=tokens)

    async def _maybe_rehash(self, user: User, password: str) -> None:
        if not self.hasher.needs_rehash(user.password_hash):
            return
        try:
            new_hash = await self._hash_password(password)
            await self._store("set_password_hash", self.store.set_password_hash, user.id, new_hash)
        except ServiceError as exc:
            # the login itself already succeeded; a stale work factor is not fatal
            self.logger.warning("password_rehash_failed", user_id=user.id, error=exc.message)
            return
        self.logger.info("password_rehashed", user_id=user.id)

    async def refresh(self, refresh_token: str) -> TokenPair:
        if not refresh_token:
            raise InvalidRefreshTokenError("invalid refresh token")
        now = self._now()
        new_refresh = secrets.token_urlsafe(32)
        refresh_expires_at = now + timedelta(minutes=self.settings.refresh_token_ttl_minutes)
        try:
            record = await self._store(
                "rotate_refresh_token",
                self.store.rotate_refresh_token,
                refresh_token,
                new_refresh,
                refresh_expires_at,
                now=now,
            )
        except ConstraintViolation as exc:
            raise InternalError("internal error") from exc
        if record is None:
            self.logger.info("refresh_rejected")
            raise InvalidRefreshTokenError("invalid refresh token")

        user = await self._store("get_user", self.store.get_user, record.user_id)
        if not user:
            await self._store("delete_refresh_token", self.store.delete_refresh_token, new_refresh)
            raise InvalidRefreshTokenError("invalid refresh token")
        if not user.is_active():
            await self._store("delete_refresh_token", self.store.delete_refresh_token, new_refresh)
            raise AccountNotActiveError("account is not active")

        access_ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        access_token = self.signer.issue(user.id, access_ttl, now=now.timestamp())
        self.logger.info("refresh_rotated", user_id=user.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh,
            access_expires_at=now + access_ttl,
            refresh_expires_at=refresh_expires_at,
        )

    async def validate_token(
        self, access_token: str, required_permissions: Iterable[str] = ()
    ) -> TokenValidation:
        """Verify an access token and re-resolve its user from the store.

        Role and status are read fresh on every call, so suspensions and
        role changes apply to tokens issued before them.
        """
        try:
            claims = self.signer.verify(access_token)
        except TokenExpired as exc:
            raise TokenExpiredError("token has expired") from exc
        except TokenError as exc:
            self.logger.info("token_rejected", reason=type(exc).__name__)
            raise InvalidTokenError("invalid token") from exc

        user = await self._store("get_user", self.store.get_user, claims["sub"])
        if not user:
            raise InvalidTokenError("invalid token")
        if not user.is_active():
            raise AccountNotActiveError("account is not active")

        permissions = permissions_for(user.role)
        missing = [perm for perm in required_permissions if perm not in permissions]
        if missing:
            raise ForbiddenError("insufficient permissions", detail={"missing": missing})
        return TokenValidation(
            valid=True,
            user=user,
            permissions=permissions,
            expires_at=datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc),
        )

    async def logout(self, refresh_token: str) -> None:
        if not refresh_token:
            return
        removed = await self._store(
            "delete_refresh_token", self.store.delete_refresh_token, refresh_token
        )
        self.logger.info("logout", revoked=removed)

    # password reset
    async def forgot_password(self, email: str) -> PasswordResetTicket:
        normalized = (email or "").strip().lower()
        user = await self._store("get_user_by_email", self.store.get_user_by_email, normalized)
        if not user:
            raise NotFoundError("email not found", detail={"field": "email"})
        token = secrets.token_urlsafe(32)
        expires_at = self._now() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        try:
            await self._store(
                "create_password_reset_token",
                self.store.create_password_reset_token,
                user.id,
                token,
                expires_at,
            )
        except ConstraintViolation as exc:
            self.logger.error("password_reset_rejected", user_id=user.id)
            raise InternalError("internal error") from exc
        self.logger.info("password_reset_requested", user_id=user.id)
        # the token only ever leaves the service through the delivery channel
        await self.events.publish(
            EventType.PASSWORD_RESET_REQUESTED,
            {
                "user_id": user.id,
                "email": user.email,
                "reset_token": token,
                "expires_at": expires_at.isoformat(),
            },
        )
        return PasswordResetTicket(token=token, expires_at=expires_at)

    async def reset_password(self, token: str, new_password: str) -> None:
        self._validate_password(new_password)
        if not token:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        record = await self._store(
            "get_password_reset_token", self.store.get_password_reset_token, token
        )
        if not record:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        if record.is_expired(self._now()):
            await self._store(
                "delete_password_reset_token", self.store.delete_password_reset_token, token
            )
            raise InvalidOrExpiredTokenError("invalid or expired reset token")

        password_hash = await self._hash_password(new_password)
        # deleting first makes the token single-use under concurrent resets
        claimed = await self._store(
            "delete_password_reset_token", self.store.delete_password_reset_token, token
        )
        if not claimed:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        updated = await self._store(
            "set_password_hash", self.store.set_password_hash, record.user_id, password_hash
        )
        if not updated:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        revoked = await self._store(
            "delete_user_refresh_tokens", self.store.delete_user_refresh_tokens, record.user_id
        )
        self.logger.info(
            "password_reset_completed", user_id=record.user_id, sessions_revoked=revoked
        )
        await self.events.publish(EventType.PASSWORD_RESET, {"user_id": record.user_id})

    # administration
    async def create_admin(
        self,
        creator_id: str,
        name: str,
        email: str,
        password: str,
        phone: str = "",
        role: Any = Role.ADMIN,
    ) -> User:
        creator = await self._require_super_admin(creator_id, "create_admin")
        role = self._parse_role(role)
        if role not in (Role.ADMIN, Role.SUPER_ADMIN):
            raise ValidationError("role must be admin or super_admin", detail={"field": "role"})
        if role is Role.SUPER_ADMIN and not creator.is_super_admin():
            raise InsufficientPrivilegeError("only super admins can create super admins")
        result = await self.register(name, email, password, phone, role, created_by=creator.id)
        await self.events.publish(
            EventType.ADMIN_CREATED,
            {"user_id": result.user.id, "role": role.value, "created_by": creator.id},
        )
        return result.user

    async def get_user(self, user_id: str) -> User:
        user = await self._store("get_user", self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def list_users(
        self,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
        role: Optional[Any] = None,
        status: Optional[Any] = None,
    ) -> Tuple[List[User], Pagination]:
        page, limit = normalize_page(
            page,
            limit,
            default=self.settings.default_page_size,
            maximum=self.settings.max_page_size,
        )
        role_filter = self._parse_role(role) if role else None
        status_filter = self._parse_status(status) if status else None
        users, total = await self._store(
            "list_users",
            self.store.list_users,
            offset=(page - 1) * limit,
            limit=limit,
            role=role_filter,
            status=status_filter,
        )
        return users, Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        )

    async def update_user_role(self, user_id: str, new_role: Any, updated_by: str) -> User:
        await self._require_super_admin(updated_by, "update_user_role")
        role = self._parse_role(new_role)
        target = await self._store("get_user", self.store.get_user, user_id)
        if not target:
            raise NotFoundError("user not found")
        if target.is_super_admin() and role is not Role.SUPER_ADMIN:
            raise InsufficientPrivilegeError("super admin accounts cannot be demoted")
        updated = await self._store(
            "update_user", self.store.update_user, user_id, role=role, updated_by=updated_by
        )
        if not updated:
            raise NotFoundError("user not found")
        self.logger.info(
            "user_role_changed",
            user_id=user_id,
            old_role=target.role.value,
            new_role=role.value,
            updated_by=updated_by,
        )
        await self.events.publish(
            EventType.USER_ROLE_CHANGED,
            {
                "user_id": user_id,
                "old_role": target.role.value,
                "new_role": role.value,
                "updated_by": updated_by,
            },
        )
        return updated

    async def deactivate_user(
        self, user_id: str, new_status: Any, reason: str, updated_by: str
    ) -> User:
        await self._require_super_admin(updated_by, "deactivate_user")
        status = self._parse_status(new_status)
        target = await self._store("get_user", self.store.get_user, user_id)
        if not target:
            raise NotFoundError("user not found")
        if target.is_super_admin() and status is not UserStatus.ACTIVE:
            raise InsufficientPrivilegeError("super admin accounts cannot be deactivated")
        updated = await self._store(
            "update_user", self.store.update_user, user_id, status=status, updated_by=updated_by
        )
        if not updated:
            raise NotFoundError("user not found")
        revoked = 0
        if status is not UserStatus.ACTIVE:
            revoked = await self._store(
                "delete_user_refresh_tokens", self.store.delete_user_refresh_tokens, user_id
            )
        self.logger.info(
            "user_status_changed",
            user_id=user_id,
            old_status=target.status.value,
            new_status=status.value,
            sessions_revoked=revoked,
            updated_by=updated_by,
        )
        await self.events.publish(
            EventType.USER_STATUS_CHANGED,
            {
                "user_id": user_id,
                "old_status": target.status.value,
                "new_status": status.value,
                "reason": reason,
                "updated_by": updated_by,
            },
        )
        return updated

    async def purge_expired_tokens(self) -> int:
        return await self._store(
            "purge_expired_tokens", self.store.purge_expired_tokens, self._now()
        )
