"""Tests for the auth orchestrator.

Covers registration, login ordering, refresh rotation, token validation
against current user state, password reset, admin management and the
store timeout path.
"""

import asyncio
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from susi_auth.service.auth import AuthService
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
    TokenExpiredError,
    UnavailableError,
    ValidationError,
)
from susi_auth.service.events import EventPublisher
from susi_auth.storage.errors import ConstraintViolation, StoreUnavailable
from susi_auth.storage.memory import MemoryStore
from susi_auth.storage.models import PERM_USER_CREATE, Role, UserStatus


async def _register(service, name="alice", email="alice@x.com", password="password123", **kwargs):
    return await service.register(name, email, password, kwargs.pop("phone", "555-1111"), **kwargs)


async def _super_admin(service):
    result = await service.register(
        "root", "root@x.com", "rootpassword", role=Role.SUPER_ADMIN
    )
    return result.user


class _RecordingCache:
    def __init__(self):
        self.messages = []

    async def publish(self, channel, message):
        self.messages.append((channel, json.loads(message)))
        return 1


class TestRegister:
    async def test_register_creates_active_user_with_totp(self, auth_service, memory_store):
        result = await _register(auth_service)
        user = result.user
        assert user.status is UserStatus.ACTIVE
        assert user.role is Role.USER
        assert user.phone == "555-1111"
        assert result.totp_secret
        assert result.totp_secret != user.password_hash
        assert result.provisioning_uri.startswith("otpauth://totp/")
        assert memory_store.get_user(user.id).password_hash.startswith("$argon2id$")

    async def test_register_does_not_issue_tokens(self, auth_service, memory_store):
        result = await _register(auth_service)
        assert result.tokens is None
        assert memory_store.refresh_tokens == {}

    async def test_duplicate_email(self, auth_service):
        await _register(auth_service)
        with pytest.raises(DuplicateEmailError):
            await _register(auth_service, name="other", email="ALICE@x.com")

    @pytest.mark.parametrize(
        "name,email,password",
        [
            ("", "alice@x.com", "password123"),
            ("   ", "alice@x.com", "password123"),
            ("a" * 101, "alice@x.com", "password123"),
            ("alice", "", "password123"),
            ("alice", "not-an-email", "password123"),
            ("alice", "alice@x", "password123"),
            ("alice", "alice@x.com", "short"),
        ],
    )
    async def test_input_validation(self, auth_service, name, email, password):
        with pytest.raises(ValidationError):
            await auth_service.register(name, email, password)

    async def test_register_publishes_event(self, memory_store, settings, hasher):
        cache = _RecordingCache()
        service = AuthService(
            memory_store, settings, hasher=hasher, events=EventPublisher(cache, channel="auth")
        )
        result = await _register(service)
        channel, event = cache.messages[0]
        assert channel == "auth"
        assert event["type"] == "UserRegistered"
        assert event["payload"]["user_id"] == result.user.id
        assert "timestamp" in event

    async def test_register_and_login_returns_session(self, auth_service):
        result = await auth_service.register_and_login("alice", "alice@x.com", "password123")
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert result.user.last_login is not None


class TestLogin:
    async def test_wrong_then_right_password(self, auth_service, memory_store):
        user = (await _register(auth_service)).user

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@x.com", "wrongpassword")
        assert memory_store.get_user(user.id).last_login is None

        result = await auth_service.login("alice@x.com", "password123")
        assert result.tokens.access_token
        assert result.tokens.refresh_token
        assert result.tokens.refresh_expires_at > result.tokens.access_expires_at
        assert memory_store.get_user(user.id).last_login is not None

    async def test_unknown_email_matches_wrong_password(self, auth_service):
        await _register(auth_service)
        with pytest.raises(InvalidCredentialsError) as unknown:
            await auth_service.login("nobody@x.com", "password123")
        with pytest.raises(InvalidCredentialsError) as wrong:
            await auth_service.login("alice@x.com", "password999")
        assert unknown.value.message == wrong.value.message

    async def test_inactive_account_rejected(self, auth_service, memory_store):
        user = (await _register(auth_service)).user
        memory_store.update_user(user.id, status=UserStatus.SUSPENDED)
        with pytest.raises(AccountNotActiveError):
            await auth_service.login("alice@x.com", "password123")

    async def test_expected_role_not_satisfied(self, auth_service, memory_store):
        await _register(auth_service)
        with pytest.raises(InsufficientPrivilegeError):
            await auth_service.login("alice@x.com", "password123", expected_role="admin")
        assert memory_store.refresh_tokens == {}

    async def test_super_admin_satisfies_admin_surface(self, auth_service):
        await _super_admin(auth_service)
        result = await auth_service.login("root@x.com", "rootpassword", expected_role="admin")
        assert result.user.is_super_admin()

    async def test_required_totp(self, memory_store, settings, hasher):
        service = AuthService(
            memory_store, settings.model_copy(update={"require_totp": True}), hasher=hasher
        )
        registration = await _register(service)

        with pytest.raises(InvalidTOTPError):
            await service.login("alice@x.com", "password123")
        with pytest.raises(InvalidTOTPError):
            await service.login("alice@x.com", "password123", totp_code="000000x")
        # password is checked before the one-time code
        with pytest.raises(InvalidCredentialsError):
            await service.login("alice@x.com", "wrongpassword", totp_code="123456")

        code = service.totp.code_at(registration.totp_secret, time.time())
        result = await service.login("alice@x.com", "password123", totp_code=code)
        assert result.tokens.access_token


class TestRefresh:
    async def test_refresh_rotates_token(self, auth_service):
        await _register(auth_service)
        login = await auth_service.login("alice@x.com", "password123")
        pair = await auth_service.refresh(login.tokens.refresh_token)
        assert pair.refresh_token != login.tokens.refresh_token
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(login.tokens.refresh_token)
        again = await auth_service.refresh(pair.refresh_token)
        assert again.access_token

    async def test_concurrent_refresh_single_winner(self, auth_service):
        await _register(auth_service)
        login = await auth_service.login("alice@x.com", "password123")
        results = await asyncio.gather(
            auth_service.refresh(login.tokens.refresh_token),
            auth_service.refresh(login.tokens.refresh_token),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidRefreshTokenError)
        assert successes[0].refresh_token != login.tokens.refresh_token

    async def test_refresh_for_suspended_user(self, auth_service, memory_store):
        user = (await _register(auth_service)).user
        login = await auth_service.login("alice@x.com", "password123")
        memory_store.update_user(user.id, status=UserStatus.SUSPENDED)
        with pytest.raises(AccountNotActiveError):
            await auth_service.refresh(login.tokens.refresh_token)

    async def test_refresh_unknown_token(self, auth_service):
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh("not-a-token")
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh("")

    async def test_logout_is_idempotent(self, auth_service, memory_store):
        await _register(auth_service)
        login = await auth_service.login("alice@x.com", "password123")
        await auth_service.logout(login.tokens.refresh_token)
        await auth_service.logout(login.tokens.refresh_token)
        assert memory_store.refresh_tokens == {}
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(login.tokens.refresh_token)


class TestValidateToken:
    async def test_validation_is_idempotent(self, auth_service):
        await _register(auth_service)
        login = await auth_service.login("alice@x.com", "password123")
        first = await auth_service.validate_token(login.tokens.access_token)
        second = await auth_service.validate_token(login.tokens.access_token)
        assert first.valid and second.valid
        assert first.user.id == second.user.id
        assert first.permissions == second.permissions == ["profile:read", "profile:update"]

    async def test_suspension_applies_to_issued_tokens(self, auth_service):
        root = await _super_admin(auth_service)
        user = (await _register(auth_service)).user
        login = await auth_service.login("alice@x.com", "password123")

        await auth_service.deactivate_user(user.id, "suspended", "abuse", root.id)

        with pytest.raises(AccountNotActiveError):
            await auth_service.validate_token(login.tokens.access_token)
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(login.tokens.refresh_token)

    async def test_role_change_applies_to_issued_tokens(self, auth_service):
        root = await _super_admin(auth_service)
        user = (await _register(auth_service)).user
        login = await auth_service.login("alice@x.com", "password123")

        with pytest.raises(ForbiddenError) as exc:
            await auth_service.validate_token(login.tokens.access_token, [PERM_USER_CREATE])
        assert exc.value.detail["missing"] == [PERM_USER_CREATE]

        await auth_service.update_user_role(user.id, "admin", root.id)
        result = await auth_service.validate_token(login.tokens.access_token, [PERM_USER_CREATE])
        assert PERM_USER_CREATE in result.permissions

    async def test_expired_token(self, auth_service):
        user = (await _register(auth_service)).user
        token = auth_service.signer.issue(user.id, timedelta(minutes=1), now=time.time() - 3600)
        with pytest.raises(TokenExpiredError):
            await auth_service.validate_token(token)

    async def test_unknown_subject_and_garbage(self, auth_service):
        token = auth_service.signer.issue("ghost", timedelta(minutes=5))
        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token(token)
        with pytest.raises(InvalidTokenError):
            await auth_service.validate_token("garbage")


class TestPasswordReset:
    async def test_unknown_email_reports_not_found(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.forgot_password("nobody@x.com")

    async def test_reset_flow(self, auth_service, memory_store):
        await _register(auth_service)
        login = await auth_service.login("alice@x.com", "password123")
        ticket = await auth_service.forgot_password("alice@x.com")
        assert ticket.expires_at - datetime.now(timezone.utc) <= timedelta(hours=1)

        await auth_service.reset_password(ticket.token, "newpassword456")

        with pytest.raises(InvalidCredentialsError):
            await auth_service.login("alice@x.com", "password123")
        assert (await auth_service.login("alice@x.com", "newpassword456")).tokens.access_token
        # sessions opened with the old password are gone
        with pytest.raises(InvalidRefreshTokenError):
            await auth_service.refresh(login.tokens.refresh_token)
        # single use
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password(ticket.token, "anotherpassword")

    async def test_token_is_delivered_through_event(self, memory_store, settings, hasher):
        cache = _RecordingCache()
        service = AuthService(
            memory_store, settings, hasher=hasher, events=EventPublisher(cache, channel="auth")
        )
        user = (await _register(service)).user
        ticket = await service.forgot_password("ALICE@x.com")

        requested = [e for _, e in cache.messages if e["type"] == "PasswordResetRequested"]
        assert len(requested) == 1
        payload = requested[0]["payload"]
        assert payload["user_id"] == user.id
        assert payload["email"] == "alice@x.com"
        assert payload["reset_token"] == ticket.token
        assert memory_store.get_password_reset_token(payload["reset_token"]).user_id == user.id

    async def test_expired_reset_token(self, auth_service, memory_store):
        user = (await _register(auth_service)).user
        memory_store.create_password_reset_token(
            user.id, "expired-token", datetime.now(timezone.utc) - timedelta(minutes=1)
        )
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.reset_password("expired-token", "newpassword456")
        assert memory_store.get_password_reset_token("expired-token") is None
        assert (await auth_service.login("alice@x.com", "password123")).tokens

    async def test_short_new_password(self, auth_service):
        await _register(auth_service)
        ticket = await auth_service.forgot_password("alice@x.com")
        with pytest.raises(ValidationError):
            await auth_service.reset_password(ticket.token, "short")


class TestAdministration:
    async def test_super_admin_creates_admin(self, auth_service):
        root = await _super_admin(auth_service)
        admin = await auth_service.create_admin(
            root.id, "ops", "ops@x.com", "opspassword", "555-2222", "admin"
        )
        assert admin.role is Role.ADMIN
        assert admin.created_by == root.id

    async def test_admin_cannot_create_admin(self, auth_service, memory_store):
        root = await _super_admin(auth_service)
        admin = await auth_service.create_admin(root.id, "ops", "ops@x.com", "opspassword")
        with pytest.raises(InsufficientPrivilegeError):
            await auth_service.create_admin(admin.id, "x", "x@x.com", "xpassword1", role="super_admin")
        assert memory_store.get_user_by_email("x@x.com") is None

    async def test_create_admin_rejects_plain_role(self, auth_service):
        root = await _super_admin(auth_service)
        with pytest.raises(ValidationError):
            await auth_service.create_admin(root.id, "x", "x@x.com", "xpassword1", role="user")

    async def test_update_role_requires_super_admin(self, auth_service, memory_store):
        target = (await _register(auth_service)).user
        other = (await _register(auth_service, name="bob", email="bob@x.com")).user
        with pytest.raises(InsufficientPrivilegeError):
            await auth_service.update_user_role(target.id, "admin", other.id)
        assert memory_store.get_user(target.id).role is Role.USER

    async def test_update_role_sets_updated_by(self, auth_service):
        root = await _super_admin(auth_service)
        target = (await _register(auth_service)).user
        updated = await auth_service.update_user_role(target.id, "admin", root.id)
        assert updated.role is Role.ADMIN
        assert updated.updated_by == root.id

    async def test_update_role_unknown_target_and_role(self, auth_service):
        root = await _super_admin(auth_service)
        target = (await _register(auth_service)).user
        with pytest.raises(NotFoundError):
            await auth_service.update_user_role("missing", "admin", root.id)
        with pytest.raises(ValidationError):
            await auth_service.update_user_role(target.id, "owner", root.id)

    async def test_super_admin_cannot_be_deactivated(self, auth_service):
        root = await _super_admin(auth_service)
        other_root = await auth_service.create_admin(
            root.id, "root2", "root2@x.com", "rootpassword2", role="super_admin"
        )
        with pytest.raises(InsufficientPrivilegeError):
            await auth_service.deactivate_user(other_root.id, "inactive", "", root.id)
        with pytest.raises(InsufficientPrivilegeError):
            await auth_service.deactivate_user(root.id, "suspended", "", root.id)

    async def test_super_admin_cannot_be_demoted(self, auth_service, memory_store):
        root = await _super_admin(auth_service)
        other_root = await auth_service.create_admin(
            root.id, "root2", "root2@x.com", "rootpassword2", role="super_admin"
        )
        for role in ("user", "admin"):
            with pytest.raises(InsufficientPrivilegeError):
                await auth_service.update_user_role(other_root.id, role, root.id)
        assert memory_store.get_user(other_root.id).role is Role.SUPER_ADMIN
        # demote-then-suspend is closed as well
        with pytest.raises(InsufficientPrivilegeError):
            await auth_service.deactivate_user(other_root.id, "suspended", "", root.id)
        unchanged = await auth_service.update_user_role(other_root.id, "super_admin", root.id)
        assert unchanged.role is Role.SUPER_ADMIN

    async def test_reactivation(self, auth_service):
        root = await _super_admin(auth_service)
        user = (await _register(auth_service)).user
        await auth_service.deactivate_user(user.id, "inactive", "left", root.id)
        restored = await auth_service.deactivate_user(user.id, "active", "back", root.id)
        assert restored.status is UserStatus.ACTIVE
        assert (await auth_service.login("alice@x.com", "password123")).tokens

    async def test_list_users_clamps_paging(self, auth_service):
        for i in range(12):
            await _register(auth_service, name=f"u{i}", email=f"u{i}@x.com")
        users, pagination = await auth_service.list_users(page=0, limit=1000)
        assert pagination.page == 1
        assert pagination.limit == 10
        assert pagination.total == 12
        assert pagination.total_pages == 2
        assert len(users) == 10

        second, _ = await auth_service.list_users(page=2, limit=10)
        assert len(second) == 2

    async def test_list_users_honours_configured_page_sizes(self, memory_store, settings, hasher):
        service = AuthService(
            memory_store,
            settings.model_copy(update={"default_page_size": 5, "max_page_size": 20}),
            hasher=hasher,
        )
        for i in range(30):
            memory_store.create_user(email=f"u{i}@x.com", name=f"u{i}", password_hash="digest")

        users, pagination = await service.list_users(limit=50)
        assert pagination.limit == 5
        assert len(users) == 5
        assert pagination.total_pages == 6

        _, pagination = await service.list_users()
        assert pagination.limit == 5

        users, pagination = await service.list_users(limit=20)
        assert pagination.limit == 20
        assert len(users) == 20

    async def test_get_user(self, auth_service):
        user = (await _register(auth_service)).user
        assert (await auth_service.get_user(user.id)).email == "alice@x.com"
        with pytest.raises(NotFoundError):
            await auth_service.get_user("missing")

    async def test_purge_expired_tokens(self, auth_service, memory_store):
        user = (await _register(auth_service)).user
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        memory_store.create_refresh_token(user.id, "stale-refresh", past)
        memory_store.create_password_reset_token(user.id, "stale-reset", past)
        await auth_service.login("alice@x.com", "password123")
        assert await auth_service.purge_expired_tokens() == 2
        assert len(memory_store.refresh_tokens) == 1

    async def test_list_users_filters(self, auth_service):
        root = await _super_admin(auth_service)
        await _register(auth_service)
        admins, pagination = await auth_service.list_users(role="super_admin")
        assert [u.id for u in admins] == [root.id]
        assert pagination.total == 1


class _SlowStore(MemoryStore):
    def get_user_by_email(self, email):
        time.sleep(0.5)
        return super().get_user_by_email(email)


class _BrokenStore(MemoryStore):
    def get_user_by_email(self, email):
        raise RuntimeError("relation app_user does not exist")


class _UnreachableStore(MemoryStore):
    def get_user_by_email(self, email):
        raise StoreUnavailable("get_user_by_email", "connection pool exhausted")


class _OrphanedTokenStore(MemoryStore):
    """The user row vanished between lookup and token insert."""

    def create_refresh_token(self, user_id, token, expires_at):
        raise ConstraintViolation("insert violates foreign key app_user", {"user_id": user_id})

    def create_password_reset_token(self, user_id, token, expires_at):
        raise ConstraintViolation("insert violates foreign key app_user", {"user_id": user_id})


class TestStoreFailures:
    async def test_timeout_is_unavailable(self, cipher, settings, hasher):
        service = AuthService(
            _SlowStore(cipher=cipher),
            settings.model_copy(update={"store_timeout_seconds": 0.05}),
            hasher=hasher,
        )
        with pytest.raises(UnavailableError) as exc:
            await service.login("alice@x.com", "password123")
        assert exc.value.retryable is True
        assert exc.value.status_code == 503

    async def test_unreachable_store_is_unavailable(self, cipher, settings, hasher):
        service = AuthService(_UnreachableStore(cipher=cipher), settings, hasher=hasher)
        with pytest.raises(UnavailableError):
            await service.forgot_password("alice@x.com")

    async def test_unexpected_error_is_internal(self, cipher, settings, hasher):
        service = AuthService(_BrokenStore(cipher=cipher), settings, hasher=hasher)
        with pytest.raises(InternalError) as exc:
            await service.login("alice@x.com", "password123")
        assert "app_user" not in exc.value.message
        assert exc.value.retryable is False

    @pytest.mark.parametrize("operation", ["login", "forgot_password"])
    async def test_token_insert_constraint_is_internal(self, cipher, settings, hasher, operation):
        store = _OrphanedTokenStore(cipher=cipher)
        service = AuthService(store, settings, hasher=hasher)
        await _register(service)
        with pytest.raises(InternalError) as exc:
            if operation == "login":
                await service.login("alice@x.com", "password123")
            else:
                await service.forgot_password("alice@x.com")
        assert exc.value.message == "internal error"
        assert "app_user" not in exc.value.message
        assert exc.value.status_code == 500
