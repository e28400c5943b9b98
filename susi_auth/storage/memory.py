from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from susi_auth.logging import get_logger
from susi_auth.storage.cipher import SecretCipher
from susi_auth.storage.errors import ConstraintViolation
from susi_auth.storage.models import (
    PasswordResetToken,
    RefreshToken,
    Role,
    User,
    UserStatus,
)


class MemoryStore:
    """In-process store for users and auth tokens.

    Every public method takes ``_data_lock`` so lookups and the refresh-token
    compare-and-swap are atomic with respect to concurrent request threads.
    When ``fs_root`` is given the state is mirrored to a JSON file so a dev
    server keeps its accounts across restarts.
    """

    def __init__(
        self, fs_root: Optional[str] = None, *, cipher: SecretCipher
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.reset_tokens: Dict[str, PasswordResetToken] = {}
        # RLock so helpers may re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self._cipher = cipher
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _public_user(self, user: User) -> User:
        """Detached copy with the TOTP secret decrypted."""
        return replace(user, totp_secret=self._cipher.decrypt(user.totp_secret))

    def verify_connection(self) -> None:
        if self.fs_root is not None and not self.fs_root.is_dir():
            raise FileNotFoundError(self.fs_root)

    # users
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
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized_email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            now = self._now()
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                name=name,
                password_hash=password_hash,
                phone=phone,
                totp_secret=self._cipher.encrypt(totp_secret),
                role=Role.parse(role),
                status=UserStatus.parse(status),
                created_at=now,
                updated_at=now,
                created_by=created_by,
                updated_by=created_by,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized_email = email.strip().lower()
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.email == normalized_email), None
            )
            return self._public_user(user) if user else None

    def get_user_by_name(self, name: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.name == name), None)
            return self._public_user(user) if user else None

    def list_users(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
    ) -> tuple[List[User], int]:
        with self._data_lock:
            matches = [
                u
                for u in self.users.values()
                if (role is None or u.role is role)
                and (status is None or u.status is status)
            ]
            matches.sort(key=lambda u: (u.created_at, u.id), reverse=True)
            page = matches[offset : offset + limit]
            return [self._public_user(u) for u in page], len(matches)

    def update_user(
        self,
        user_id: str,
        *,
        name: Optional[str] = None,
        phone: Optional[str] = None,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
        updated_by: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if name is not None:
                user.name = name
            if phone is not None:
                user.phone = phone
            if role is not None:
                user.role = Role.parse(role)
            if status is not None:
                user.status = UserStatus.parse(status)
            user.updated_by = updated_by
            user.updated_at = self._now()
            self._persist_state()
            return self._public_user(user)

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return False
            user.password_hash = password_hash
            user.updated_at = self._now()
            self._persist_state()
            return True

    def set_last_login(self, user_id: str, at: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.last_login = at
            self._persist_state()

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            if token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            record = RefreshToken.new(user_id, token, expires_at)
            self.refresh_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return replace(record) if record else None

    def rotate_refresh_token(
        self, old_token: str, new_token: str, expires_at: datetime, *, now: datetime
    ) -> Optional[RefreshToken]:
        """Swap ``old_token`` for ``new_token`` on the same record.

        Returns None when the old value is unknown, expired, revoked or was
        already rotated away by a concurrent caller.
        """
        with self._data_lock:
            record = self.refresh_tokens.get(old_token)
            if record is None or not record.is_valid(now):
                return None
            if new_token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            del self.refresh_tokens[old_token]
            record.token = new_token
            record.expires_at = expires_at
            record.updated_at = now
            self.refresh_tokens[new_token] = record
            self._persist_state()
            return replace(record)

    def delete_refresh_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.pop(token, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            stale = [t for t, rec in self.refresh_tokens.items() if rec.user_id == user_id]
            for token in stale:
                self.refresh_tokens.pop(token, None)
            if stale:
                self._persist_state()
            return len(stale)

    # password reset tokens
    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = PasswordResetToken.new(user_id, token, expires_at)
            self.reset_tokens[token] = record
            self._persist_state()
            return replace(record)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._data_lock:
            record = self.reset_tokens.get(token)
            return replace(record) if record else None

    def delete_password_reset_token(self, token: str) -> bool:
        with self._data_lock:
            removed = self.reset_tokens.pop(token, None)
            if removed:
                self._persist_state()
            return removed is not None

    def purge_expired_tokens(self, now: datetime) -> int:
        with self._data_lock:
            stale_refresh = [
                t for t, rec in self.refresh_tokens.items() if not rec.is_valid(now)
            ]
            stale_reset = [t for t, rec in self.reset_tokens.items() if rec.is_expired(now)]
            for token in stale_refresh:
                self.refresh_tokens.pop(token, None)
            for token in stale_reset:
                self.reset_tokens.pop(token, None)
            purged = len(stale_refresh) + len(stale_reset)
            if purged:
                self._persist_state()
            return purged

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "reset_tokens": [
                self._serialize_reset_token(r) for r in self.reset_tokens.values()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist auth store state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.reset_tokens = {
            r["token"]: self._deserialize_reset_token(r)
            for r in data.get("reset_tokens", [])
        }
        self.logger.info(
            "auth_store_state_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _serialize_user(self, user: User) -> dict:
        # totp_secret is already encrypted in memory
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "phone": user.phone,
            "totp_secret": user.totp_secret,
            "role": user.role.value,
            "status": user.status.value,
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
            "created_by": user.created_by,
            "updated_by": user.updated_by,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data.get("password_hash", ""),
            phone=data.get("phone", ""),
            totp_secret=data.get("totp_secret", ""),
            role=Role.parse(data.get("role", "user")),
            status=UserStatus.parse(data.get("status", "active")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or self._now(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or self._now(),
            created_by=data.get("created_by"),
            updated_by=data.get("updated_by"),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "revoked": record.revoked,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
            created_at=self._deserialize_datetime(data.get("created_at")) or self._now(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or self._now(),
        )

    def _serialize_reset_token(self, record: PasswordResetToken) -> dict:
        return {
            "id": record.id,
            "user_id": record.user_id,
            "token": record.token,
            "expires_at": self._serialize_datetime(record.expires_at),
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
        }

    def _deserialize_reset_token(self, data: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            token=data["token"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data.get("created_at")) or self._now(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or self._now(),
        )
