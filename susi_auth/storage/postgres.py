from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timezone
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from susi_auth.logging import get_logger
from susi_auth.storage.cipher import SecretCipher
from susi_auth.storage.errors import ConstraintViolation, StoreUnavailable
from susi_auth.storage.models import (
    PasswordResetToken,
    RefreshToken,
    Role,
    User,
    UserStatus,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name VARCHAR(100) NOT NULL,
        password_hash TEXT NOT NULL,
        phone TEXT NOT NULL DEFAULT '',
        totp_secret TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user'
            CHECK (role IN ('user', 'admin', 'super_admin')),
        status TEXT NOT NULL DEFAULT 'active'
            CHECK (status IN ('active', 'inactive', 'suspended')),
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_by UUID,
        updated_by UUID
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed user directory and token store."""

    def __init__(
        self,
        dsn: str,
        *,
        cipher: SecretCipher,
        connect_timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._cipher = cipher
        self.connect_timeout = connect_timeout
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection(timeout=self.connect_timeout) as conn:
                yield conn
        except PoolTimeout as exc:
            raise StoreUnavailable("connect", "connection pool exhausted") from exc
        except errors.OperationalError as exc:
            raise StoreUnavailable("connect", type(exc).__name__) from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def _row_to_user(self, row: dict) -> User:
        created_by = row.get("created_by")
        updated_by = row.get("updated_by")
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name") or "",
            password_hash=row.get("password_hash") or "",
            phone=row.get("phone") or "",
            totp_secret=self._cipher.decrypt(row.get("totp_secret") or ""),
            role=Role.parse(row.get("role", "user")),
            status=UserStatus.parse(row.get("status", "active")),
            last_login=self._as_utc(row.get("last_login")),
            created_at=self._as_utc(row.get("created_at")) or datetime.now(timezone.utc),
            updated_at=self._as_utc(row.get("updated_at")) or datetime.now(timezone.utc),
            created_by=str(created_by) if created_by else None,
            updated_by=str(updated_by) if updated_by else None,
        )

    def _row_to_refresh_token(self, row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=self._as_utc(row["expires_at"]),
            revoked=bool(row.get("revoked", False)),
            created_at=self._as_utc(row.get("created_at")) or datetime.now(timezone.utc),
            updated_at=self._as_utc(row.get("updated_at")) or datetime.now(timezone.utc),
        )

    def _row_to_reset_token(self, row: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=self._as_utc(row["expires_at"]),
            created_at=self._as_utc(row.get("created_at")) or datetime.now(timezone.utc),
            updated_at=self._as_utc(row.get("updated_at")) or datetime.now(timezone.utc),
        )

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
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, email, name, password_hash, phone, totp_secret,
                        role, status, created_by, updated_by
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        name,
                        password_hash,
                        phone,
                        self._cipher.encrypt(totp_secret),
                        Role.parse(role).value,
                        UserStatus.parse(status).value,
                        created_by,
                        created_by,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_name(self, name: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE name = %s ORDER BY created_at LIMIT 1",
                (name,),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self,
        *,
        offset: int = 0,
        limit: int = 10,
        role: Optional[Role] = None,
        status: Optional[UserStatus] = None,
    ) -> tuple[List[User], int]:
        clauses = []
        params: list[Any] = []
        if role is not None:
            clauses.append("role = %s")
            params.append(Role.parse(role).value)
        if status is not None:
            clauses.append("status = %s")
            params.append(UserStatus.parse(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            count_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM app_user{where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM app_user{where} ORDER BY created_at DESC, id DESC LIMIT %s OFFSET %s",
                [*params, limit, offset],
            ).fetchall()
        total = int(count_row["total"]) if count_row else 0
        return [self._row_to_user(row) for row in rows], total

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
        assignments = ["updated_at = now()", "updated_by = %s"]
        params: list[Any] = [updated_by]
        if name is not None:
            assignments.append("name = %s")
            params.append(name)
        if phone is not None:
            assignments.append("phone = %s")
            params.append(phone)
        if role is not None:
            assignments.append("role = %s")
            params.append(Role.parse(role).value)
        if status is not None:
            assignments.append("status = %s")
            params.append(UserStatus.parse(status).value)
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            return result.rowcount > 0

    def set_last_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s", (at, user_id)
            )

    # refresh tokens
    def create_refresh_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> RefreshToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._row_to_refresh_token(row)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_refresh_token(row) if row else None

    def rotate_refresh_token(
        self, old_token: str, new_token: str, expires_at: datetime, *, now: datetime
    ) -> Optional[RefreshToken]:
        """Compare-and-swap the token value in a single statement.

        A concurrent rotation of the same value blocks on the row lock, then
        re-evaluates the WHERE clause against the new value and matches nothing.
        """
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE refresh_token
                    SET token = %s, expires_at = %s, updated_at = %s
                    WHERE token = %s AND expires_at > %s AND NOT revoked
                    RETURNING *
                    """,
                    (new_token, expires_at, now, old_token, now),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        return self._row_to_refresh_token(row) if row else None

    def delete_refresh_token(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return result.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE user_id = %s", (user_id,)
            )
            return result.rowcount

    # password reset tokens
    def create_password_reset_token(
        self, user_id: str, token: str, expires_at: datetime
    ) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO password_reset_token (id, user_id, token, expires_at)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), user_id, token, expires_at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return self._row_to_reset_token(row)

    def get_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_reset_token(row) if row else None

    def delete_password_reset_token(self, token: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM password_reset_token WHERE token = %s", (token,)
            )
            return result.rowcount > 0

    def purge_expired_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            refresh = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at <= %s OR revoked", (now,)
            )
            reset = conn.execute(
                "DELETE FROM password_reset_token WHERE expires_at <= %s", (now,)
            )
            purged = refresh.rowcount + reset.rowcount
        self.logger.info("expired_tokens_purged", count=purged)
        return purged
