from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import (
    HashingError as Argon2HashingError,
    InvalidHash,
    VerificationError,
    VerifyMismatchError,
)

from susi_auth.logging import get_logger

logger = get_logger(__name__)


class HashingError(RuntimeError):
    """The hash primitive itself failed (resource exhaustion, bad parameters)."""


class CredentialHasher:
    """Salted, memory-hard password hashing with argon2id.

    Digests are self-describing PHC strings, so every stored hash carries its
    own salt and work factor and verification never needs outside parameters.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash(self, password: str) -> str:
        try:
            return self._pwd_hasher.hash(password)
        except Argon2HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise HashingError("password hashing failed") from exc

    def verify(self, digest: str, password: str) -> bool:
        """Return True only when ``password`` matches ``digest``.

        Malformed digests are reported as a mismatch rather than an error.
        """
        if not digest:
            return False
        try:
            return self._pwd_hasher.verify(digest, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_verification_failed")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(digest)
        except InvalidHash:
            return False
