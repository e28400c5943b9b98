from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional

from susi_auth.logging import get_logger

logger = get_logger(__name__)

_ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
_REQUIRED_CLAIMS = ("sub", "iat", "exp", "iss")


class TokenError(Exception):
    """Base class for access-token verification failures."""


class TokenMalformed(TokenError):
    pass


class TokenSignatureInvalid(TokenError):
    pass


class TokenExpired(TokenError):
    pass


class KeyNotInitialized(RuntimeError):
    """Signing was attempted before a key was loaded or generated."""


@dataclass(frozen=True)
class SigningKey:
    secret: bytes
    generated: bool = False

    @classmethod
    def from_secret(cls, secret: Optional[str]) -> "SigningKey":
        """Use the configured secret, or generate one for this process.

        A generated key is lost on restart and is not shared between replicas,
        so every outstanding token becomes unverifiable when the process exits.
        """
        if secret:
            return cls(secret=secret.encode("utf-8"))
        logger.error(
            "jwt_secret_generated",
            message="JWT_SECRET is not set; tokens will not survive a restart",
        )
        return cls(secret=secrets.token_urlsafe(64).encode("utf-8"), generated=True)


class TokenSigner:
    """Issue and verify HS256 access tokens."""

    def __init__(
        self,
        key: Optional[SigningKey],
        *,
        issuer: str,
        leeway_seconds: int = 0,
    ) -> None:
        if key is None or not key.secret:
            raise KeyNotInitialized("token signing key is not initialized")
        self._key = key
        self.issuer = issuer
        self.leeway_seconds = leeway_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(self._key.secret, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def issue(
        self,
        subject: str,
        ttl: timedelta,
        *,
        now: Optional[float] = None,
        extra_claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        issued_at = int(time.time() if now is None else now)
        payload: Dict[str, Any] = dict(extra_claims or {})
        payload.update(
            {
                "sub": subject,
                "iat": issued_at,
                "nbf": issued_at,
                "exp": issued_at + int(ttl.total_seconds()),
                "iss": self.issuer,
                "jti": str(uuid.uuid4()),
                "token_type": ACCESS_TOKEN_TYPE,
            }
        )
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str, *, now: Optional[float] = None) -> Dict[str, Any]:
        """Return the claims of a valid token or raise a ``TokenError``.

        The header algorithm is pinned to HS256 so ``none`` and asymmetric
        algorithms are rejected before the signature is considered.
        """
        if not token or not isinstance(token, str):
            raise TokenMalformed("token is empty")
        parts = token.split(".")
        if len(parts) != 3:
            raise TokenMalformed("token must have three segments")
        header_b64, payload_b64, sig_b64 = parts

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (binascii.Error, ValueError) as exc:
            raise TokenMalformed("token header is not valid JSON") from exc
        if not isinstance(header, dict):
            raise TokenMalformed("token header is not an object")
        if header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            raise TokenSignatureInvalid("unsupported signing algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenSignatureInvalid("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (binascii.Error, ValueError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenMalformed("token payload is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise TokenMalformed("token payload is not an object")

        missing = [claim for claim in _REQUIRED_CLAIMS if claim not in payload]
        if missing:
            raise TokenMalformed(f"missing claims: {', '.join(missing)}")
        if not isinstance(payload["sub"], str) or not payload["sub"]:
            raise TokenMalformed("subject claim is invalid")
        if payload.get("iss") != self.issuer:
            raise TokenMalformed("issuer mismatch")
        if payload.get("token_type", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
            raise TokenMalformed("not an access token")
        try:
            exp_ts = float(payload["exp"])
            nbf_ts = float(payload.get("nbf", payload["iat"]))
        except (TypeError, ValueError) as exc:
            raise TokenMalformed("time claims must be numeric") from exc

        current = time.time() if now is None else now
        if nbf_ts > current + self.leeway_seconds:
            raise TokenMalformed("token is not valid yet")
        if exp_ts <= current - self.leeway_seconds:
            raise TokenExpired("token has expired")
        return payload
