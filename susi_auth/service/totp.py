from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from typing import Callable, Optional, Tuple
from urllib.parse import quote, urlencode

from susi_auth.logging import get_logger

logger = get_logger(__name__)


class TOTPManager:
    """RFC 6238 one-time codes (HMAC-SHA1, 30s steps, 6 digits).

    Validation accepts the current step and one step either side to absorb
    clock drift between the server and the authenticator app.
    """

    def __init__(
        self,
        issuer: str,
        *,
        interval: int = 30,
        digits: int = 6,
        skew_steps: int = 1,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.issuer = issuer
        self.interval = interval
        self.digits = digits
        self.skew_steps = skew_steps
        self._clock = clock

    @staticmethod
    def new_secret() -> str:
        # 160-bit key, the RFC 4226 recommended length
        return base64.b32encode(os.urandom(20)).decode("ascii").rstrip("=")

    def generate_secret(self, account_label: str) -> Tuple[str, str]:
        secret = self.new_secret()
        return secret, self.provisioning_uri(secret, account_label)

    def provisioning_uri(self, secret: str, account_label: str) -> str:
        label = quote(f"{self.issuer}:{account_label}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": self.digits,
                "period": self.interval,
            }
        )
        return f"otpauth://totp/{label}?{query}"

    @staticmethod
    def _decode_secret(secret: str) -> Optional[bytes]:
        cleaned = secret.replace(" ", "").upper()
        padded = cleaned + "=" * ((8 - len(cleaned) % 8) % 8)
        try:
            return base64.b32decode(padded, casefold=True)
        except (binascii.Error, ValueError):
            logger.warning("totp_secret_invalid")
            return None

    def code_at(self, secret: str, timestamp: float) -> str:
        key = self._decode_secret(secret)
        if not key:
            return ""
        counter = int(timestamp // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def validate_code(
        self, code: str, secret: str, *, at_time: Optional[float] = None
    ) -> bool:
        if not code or not secret:
            return False
        code = code.strip()
        if len(code) != self.digits or not (code.isascii() and code.isdigit()):
            return False
        now = self._clock() if at_time is None else at_time
        for step in range(-self.skew_steps, self.skew_steps + 1):
            generated = self.code_at(secret, now + step * self.interval)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False
