from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from susi_auth.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Fernet wrapper used to keep TOTP shared secrets encrypted at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("TOTP secret encryption requires key material")
        try:
            self._fernet = Fernet(self._derive_key(key_material))
        except Exception as exc:
            raise RuntimeError("Unable to initialize TOTP secret cipher") from exc

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken:
            # Key rotated or record written without encryption; the value is
            # unusable for code validation either way.
            logger.warning("totp_secret_decrypt_failed")
            return ""
