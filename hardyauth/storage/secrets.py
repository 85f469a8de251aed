from __future__ import annotations

import base64
import hashlib
import secrets

from cryptography.fernet import Fernet, InvalidToken

from hardyauth.logging import get_logger

logger = get_logger(__name__)


class SecretCipher:
    """Symmetric encryption for second-factor secrets at rest."""

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise ValueError("key material is required")
        self._fernet = Fernet(self._derive_key(key_material))

    @classmethod
    def ephemeral(cls) -> "SecretCipher":
        """Process-local key for stores whose data dies with the process."""
        return cls(secrets.token_urlsafe(48))

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, value: str) -> str:
        if not value:
            return value
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        if not value:
            return value
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken:
            # rows written before encryption was enabled are stored in clear
            logger.warning("totp_secret_decrypt_failed")
            return value
