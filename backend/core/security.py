"""
StockPulse Security Utilities

Encryption for Bsale access tokens stored on the tenants table.
"""

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from core.config import DEFAULT_ENCRYPTION_KEY, Settings, get_settings

# Fernet tokens always start with this version byte, base64-encoded
_FERNET_PREFIX = "gAAAAA"


class TokenCipher:
    """Fernet wrapper used by the tenant repository."""

    def __init__(self, key: str):
        if key == DEFAULT_ENCRYPTION_KEY:
            # Dev key must be deterministic so all processes share the same key.
            key = base64.urlsafe_b64encode(hashlib.sha256(b"stockpulse-dev-key-not-for-production").digest()).decode()
        self._fernet = Fernet(key.encode())

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TokenCipher":
        return cls((settings or get_settings()).encryption_key)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token. Already-encrypted values are returned unchanged."""
        if self.is_encrypted(plaintext):
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a token. Plaintext values (pre-encryption rows) pass through."""
        if not self.is_encrypted(ciphertext):
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise ValueError("Stored access token could not be decrypted") from exc

    @staticmethod
    def is_encrypted(value: str) -> bool:
        return value.startswith(_FERNET_PREFIX)
