"""API key decryption for provider credentials stored encrypted at rest."""

from __future__ import annotations

import logging

from cryptography.fernet import Fernet, InvalidToken

from .config import Settings, get_settings
from .errors import CredentialDecryptionError

logger = logging.getLogger(__name__)

PLAINTEXT_PREFIXES = ("sk-",)


class CredentialDecryptor:
    """Decrypts Fernet tokens with the configured key.

    Plaintext keys never leave the request that decrypted them.
    """

    def __init__(self, key: str | None) -> None:
        self._fernet = Fernet(key.encode()) if key else None

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CredentialDecryptor":
        resolved = settings or get_settings()
        return cls(resolved.credential_encryption_key)

    def decrypt(self, encrypted: str) -> str:
        if self._fernet is None:
            raise CredentialDecryptionError("CREDENTIAL_ENCRYPTION_KEY is not configured")
        try:
            return self._fernet.decrypt(encrypted.encode()).decode()
        except (InvalidToken, ValueError) as exc:
            raise CredentialDecryptionError("API key could not be decrypted") from exc

    def safe_decrypt(self, value: str | None) -> str | None:
        """Decrypt ``value``, passing through keys that already look like plaintext.

        A value that cannot be decrypted is returned unchanged so the provider
        can reject it.
        """
        if not value:
            return None
        if value.startswith(PLAINTEXT_PREFIXES):
            return value
        try:
            return self.decrypt(value)
        except CredentialDecryptionError as exc:
            logger.error("[CREDENTIALS] %s", exc)
            return value
