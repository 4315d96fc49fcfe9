"""Symmetric encryption of data source connection parameters."""

import json
from typing import Any

import structlog
from cryptography.fernet import Fernet, InvalidToken

from .exceptions import CredentialDecryptionError

logger = structlog.get_logger(__name__)


class CredentialVault:
    """Encrypts params to an opaque token and back, using Fernet."""

    def __init__(self, encryption_key: str | bytes | None = None):
        self.logger = logger.bind(component="credential_vault")
        if encryption_key:
            key_bytes = (
                encryption_key.encode()
                if isinstance(encryption_key, str)
                else encryption_key
            )
            self.cipher = Fernet(key_bytes)
        else:
            # Generate new key (should be stored securely)
            self.cipher = Fernet(Fernet.generate_key())
            self.logger.warning(
                "generated_ephemeral_encryption_key",
                hint="set DATASOURCES_ENCRYPTION_KEY to keep params readable across restarts",
            )

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode()

    def encrypt(self, params: dict[str, Any]) -> str:
        payload = json.dumps(params, default=str).encode("utf-8")
        return self.cipher.encrypt(payload).decode("utf-8")

    def decrypt(self, token: str) -> dict[str, Any]:
        """
        Decrypt a stored params token.

        Raises:
            CredentialDecryptionError: If the token was produced with another key
                or is corrupted
        """
        try:
            decrypted = self.cipher.decrypt(token.encode("utf-8"))
            params = json.loads(decrypted.decode("utf-8"))
        except (InvalidToken, ValueError, AttributeError) as e:
            self.logger.error("params_decryption_failed", error_type=type(e).__name__)
            raise CredentialDecryptionError(
                "Failed to decrypt data source params"
            ) from e

        if not isinstance(params, dict):
            raise CredentialDecryptionError("Decrypted params are not an object")
        return params
