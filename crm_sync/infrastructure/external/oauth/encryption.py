"""Token encryption at rest (Fernet, key derived from the credential secret)."""

import base64

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from crm_sync.core.config import Settings, get_settings

DECRYPTION_ERROR_MSG = "Failed to decrypt token - invalid or corrupted data"


class CredentialEncryptor:
    """Encrypt/decrypt OAuth tokens using Fernet.

    The key is derived from CREDENTIAL_ENCRYPTION_SECRET and ENCRYPTION_SALT
    via PBKDF2-HMAC-SHA256, so rotating either makes stored tokens unreadable.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._fernet = Fernet(self._derive_key(settings or get_settings()))

    @staticmethod
    def _derive_key(settings: Settings) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=settings.encryption_salt.get_secret_value().encode(),
            iterations=100_000,
        )
        derived = kdf.derive(settings.credential_encryption_secret.get_secret_value().encode())
        return base64.urlsafe_b64encode(derived)

    def encrypt(self, token: str) -> str:
        """Encrypt a token to a string safe for storage."""
        return self._fernet.encrypt(token.encode()).decode()

    def decrypt(self, encrypted: str) -> str:
        """Decrypt a stored token.

        Raises:
            ValueError: If the ciphertext is invalid or was made with another key.
        """
        try:
            return self._fernet.decrypt(encrypted.encode()).decode()
        except InvalidToken as e:
            raise ValueError(DECRYPTION_ERROR_MSG) from e

    def encrypt_optional(self, token: str | None) -> str | None:
        return self.encrypt(token) if token else None

    def decrypt_optional(self, encrypted: str | None) -> str | None:
        return self.decrypt(encrypted) if encrypted else None
