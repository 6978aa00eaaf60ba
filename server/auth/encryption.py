import logging

from core.errors import ConfigurationError, StoreError
from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class TokenCipher:
    """
    Symmetric encryption for OAuth tokens at rest.
    """

    def __init__(self, key: str):
        if not key:
            logger.error("ENCRYPTION_KEY is not set. Cannot proceed with encryption.")
            raise ConfigurationError("ENCRYPTION_KEY is not set in settings.")

        try:
            self._cipher_suite = Fernet(key.encode())
        except Exception as e:
            logger.error(
                f"Failed to initialize Fernet cipher: {e}. Is ENCRYPTION_KEY valid?"
            )
            raise ConfigurationError("ENCRYPTION_KEY is not a valid Fernet key.") from e

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypts a plaintext string.
        """
        try:
            token = self._cipher_suite.encrypt(plaintext.encode())
            return token.decode()
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypts a ciphertext string.
        """
        try:
            decrypted_bytes = self._cipher_suite.decrypt(ciphertext.encode())
            return decrypted_bytes.decode()
        except InvalidToken as e:
            logger.error("Decryption failed: Invalid token or key.")
            raise StoreError(
                "Stored token could not be decrypted. ENCRYPTION_KEY may have changed."
            ) from e

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        return self.encrypt(plaintext) if plaintext else None

    def decrypt_optional(self, ciphertext: str | None) -> str | None:
        return self.decrypt(ciphertext) if ciphertext else None
