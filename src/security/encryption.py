"""
Encryption collaborator for MFA secrets at rest.

Uses Fernet (AES-128-CBC + HMAC-SHA256) for symmetric encryption.
The key is a URL-safe base64-encoded 32-byte key loaded from
MFA_ENCRYPTION_KEY (or MFA_ENCRYPTION_KEY_FILE / Docker secret).

Unlike a display-oriented decryptor, a failed decryption here is never
swallowed: a tampered ciphertext or a rotated key raises DecryptionError
so the credential can be treated as corrupt.
"""
import logging
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from ..utils.secrets import get_secret

logger = logging.getLogger(__name__)


class DecryptionError(Exception):
    """Ciphertext was tampered with or was encrypted under a different key."""


class SecretEncryptor:
    """
    Encrypts and decrypts short secrets (TOTP seeds).

    Example usage:
        encryptor = SecretEncryptor(Fernet.generate_key().decode())
        token = encryptor.encrypt("JBSWY3DPEHPK3PXP")
        encryptor.decrypt(token)  # "JBSWY3DPEHPK3PXP"
    """

    def __init__(self, key: Optional[str] = None):
        """
        Initialize encryptor with key from environment or parameter.

        Args:
            key: Fernet key. If None, reads MFA_ENCRYPTION_KEY.

        Raises:
            ValueError: If no key is configured or the key is malformed.
        """
        if key is None:
            key = get_secret("MFA_ENCRYPTION_KEY")

        if not key:
            raise ValueError(
                "MFA_ENCRYPTION_KEY not set. "
                "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )

        self._fernet = Fernet(key.encode() if isinstance(key, str) else key)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext string.

        Args:
            plaintext: String to encrypt.

        Returns:
            Fernet token as text.
        """
        if plaintext is None:
            raise ValueError("Cannot encrypt None")
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a Fernet token.

        Args:
            ciphertext: Token produced by encrypt().

        Returns:
            Decrypted plaintext.

        Raises:
            DecryptionError: On tamper, truncation or key mismatch.
        """
        if not ciphertext:
            raise DecryptionError("Empty ciphertext")

        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except (InvalidToken, UnicodeDecodeError) as e:
            logger.error("Secret decryption failed (tampered data or key mismatch)")
            raise DecryptionError("Unable to decrypt secret") from e


# Singleton instance
_encryptor_instance: Optional[SecretEncryptor] = None


def get_secret_encryptor() -> SecretEncryptor:
    """
    Get singleton SecretEncryptor instance.

    Returns:
        SecretEncryptor configured from the environment.
    """
    global _encryptor_instance
    if _encryptor_instance is None:
        _encryptor_instance = SecretEncryptor()
    return _encryptor_instance
