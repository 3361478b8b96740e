"""
Cryptographic utilities for the webhook renewal service.

Uses Fernet symmetric encryption with key rotation support for:
- OAuth access/refresh tokens stored in the database
- Session and OAuth-state cookies handed to the browser

Security features:
- Fernet encryption (AES 128 in CBC mode with HMAC-SHA256 authentication)
- Key rotation via MultiFernet (newest key encrypts, all keys decrypt)
- Time-limited decryption for cookies
"""

import os
from typing import List, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class CryptoServiceError(Exception):
    """Base exception for CryptoService operations."""

    pass


class DecryptionError(CryptoServiceError):
    """Raised when decryption fails (invalid ciphertext, wrong key, expired, etc.)."""

    pass


class CryptoService:
    """
    Encryption/decryption with automatic key rotation support.

    Key Management:
    - Primary key passed in (from settings) or FERNET_KEY (used for encryption)
    - Additional old keys from FERNET_KEYS for decryption (comma-separated)

    Usage:
        crypto = CryptoService(settings.fernet_key)
        ciphertext = crypto.encrypt_token("sensitive-token")
        plaintext = crypto.decrypt_token(ciphertext)
    """

    def __init__(self, primary_key_b64: Optional[str] = None):
        primary_key_b64 = primary_key_b64 or os.getenv("FERNET_KEY")
        if not primary_key_b64:
            raise CryptoServiceError(
                "FERNET_KEY environment variable is required. "
                "Generate one with: python -c 'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            )

        keys: List[Fernet] = []

        try:
            keys.append(Fernet(primary_key_b64.encode()))
        except Exception as e:
            raise CryptoServiceError(f"Invalid FERNET_KEY: {e}") from e

        additional_keys = os.getenv("FERNET_KEYS", "")
        if additional_keys:
            keys.extend(self._load_additional_keys(additional_keys))

        self._multi_fernet = MultiFernet(keys)
        self._key_count = len(keys)

    def _load_additional_keys(self, keys_string: str) -> List[Fernet]:
        """Load additional keys for rotation from environment variable."""
        additional_keys = []

        for key_b64 in keys_string.split(","):
            key_b64 = key_b64.strip()
            if not key_b64:
                continue

            try:
                additional_keys.append(Fernet(key_b64.encode()))
            except Exception as e:
                raise CryptoServiceError(f"Invalid key in FERNET_KEYS: {e}") from e

        return additional_keys

    def encrypt_token(self, plaintext_token: str) -> bytes:
        """
        Encrypt a token with the newest key.

        Raises:
            CryptoServiceError: If the token is empty or encryption fails
        """
        if not plaintext_token:
            raise CryptoServiceError("Cannot encrypt empty token")

        try:
            return self._multi_fernet.encrypt(plaintext_token.encode("utf-8"))
        except Exception as e:
            raise CryptoServiceError(f"Encryption failed: {e}") from e

    def decrypt_token(self, ciphertext: bytes, ttl: Optional[int] = None) -> str:
        """
        Decrypt a token, trying every configured key.

        Args:
            ciphertext: The encrypted token bytes
            ttl: Optional maximum age in seconds (used for cookies)

        Raises:
            DecryptionError: If decryption fails with all available keys
        """
        if not ciphertext:
            raise DecryptionError("Cannot decrypt empty ciphertext")

        try:
            return self._multi_fernet.decrypt(ciphertext, ttl=ttl).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError(
                f"Failed to decrypt token with any of the {self._key_count} available keys. "
                "Token may be corrupted, expired, or encrypted with an unknown key."
            ) from e
        except Exception as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

    def get_key_count(self) -> int:
        """Get the number of available keys (for monitoring and diagnostics)."""
        return self._key_count


def redact_token_for_logging(token: Optional[str]) -> str:
    """
    Redact a token for safe logging.

    Shows only the first 8 and last 4 characters.
    """
    if not token or len(token) < 12:
        return "***REDACTED***"

    return f"{token[:8]}...{token[-4:]}"
