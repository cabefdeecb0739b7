"""
Security utilities: instrument-token encryption and webhook signatures.
"""

import base64
import hashlib
import hmac
from typing import Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .config import SecurityConfig
from .exceptions import SecurityError

KDF_ITERATIONS = 390_000


class EncryptionManager:
    """Encrypts gateway instrument tokens before they reach the ledger."""

    def __init__(self, config: SecurityConfig):
        """
        Initialize encryption manager.

        Args:
            config: Security configuration holding the secret key and salt
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=config.encryption_salt.encode("utf-8"),
            iterations=KDF_ITERATIONS,
        )
        key = base64.urlsafe_b64encode(kdf.derive(config.secret_key.encode("utf-8")))
        self._fernet = Fernet(key)

    def encrypt(self, data: Union[str, bytes]) -> str:
        """
        Encrypt data.

        Args:
            data: Data to encrypt

        Returns:
            URL-safe encrypted token
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        return self._fernet.encrypt(data).decode("utf-8")

    def decrypt(self, encrypted_data: str) -> str:
        """
        Decrypt data.

        Raises:
            SecurityError: If the token was not produced with this key
        """
        try:
            return self._fernet.decrypt(encrypted_data.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise SecurityError("Failed to decrypt instrument token") from e


def sign_payload(secret: str, payload: Union[str, bytes]) -> str:
    """Return hex(HMAC-SHA256(secret, payload))."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_signature(secret: str, payload: Union[str, bytes], signature: Optional[str]) -> bool:
    """Constant-time check of a webhook signature header against the raw payload."""
    if not signature:
        return False
    expected = sign_payload(secret, payload)
    return hmac.compare_digest(expected, signature.strip().lower())
