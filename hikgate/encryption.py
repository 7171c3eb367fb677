"""AES-256-CBC encryption for stored device credentials.

Ciphertext format is ``<iv hex>:<ciphertext hex>`` with PKCS7 padding.
"""

import logging
import secrets
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .config import get_settings
from .errors import DecryptionError

logger = logging.getLogger(__name__)

IV_LENGTH = 16
KEY_LENGTH = 32


class EncryptionService:
    """Encrypts and decrypts device secrets with a shared AES key."""

    def __init__(self, key_hex: Optional[str] = None):
        key_hex = key_hex or get_settings().encryption_key
        if not key_hex:
            raise ValueError("Encryption key not configured (HIKGATE_ENCRYPTION_KEY)")
        key = bytes.fromhex(key_hex)
        if len(key) != KEY_LENGTH:
            raise ValueError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._key = key

    def _cipher(self, iv: bytes) -> Cipher:
        return Cipher(algorithms.AES(self._key), modes.CBC(iv))

    def encrypt(self, text: str) -> str:
        iv = secrets.token_bytes(IV_LENGTH)
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        data = padder.update(text.encode('utf-8')) + padder.finalize()
        encryptor = self._cipher(iv).encryptor()
        encrypted = encryptor.update(data) + encryptor.finalize()
        return f"{iv.hex()}:{encrypted.hex()}"

    def decrypt(self, encrypted_text: str) -> str:
        """Decrypt a stored secret. Any failure raises a generic DecryptionError."""
        try:
            parts = encrypted_text.split(':')
            if len(parts) != 2:
                raise ValueError("Invalid encrypted text format")

            iv = bytes.fromhex(parts[0])
            if len(iv) != IV_LENGTH:
                raise ValueError("Invalid IV length")

            decryptor = self._cipher(iv).decryptor()
            data = decryptor.update(bytes.fromhex(parts[1])) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            return (unpadder.update(data) + unpadder.finalize()).decode('utf-8')
        except Exception:
            logger.debug("Secret decryption failed")
            raise DecryptionError() from None

    @staticmethod
    def generate_key() -> str:
        return secrets.token_hex(KEY_LENGTH)


_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get encryption service instance."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
