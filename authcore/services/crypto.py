"""Encryption of provider tokens at rest."""

import logging
import secrets
from base64 import b64decode, b64encode

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from authcore.core import settings

logger = logging.getLogger(__name__)

# Minimum length for encrypted data: 12 bytes IV + 16 bytes auth tag
MIN_ENCRYPTED_LENGTH = 28


class CryptoError(Exception):
    """Base exception for cryptographic operations."""


class InvalidKeyError(CryptoError):
    """Raised when the encryption key is missing, the wrong length, or not hex."""


class DecryptionError(CryptoError):
    """Raised when decryption fails (corrupted data, wrong key, wrong AAD)."""


def _parse_key(key_hex: str, name: str) -> bytes:
    if len(key_hex) != 64:
        raise InvalidKeyError(
            f"{name} must be exactly 64 hex characters (32 bytes). "
            f"Got {len(key_hex)} characters. "
            f'Generate a secure key with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    try:
        return bytes.fromhex(key_hex)
    except ValueError as e:
        raise InvalidKeyError(f"{name} must be valid hexadecimal: {e}") from e


def get_encryption_key() -> bytes:
    """Get the AES-256 key from settings."""
    return _parse_key(settings.token_encryption_key, "TOKEN_ENCRYPTION_KEY")


def encrypt(plaintext: str, aad: str) -> bytes:
    """Encrypt a plaintext string using AES-256-GCM.

    Args:
        plaintext: The string to encrypt.
        aad: Associated data binding the ciphertext to its column and row,
             so a ciphertext copied to another member or field fails to decrypt.

    Returns: IV (12 bytes) || ciphertext || tag (16 bytes)
    """
    aesgcm = AESGCM(get_encryption_key())
    iv = secrets.token_bytes(12)
    ciphertext = aesgcm.encrypt(iv, plaintext.encode("utf-8"), aad.encode("utf-8"))
    return iv + ciphertext


def decrypt(encrypted: bytes, aad: str) -> str:
    """Decrypt an AES-256-GCM encrypted value.

    Tries the current key first, then TOKEN_ENCRYPTION_KEY_OLD if set
    (key rotation transition).

    Raises:
        DecryptionError: If decryption fails or data is malformed.
    """
    if len(encrypted) < MIN_ENCRYPTED_LENGTH:
        raise DecryptionError(
            f"Encrypted data too short: {len(encrypted)} bytes, "
            f"minimum {MIN_ENCRYPTED_LENGTH} bytes required"
        )

    iv = encrypted[:12]
    ciphertext = encrypted[12:]
    aad_bytes = aad.encode("utf-8")

    try:
        plaintext = AESGCM(get_encryption_key()).decrypt(iv, ciphertext, aad_bytes)
        return plaintext.decode("utf-8")
    except InvalidTag as primary_error:
        old_key_hex = settings.token_encryption_key_old
        if old_key_hex:
            try:
                old_key = _parse_key(old_key_hex, "TOKEN_ENCRYPTION_KEY_OLD")
                plaintext = AESGCM(old_key).decrypt(iv, ciphertext, aad_bytes)
                logger.info("Decrypted with old key; token will be re-encrypted on next save")
                return plaintext.decode("utf-8")
            except InvalidTag:
                pass
        raise DecryptionError("Decryption failed: authentication tag mismatch") from primary_error


def encrypt_to_base64(plaintext: str, aad: str) -> str:
    """Encrypt and return as base64 string (for text columns)."""
    return b64encode(encrypt(plaintext, aad=aad)).decode("ascii")


def decrypt_from_base64(encrypted_b64: str, aad: str) -> str:
    """Decrypt from base64 string."""
    try:
        encrypted = b64decode(encrypted_b64, validate=True)
    except ValueError as e:
        raise DecryptionError(f"Encrypted value is not valid base64: {e}") from e
    return decrypt(encrypted, aad=aad)
