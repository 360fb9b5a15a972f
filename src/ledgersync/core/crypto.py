"""Encryption of OAuth tokens at rest.

This module provides:
- Authenticated encryption using AES-256-GCM
- A TokenCipher that stores tokens as ``enc:<base64>`` strings
"""

from __future__ import annotations

import base64
import os

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# AES-GCM constants
NONCE_SIZE = 12  # 96 bits (recommended for AES-GCM)
KEY_SIZE = 32  # 256 bits

ENCRYPTED_PREFIX = "enc:"


def generate_key() -> bytes:
    """Generate a random 256-bit key for LEDGERSYNC_TOKEN_KEY.

    Returns:
        32 bytes of random data.
    """
    return os.urandom(KEY_SIZE)


def encrypt_value(data: bytes, key: bytes) -> bytes:
    """Encrypt data using AES-256-GCM with a random nonce.

    Args:
        data: Plaintext data to encrypt.
        key: 32-byte encryption key.

    Returns:
        nonce (12 bytes) || ciphertext || auth_tag (16 bytes)
    """
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, data, None)


def decrypt_value(encrypted: bytes, key: bytes) -> bytes:
    """Decrypt data produced by encrypt_value.

    Raises:
        cryptography.exceptions.InvalidTag: Wrong key or tampered data.
    """
    return AESGCM(key).decrypt(encrypted[:NONCE_SIZE], encrypted[NONCE_SIZE:], None)


class TokenCipher:
    """Encrypts and decrypts token strings stored in the credentials table.

    Without a key, values pass through unchanged. Values written before a key
    was configured (no ``enc:`` prefix) are still readable.
    """

    def __init__(self, key: bytes | None = None) -> None:
        if key is not None and len(key) != KEY_SIZE:
            raise ValueError("Token key must be 32 bytes")
        self._key = key

    @property
    def enabled(self) -> bool:
        return self._key is not None

    def encrypt(self, value: str) -> str:
        if self._key is None:
            return value
        sealed = encrypt_value(value.encode("utf-8"), self._key)
        return ENCRYPTED_PREFIX + base64.urlsafe_b64encode(sealed).decode("ascii")

    def decrypt(self, value: str) -> str:
        if not value.startswith(ENCRYPTED_PREFIX):
            return value
        if self._key is None:
            raise ValueError("Encrypted token found but no token key is configured")
        sealed = base64.urlsafe_b64decode(value[len(ENCRYPTED_PREFIX) :])
        return decrypt_value(sealed, self._key).decode("utf-8")
