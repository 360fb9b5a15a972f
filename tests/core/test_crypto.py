"""Tests for crypto module - Token encryption at rest."""

import pytest
from cryptography.exceptions import InvalidTag

from ledgersync.core.crypto import (
    ENCRYPTED_PREFIX,
    TokenCipher,
    decrypt_value,
    encrypt_value,
    generate_key,
)


class TestEncryption:
    """Tests for AES-256-GCM helpers."""

    def test_generate_key_returns_32_bytes(self) -> None:
        """Keys are 256 bits and random."""
        assert len(generate_key()) == 32
        assert generate_key() != generate_key()

    def test_encrypt_uses_random_nonce(self) -> None:
        """Same plaintext should give different ciphertexts."""
        key = generate_key()
        assert encrypt_value(b"secret", key) != encrypt_value(b"secret", key)

    def test_decrypt_with_wrong_key_fails(self) -> None:
        """Wrong key should fail authentication."""
        sealed = encrypt_value(b"secret", generate_key())
        with pytest.raises(InvalidTag):
            decrypt_value(sealed, generate_key())

    def test_tampered_data_fails(self) -> None:
        """Flipping one byte should be detected."""
        key = generate_key()
        sealed = bytearray(encrypt_value(b"secret", key))
        sealed[-1] ^= 0x01
        with pytest.raises(InvalidTag):
            decrypt_value(bytes(sealed), key)


class TestTokenCipher:
    """Tests for TokenCipher."""

    def test_without_key_values_pass_through(self) -> None:
        """No key means plain storage."""
        cipher = TokenCipher()
        assert not cipher.enabled
        assert cipher.encrypt("access-1") == "access-1"
        assert cipher.decrypt("access-1") == "access-1"

    def test_encrypted_values_are_prefixed(self) -> None:
        """Stored values are marked and readable with the same key."""
        cipher = TokenCipher(generate_key())
        stored = cipher.encrypt("refresh-1")
        assert stored.startswith(ENCRYPTED_PREFIX)
        assert "refresh-1" not in stored
        assert cipher.decrypt(stored) == "refresh-1"

    def test_plain_values_still_readable_with_key(self) -> None:
        """Tokens stored before a key was configured remain usable."""
        assert TokenCipher(generate_key()).decrypt("legacy-token") == "legacy-token"

    def test_encrypted_value_without_key(self) -> None:
        """Encrypted values cannot be read once the key is removed."""
        stored = TokenCipher(generate_key()).encrypt("refresh-1")
        with pytest.raises(ValueError, match="no token key"):
            TokenCipher().decrypt(stored)

    def test_invalid_key_length(self) -> None:
        """Keys must be 32 bytes."""
        with pytest.raises(ValueError):
            TokenCipher(b"0123456789")
