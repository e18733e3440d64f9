"""
Test credential vault encryption.
"""
import pytest

from mailsync.core.database.encryption import (
    CredentialVault,
    decrypt,
    encrypt,
    generate_encryption_key,
    parse_key,
)
from mailsync.core.errors import ConfigurationError, IntegrityError


@pytest.fixture
def key():
    return parse_key(generate_encryption_key())


class TestKeyParsing:

    def test_generated_key_is_256_bit(self):
        key_hex = generate_encryption_key()
        assert len(key_hex) == 64
        assert len(parse_key(key_hex)) == 32

    def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="APP_ENCRYPTION_KEY not set"):
            parse_key(None)

    def test_non_hex_key(self):
        with pytest.raises(ConfigurationError, match="hex"):
            parse_key("z" * 64)

    def test_short_key(self):
        with pytest.raises(ConfigurationError, match="64 hex characters"):
            parse_key("ab" * 16)


class TestEncryptDecrypt:

    def test_round_trip(self, key):
        ciphertext, iv = encrypt("s3cret-päss", key)
        assert "s3cret" not in ciphertext
        assert decrypt(ciphertext, iv, key) == "s3cret-päss"

    def test_fresh_iv_per_encryption(self, key):
        first = encrypt("same", key)
        second = encrypt("same", key)
        assert first[1] != second[1]
        assert first[0] != second[0]

    def test_wrong_key_fails_authentication(self, key):
        ciphertext, iv = encrypt("secret", key)
        other_key = parse_key(generate_encryption_key())
        with pytest.raises(IntegrityError):
            decrypt(ciphertext, iv, other_key)

    def test_tampered_ciphertext(self, key):
        ciphertext, iv = encrypt("secret", key)
        # Flip the first base64 character
        tampered = ("A" if ciphertext[0] != "A" else "B") + ciphertext[1:]
        with pytest.raises(IntegrityError):
            decrypt(tampered, iv, key)

    def test_mismatched_iv(self, key):
        ciphertext, _ = encrypt("secret", key)
        _, other_iv = encrypt("other", key)
        with pytest.raises(IntegrityError):
            decrypt(ciphertext, other_iv, key)

    def test_invalid_base64(self, key):
        with pytest.raises(IntegrityError, match="base64"):
            decrypt("not base64!!", "also not", key)


class TestCredentialVault:

    def test_from_settings(self):
        vault = CredentialVault.from_settings()
        ciphertext, iv = vault.encrypt("imap-password")
        assert vault.decrypt(ciphertext, iv) == "imap-password"

    def test_rejects_short_key(self):
        with pytest.raises(ConfigurationError):
            CredentialVault(b"too short")
