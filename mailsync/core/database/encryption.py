"""
Credential Vault

Symmetric encryption of stored mailbox credentials.
Uses AES-256-GCM (authenticated encryption) from `cryptography`.

- APP_ENCRYPTION_KEY: 256-bit master key, hex encoded (64 characters)
- A fresh random 96-bit IV is generated for every encryption; callers never
  supply one, so an IV is never reused with the same key.
- Ciphertext and IV are stored as base64 text (mail_accounts.encrypted_password, mail_accounts.iv)

Generate a key with:
    python -m mailsync.core.database.encryption --generate-key
"""
import os
import base64
import binascii
import logging
import secrets
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mailsync.core.config import get_settings
from mailsync.core.errors import ConfigurationError, IntegrityError

logger = logging.getLogger(__name__)

KEY_SIZE_BYTES = 32
IV_SIZE_BYTES = 12


def generate_encryption_key() -> str:
    """Generate a new random 256-bit master key (hex encoded)."""
    return secrets.token_hex(KEY_SIZE_BYTES)


def parse_key(key_hex: Optional[str]) -> bytes:
    """
    Decode a hex master key.

    Raises:
        ConfigurationError: If the key is missing or not 64 hex characters
    """
    if not key_hex:
        raise ConfigurationError(
            "APP_ENCRYPTION_KEY not set. "
            "Generate one with: python -m mailsync.core.database.encryption --generate-key"
        )
    try:
        key = bytes.fromhex(key_hex.strip())
    except ValueError:
        raise ConfigurationError("APP_ENCRYPTION_KEY must be hex encoded")
    if len(key) != KEY_SIZE_BYTES:
        raise ConfigurationError(
            f"APP_ENCRYPTION_KEY must be {KEY_SIZE_BYTES * 2} hex characters ({KEY_SIZE_BYTES * 8}-bit), got {len(key) * 2}"
        )
    return key


def encrypt(plaintext: str, key: bytes) -> Tuple[str, str]:
    """
    Encrypt a credential.

    Args:
        plaintext: Secret to encrypt
        key: 32-byte master key

    Returns:
        (ciphertext, iv) both base64 encoded
    """
    iv = os.urandom(IV_SIZE_BYTES)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode('utf-8'), None)
    return (
        base64.b64encode(ciphertext).decode('ascii'),
        base64.b64encode(iv).decode('ascii'),
    )


def decrypt(ciphertext: str, iv: str, key: bytes) -> str:
    """
    Decrypt a credential.

    Raises:
        IntegrityError: If ciphertext/IV/key do not authenticate
    """
    try:
        raw_ciphertext = base64.b64decode(ciphertext, validate=True)
        raw_iv = base64.b64decode(iv, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise IntegrityError(f"Stored credential is not valid base64: {e}")

    try:
        plaintext = AESGCM(key).decrypt(raw_iv, raw_ciphertext, None)
    except InvalidTag:
        logger.error("Credential decryption failed - wrong key or tampered ciphertext")
        raise IntegrityError("Stored credential failed authentication (wrong key or tampered data)")
    except ValueError as e:
        # Wrong key length or empty IV
        raise IntegrityError(f"Stored credential cannot be decrypted: {e}")

    try:
        return plaintext.decode('utf-8')
    except UnicodeDecodeError:
        raise IntegrityError("Decrypted credential is not valid UTF-8")


# ============================================================================
# Process-wide master key (loaded once, on first use)
# ============================================================================

_master_key: Optional[bytes] = None


def get_master_key() -> bytes:
    """
    Load the master key from settings.

    Raises:
        ConfigurationError: If APP_ENCRYPTION_KEY is missing or malformed
    """
    global _master_key
    if _master_key is None:
        _master_key = parse_key(get_settings().app_encryption_key)
        logger.info("Credential vault initialized")
    return _master_key


def reset_master_key():
    """Forget the cached master key (useful for testing)."""
    global _master_key
    _master_key = None


class CredentialVault:
    """
    Encrypts and decrypts credentials with one bound key.

    Usage:
        vault = CredentialVault.from_settings()
        ciphertext, iv = vault.encrypt("secret")
        vault.decrypt(ciphertext, iv)
    """

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE_BYTES:
            raise ConfigurationError(f"Master key must be {KEY_SIZE_BYTES} bytes")
        self._key = key

    @classmethod
    def from_settings(cls) -> "CredentialVault":
        return cls(get_master_key())

    def encrypt(self, plaintext: str) -> Tuple[str, str]:
        return encrypt(plaintext, self._key)

    def decrypt(self, ciphertext: str, iv: str) -> str:
        return decrypt(ciphertext, iv, self._key)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Credential vault utilities")
    parser.add_argument('--generate-key', action='store_true', help='Print a new APP_ENCRYPTION_KEY')
    args = parser.parse_args()

    if args.generate_key:
        print(generate_encryption_key())
    else:
        parser.print_help()
