"""Credential vault for third-party integration secrets.

Credentials are encrypted with AES-256-GCM under a 16-byte random IV and
stored as one opaque envelope string:

    {"iv": <hex>, "encrypted": <hex>, "authTag": <hex>}

Decryption fails closed: a wrong key, a tampered field or a malformed
envelope raises CredentialDecryptionError.
"""

import binascii
import json
import secrets
from typing import Any

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.errors import CredentialDecryptionError

logger = structlog.get_logger(__name__)

KEY_SIZE = 32
IV_SIZE = 16
TAG_SIZE = 16


def generate_encryption_key() -> str:
    """Generate a random AES-256 key as 64 hex characters."""
    return secrets.token_hex(KEY_SIZE)


def _parse_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex)
    except (TypeError, ValueError) as e:
        raise ValueError("Encryption key must be hex encoded") from e
    if len(key) != KEY_SIZE:
        raise ValueError(f"Encryption key must be {KEY_SIZE} bytes ({KEY_SIZE * 2} hex characters)")
    return key


class CredentialVault:
    """Encrypts and decrypts integration credentials.

    Attributes:
        KEY_SIZE: AES-256 key size in bytes.
        IV_SIZE: GCM nonce size in bytes.
    """

    KEY_SIZE = KEY_SIZE
    IV_SIZE = IV_SIZE

    def __init__(self, key_hex: str) -> None:
        """Initialize the vault.

        Args:
            key_hex: 32-byte key as 64 hex characters.

        Raises:
            ValueError: If the key is not a 32-byte hex string.
        """
        self._aesgcm = AESGCM(_parse_key(key_hex))

    def __repr__(self) -> str:
        return "CredentialVault(key=[REDACTED])"

    def encrypt_credentials(self, credentials: dict[str, Any]) -> str:
        """Encrypt credentials into an envelope string.

        Args:
            credentials: JSON-serializable credentials.

        Returns:
            Envelope with hex iv, ciphertext and auth tag.
        """
        iv = secrets.token_bytes(IV_SIZE)
        plaintext = json.dumps(credentials).encode("utf-8")

        # AESGCM appends the tag to the ciphertext
        sealed = self._aesgcm.encrypt(iv, plaintext, None)
        ciphertext, auth_tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]

        return json.dumps(
            {
                "iv": iv.hex(),
                "encrypted": ciphertext.hex(),
                "authTag": auth_tag.hex(),
            }
        )

    def decrypt_credentials(self, envelope: str) -> dict[str, Any]:
        """Decrypt an envelope produced by encrypt_credentials.

        Args:
            envelope: Stored envelope string.

        Returns:
            The original credentials.

        Raises:
            CredentialDecryptionError: If the envelope is malformed or
                fails authentication.
        """
        try:
            parts = json.loads(envelope)
            iv = bytes.fromhex(parts["iv"])
            ciphertext = bytes.fromhex(parts["encrypted"])
            auth_tag = bytes.fromhex(parts["authTag"])
        except (TypeError, ValueError, KeyError, binascii.Error) as e:
            raise CredentialDecryptionError("Malformed credential envelope") from e

        if len(iv) != IV_SIZE or len(auth_tag) != TAG_SIZE:
            raise CredentialDecryptionError("Malformed credential envelope")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + auth_tag, None)
        except InvalidTag as e:
            logger.warning("credential_decryption_failed")
            raise CredentialDecryptionError("Credential authentication failed") from e

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise CredentialDecryptionError("Decrypted credentials are not valid JSON") from e


def encrypt_credentials(credentials: dict[str, Any], key_hex: str) -> str:
    """Encrypt credentials under a hex key. See CredentialVault."""
    return CredentialVault(key_hex).encrypt_credentials(credentials)


def decrypt_credentials(envelope: str, key_hex: str) -> dict[str, Any]:
    """Decrypt an envelope under a hex key. See CredentialVault."""
    return CredentialVault(key_hex).decrypt_credentials(envelope)
