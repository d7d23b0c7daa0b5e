"""Credential vault -- AES-256-GCM encryption of CRM tokens at rest.

Blob format is ``base64(nonce[12] || tag[16] || ciphertext)``. The
``cryptography`` AESGCM primitive emits ``ciphertext || tag``, so the tag is
moved in front of the ciphertext when packing and back when unpacking.
"""

from __future__ import annotations

import base64
import hashlib
import os
import string

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.app.integrations.errors import ConfigurationError

NONCE_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

_HEX_DIGITS = frozenset(string.hexdigits)


def derive_key(secret: str) -> bytes:
    """Turn the configured secret into a 32-byte AES key.

    Accepts a 64-character hex string, a 32-character raw string, or any
    other passphrase (hashed with SHA-256).

    Raises:
        ConfigurationError: If no secret is configured.
    """
    if not secret:
        raise ConfigurationError(
            "ENCRYPTION_KEY is not configured. "
            'Generate one with: python -c "import os; print(os.urandom(32).hex())"'
        )
    if len(secret) == KEY_LENGTH * 2 and all(c in _HEX_DIGITS for c in secret):
        return bytes.fromhex(secret)
    raw = secret.encode("utf-8")
    if len(secret) == KEY_LENGTH and len(raw) == KEY_LENGTH:
        return raw
    return hashlib.sha256(raw).digest()


class CredentialVault:
    """Encrypts and decrypts secrets with a key derived once at construction.

    Args:
        secret: Encryption secret, see derive_key() for accepted shapes.
    """

    def __init__(self, secret: str) -> None:
        self._aesgcm = AESGCM(derive_key(secret))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt plaintext with a fresh random nonce."""
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Decrypt a blob produced by encrypt().

        Raises:
            ValueError: If the blob is malformed or fails authentication.
        """
        try:
            packed = base64.b64decode(blob.encode("ascii"), validate=True)
        except (ValueError, UnicodeEncodeError) as exc:
            raise ValueError("Encrypted value is not valid base64") from exc

        if len(packed) < NONCE_LENGTH + TAG_LENGTH:
            raise ValueError("Encrypted value is truncated")

        nonce = packed[:NONCE_LENGTH]
        tag = packed[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = packed[NONCE_LENGTH + TAG_LENGTH:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise ValueError("Invalid or corrupted encrypted value") from exc
        return plaintext.decode("utf-8")
