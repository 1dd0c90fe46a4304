"""AES-256-GCM encryption for the persisted session file.

The stored form is ``base64(nonce):base64(tag):base64(ciphertext)``.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import InvalidEncryptionKeyError, SessionDecryptionError

KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


def generate_encryption_key() -> str:
    """Return a fresh base64-encoded 32-byte key for OAUTH_ENCRYPTION_KEY."""
    return base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")


def _b64decode(value: str) -> bytes:
    raw = value.encode("ascii")
    decoded = base64.b64decode(raw, validate=True)
    # Reject non-canonical padding bits so every stored bit is covered.
    if base64.b64encode(decoded) != raw:
        raise ValueError("non-canonical base64")
    return decoded


class SessionCipher:
    """Authenticated encryption of a text blob under a single key."""

    def __init__(self, encoded_key: str) -> None:
        try:
            key = _b64decode(encoded_key.strip())
        except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
            raise InvalidEncryptionKeyError("OAUTH_ENCRYPTION_KEY is not valid base64") from exc
        if len(key) != KEY_LENGTH:
            raise InvalidEncryptionKeyError(
                f"OAUTH_ENCRYPTION_KEY must decode to {KEY_LENGTH} bytes, got {len(key)}"
            )
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join(
            base64.b64encode(part).decode("ascii") for part in (nonce, tag, ciphertext)
        )

    def decrypt(self, blob: str) -> str:
        parts = blob.strip().split(":")
        if len(parts) != 3:
            raise SessionDecryptionError("Encrypted session data is malformed")
        try:
            nonce, tag, ciphertext = (_b64decode(part) for part in parts)
        except (binascii.Error, UnicodeEncodeError, ValueError) as exc:
            raise SessionDecryptionError("Encrypted session data is not valid base64") from exc
        if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
            raise SessionDecryptionError("Encrypted session data is malformed")
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            raise SessionDecryptionError("Encrypted session data failed authentication") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SessionDecryptionError("Decrypted session data is not UTF-8") from exc
