"""Tests for session encryption at rest."""

import base64

import pytest

from nestr_mcp.errors import InvalidEncryptionKeyError, SessionDecryptionError
from nestr_mcp.session_crypto import SessionCipher, generate_encryption_key


@pytest.fixture
def cipher():
    return SessionCipher(generate_encryption_key())


def _flip_bit(blob: str, part_index: int) -> str:
    parts = blob.split(":")
    raw = bytearray(base64.b64decode(parts[part_index]))
    raw[0] ^= 0x01
    parts[part_index] = base64.b64encode(bytes(raw)).decode()
    return ":".join(parts)


class TestSessionCipher:
    """Test AES-256-GCM encryption of the session blob."""

    def test_decrypt_returns_original_text(self, cipher):
        plaintext = '{"session": {"access_token": "tok-é"}}'
        assert cipher.decrypt(cipher.encrypt(plaintext)) == plaintext

    def test_blob_format_is_nonce_tag_ciphertext(self, cipher):
        nonce, tag, ciphertext = cipher.encrypt("hello").split(":")
        assert len(base64.b64decode(nonce)) == 12
        assert len(base64.b64decode(tag)) == 16
        assert len(base64.b64decode(ciphertext)) == len("hello")

    def test_each_encryption_uses_fresh_nonce(self, cipher):
        assert cipher.encrypt("same") != cipher.encrypt("same")

    @pytest.mark.parametrize("part_index", [0, 1, 2])
    def test_bit_flip_fails_closed(self, cipher, part_index):
        blob = cipher.encrypt("sensitive data")
        with pytest.raises(SessionDecryptionError):
            cipher.decrypt(_flip_bit(blob, part_index))

    def test_wrong_key_fails(self, cipher):
        blob = cipher.encrypt("sensitive data")
        with pytest.raises(SessionDecryptionError):
            SessionCipher(generate_encryption_key()).decrypt(blob)

    @pytest.mark.parametrize("blob", ["", "onlyone", "a:b", "a:b:c:d", "!!!:???:***"])
    def test_malformed_blob_fails(self, cipher, blob):
        with pytest.raises(SessionDecryptionError):
            cipher.decrypt(blob)

    def test_key_must_be_32_bytes(self):
        short_key = base64.b64encode(b"x" * 16).decode()
        with pytest.raises(InvalidEncryptionKeyError):
            SessionCipher(short_key)

    def test_key_must_be_base64(self):
        with pytest.raises(InvalidEncryptionKeyError):
            SessionCipher("not base64 at all!")

    def test_generated_key_decodes_to_32_bytes(self):
        assert len(base64.b64decode(generate_encryption_key())) == 32
