"""
Envelope encryption for stored documents.

Each file is sealed under its own random AES-256-GCM content key. The content
key is then sealed under the process-wide master key. Layouts:

    sealed content:  nonce(12) | tag(16) | ciphertext
    wrapped key:     hex(nonce(12) | tag(16) | encrypted content key(32))
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.docvault.modules.documents.errors import ContentDecryptError, KeyUnsealError

KEY_BYTES = 32  # AES-256
NONCE_BYTES = 12  # 96-bit GCM nonce
TAG_BYTES = 16  # 128-bit GCM tag
HEADER_BYTES = NONCE_BYTES + TAG_BYTES
WRAPPED_KEY_HEX_LENGTH = 2 * (HEADER_BYTES + KEY_BYTES)

_MASTER_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class MasterKeyError(RuntimeError):
    pass


def load_master_key(master_key_hex: str | None) -> bytes:
    """
    Parse FILE_ENCRYPTION_MASTER_KEY. Called once at startup; a bad key stops the app.
    """
    if not master_key_hex:
        raise MasterKeyError(
            "FILE_ENCRYPTION_MASTER_KEY is not set. "
            "Generate one with: python scripts/generate_master_key.py"
        )
    if not _MASTER_KEY_RE.fullmatch(master_key_hex):
        raise MasterKeyError(
            "FILE_ENCRYPTION_MASTER_KEY must be exactly 64 hexadecimal characters (32 bytes). "
            f"Current length: {len(master_key_hex)} characters."
        )
    return bytes.fromhex(master_key_hex)


@dataclass(frozen=True)
class SealedFile:
    sealed_content: bytes
    wrapped_key: str


def _seal(key: bytes, plaintext: bytes) -> bytes:
    nonce = os.urandom(NONCE_BYTES)
    # AESGCM appends the tag to the ciphertext; store it up front instead.
    out = AESGCM(key).encrypt(nonce, plaintext, None)
    ciphertext, tag = out[:-TAG_BYTES], out[-TAG_BYTES:]
    return nonce + tag + ciphertext


def _open(key: bytes, sealed: bytes) -> bytes:
    """Raises InvalidTag or ValueError; callers translate to the layer's error."""
    if len(sealed) < HEADER_BYTES:
        raise ValueError(f"sealed payload is {len(sealed)} bytes, shorter than the {HEADER_BYTES}-byte header")
    nonce = sealed[:NONCE_BYTES]
    tag = sealed[NONCE_BYTES:HEADER_BYTES]
    ciphertext = sealed[HEADER_BYTES:]
    return AESGCM(key).decrypt(nonce, ciphertext + tag, None)


class EnvelopeCipher:
    def __init__(self, master_key: bytes) -> None:
        if len(master_key) != KEY_BYTES:
            raise MasterKeyError(f"Master key must be exactly {KEY_BYTES} bytes for AES-256. Got {len(master_key)} bytes.")
        self._master_key = master_key

    @classmethod
    def from_hex(cls, master_key_hex: str | None) -> "EnvelopeCipher":
        return cls(load_master_key(master_key_hex))

    def encrypt(self, plaintext: bytes) -> SealedFile:
        content_key = AESGCM.generate_key(bit_length=KEY_BYTES * 8)
        sealed_content = _seal(content_key, plaintext)
        wrapped_key = _seal(self._master_key, content_key).hex()
        return SealedFile(sealed_content=sealed_content, wrapped_key=wrapped_key)

    def unwrap_key(self, wrapped_key: str) -> bytes:
        try:
            payload = bytes.fromhex(wrapped_key)
        except (TypeError, ValueError) as e:
            raise KeyUnsealError("Failed to decrypt file key: payload is not valid hex") from e
        try:
            content_key = _open(self._master_key, payload)
        except InvalidTag as e:
            raise KeyUnsealError("Failed to decrypt file key: authentication failed") from e
        except ValueError as e:
            raise KeyUnsealError(f"Failed to decrypt file key: {e}") from e
        if len(content_key) != KEY_BYTES:
            raise KeyUnsealError(f"Failed to decrypt file key: unwrapped key is {len(content_key)} bytes")
        return content_key

    def decrypt(self, sealed_content: bytes, wrapped_key: str) -> bytes:
        content_key = self.unwrap_key(wrapped_key)
        try:
            return _open(content_key, sealed_content)
        except InvalidTag as e:
            raise ContentDecryptError("Failed to decrypt file: authentication failed") from e
        except ValueError as e:
            raise ContentDecryptError(f"Failed to decrypt file: {e}") from e
