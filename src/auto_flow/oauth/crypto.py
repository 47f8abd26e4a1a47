"""AES-256-GCM string encryption for tokens at rest.

Ciphertexts use the ``v1:<iv_b64>:<tag_b64>:<ciphertext_b64>`` layout. The
master key is loaded once at process start and injected into whatever needs it.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
FORMAT_VERSION = "v1"


class CryptoFormatError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class MasterKey:
    """Process-wide 32-byte symmetric key."""

    key: bytes

    def __post_init__(self) -> None:
        if len(self.key) != KEY_BYTES:
            raise ValueError(f"Master key must be {KEY_BYTES} bytes, got {len(self.key)}")

    @classmethod
    def generate(cls) -> MasterKey:
        return cls(os.urandom(KEY_BYTES))

    @classmethod
    def load_or_create(cls, path: Path) -> MasterKey:
        """Read a base64 key file, creating one with mode 0600 if absent."""

        if path.exists():
            raw = path.read_text(encoding="utf-8").strip()
            try:
                return cls(base64.b64decode(raw, validate=True))
            except binascii.Error as error:
                raise ValueError(f"Master key file is not valid base64: {path}") from error

        path.parent.mkdir(parents=True, exist_ok=True)
        key = cls.generate()
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(base64.b64encode(key.key).decode("ascii"))
        logger.info("Created new master key at %s", path)
        return key


class TokenCipher:
    """Encrypt/decrypt short strings with an injected master key."""

    def __init__(self, master_key: MasterKey, *, key_version: str = FORMAT_VERSION) -> None:
        self._aesgcm = AESGCM(master_key.key)
        self.key_version = key_version

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ":".join(
            [
                FORMAT_VERSION,
                base64.b64encode(nonce).decode("ascii"),
                base64.b64encode(tag).decode("ascii"),
                base64.b64encode(ciphertext).decode("ascii"),
            ],
        )

    def decrypt(self, payload: str) -> str:
        parts = payload.split(":")
        if len(parts) != 4 or parts[0] != FORMAT_VERSION or not all(parts[1:3]):  # noqa: PLR2004
            raise CryptoFormatError("Invalid encrypted payload format")
        try:
            nonce = base64.b64decode(parts[1], validate=True)
            tag = base64.b64decode(parts[2], validate=True)
            ciphertext = base64.b64decode(parts[3], validate=True)
        except binascii.Error as error:
            raise CryptoFormatError("Invalid encrypted payload format (base64)") from error
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise CryptoFormatError("Invalid encrypted payload format (nonce/tag)")
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as error:
            raise CryptoFormatError("Encrypted payload failed authentication") from error
        return plaintext.decode("utf-8")
