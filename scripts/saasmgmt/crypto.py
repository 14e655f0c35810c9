"""AES-256-GCM encryption of credential values at rest."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from scripts.saasmgmt.config import EncryptionConfig
from scripts.saasmgmt.errors import DecryptionError

IV_BYTES = 16
TAG_BYTES = 16


@dataclass(frozen=True)
class EncryptedValue:
    ciphertext: str  # hex
    iv: str  # hex
    auth_tag: str  # hex

    def to_document(self) -> dict[str, str]:
        # Key names match documents written by earlier releases.
        return {"encrypted": self.ciphertext, "iv": self.iv, "authTag": self.auth_tag}

    @classmethod
    def from_document(cls, doc: Any) -> Optional["EncryptedValue"]:
        """Parse a stored triple; None if the value is not well formed."""
        if not isinstance(doc, dict):
            return None
        parts = (doc.get("encrypted"), doc.get("iv"), doc.get("authTag"))
        if not all(isinstance(p, str) and p for p in parts):
            return None
        return cls(ciphertext=parts[0], iv=parts[1], auth_tag=parts[2])


class CredentialCipher:
    """Authenticated encryption with a single process-wide key."""

    def __init__(self, config: EncryptionConfig) -> None:
        if len(config.key) != 32:
            raise ValueError("AES-256 requires a 32-byte key")
        self._aesgcm = AESGCM(config.key)

    def encrypt(self, plaintext: str) -> EncryptedValue:
        iv = os.urandom(IV_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedValue(
            ciphertext=sealed[:-TAG_BYTES].hex(),
            iv=iv.hex(),
            auth_tag=sealed[-TAG_BYTES:].hex(),
        )

    def decrypt(self, value: EncryptedValue) -> str:
        try:
            iv = bytes.fromhex(value.iv)
            sealed = bytes.fromhex(value.ciphertext) + bytes.fromhex(value.auth_tag)
        except ValueError as exc:
            raise DecryptionError(f"Malformed encrypted value: {exc}") from exc
        if len(iv) != IV_BYTES or len(sealed) < TAG_BYTES:
            raise DecryptionError("Malformed encrypted value: bad IV or tag length")
        try:
            return self._aesgcm.decrypt(iv, sealed, None).decode("utf-8")
        except InvalidTag as exc:
            raise DecryptionError("Authentication tag verification failed") from exc


def mask_secret(value: Optional[str], visible: int = 8) -> str:
    """Short prefix of a secret that is safe to show in messages and logs."""
    if not value:
        return ""
    return value[:visible] + "..."
