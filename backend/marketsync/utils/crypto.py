from __future__ import annotations

"""Credential vault for refresh tokens and app secrets at rest.

Canonical storage is a pair of base64 strings::

    ciphertext = base64(ciphertext || tag)
    iv         = base64(12-byte nonce)

produced by AES-256-GCM. Rows written by older releases instead hold a JSON
blob of hex fields ``{"iv": ..., "tag": ..., "data": ...}`` in the ciphertext
column and no iv. :meth:`CredentialVault.open` recognizes that shape,
decrypts it and hands back the canonical pair so the caller can persist it;
the next read then takes the plain path.

The key comes from the ``encryption_key`` of the :class:`SyncConfig` the vault
is built with. A value that base64-decodes to exactly 32 bytes is used as the
raw key; anything else is stretched with HKDF-SHA256.
"""

import base64
import binascii
import json
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from marketsync.errors import ConfigurationError, SyncError

_NONCE_SIZE = 12  # 96-bit nonce recommended for AES-GCM
_KEY_SIZE = 32    # 256-bit AES key
_HKDF_INFO = b"marketsync-credential-vault"


class VaultDecryptError(SyncError):
    code = "decrypt_failed"
    http_status = 500


@dataclass(frozen=True)
class SealedSecret:
    ciphertext: str
    iv: str


@dataclass(frozen=True)
class OpenedSecret:
    plaintext: str
    sealed: SealedSecret
    was_legacy: bool = False


def _derive_key(secret: str) -> bytes:
    try:
        raw = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        raw = b""
    if len(raw) == _KEY_SIZE:
        return raw

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_SIZE,
        salt=None,
        info=_HKDF_INFO,
    )
    return hkdf.derive(secret.encode("utf-8"))


def is_legacy_blob(ciphertext: Optional[str], iv: Optional[str]) -> bool:
    if iv or not isinstance(ciphertext, str):
        return False
    text = ciphertext.strip()
    if not (text.startswith("{") and '"iv"' in text):
        return False
    try:
        blob = json.loads(text)
    except ValueError:
        return False
    return isinstance(blob, dict) and all(isinstance(blob.get(k), str) for k in ("iv", "tag", "data"))


def transcode_legacy(ciphertext: str) -> SealedSecret:
    """Hex ``{iv, tag, data}`` JSON -> canonical base64 pair (no decryption)."""
    blob = json.loads(ciphertext)
    try:
        iv = bytes.fromhex(blob["iv"])
        ct = bytes.fromhex(blob["data"]) + bytes.fromhex(blob["tag"])
    except (KeyError, ValueError) as exc:
        raise VaultDecryptError(f"malformed legacy ciphertext: {exc}") from exc
    return SealedSecret(
        ciphertext=base64.b64encode(ct).decode("ascii"),
        iv=base64.b64encode(iv).decode("ascii"),
    )


class CredentialVault:
    def __init__(self, secret: Optional[str]):
        if not secret:
            raise ConfigurationError("encryption secret is not configured", code="missing_encryption_key")
        self._aesgcm = AESGCM(_derive_key(secret))

    @classmethod
    def from_config(cls, config) -> "CredentialVault":
        return cls(config.encryption_key)

    def encrypt(self, plaintext: str) -> SealedSecret:
        nonce = os.urandom(_NONCE_SIZE)
        ct = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), associated_data=None)
        return SealedSecret(
            ciphertext=base64.b64encode(ct).decode("ascii"),
            iv=base64.b64encode(nonce).decode("ascii"),
        )

    def decrypt(self, ciphertext: str, iv: str) -> str:
        try:
            ct = base64.b64decode(ciphertext)
            nonce = base64.b64decode(iv)
        except (binascii.Error, ValueError) as exc:
            raise VaultDecryptError(f"ciphertext is not valid base64: {exc}") from exc
        if len(nonce) != _NONCE_SIZE:
            raise VaultDecryptError("unexpected iv length")
        try:
            return self._aesgcm.decrypt(nonce, ct, associated_data=None).decode("utf-8")
        except InvalidTag as exc:
            raise VaultDecryptError("authentication tag mismatch") from exc

    def open(self, ciphertext: Optional[str], iv: Optional[str]) -> OpenedSecret:
        """Decrypt a stored value in either encoding.

        ``was_legacy`` on the result tells the caller to write ``sealed`` back.
        """
        if not ciphertext:
            raise VaultDecryptError("nothing to decrypt", code="missing_ciphertext")
        if is_legacy_blob(ciphertext, iv):
            sealed = transcode_legacy(ciphertext)
            plaintext = self.decrypt(sealed.ciphertext, sealed.iv)
            return OpenedSecret(plaintext=plaintext, sealed=sealed, was_legacy=True)
        if not iv:
            raise VaultDecryptError("missing iv", code="missing_ciphertext")
        return OpenedSecret(plaintext=self.decrypt(ciphertext, iv), sealed=SealedSecret(ciphertext, iv))
