"""AES-256-GCM sealing for small secrets kept at rest (TOTP seeds)."""

from __future__ import annotations

import base64
import binascii
import json
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.settings import settings


NONCE_BYTES = 12
BLOB_VERSION = 1
BLOB_ALG = "A256GCM"


class SecretBoxError(Exception):
    pass


def _b64e(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _b64d(text: str) -> bytes:
    return base64.urlsafe_b64decode(text + "=" * (-len(text) % 4))


def seal(plaintext: str, *, key: bytes | None = None, associated_data: bytes | None = None) -> str:
    aead = AESGCM(key or settings.mfa_encryption_key_bytes)
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = aead.encrypt(nonce, plaintext.encode("utf-8"), associated_data)
    return json.dumps(
        {"v": BLOB_VERSION, "alg": BLOB_ALG, "iv": _b64e(nonce), "ct": _b64e(ciphertext)},
        separators=(",", ":"),
    )


def open_sealed(blob: str, *, key: bytes | None = None, associated_data: bytes | None = None) -> str:
    try:
        envelope = json.loads(blob)
        if envelope.get("v") != BLOB_VERSION or envelope.get("alg") != BLOB_ALG:
            raise SecretBoxError("unsupported sealed blob")
        nonce = _b64d(envelope["iv"])
        ciphertext = _b64d(envelope["ct"])
    except (ValueError, KeyError, TypeError, AttributeError, binascii.Error) as exc:
        raise SecretBoxError("malformed sealed blob") from exc

    aead = AESGCM(key or settings.mfa_encryption_key_bytes)
    try:
        return aead.decrypt(nonce, ciphertext, associated_data).decode("utf-8")
    except (InvalidTag, ValueError) as exc:
        raise SecretBoxError("sealed blob failed authentication") from exc
