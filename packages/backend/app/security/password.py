from __future__ import annotations

import base64
import binascii
import hmac
import os
from typing import Protocol

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from app.core.settings import settings


SCHEME = "pbkdf2_sha256"
SALT_BYTES = 16
HASH_BYTES = 32


class Hasher(Protocol):
    def hash(self, value: str) -> str: ...

    def verify(self, hash: str, value: str) -> bool: ...


class Pbkdf2Hasher:
    """PBKDF2-HMAC-SHA256 with a random per-hash salt.

    Encoded as ``pbkdf2_sha256$<iterations>$<b64 salt>$<b64 digest>`` so the
    iteration count can be raised later without invalidating stored hashes.
    """

    def __init__(self, iterations: int) -> None:
        self.iterations = iterations

    def _derive(self, value: str, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=HASH_BYTES, salt=salt, iterations=iterations)
        return kdf.derive(value.encode("utf-8"))

    def hash(self, value: str) -> str:
        salt = os.urandom(SALT_BYTES)
        digest = self._derive(value, salt, self.iterations)
        return "$".join(
            (
                SCHEME,
                str(self.iterations),
                base64.b64encode(salt).decode("ascii"),
                base64.b64encode(digest).decode("ascii"),
            )
        )

    def verify(self, hash: str, value: str) -> bool:
        try:
            scheme, iterations_text, salt_text, digest_text = hash.split("$")
            iterations = int(iterations_text)
            salt = base64.b64decode(salt_text, validate=True)
            expected = base64.b64decode(digest_text, validate=True)
        except (ValueError, binascii.Error):
            return False
        if scheme != SCHEME or iterations < 1 or not expected:
            return False
        candidate = self._derive(value, salt, iterations)
        return hmac.compare_digest(candidate, expected)


password_hasher = Pbkdf2Hasher(settings.password_hash_iterations)
