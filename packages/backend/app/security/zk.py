"""Org key wrapping for end-to-end encrypted organization data.

Each device owns a P-256 keypair. An organization's symmetric key is wrapped
separately for every member: the publisher runs ECDH between a fresh ephemeral
key and the member's public key, stretches the shared secret with HKDF-SHA256
and seals the org key with AES-256-GCM, authenticating the envelope header
(version, algorithm, sender key and salt) as associated data. Only the
ciphertext envelope ever reaches the server, and only the member's private
key can open it.

The server imports this module for envelope structure checks and public key
validation. Generation, wrapping and unwrapping run on clients.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF


ORG_KEY_BYTES = 32
WRAP_SALT_BYTES = 16
WRAP_IV_BYTES = 12
COORDINATE_BYTES = 32
HKDF_INFO = b"kindling:orgkey-wrap:v1"
WRAP_ALG_V1 = "ECDH-ES-P256+HKDF-SHA256+A256GCM"
ENVELOPE_V1_FIELDS = frozenset({"v", "alg", "sender_pub", "salt", "iv", "ct"})
SENDER_JWK_FIELDS = frozenset({"kty", "crv", "x", "y"})


class InvalidPublicKeyError(ValueError):
    pass


class WrappedKeyFormatError(ValueError):
    pass


class KeyUnwrapError(Exception):
    pass


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    """Decode unpadded base64url, accepting only the canonical encoding."""
    if not isinstance(text, str):
        raise ValueError("expected base64url text")
    raw = base64.b64decode(text + "=" * (-len(text) % 4), altchars=b"-_", validate=True)
    if b64url_encode(raw) != text:
        raise ValueError("non-canonical base64url text")
    return raw


# JWK helpers


def _coordinate(jwk: Mapping[str, Any], name: str) -> int:
    try:
        raw = b64url_decode(jwk[name])
    except (KeyError, ValueError, binascii.Error) as exc:
        raise InvalidPublicKeyError(f"jwk field {name!r} is missing or not base64url") from exc
    if len(raw) != COORDINATE_BYTES:
        raise InvalidPublicKeyError(f"jwk field {name!r} must be {COORDINATE_BYTES} bytes")
    return int.from_bytes(raw, "big")


def public_key_from_jwk(jwk: Mapping[str, Any]) -> ec.EllipticCurvePublicKey:
    if not isinstance(jwk, Mapping) or jwk.get("kty") != "EC" or jwk.get("crv") != "P-256":
        raise InvalidPublicKeyError("expected an EC P-256 JWK")
    x = _coordinate(jwk, "x")
    y = _coordinate(jwk, "y")
    try:
        return ec.EllipticCurvePublicNumbers(x, y, ec.SECP256R1()).public_key()
    except ValueError as exc:
        raise InvalidPublicKeyError("point is not on P-256") from exc


def public_key_to_jwk(public_key: ec.EllipticCurvePublicKey) -> dict[str, str]:
    numbers = public_key.public_numbers()
    return {
        "kty": "EC",
        "crv": "P-256",
        "x": b64url_encode(numbers.x.to_bytes(COORDINATE_BYTES, "big")),
        "y": b64url_encode(numbers.y.to_bytes(COORDINATE_BYTES, "big")),
    }


def private_key_to_jwk(private_key: ec.EllipticCurvePrivateKey) -> dict[str, str]:
    jwk = public_key_to_jwk(private_key.public_key())
    jwk["d"] = b64url_encode(private_key.private_numbers().private_value.to_bytes(COORDINATE_BYTES, "big"))
    return jwk


def private_key_from_jwk(jwk: Mapping[str, Any]) -> ec.EllipticCurvePrivateKey:
    public_key = public_key_from_jwk(jwk)
    d = _coordinate(jwk, "d")
    try:
        private_key = ec.derive_private_key(d, ec.SECP256R1())
    except ValueError as exc:
        raise InvalidPublicKeyError("private scalar out of range") from exc
    if private_key.public_key().public_numbers() != public_key.public_numbers():
        raise InvalidPublicKeyError("private scalar does not match public point")
    return private_key


def canonical_public_jwk(jwk: Mapping[str, Any]) -> str:
    """Validate a public JWK and render it as compact, key-sorted JSON."""
    public_key = public_key_from_jwk(jwk)
    return json.dumps(public_key_to_jwk(public_key), sort_keys=True, separators=(",", ":"))


def kid_from_jwk(jwk: Mapping[str, Any]) -> str:
    digest = hashlib.sha256(canonical_public_jwk(jwk).encode("utf-8")).digest()
    return b64url_encode(digest[:12])


@dataclass(frozen=True)
class DeviceKeyPair:
    private_key: ec.EllipticCurvePrivateKey

    @classmethod
    def generate(cls) -> DeviceKeyPair:
        return cls(ec.generate_private_key(ec.SECP256R1()))

    @classmethod
    def from_private_jwk(cls, jwk: Mapping[str, Any]) -> DeviceKeyPair:
        return cls(private_key_from_jwk(jwk))

    @property
    def public_jwk(self) -> dict[str, str]:
        return public_key_to_jwk(self.private_key.public_key())

    @property
    def private_jwk(self) -> dict[str, str]:
        return private_key_to_jwk(self.private_key)

    @property
    def kid(self) -> str:
        return kid_from_jwk(self.public_jwk)


def generate_org_key() -> bytes:
    return os.urandom(ORG_KEY_BYTES)


# envelopes


@dataclass(frozen=True)
class WrappedKeyV1:
    sender_pub: dict[str, str]
    salt: bytes
    iv: bytes
    ct: bytes

    version = 1
    alg = WRAP_ALG_V1

    def to_dict(self) -> dict[str, Any]:
        return {
            "v": self.version,
            "alg": self.alg,
            "sender_pub": dict(self.sender_pub),
            "salt": b64url_encode(self.salt),
            "iv": b64url_encode(self.iv),
            "ct": b64url_encode(self.ct),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))

    def associated_data(self) -> bytes:
        """Canonical header bytes authenticated alongside the ciphertext."""
        header = {
            "v": self.version,
            "alg": self.alg,
            "sender_pub": self.sender_pub,
            "salt": b64url_encode(self.salt),
        }
        return json.dumps(header, sort_keys=True, separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WrappedKeyV1:
        unknown = set(data) - ENVELOPE_V1_FIELDS
        if unknown:
            raise WrappedKeyFormatError(f"unexpected fields {sorted(unknown)} in v1 wrapped key")
        alg = data.get("alg")
        if alg != WRAP_ALG_V1:
            raise WrappedKeyFormatError(f"unsupported alg {alg!r} for v1")
        try:
            raw_sender = data["sender_pub"]
            if not isinstance(raw_sender, Mapping) or set(raw_sender) != SENDER_JWK_FIELDS:
                raise WrappedKeyFormatError("sender_pub must be a bare EC public JWK")
            sender_pub = public_key_to_jwk(public_key_from_jwk(raw_sender))
            salt = b64url_decode(data["salt"])
            iv = b64url_decode(data["iv"])
            ct = b64url_decode(data["ct"])
        except (KeyError, ValueError, binascii.Error) as exc:
            raise WrappedKeyFormatError("malformed v1 wrapped key") from exc
        if len(salt) != WRAP_SALT_BYTES or len(iv) != WRAP_IV_BYTES:
            raise WrappedKeyFormatError("bad salt or iv length")
        # AES-GCM output is at least the 16 byte tag
        if len(ct) <= 16:
            raise WrappedKeyFormatError("ciphertext too short")
        return cls(sender_pub=sender_pub, salt=salt, iv=iv, ct=ct)


WrappedKey = WrappedKeyV1

_ENVELOPE_PARSERS: dict[int, Callable[[Mapping[str, Any]], WrappedKey]] = {
    1: WrappedKeyV1.from_dict,
}


def parse_wrapped_key(blob: str | Mapping[str, Any]) -> WrappedKey:
    if isinstance(blob, str):
        try:
            blob = json.loads(blob)
        except ValueError as exc:
            raise WrappedKeyFormatError("wrapped key is not JSON") from exc
    if not isinstance(blob, Mapping):
        raise WrappedKeyFormatError("wrapped key must be a JSON object")
    version = blob.get("v")
    if isinstance(version, bool) or not isinstance(version, int):
        raise WrappedKeyFormatError("wrapped key version missing")
    parser = _ENVELOPE_PARSERS.get(version)
    if parser is None:
        raise WrappedKeyFormatError(f"unsupported wrapped key version {version}")
    return parser(blob)


def _wrapping_key(private_key: ec.EllipticCurvePrivateKey, peer: ec.EllipticCurvePublicKey, salt: bytes) -> bytes:
    shared_secret = private_key.exchange(ec.ECDH(), peer)
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=salt, info=HKDF_INFO)
    return hkdf.derive(shared_secret)


def wrap_org_key(org_key: bytes, recipient_public_jwk: Mapping[str, Any]) -> WrappedKeyV1:
    if len(org_key) != ORG_KEY_BYTES:
        raise ValueError(f"org key must be {ORG_KEY_BYTES} bytes")
    recipient = public_key_from_jwk(recipient_public_jwk)
    ephemeral = ec.generate_private_key(ec.SECP256R1())
    salt = os.urandom(WRAP_SALT_BYTES)
    iv = os.urandom(WRAP_IV_BYTES)
    sender_pub = public_key_to_jwk(ephemeral.public_key())
    header = WrappedKeyV1(sender_pub=sender_pub, salt=salt, iv=iv, ct=b"")
    ct = AESGCM(_wrapping_key(ephemeral, recipient, salt)).encrypt(iv, org_key, header.associated_data())
    return WrappedKeyV1(sender_pub=sender_pub, salt=salt, iv=iv, ct=ct)


def unwrap_org_key(wrapped: WrappedKey | str | Mapping[str, Any], device: DeviceKeyPair) -> bytes:
    try:
        envelope = wrapped if isinstance(wrapped, WrappedKeyV1) else parse_wrapped_key(wrapped)
    except WrappedKeyFormatError as exc:
        raise KeyUnwrapError("wrapped key could not be parsed") from exc
    sender = public_key_from_jwk(envelope.sender_pub)
    aead = AESGCM(_wrapping_key(device.private_key, sender, envelope.salt))
    try:
        org_key = aead.decrypt(envelope.iv, envelope.ct, envelope.associated_data())
    except (InvalidTag, ValueError) as exc:
        raise KeyUnwrapError("wrapped key failed authentication") from exc
    if len(org_key) != ORG_KEY_BYTES:
        raise KeyUnwrapError("unwrapped key has the wrong length")
    return org_key
