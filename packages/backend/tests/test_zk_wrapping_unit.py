from __future__ import annotations

import json

import pytest

from app.security import zk


def test_wrapped_org_key_unwraps_only_for_its_recipient() -> None:
    alice = zk.DeviceKeyPair.generate()
    mallory = zk.DeviceKeyPair.generate()
    org_key = zk.generate_org_key()

    wrapped = zk.wrap_org_key(org_key, alice.public_jwk)

    assert zk.unwrap_org_key(wrapped.to_json(), alice) == org_key
    with pytest.raises(zk.KeyUnwrapError):
        zk.unwrap_org_key(wrapped, mallory)


def test_each_wrap_uses_a_fresh_ephemeral_key_and_salt() -> None:
    device = zk.DeviceKeyPair.generate()
    org_key = zk.generate_org_key()

    first = zk.wrap_org_key(org_key, device.public_jwk)
    second = zk.wrap_org_key(org_key, device.public_jwk)

    assert first.sender_pub != second.sender_pub
    assert first.salt != second.salt
    assert first.ct != second.ct


def test_tampered_ciphertext_fails_authentication() -> None:
    device = zk.DeviceKeyPair.generate()
    envelope = zk.wrap_org_key(zk.generate_org_key(), device.public_jwk).to_dict()
    ciphertext = bytearray(zk.b64url_decode(envelope["ct"]))
    ciphertext[-1] ^= 0x80
    envelope["ct"] = zk.b64url_encode(bytes(ciphertext))

    with pytest.raises(zk.KeyUnwrapError):
        zk.unwrap_org_key(envelope, device)


def test_envelope_parser_rejects_unknown_versions_and_bad_fields() -> None:
    device = zk.DeviceKeyPair.generate()
    envelope = zk.wrap_org_key(zk.generate_org_key(), device.public_jwk).to_dict()

    assert zk.parse_wrapped_key(json.dumps(envelope)).to_dict() == envelope
    with pytest.raises(zk.WrappedKeyFormatError):
        zk.parse_wrapped_key({**envelope, "v": 2})
    with pytest.raises(zk.WrappedKeyFormatError):
        zk.parse_wrapped_key({**envelope, "v": True})
    with pytest.raises(zk.WrappedKeyFormatError):
        zk.parse_wrapped_key({**envelope, "iv": zk.b64url_encode(b"short")})
    with pytest.raises(zk.WrappedKeyFormatError):
        zk.parse_wrapped_key({**envelope, "alg": "RSA-OAEP"})
    with pytest.raises(zk.WrappedKeyFormatError):
        zk.parse_wrapped_key("not json")
    with pytest.raises(zk.WrappedKeyFormatError):
        zk.parse_wrapped_key("[1, 2]")


def test_public_jwk_validation_rejects_points_off_the_curve() -> None:
    jwk = dict(zk.DeviceKeyPair.generate().public_jwk)
    y = bytearray(zk.b64url_decode(jwk["y"]))
    y[-1] ^= 0x01
    bad = {**jwk, "y": zk.b64url_encode(bytes(y))}

    with pytest.raises(zk.InvalidPublicKeyError):
        zk.public_key_from_jwk(bad)
    with pytest.raises(zk.InvalidPublicKeyError):
        zk.public_key_from_jwk({**jwk, "crv": "P-384"})
    with pytest.raises(zk.InvalidPublicKeyError):
        zk.public_key_from_jwk({"kty": "EC", "crv": "P-256", "x": jwk["x"]})


def test_kid_is_stable_for_equivalent_jwks() -> None:
    device = zk.DeviceKeyPair.generate()
    jwk = device.public_jwk
    noisy = {"use": "enc", **jwk, "ext": True}

    assert zk.kid_from_jwk(noisy) == device.kid
    assert zk.canonical_public_jwk(noisy) == zk.canonical_public_jwk(jwk)
    assert "use" not in json.loads(zk.canonical_public_jwk(noisy))


def test_private_jwk_round_trip_restores_the_device() -> None:
    device = zk.DeviceKeyPair.generate()
    restored = zk.DeviceKeyPair.from_private_jwk(device.private_jwk)
    org_key = zk.generate_org_key()

    assert restored.kid == device.kid
    assert zk.unwrap_org_key(zk.wrap_org_key(org_key, device.public_jwk), restored) == org_key


def _flip_slack_bit(text: str) -> str:
    # 16 bytes encode to 22 chars; the last char carries 4 unused bits
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"
    index = alphabet.index(text[-1])
    return text[:-1] + alphabet[index ^ 1]


def test_envelope_header_edits_are_rejected_on_unwrap() -> None:
    device = zk.DeviceKeyPair.generate()
    envelope = zk.wrap_org_key(zk.generate_org_key(), device.public_jwk).to_dict()

    renamed_alg = {key if key != "alg" else "alx": value for key, value in envelope.items()}
    extra_field = {**envelope, "note": "x"}
    noisy_sender = {**envelope, "sender_pub": {**envelope["sender_pub"], "ext": True}}
    slack_salt = {**envelope, "salt": _flip_slack_bit(envelope["salt"])}
    padded_iv = {**envelope, "iv": envelope["iv"] + "="}
    stray_char = {**envelope, "ct": envelope["ct"][:4] + "." + envelope["ct"][4:]}

    for tampered in [renamed_alg, extra_field, noisy_sender, slack_salt, padded_iv, stray_char]:
        with pytest.raises(zk.KeyUnwrapError):
            zk.unwrap_org_key(tampered, device)
        with pytest.raises(zk.WrappedKeyFormatError):
            zk.parse_wrapped_key(tampered)


def test_swapped_salt_fails_authentication() -> None:
    device = zk.DeviceKeyPair.generate()
    org_key = zk.generate_org_key()
    first = zk.wrap_org_key(org_key, device.public_jwk)
    second = zk.wrap_org_key(org_key, device.public_jwk)

    mixed = zk.WrappedKeyV1(sender_pub=first.sender_pub, salt=second.salt, iv=first.iv, ct=first.ct)

    with pytest.raises(zk.KeyUnwrapError):
        zk.unwrap_org_key(mixed, device)


def test_strict_base64url_decoding() -> None:
    assert zk.b64url_decode("AP8Q") == b"\x00\xff\x10"
    assert zk.b64url_decode("AP8") == b"\x00\xff"
    for text in ["AP8Q=", "AP+Q", "AP9", "A P8Q", "A"]:
        with pytest.raises(ValueError):
            zk.b64url_decode(text)
