from __future__ import annotations

import base64
import datetime
import json
import uuid

import pyotp
import pytest

from app.core.settings import settings
from app.security import recovery_codes, totp
from app.security.password import Pbkdf2Hasher
from app.security.secretbox import SecretBoxError, open_sealed, seal
from app.security.tokens import (
    AccessTokenValidationError,
    hash_refresh_token,
    issue_access_token,
    new_refresh_token,
    validate_access_token,
)


def test_password_hash_verifies_only_the_original_password() -> None:
    hasher = Pbkdf2Hasher(1000)
    encoded = hasher.hash("correct horse battery")

    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert hasher.verify(encoded, "correct horse battery")
    assert not hasher.verify(encoded, "correct horse battery!")
    assert hasher.hash("correct horse battery") != encoded


def test_password_verify_rejects_malformed_hashes() -> None:
    hasher = Pbkdf2Hasher(1000)

    assert not hasher.verify("", "pw")
    assert not hasher.verify("sha1$1$c2FsdA==$ZGlnZXN0", "pw")
    assert not hasher.verify("pbkdf2_sha256$abc$salt$digest", "pw")


def test_issue_and_validate_access_token_round_trip() -> None:
    now = datetime.datetime.now(datetime.UTC).replace(microsecond=0)
    user_id = uuid.uuid4()

    token, expiry = issue_access_token(user_id=user_id, email="unit@example.com", name="Unit", now=now)
    payload = validate_access_token(token)

    assert payload.sub == user_id
    assert payload.email == "unit@example.com"
    assert payload.name == "Unit"
    assert payload.iss == settings.jwt_issuer
    assert payload.iat == now
    assert payload.exp == expiry.replace(microsecond=0)


def test_validate_access_token_rejects_expired_and_garbage_tokens() -> None:
    token, _ = issue_access_token(
        user_id=uuid.uuid4(),
        email="expired@example.com",
        name="",
        now=datetime.datetime.now(datetime.UTC),
        expires_in=datetime.timedelta(seconds=-1),
    )

    with pytest.raises(AccessTokenValidationError):
        validate_access_token(token)
    with pytest.raises(AccessTokenValidationError):
        validate_access_token("not-a-jwt")


def test_refresh_tokens_are_random_and_hashed_as_sha256_hex() -> None:
    first = new_refresh_token()
    second = new_refresh_token()

    assert first != second
    assert len(hash_refresh_token(first)) == 64
    assert hash_refresh_token(first) == hash_refresh_token(first)


def test_sealed_secret_opens_only_with_matching_associated_data() -> None:
    blob = seal("JBSWY3DPEHPK3PXP", associated_data=b"totp:alice")
    envelope = json.loads(blob)

    assert envelope["v"] == 1
    assert envelope["alg"] == "A256GCM"
    assert "JBSWY3DPEHPK3PXP" not in blob
    assert open_sealed(blob, associated_data=b"totp:alice") == "JBSWY3DPEHPK3PXP"
    with pytest.raises(SecretBoxError):
        open_sealed(blob, associated_data=b"totp:bob")


def test_sealed_secret_rejects_tampering_and_wrong_key() -> None:
    blob = seal("seed")
    envelope = json.loads(blob)
    ciphertext = bytearray(base64.urlsafe_b64decode(envelope["ct"] + "=" * (-len(envelope["ct"]) % 4)))
    ciphertext[0] ^= 0x01
    envelope["ct"] = base64.urlsafe_b64encode(bytes(ciphertext)).rstrip(b"=").decode("ascii")

    with pytest.raises(SecretBoxError):
        open_sealed(json.dumps(envelope))
    with pytest.raises(SecretBoxError):
        open_sealed(blob, key=b"x" * 32)
    with pytest.raises(SecretBoxError):
        open_sealed("{not json")


def test_totp_accepts_one_step_of_drift_either_side() -> None:
    secret = totp.generate_secret()
    generator = pyotp.TOTP(secret)
    now = datetime.datetime(2026, 1, 1, 12, 0, 15, tzinfo=datetime.UTC)
    step = datetime.timedelta(seconds=30)

    assert totp.verify_code(secret, generator.at(now), now=now)
    assert totp.verify_code(secret, generator.at(now - step), now=now)
    assert totp.verify_code(secret, generator.at(now + step), now=now)
    assert not totp.verify_code(secret, generator.at(now - 2 * step), now=now)
    assert not totp.verify_code(secret, generator.at(now + 2 * step), now=now)


def test_totp_rejects_non_six_digit_codes() -> None:
    secret = totp.generate_secret()

    assert not totp.verify_code(secret, "12345")
    assert not totp.verify_code(secret, "abcdef")
    assert not totp.verify_code(secret, "")


def test_totp_provisioning_uri_carries_issuer_and_account() -> None:
    uri = totp.provisioning_uri("JBSWY3DPEHPK3PXP", account_name="alice@example.com")

    assert uri.startswith("otpauth://totp/")
    assert "secret=JBSWY3DPEHPK3PXP" in uri
    assert f"issuer={settings.totp_issuer}" in uri


def test_recovery_codes_use_unambiguous_alphabet() -> None:
    codes = recovery_codes.generate_recovery_codes()

    assert len(codes) == settings.recovery_code_count
    assert len(set(codes)) == len(codes)
    for code in codes:
        groups = code.split("-")
        assert [len(group) for group in groups] == [4, 4, 4]
        assert not set("".join(groups)) & set("01OI")
        assert recovery_codes.looks_like_recovery_code(code)


def test_recovery_code_hash_is_case_and_separator_insensitive() -> None:
    code = recovery_codes.generate_recovery_code()
    code_hash = recovery_codes.hash_recovery_code(code)

    assert code_hash.startswith("$2")
    assert recovery_codes.verify_recovery_code(code, code_hash)
    assert recovery_codes.verify_recovery_code(code.lower().replace("-", " "), code_hash)
    assert not recovery_codes.verify_recovery_code("AAAA-BBBB-CCCC", code_hash)
    assert not recovery_codes.verify_recovery_code(code, "not-a-bcrypt-hash")
