from __future__ import annotations

import hashlib
import hmac
import secrets

import bcrypt

from app.core.settings import settings


# no 0, O, 1 or I
RECOVERY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
RECOVERY_CODE_GROUPS = 3
RECOVERY_CODE_GROUP_LENGTH = 4


def generate_recovery_code() -> str:
    groups = [
        "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_GROUP_LENGTH))
        for _ in range(RECOVERY_CODE_GROUPS)
    ]
    return "-".join(groups)


def generate_recovery_codes(count: int | None = None) -> list[str]:
    return [generate_recovery_code() for _ in range(count or settings.recovery_code_count)]


def normalize_recovery_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch.isalnum())


def looks_like_recovery_code(code: str) -> bool:
    normalized = normalize_recovery_code(code)
    return len(normalized) == RECOVERY_CODE_GROUPS * RECOVERY_CODE_GROUP_LENGTH and all(
        ch in RECOVERY_CODE_ALPHABET for ch in normalized
    )


def _peppered(code: str) -> bytes:
    digest = hmac.new(
        settings.recovery_code_pepper.encode("utf-8"),
        normalize_recovery_code(code).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return digest.encode("ascii")


def hash_recovery_code(code: str) -> str:
    salt = bcrypt.gensalt(rounds=settings.recovery_code_bcrypt_rounds)
    return bcrypt.hashpw(_peppered(code), salt).decode("ascii")


def verify_recovery_code(code: str, code_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_peppered(code), code_hash.encode("ascii"))
    except ValueError:
        return False
