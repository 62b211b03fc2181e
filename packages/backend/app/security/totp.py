from __future__ import annotations

import datetime
import re

import pyotp

from app.core.settings import settings


TOTP_DIGITS = 6
TOTP_PERIOD_SECONDS = 30
TOTP_VALID_WINDOW = 1
_CODE_PATTERN = re.compile(r"^\d{6}$")


def generate_secret() -> str:
    return pyotp.random_base32()


def provisioning_uri(secret: str, *, account_name: str, issuer: str | None = None) -> str:
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_PERIOD_SECONDS)
    return totp.provisioning_uri(name=account_name, issuer_name=issuer or settings.totp_issuer)


def normalize_code(code: str) -> str:
    return re.sub(r"\s+", "", code or "")


def verify_code(secret: str, code: str, *, now: datetime.datetime | None = None) -> bool:
    """Accept codes for the current 30 second step and one step either side."""
    candidate = normalize_code(code)
    if not _CODE_PATTERN.match(candidate):
        return False
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_PERIOD_SECONDS)
    return totp.verify(candidate, for_time=now or datetime.datetime.now(datetime.UTC), valid_window=TOTP_VALID_WINDOW)
