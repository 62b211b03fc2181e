from __future__ import annotations

import asyncio
import datetime
import time
import uuid
from dataclasses import dataclass

import structlog

from app.core.errors import (
    ChallengeExpiredError,
    ChallengeFailedError,
    ChallengeUsedError,
    CryptoFailureError,
    InvalidChallengeError,
    InvalidMfaCodeError,
    MfaAlreadyEnabledError,
    MfaNotEnabledError,
    MfaNotSetupError,
)
from app.core.settings import settings
from app.core.timeutil import is_expired, utcnow
from app.db.store import CredentialStore
from app.models.activity_log import ActivityKind
from app.models.user import User
from app.security import recovery_codes, totp
from app.security.secretbox import SecretBoxError, open_sealed, seal
from app.services.activity import activity_recorder
from app.services.auth import IssuedSession, issue_session
from app.services.rate_limit import RateLimiter, mfa_key, rate_limiter


log = structlog.get_logger(__name__)

MIN_FAILED_MFA_RESPONSE_SECONDS = 0.2


@dataclass(frozen=True)
class TotpSetup:
    secret: str
    otpauth_uri: str


def _secret_associated_data(user_id: uuid.UUID) -> bytes:
    # sealed seeds are bound to their owner
    return f"totp:{user_id}".encode("ascii")


def _open_totp_secret(user: User) -> str:
    if not user.totp_secret_encrypted:
        raise MfaNotSetupError()
    try:
        return open_sealed(user.totp_secret_encrypted, associated_data=_secret_associated_data(user.id))
    except SecretBoxError as exc:
        log.error("totp_secret_unreadable", user_id=str(user.id))
        raise CryptoFailureError() from exc


async def setup_totp(store: CredentialStore, user: User) -> TotpSetup:
    if user.mfa_enabled:
        raise MfaAlreadyEnabledError()

    secret = totp.generate_secret()
    sealed = seal(secret, associated_data=_secret_associated_data(user.id))
    async with store.transaction():
        await store.set_totp_secret(user.id, sealed, enabled=False)
    store.mirror(user, totp_secret_encrypted=sealed, mfa_enabled=False)
    log.info("mfa_setup_started", user_id=str(user.id))
    return TotpSetup(secret=secret, otpauth_uri=totp.provisioning_uri(secret, account_name=user.email or str(user.id)))


async def confirm_totp(
    store: CredentialStore,
    user: User,
    code: str,
    *,
    now: datetime.datetime | None = None,
) -> list[str]:
    """Enable MFA once the authenticator proves it holds the seed.

    Every prior recovery code is discarded and a fresh batch is returned. The
    plaintext codes exist only in this return value.
    """
    if user.mfa_enabled:
        raise MfaAlreadyEnabledError()
    secret = _open_totp_secret(user)
    if not totp.verify_code(secret, code, now=now):
        raise InvalidMfaCodeError()

    codes = recovery_codes.generate_recovery_codes()
    code_hashes = await asyncio.to_thread(lambda: [recovery_codes.hash_recovery_code(c) for c in codes])
    async with store.transaction():
        await store.set_mfa_enabled(user.id, True)
        await store.replace_recovery_codes(user.id, code_hashes)
        await store.delete_challenges_for_user(user.id)
    store.mirror(user, mfa_enabled=True)

    log.info("mfa_enabled", user_id=str(user.id))
    activity_recorder.record(ActivityKind.MFA_ENABLE, f"{user.email} enabled two-factor sign-in", actor_id=user.id)
    return codes


async def disable_mfa(
    store: CredentialStore,
    user: User,
    code: str,
    *,
    now: datetime.datetime | None = None,
) -> None:
    if not user.mfa_enabled:
        raise MfaNotEnabledError()
    secret = _open_totp_secret(user)
    if not totp.verify_code(secret, code, now=now):
        raise InvalidMfaCodeError()

    async with store.transaction():
        await store.set_totp_secret(user.id, None, enabled=False)
        await store.delete_recovery_codes(user.id)
        await store.delete_challenges_for_user(user.id)
    store.mirror(user, totp_secret_encrypted=None, mfa_enabled=False)

    log.info("mfa_disabled", user_id=str(user.id))
    activity_recorder.record(ActivityKind.MFA_DISABLE, f"{user.email} disabled two-factor sign-in", actor_id=user.id)


async def _consume_recovery_code(
    store: CredentialStore,
    user_id: uuid.UUID,
    supplied: str,
    now: datetime.datetime,
) -> bool:
    if not recovery_codes.looks_like_recovery_code(supplied):
        return False
    for candidate in await store.list_unused_recovery_codes(user_id):
        if await asyncio.to_thread(recovery_codes.verify_recovery_code, supplied, candidate.code_hash):
            # false when a concurrent request spent it first
            return await store.mark_recovery_code_used(candidate.id, now)
    return False


async def verify_during_login(
    store: CredentialStore,
    challenge_id: uuid.UUID,
    *,
    code: str | None = None,
    recovery_code: str | None = None,
    client_ip: str,
    user_agent: str,
    limiter: RateLimiter = rate_limiter,
    now: datetime.datetime | None = None,
) -> IssuedSession:
    await limiter.enforce(
        mfa_key(client_ip, challenge_id),
        limit=settings.mfa_rate_limit,
        window_seconds=settings.mfa_rate_window_seconds,
    )
    current_time = now or utcnow()

    challenge = await store.get_challenge(challenge_id)
    if challenge is None:
        raise InvalidChallengeError()
    if challenge.verified:
        raise ChallengeUsedError()
    if is_expired(challenge.expires_at, current_time):
        raise ChallengeExpiredError()
    if challenge.failed_attempts >= settings.mfa_challenge_max_attempts:
        raise ChallengeFailedError()

    user = await store.get_user(challenge.user_id)
    if user is None or not user.mfa_enabled:
        raise InvalidChallengeError()

    started = time.monotonic()
    async with store.transaction():
        factor = None
        if recovery_code and recovery_code.strip():
            if await _consume_recovery_code(store, user.id, recovery_code, current_time):
                factor = "recovery"
        if factor is None and code and totp.verify_code(_open_totp_secret(user), code, now=current_time):
            factor = "totp"

        if factor is not None:
            if not await store.mark_challenge_verified(challenge.id):
                raise ChallengeUsedError()
            session = issue_session(store, user, client_ip=client_ip, user_agent=user_agent, now=current_time)

    if factor is not None:
        log.info("login_mfa_ok", user_id=str(user.id), factor=factor)
        return session

    async with store.transaction():
        failures = await store.record_challenge_failure(challenge.id)
    log.info("login_mfa_rejected", user_id=str(user.id), failures=failures)
    await _sleep_to_minimum_failed_duration(started)
    if failures >= settings.mfa_challenge_max_attempts:
        raise ChallengeFailedError()
    raise InvalidMfaCodeError()


async def _sleep_to_minimum_failed_duration(started: float) -> None:
    remaining = MIN_FAILED_MFA_RESPONSE_SECONDS - (time.monotonic() - started)
    if remaining > 0:
        await asyncio.sleep(remaining)
