from __future__ import annotations

import asyncio
import datetime
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

import structlog
from sqlalchemy.exc import IntegrityError

from app.core.errors import (
    DuplicateEmailError,
    ExpiredRefreshTokenError,
    InvalidLoginError,
    InvalidRefreshTokenError,
    NotFoundError,
    UnauthenticatedError,
)
from app.core.settings import settings
from app.core.timeutil import is_expired, utcnow
from app.db.store import CredentialStore
from app.models.activity_log import ActivityKind
from app.models.mfa import LoginMfaChallenge
from app.models.org_key import OrgKeyVersion
from app.models.organization import Membership, MembershipRole, Organization
from app.models.refresh_token import RefreshToken
from app.models.user import User
from app.schemas.auth import LoginRequest, RegisterRequest
from app.security.password import Hasher, password_hasher
from app.security.tokens import (
    AccessTokenValidationError,
    hash_refresh_token,
    issue_access_token,
    new_refresh_token,
    validate_access_token,
)
from app.services.activity import activity_recorder
from app.services.rate_limit import RateLimiter, login_key, rate_limiter, register_key


log = structlog.get_logger(__name__)

MIN_FAILED_LOGIN_RESPONSE_SECONDS = 0.2
DUMMY_PASSWORD_HASH = password_hasher.hash("kindling-dummy-password")


@dataclass(frozen=True)
class IssuedSession:
    user: User
    access_token: str
    access_expires_at: datetime.datetime
    refresh_token: str
    refresh_expires_at: datetime.datetime


@dataclass(frozen=True)
class RegisterResult:
    session: IssuedSession
    organization: Organization
    role: MembershipRole


@dataclass(frozen=True)
class LoginResult:
    user: User
    session: IssuedSession | None = None
    challenge_id: uuid.UUID | None = None
    challenge_expires_at: datetime.datetime | None = None

    @property
    def mfa_required(self) -> bool:
        return self.session is None


@dataclass(frozen=True)
class Profile:
    user: User
    memberships: Sequence[tuple[Membership, Organization]]
    recovery_codes_remaining: int


def _is_duplicate_email_error(exc: IntegrityError) -> bool:
    if exc.orig is None:
        return False
    message = str(exc.orig).lower()
    return (
        "uq_users_email" in message
        or "duplicate entry" in message
        or "unique constraint failed: users.email" in message
    )


def issue_session(
    store: CredentialStore,
    user: User,
    *,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime,
) -> IssuedSession:
    """Mint an access token and stage a new refresh-token row. Caller commits."""
    access_token, access_expires_at = issue_access_token(
        user_id=user.id,
        email=user.email,
        name=user.name,
        now=now,
    )
    refresh_token = new_refresh_token()
    refresh_expires_at = now + datetime.timedelta(days=settings.jwt_refresh_ttl_days)
    store.add_refresh_token(
        RefreshToken(
            id=uuid.uuid4(),
            user_id=user.id,
            token_hash=hash_refresh_token(refresh_token),
            ip_address=client_ip[:45],
            user_agent=user_agent[:512],
            created_at=now,
            expires_at=refresh_expires_at,
        )
    )
    return IssuedSession(
        user=user,
        access_token=access_token,
        access_expires_at=access_expires_at,
        refresh_token=refresh_token,
        refresh_expires_at=refresh_expires_at,
    )


async def register_user(
    store: CredentialStore,
    payload: RegisterRequest,
    *,
    client_ip: str,
    user_agent: str,
    hasher: Hasher = password_hasher,
    limiter: RateLimiter = rate_limiter,
    now: datetime.datetime | None = None,
) -> RegisterResult:
    await limiter.enforce(
        register_key(client_ip),
        limit=settings.register_rate_limit,
        window_seconds=settings.register_rate_window_seconds,
    )
    if await store.email_exists(payload.email):
        raise DuplicateEmailError()

    current_time = now or utcnow()
    password_hash = await asyncio.to_thread(hasher.hash, payload.password)
    user = User(
        id=uuid.uuid4(),
        email=payload.email,
        name=payload.name,
        password_hash=password_hash,
        mfa_enabled=False,
        created_at=current_time,
    )
    organization = Organization(id=uuid.uuid4(), name=payload.org_name, created_at=current_time)

    try:
        async with store.transaction():
            store.add_user(user)
            store.add_organization(organization)
            await store.flush()
            store.add_membership(
                Membership(
                    org_id=organization.id,
                    user_id=user.id,
                    role=MembershipRole.OWNER,
                    created_at=current_time,
                )
            )
            store.add_org_key_version(
                OrgKeyVersion(org_id=organization.id, version=1, created_at=current_time, updated_at=current_time)
            )
            session = issue_session(store, user, client_ip=client_ip, user_agent=user_agent, now=current_time)
    except IntegrityError as exc:
        if _is_duplicate_email_error(exc):
            raise DuplicateEmailError() from exc
        raise

    log.info("user_registered", user_id=str(user.id), org_id=str(organization.id))
    activity_recorder.record(
        ActivityKind.REGISTER,
        f"{user.email} registered and created {organization.name}",
        actor_id=user.id,
        org_id=organization.id,
    )
    return RegisterResult(session=session, organization=organization, role=MembershipRole.OWNER)


async def login_user(
    store: CredentialStore,
    payload: LoginRequest,
    *,
    client_ip: str,
    user_agent: str,
    hasher: Hasher = password_hasher,
    limiter: RateLimiter = rate_limiter,
    now: datetime.datetime | None = None,
) -> LoginResult:
    await limiter.enforce(
        login_key(client_ip, payload.email),
        limit=settings.login_rate_limit,
        window_seconds=settings.login_rate_window_seconds,
    )

    started = time.monotonic()
    user = await store.get_user_by_email(payload.email)
    if user is None:
        await asyncio.to_thread(hasher.verify, DUMMY_PASSWORD_HASH, payload.password)
        await _sleep_to_minimum_failed_duration(started)
        raise InvalidLoginError()

    if not await asyncio.to_thread(hasher.verify, user.password_hash, payload.password):
        await _sleep_to_minimum_failed_duration(started)
        raise InvalidLoginError()

    current_time = now or utcnow()
    async with store.transaction():
        await store.delete_expired_refresh_tokens(user.id, current_time)
        await store.delete_expired_challenges(user.id, current_time)

        if user.mfa_enabled:
            challenge = LoginMfaChallenge(
                id=uuid.uuid4(),
                user_id=user.id,
                expires_at=current_time + datetime.timedelta(minutes=settings.mfa_challenge_ttl_minutes),
                verified=False,
                failed_attempts=0,
                created_at=current_time,
            )
            store.add_challenge(challenge)
            result = LoginResult(
                user=user,
                challenge_id=challenge.id,
                challenge_expires_at=challenge.expires_at,
            )
        else:
            session = issue_session(store, user, client_ip=client_ip, user_agent=user_agent, now=current_time)
            result = LoginResult(user=user, session=session)

    log.info("login_password_ok", user_id=str(user.id), mfa_required=result.mfa_required)
    return result


async def refresh_tokens(
    store: CredentialStore,
    refresh_token: str,
    *,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> IssuedSession:
    current_time = now or utcnow()
    current = await store.get_refresh_token_by_hash(hash_refresh_token(refresh_token))
    if current is None:
        raise InvalidRefreshTokenError()

    if is_expired(current.expires_at, current_time):
        async with store.transaction():
            await store.delete_refresh_token(current.id)
        raise ExpiredRefreshTokenError()

    async with store.transaction():
        # whichever caller deletes the row owns the rotation
        if not await store.delete_refresh_token(current.id):
            raise InvalidRefreshTokenError()
        user = await store.get_user(current.user_id)
        if user is None:
            raise InvalidRefreshTokenError()
        session = issue_session(store, user, client_ip=client_ip, user_agent=user_agent, now=current_time)
    return session


async def logout(store: CredentialStore, refresh_token: str) -> bool:
    async with store.transaction():
        return await store.delete_refresh_token_by_hash(hash_refresh_token(refresh_token))


async def logout_all(store: CredentialStore, user: User) -> int:
    async with store.transaction():
        revoked = await store.delete_refresh_tokens_for_user(user.id)
    log.info("logout_all", user_id=str(user.id), revoked=revoked)
    activity_recorder.record(ActivityKind.LOGOUT_ALL, f"{user.email} signed out everywhere", actor_id=user.id)
    return revoked


async def list_sessions(
    store: CredentialStore,
    user: User,
    *,
    now: datetime.datetime | None = None,
) -> Sequence[RefreshToken]:
    return await store.list_refresh_tokens(user.id, now or utcnow())


async def revoke_session(store: CredentialStore, user: User, session_id: uuid.UUID) -> None:
    async with store.transaction():
        if not await store.delete_refresh_token_for_user(session_id, user.id):
            raise NotFoundError("Session not found.")


async def get_profile(store: CredentialStore, user: User) -> Profile:
    memberships = await store.list_user_memberships(user.id)
    remaining = await store.count_unused_recovery_codes(user.id) if user.mfa_enabled else 0
    return Profile(user=user, memberships=memberships, recovery_codes_remaining=remaining)


async def get_user_from_access_token(store: CredentialStore, access_token: str) -> User:
    try:
        claims = validate_access_token(access_token)
    except AccessTokenValidationError as exc:
        raise UnauthenticatedError("Invalid or expired access token.") from exc

    user = await store.get_user(claims.sub)
    if user is None or user.email != claims.email:
        raise UnauthenticatedError("Invalid or expired access token.")
    return user


async def _sleep_to_minimum_failed_duration(started: float) -> None:
    elapsed = time.monotonic() - started
    remaining = MIN_FAILED_LOGIN_RESPONSE_SECONDS - elapsed
    if remaining > 0:
        await asyncio.sleep(remaining)
