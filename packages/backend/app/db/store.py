from __future__ import annotations

import datetime
import uuid
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from app.models.activity_log import ActivityLog
from app.models.invite import OrgInvite
from app.models.mfa import LoginMfaChallenge, RecoveryCode
from app.models.org_key import OrgKeyVersion, WrappedOrgKey
from app.models.organization import Membership, MembershipRole, Organization
from app.models.rate_limit import RateLimitCounter
from app.models.refresh_token import RefreshToken
from app.models.user import User


class CredentialStore:
    """Row access for users, memberships, tokens and wrapped keys.

    Every conditional write reports whether it touched a row so callers can
    build single-use semantics on top of it. Nothing here decides policy.
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[CredentialStore]:
        try:
            yield self
            await self._db.commit()
        except BaseException:
            await self._db.rollback()
            raise

    async def flush(self) -> None:
        await self._db.flush()

    @staticmethod
    def mirror(instance: object, **values: Any) -> None:
        """Copy values written by a bulk UPDATE onto an already loaded instance without dirtying it."""
        for key, value in values.items():
            set_committed_value(instance, key, value)

    # users

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        return await self._db.get(User, user_id, populate_existing=True)

    async def get_user_by_email(self, email: str) -> User | None:
        query = select(User).where(User.email == email).execution_options(populate_existing=True)
        return (await self._db.execute(query)).scalar_one_or_none()

    async def email_exists(self, email: str) -> bool:
        query = select(func.count()).select_from(User).where(User.email == email)
        return bool((await self._db.execute(query)).scalar_one())

    def add_user(self, user: User) -> None:
        self._db.add(user)

    async def set_public_key(self, user_id: uuid.UUID, *, public_key: str, kid: str) -> None:
        await self._db.execute(
            update(User)
            .where(User.id == user_id)
            .values(public_key=public_key, public_key_kid=kid)
            .execution_options(synchronize_session=False)
        )

    async def set_totp_secret(self, user_id: uuid.UUID, encrypted_secret: str | None, *, enabled: bool) -> None:
        await self._db.execute(
            update(User)
            .where(User.id == user_id)
            .values(totp_secret_encrypted=encrypted_secret, mfa_enabled=enabled)
            .execution_options(synchronize_session=False)
        )

    async def set_mfa_enabled(self, user_id: uuid.UUID, enabled: bool) -> None:
        await self._db.execute(
            update(User)
            .where(User.id == user_id)
            .values(mfa_enabled=enabled)
            .execution_options(synchronize_session=False)
        )

    # organizations and memberships

    def add_organization(self, organization: Organization) -> None:
        self._db.add(organization)

    async def get_organization(self, org_id: uuid.UUID) -> Organization | None:
        return await self._db.get(Organization, org_id)

    def add_membership(self, membership: Membership) -> None:
        self._db.add(membership)

    async def get_membership(
        self,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        *,
        for_update: bool = False,
    ) -> Membership | None:
        query = (
            select(Membership)
            .where(Membership.org_id == org_id, Membership.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        return (await self._db.execute(query)).scalar_one_or_none()

    async def list_memberships(self, org_id: uuid.UUID) -> Sequence[tuple[Membership, User]]:
        query = (
            select(Membership, User)
            .join(User, User.id == Membership.user_id)
            .where(Membership.org_id == org_id)
            .order_by(func.lower(User.email))
            .execution_options(populate_existing=True)
        )
        return [(row[0], row[1]) for row in (await self._db.execute(query)).all()]

    async def list_user_memberships(self, user_id: uuid.UUID) -> Sequence[tuple[Membership, Organization]]:
        query = (
            select(Membership, Organization)
            .join(Organization, Organization.id == Membership.org_id)
            .where(Membership.user_id == user_id)
            .order_by(Organization.created_at)
            .execution_options(populate_existing=True)
        )
        return [(row[0], row[1]) for row in (await self._db.execute(query)).all()]

    async def lock_organization(self, org_id: uuid.UUID) -> bool:
        """Write-lock the organization row until the surrounding transaction ends.

        A no-op UPDATE takes the lock on every backend, including SQLite where
        ``SELECT ... FOR UPDATE`` is ignored. Must be the first write of the
        transaction so concurrent callers queue behind it before reading.
        """
        result = await self._db.execute(
            update(Organization)
            .where(Organization.id == org_id)
            .values(name=Organization.name)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def lock_owner_memberships(self, org_id: uuid.UUID) -> Sequence[Membership]:
        query = (
            select(Membership)
            .where(Membership.org_id == org_id, Membership.role == MembershipRole.OWNER)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalars().all()

    async def update_membership_role(self, org_id: uuid.UUID, user_id: uuid.UUID, role: MembershipRole) -> bool:
        result = await self._db.execute(
            update(Membership)
            .where(Membership.org_id == org_id, Membership.user_id == user_id)
            .values(role=role)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_membership(self, org_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        result = await self._db.execute(
            delete(Membership)
            .where(Membership.org_id == org_id, Membership.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # refresh tokens

    def add_refresh_token(self, token: RefreshToken) -> None:
        self._db.add(token)

    async def get_refresh_token_by_hash(self, token_hash: str) -> RefreshToken | None:
        query = (
            select(RefreshToken)
            .where(RefreshToken.token_hash == token_hash)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalar_one_or_none()

    async def delete_refresh_token(self, token_id: uuid.UUID) -> bool:
        result = await self._db.execute(
            delete(RefreshToken)
            .where(RefreshToken.id == token_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_refresh_token_for_user(self, token_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        result = await self._db.execute(
            delete(RefreshToken)
            .where(RefreshToken.id == token_id, RefreshToken.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_refresh_token_by_hash(self, token_hash: str) -> bool:
        result = await self._db.execute(
            delete(RefreshToken)
            .where(RefreshToken.token_hash == token_hash)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_refresh_tokens_for_user(self, user_id: uuid.UUID) -> int:
        result = await self._db.execute(
            delete(RefreshToken)
            .where(RefreshToken.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def delete_expired_refresh_tokens(self, user_id: uuid.UUID, now: datetime.datetime) -> int:
        result = await self._db.execute(
            delete(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.expires_at <= now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def list_refresh_tokens(self, user_id: uuid.UUID, now: datetime.datetime) -> Sequence[RefreshToken]:
        query = (
            select(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.expires_at > now)
            .order_by(RefreshToken.created_at.desc())
        )
        return (await self._db.execute(query)).scalars().all()

    # mfa challenges

    def add_challenge(self, challenge: LoginMfaChallenge) -> None:
        self._db.add(challenge)

    async def get_challenge(self, challenge_id: uuid.UUID) -> LoginMfaChallenge | None:
        query = (
            select(LoginMfaChallenge)
            .where(LoginMfaChallenge.id == challenge_id)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalar_one_or_none()

    async def mark_challenge_verified(self, challenge_id: uuid.UUID) -> bool:
        result = await self._db.execute(
            update(LoginMfaChallenge)
            .where(LoginMfaChallenge.id == challenge_id, LoginMfaChallenge.verified.is_(False))
            .values(verified=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def record_challenge_failure(self, challenge_id: uuid.UUID) -> int:
        await self._db.execute(
            update(LoginMfaChallenge)
            .where(LoginMfaChallenge.id == challenge_id)
            .values(failed_attempts=LoginMfaChallenge.failed_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        query = select(LoginMfaChallenge.failed_attempts).where(LoginMfaChallenge.id == challenge_id)
        return int((await self._db.execute(query)).scalar_one_or_none() or 0)

    async def delete_challenges_for_user(self, user_id: uuid.UUID) -> None:
        await self._db.execute(
            delete(LoginMfaChallenge)
            .where(LoginMfaChallenge.user_id == user_id)
            .execution_options(synchronize_session=False)
        )

    async def delete_expired_challenges(self, user_id: uuid.UUID, now: datetime.datetime) -> None:
        await self._db.execute(
            delete(LoginMfaChallenge)
            .where(LoginMfaChallenge.user_id == user_id, LoginMfaChallenge.expires_at <= now)
            .execution_options(synchronize_session=False)
        )

    # recovery codes

    async def replace_recovery_codes(self, user_id: uuid.UUID, code_hashes: Sequence[str]) -> None:
        await self.delete_recovery_codes(user_id)
        for code_hash in code_hashes:
            self._db.add(RecoveryCode(id=uuid.uuid4(), user_id=user_id, code_hash=code_hash, used=False))

    async def list_unused_recovery_codes(self, user_id: uuid.UUID) -> Sequence[RecoveryCode]:
        query = (
            select(RecoveryCode)
            .where(RecoveryCode.user_id == user_id, RecoveryCode.used.is_(False))
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalars().all()

    async def count_unused_recovery_codes(self, user_id: uuid.UUID) -> int:
        query = (
            select(func.count())
            .select_from(RecoveryCode)
            .where(RecoveryCode.user_id == user_id, RecoveryCode.used.is_(False))
        )
        return int((await self._db.execute(query)).scalar_one())

    async def mark_recovery_code_used(self, code_id: uuid.UUID, now: datetime.datetime) -> bool:
        result = await self._db.execute(
            update(RecoveryCode)
            .where(RecoveryCode.id == code_id, RecoveryCode.used.is_(False))
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def delete_recovery_codes(self, user_id: uuid.UUID) -> None:
        await self._db.execute(
            delete(RecoveryCode)
            .where(RecoveryCode.user_id == user_id)
            .execution_options(synchronize_session=False)
        )

    # org key versions and wraps

    def add_org_key_version(self, key_version: OrgKeyVersion) -> None:
        self._db.add(key_version)

    async def get_org_key_version(self, org_id: uuid.UUID) -> int | None:
        query = select(OrgKeyVersion.version).where(OrgKeyVersion.org_id == org_id)
        value = (await self._db.execute(query)).scalar_one_or_none()
        return int(value) if value is not None else None

    async def increment_org_key_version(self, org_id: uuid.UUID, now: datetime.datetime) -> int | None:
        result = await self._db.execute(
            update(OrgKeyVersion)
            .where(OrgKeyVersion.org_id == org_id)
            .values(version=OrgKeyVersion.version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return await self.get_org_key_version(org_id)

    async def advance_org_key_version(self, org_id: uuid.UUID, at_least: int, now: datetime.datetime) -> bool:
        result = await self._db.execute(
            update(OrgKeyVersion)
            .where(OrgKeyVersion.org_id == org_id, OrgKeyVersion.version < at_least)
            .values(version=at_least, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_wrapped_key(self, org_id: uuid.UUID, user_id: uuid.UUID) -> WrappedOrgKey | None:
        query = (
            select(WrappedOrgKey)
            .where(WrappedOrgKey.org_id == org_id, WrappedOrgKey.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalar_one_or_none()

    async def delete_wrapped_key(self, org_id: uuid.UUID, user_id: uuid.UUID) -> bool:
        result = await self._db.execute(
            delete(WrappedOrgKey)
            .where(WrappedOrgKey.org_id == org_id, WrappedOrgKey.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_wrapped_keys(self, org_id: uuid.UUID) -> Sequence[WrappedOrgKey]:
        query = (
            select(WrappedOrgKey)
            .where(WrappedOrgKey.org_id == org_id)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalars().all()

    async def upsert_wrapped_key(
        self,
        *,
        org_id: uuid.UUID,
        user_id: uuid.UUID,
        wrapped_key: str,
        key_version: int,
        kid: str | None,
        wrapped_by: uuid.UUID | None,
        now: datetime.datetime,
    ) -> WrappedOrgKey:
        existing = await self.get_wrapped_key(org_id, user_id)
        if existing is None:
            existing = WrappedOrgKey(org_id=org_id, user_id=user_id)
            self._db.add(existing)
        existing.wrapped_key = wrapped_key
        existing.key_version = key_version
        existing.kid = kid
        existing.wrapped_by = wrapped_by
        existing.wrapped_at = now
        return existing

    # rate limit counters

    async def get_rate_limit_counter(self, key: str) -> RateLimitCounter | None:
        query = (
            select(RateLimitCounter)
            .where(RateLimitCounter.key == key)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalar_one_or_none()

    def add_rate_limit_counter(self, counter: RateLimitCounter) -> None:
        self._db.add(counter)

    async def restart_rate_limit_window(
        self,
        key: str,
        *,
        now: datetime.datetime,
        reset_at: datetime.datetime,
    ) -> bool:
        result = await self._db.execute(
            update(RateLimitCounter)
            .where(RateLimitCounter.key == key, RateLimitCounter.reset_at <= now)
            .values(count=1, reset_at=reset_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def increment_rate_limit_counter(self, key: str) -> int:
        await self._db.execute(
            update(RateLimitCounter)
            .where(RateLimitCounter.key == key)
            .values(count=RateLimitCounter.count + 1)
            .execution_options(synchronize_session=False)
        )
        query = select(RateLimitCounter.count).where(RateLimitCounter.key == key)
        return int((await self._db.execute(query)).scalar_one())

    # activity

    def add_activity(self, entry: ActivityLog) -> None:
        self._db.add(entry)

    async def list_activity(self, org_id: uuid.UUID, limit: int) -> Sequence[ActivityLog]:
        query = (
            select(ActivityLog)
            .where(ActivityLog.org_id == org_id)
            .order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .limit(limit)
        )
        return (await self._db.execute(query)).scalars().all()

    # invites

    def add_invite(self, invite: OrgInvite) -> None:
        self._db.add(invite)

    async def invite_code_exists(self, code: str) -> bool:
        query = select(func.count()).select_from(OrgInvite).where(OrgInvite.code == code)
        return bool((await self._db.execute(query)).scalar_one())

    async def get_invite(self, code: str) -> OrgInvite | None:
        query = (
            select(OrgInvite)
            .where(OrgInvite.code == code)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalar_one_or_none()

    async def list_invites(self, org_id: uuid.UUID, limit: int) -> Sequence[OrgInvite]:
        query = (
            select(OrgInvite)
            .where(OrgInvite.org_id == org_id)
            .order_by(OrgInvite.created_at.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return (await self._db.execute(query)).scalars().all()

    async def consume_invite_use(self, code: str, now: datetime.datetime) -> bool:
        result = await self._db.execute(
            update(OrgInvite)
            .where(
                OrgInvite.code == code,
                OrgInvite.uses < OrgInvite.max_uses,
                or_(OrgInvite.expires_at.is_(None), OrgInvite.expires_at > now),
            )
            .values(uses=OrgInvite.uses + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
