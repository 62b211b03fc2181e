"""Server side of org key distribution.

The server brokers opaque wrapped keys between members. It validates public
keys and envelope structure, tracks the org key version, and never holds
anything it could unwrap.
"""

from __future__ import annotations

import datetime
import json
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from app.core.errors import NotFoundError, ValidationFailedError
from app.core.timeutil import utcnow
from app.db.store import CredentialStore
from app.models.activity_log import ActivityKind
from app.models.organization import MembershipRole
from app.models.user import User
from app.security import zk
from app.services.activity import activity_recorder
from app.services.authorization import require_role, role_rank


log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WrapInput:
    user_id: uuid.UUID
    wrapped_key: str | Mapping[str, Any]
    key_version: int | None = None
    kid: str | None = None


@dataclass(frozen=True)
class PublishResult:
    stored: int
    key_version: int


@dataclass(frozen=True)
class FetchResult:
    has_key: bool
    key_version: int
    wrapped_key: str | None = None
    wrap_version: int | None = None
    kid: str | None = None

    @property
    def stale(self) -> bool:
        return self.wrap_version is not None and self.wrap_version < self.key_version


@dataclass(frozen=True)
class KeyStatus:
    enabled: bool
    key_version: int
    my_wrap_version: int | None
    pending_rewrap: list[uuid.UUID] | None


@dataclass(frozen=True)
class MemberKey:
    user_id: uuid.UUID
    email: str
    name: str
    role: MembershipRole
    public_key: dict[str, Any] | None
    kid: str | None
    wrap_version: int | None


def _load_public_key(user: User) -> dict[str, Any] | None:
    if not user.public_key:
        return None
    return json.loads(user.public_key)


async def register_public_key(store: CredentialStore, user: User, jwk: Mapping[str, Any]) -> tuple[dict[str, Any], str]:
    try:
        canonical = zk.canonical_public_jwk(jwk)
        kid = zk.kid_from_jwk(jwk)
    except zk.InvalidPublicKeyError as exc:
        raise ValidationFailedError(f"Invalid public key: {exc}") from exc

    async with store.transaction():
        await store.set_public_key(user.id, public_key=canonical, kid=kid)
    store.mirror(user, public_key=canonical, public_key_kid=kid)

    log.info("public_key_registered", user_id=str(user.id), kid=kid)
    activity_recorder.record(ActivityKind.KEY_REGISTER, f"{user.email} registered a device key", actor_id=user.id)
    return json.loads(canonical), kid


def get_public_key(user: User) -> tuple[dict[str, Any] | None, str | None]:
    return _load_public_key(user), user.public_key_kid


async def _current_version(store: CredentialStore, org_id: uuid.UUID) -> int:
    # the row is created together with the organization
    version = await store.get_org_key_version(org_id)
    if version is None:
        raise NotFoundError("Organization key version not found.")
    return version


def _validated_blob(wrap: WrapInput) -> str:
    try:
        zk.parse_wrapped_key(wrap.wrapped_key)
    except zk.WrappedKeyFormatError as exc:
        raise ValidationFailedError(f"Malformed wrapped key for {wrap.user_id}: {exc}", user_id=str(wrap.user_id)) from exc
    if isinstance(wrap.wrapped_key, str):
        return wrap.wrapped_key
    return json.dumps(dict(wrap.wrapped_key), sort_keys=True, separators=(",", ":"))


async def _stage_wraps(
    store: CredentialStore,
    org_id: uuid.UUID,
    actor: User,
    wraps: Sequence[WrapInput],
    *,
    version_for: Callable[[WrapInput], int],
    now: datetime.datetime,
) -> int:
    seen: set[uuid.UUID] = set()
    for wrap in wraps:
        if wrap.user_id in seen:
            raise ValidationFailedError(f"Duplicate wrapped key for {wrap.user_id}.", user_id=str(wrap.user_id))
        seen.add(wrap.user_id)
        target = await store.get_membership(org_id, wrap.user_id)
        if target is None:
            raise ValidationFailedError(
                f"User {wrap.user_id} is not a member of this organization.",
                user_id=str(wrap.user_id),
            )
        blob = _validated_blob(wrap)
        kid = wrap.kid
        if kid is None:
            member = await store.get_user(wrap.user_id)
            kid = member.public_key_kid if member is not None else None
        await store.upsert_wrapped_key(
            org_id=org_id,
            user_id=wrap.user_id,
            wrapped_key=blob,
            key_version=version_for(wrap),
            kid=kid,
            wrapped_by=actor.id,
            now=now,
        )
    return len(wraps)


async def publish_wrapped_keys(
    store: CredentialStore,
    actor: User,
    org_id: uuid.UUID,
    wraps: Sequence[WrapInput],
    *,
    key_version: int | None = None,
    now: datetime.datetime | None = None,
) -> PublishResult:
    """Store member wraps and move the org version forward, never back."""
    await require_role(store, org_id, actor.id, MembershipRole.ADMIN)
    if not wraps:
        raise ValidationFailedError("At least one wrapped key is required.")
    for candidate in [key_version, *(w.key_version for w in wraps)]:
        if candidate is not None and candidate < 1:
            raise ValidationFailedError("Key versions start at 1.")

    current_time = now or utcnow()
    async with store.transaction():
        current = await _current_version(store, org_id)
        requested = max(v for v in [key_version, *(w.key_version for w in wraps), 0] if v is not None)
        if requested > current:
            await store.advance_org_key_version(org_id, requested, current_time)
            current = await store.get_org_key_version(org_id) or requested

        default_version = key_version or current
        stored = await _stage_wraps(
            store,
            org_id,
            actor,
            wraps,
            version_for=lambda wrap: wrap.key_version or default_version,
            now=current_time,
        )

    log.info("wrapped_keys_published", org_id=str(org_id), stored=stored, key_version=current)
    activity_recorder.record(
        ActivityKind.KEY_WRAP_PUBLISH,
        f"{actor.email} published {stored} wrapped key(s) at version {current}",
        actor_id=actor.id,
        org_id=org_id,
    )
    return PublishResult(stored=stored, key_version=current)


async def fetch_wrapped_key(store: CredentialStore, user: User, org_id: uuid.UUID) -> FetchResult:
    await require_role(store, org_id, user.id, MembershipRole.VIEWER)
    current = await store.get_org_key_version(org_id) or 1
    row = await store.get_wrapped_key(org_id, user.id)
    if row is None:
        return FetchResult(has_key=False, key_version=current)
    return FetchResult(
        has_key=True,
        key_version=current,
        wrapped_key=row.wrapped_key,
        wrap_version=row.key_version,
        kid=row.kid,
    )


async def rotate_key_version(
    store: CredentialStore,
    actor: User,
    org_id: uuid.UUID,
    wraps: Sequence[WrapInput] = (),
    *,
    now: datetime.datetime | None = None,
) -> PublishResult:
    """Bump the org key version; wraps sent along are stored under the new version.

    Existing wraps are left in place and show up as stale until re-published.
    """
    await require_role(store, org_id, actor.id, MembershipRole.ADMIN)
    current_time = now or utcnow()
    async with store.transaction():
        new_version = await store.increment_org_key_version(org_id, current_time)
        if new_version is None:
            raise NotFoundError("Organization key version not found.")
        stored = await _stage_wraps(
            store,
            org_id,
            actor,
            wraps,
            version_for=lambda _wrap: new_version,
            now=current_time,
        )

    log.info("org_key_rotated", org_id=str(org_id), key_version=new_version, stored=stored)
    activity_recorder.record(
        ActivityKind.KEY_ROTATE,
        f"{actor.email} rotated the org key to version {new_version}",
        actor_id=actor.id,
        org_id=org_id,
    )
    return PublishResult(stored=stored, key_version=new_version)


async def key_status(store: CredentialStore, user: User, org_id: uuid.UUID) -> KeyStatus:
    membership = await require_role(store, org_id, user.id, MembershipRole.VIEWER)
    current = await store.get_org_key_version(org_id) or 1
    wraps = {row.user_id: row.key_version for row in await store.list_wrapped_keys(org_id)}

    pending: list[uuid.UUID] | None = None
    if role_rank(membership.role) >= role_rank(MembershipRole.ADMIN):
        pending = [
            member.user_id
            for member, _user in await store.list_memberships(org_id)
            if wraps.get(member.user_id, 0) < current
        ]
    return KeyStatus(
        enabled=bool(wraps),
        key_version=current,
        my_wrap_version=wraps.get(user.id),
        pending_rewrap=pending,
    )


async def list_member_public_keys(store: CredentialStore, actor: User, org_id: uuid.UUID) -> list[MemberKey]:
    await require_role(store, org_id, actor.id, MembershipRole.ADMIN)
    wraps = {row.user_id: row.key_version for row in await store.list_wrapped_keys(org_id)}
    return [
        MemberKey(
            user_id=member.user_id,
            email=user.email,
            name=user.name,
            role=member.role,
            public_key=_load_public_key(user),
            kid=user.public_key_kid,
            wrap_version=wraps.get(member.user_id),
        )
        for member, user in await store.list_memberships(org_id)
    ]
