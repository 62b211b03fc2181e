from __future__ import annotations

import datetime
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

import structlog

from app.core.errors import (
    ConflictError,
    InsufficientRoleError,
    LastOwnerError,
    NotAMemberError,
    NotFoundError,
    OwnerRequiredError,
    ValidationFailedError,
)
from app.core.timeutil import utcnow
from app.db.store import CredentialStore
from app.models.activity_log import ActivityKind, ActivityLog
from app.models.org_key import OrgKeyVersion
from app.models.organization import ROLE_RANK, Membership, MembershipRole, Organization
from app.models.user import User
from app.services.activity import activity_recorder


log = structlog.get_logger(__name__)

ACTIVITY_FEED_MAX_LIMIT = 100


@dataclass(frozen=True)
class MemberView:
    membership: Membership
    user: User


def parse_role(value: MembershipRole | str) -> MembershipRole:
    if isinstance(value, MembershipRole):
        return value
    try:
        return MembershipRole(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationFailedError(f"Unknown role {value!r}.") from exc


def role_rank(role: MembershipRole | str) -> int:
    return ROLE_RANK[parse_role(role)]


async def require_role(
    store: CredentialStore,
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    min_role: MembershipRole | str,
) -> Membership:
    """Return the caller's membership if it ranks at least ``min_role``."""
    membership = await store.get_membership(org_id, user_id)
    if membership is None:
        raise NotAMemberError()
    if role_rank(membership.role) < role_rank(min_role):
        raise InsufficientRoleError()
    return membership


async def list_organizations(store: CredentialStore, user: User) -> Sequence[tuple[Membership, Organization]]:
    return await store.list_user_memberships(user.id)


async def create_organization(
    store: CredentialStore,
    user: User,
    name: str,
    *,
    now: datetime.datetime | None = None,
) -> Organization:
    current_time = now or utcnow()
    organization = Organization(id=uuid.uuid4(), name=name.strip(), created_at=current_time)
    async with store.transaction():
        store.add_organization(organization)
        await store.flush()
        store.add_membership(
            Membership(org_id=organization.id, user_id=user.id, role=MembershipRole.OWNER, created_at=current_time)
        )
        store.add_org_key_version(
            OrgKeyVersion(org_id=organization.id, version=1, created_at=current_time, updated_at=current_time)
        )

    log.info("organization_created", org_id=str(organization.id), user_id=str(user.id))
    activity_recorder.record(
        ActivityKind.ORG_CREATE,
        f"{user.email} created {organization.name}",
        actor_id=user.id,
        org_id=organization.id,
    )
    return organization


async def list_members(store: CredentialStore, actor: User, org_id: uuid.UUID) -> list[MemberView]:
    await require_role(store, org_id, actor.id, MembershipRole.ADMIN)
    rows = await store.list_memberships(org_id)
    members = [MemberView(membership=m, user=u) for m, u in rows]
    # store returns email order; stable sort keeps it within each rank
    members.sort(key=lambda view: -role_rank(view.membership.role))
    return members


async def add_member(
    store: CredentialStore,
    actor: User,
    org_id: uuid.UUID,
    *,
    email: str,
    role: MembershipRole | str,
    now: datetime.datetime | None = None,
) -> MemberView:
    target_role = parse_role(role)
    actor_membership = await require_role(store, org_id, actor.id, MembershipRole.ADMIN)
    if target_role == MembershipRole.OWNER and actor_membership.role != MembershipRole.OWNER:
        raise OwnerRequiredError()

    target = await store.get_user_by_email(email.strip().lower())
    if target is None:
        raise NotFoundError("No user with that email.")
    if await store.get_membership(org_id, target.id) is not None:
        raise ConflictError("User is already a member of this organization.")

    membership = Membership(org_id=org_id, user_id=target.id, role=target_role, created_at=now or utcnow())
    async with store.transaction():
        store.add_membership(membership)

    activity_recorder.record(
        ActivityKind.MEMBER_ADD,
        f"{actor.email} added {target.email} as {target_role.value}",
        actor_id=actor.id,
        org_id=org_id,
    )
    return MemberView(membership=membership, user=target)


@dataclass(frozen=True)
class _LockedChange:
    actor: Membership
    target: Membership


def _authorize_owner_change(
    actor: Membership,
    target: Membership,
    new_role: MembershipRole | None,
) -> None:
    touches_owner = target.role == MembershipRole.OWNER or new_role == MembershipRole.OWNER
    if touches_owner and actor.role != MembershipRole.OWNER:
        raise OwnerRequiredError()


async def _lock_change(
    store: CredentialStore,
    org_id: uuid.UUID,
    actor_id: uuid.UUID,
    target_user_id: uuid.UUID,
) -> _LockedChange:
    """Serialize membership changes for the org, then re-read both parties under the lock."""
    if not await store.lock_organization(org_id):
        raise NotFoundError("Organization not found.")
    actor = await store.get_membership(org_id, actor_id, for_update=True)
    if actor is None:
        raise NotAMemberError()
    if role_rank(actor.role) < role_rank(MembershipRole.ADMIN):
        raise InsufficientRoleError()
    target = await store.get_membership(org_id, target_user_id, for_update=True)
    if target is None:
        raise NotFoundError("Membership not found.")
    return _LockedChange(actor=actor, target=target)


async def _ensure_other_owner_remains(store: CredentialStore, org_id: uuid.UUID, target_user_id: uuid.UUID) -> None:
    owners = await store.lock_owner_memberships(org_id)
    if not any(owner.user_id != target_user_id for owner in owners):
        raise LastOwnerError()


async def change_member_role(
    store: CredentialStore,
    actor: User,
    org_id: uuid.UUID,
    target_user_id: uuid.UUID,
    role: MembershipRole | str,
) -> MembershipRole:
    new_role = parse_role(role)
    await require_role(store, org_id, actor.id, MembershipRole.ADMIN)

    async with store.transaction():
        locked = await _lock_change(store, org_id, actor.id, target_user_id)
        previous_role = locked.target.role
        _authorize_owner_change(locked.actor, locked.target, new_role)
        if previous_role == MembershipRole.OWNER and new_role != MembershipRole.OWNER:
            await _ensure_other_owner_remains(store, org_id, target_user_id)
        if not await store.update_membership_role(org_id, target_user_id, new_role):
            raise NotFoundError("Membership not found.")

    log.info(
        "membership_role_changed",
        org_id=str(org_id),
        target_user_id=str(target_user_id),
        previous_role=previous_role.value,
        role=new_role.value,
    )
    activity_recorder.record(
        ActivityKind.MEMBER_ROLE_CHANGE,
        f"{actor.email} changed a member from {previous_role.value} to {new_role.value}",
        actor_id=actor.id,
        org_id=org_id,
    )
    return new_role


async def remove_member(
    store: CredentialStore,
    actor: User,
    org_id: uuid.UUID,
    target_user_id: uuid.UUID,
) -> None:
    await require_role(store, org_id, actor.id, MembershipRole.ADMIN)

    async with store.transaction():
        locked = await _lock_change(store, org_id, actor.id, target_user_id)
        target = locked.target
        _authorize_owner_change(locked.actor, target, None)
        if target.role == MembershipRole.OWNER:
            await _ensure_other_owner_remains(store, org_id, target_user_id)
        if not await store.delete_membership(org_id, target_user_id):
            raise NotFoundError("Membership not found.")
        await store.delete_wrapped_key(org_id, target_user_id)

    log.info("membership_removed", org_id=str(org_id), target_user_id=str(target_user_id))
    activity_recorder.record(
        ActivityKind.MEMBER_REMOVE,
        f"{actor.email} removed a {target.role.value}",
        actor_id=actor.id,
        org_id=org_id,
    )


async def list_org_activity(
    store: CredentialStore,
    actor: User,
    org_id: uuid.UUID,
    limit: int,
) -> Sequence[ActivityLog]:
    """Newest-first activity for an organization, visible to any member."""
    await require_role(store, org_id, actor.id, MembershipRole.VIEWER)
    if not 1 <= limit <= ACTIVITY_FEED_MAX_LIMIT:
        raise ValidationFailedError(f"limit must be between 1 and {ACTIVITY_FEED_MAX_LIMIT}.")
    return await store.list_activity(org_id, limit)
