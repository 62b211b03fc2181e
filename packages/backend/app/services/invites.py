from __future__ import annotations

import datetime
import uuid
from collections.abc import Sequence
from dataclasses import dataclass

import structlog
from sqlalchemy.exc import IntegrityError

from app.core.errors import (
    ConflictError,
    InvalidInviteError,
    InviteExhaustedError,
    InviteExpiredError,
    ValidationFailedError,
)
from app.core.settings import settings
from app.core.timeutil import is_expired, utcnow
from app.db.store import CredentialStore
from app.models.activity_log import ActivityKind
from app.models.invite import OrgInvite
from app.models.organization import Membership, MembershipRole
from app.models.user import User
from app.security.invite_codes import generate_invite_code, normalize_invite_code
from app.services.activity import activity_recorder
from app.services.authorization import parse_role, require_role


log = structlog.get_logger(__name__)

INVITABLE_ROLES = frozenset({MembershipRole.MEMBER, MembershipRole.ADMIN})
CODE_GENERATION_ATTEMPTS = 5
INVITE_LIST_LIMIT = 100


@dataclass(frozen=True)
class RedeemedInvite:
    org_id: uuid.UUID
    membership: Membership


async def _unused_code(store: CredentialStore) -> str:
    for _ in range(CODE_GENERATION_ATTEMPTS):
        code = generate_invite_code()
        if not await store.invite_code_exists(code):
            return code
    raise RuntimeError("could not generate an unused invite code")


async def create_invite(
    store: CredentialStore,
    actor: User,
    org_id: uuid.UUID,
    *,
    role: MembershipRole | str = MembershipRole.MEMBER,
    max_uses: int = 1,
    expires_in_days: int | None = None,
    now: datetime.datetime | None = None,
) -> OrgInvite:
    """Issue an invite code. Owners are never minted through invites."""
    await require_role(store, org_id, actor.id, MembershipRole.ADMIN)
    invite_role = parse_role(role)
    if invite_role not in INVITABLE_ROLES:
        raise ValidationFailedError("Invites may grant the member or admin role only.")
    if not 1 <= max_uses <= settings.invite_max_uses_limit:
        raise ValidationFailedError(f"max_uses must be between 1 and {settings.invite_max_uses_limit}.")

    current_time = now or utcnow()
    days = settings.invite_ttl_days if expires_in_days is None else expires_in_days
    if days < 0:
        raise ValidationFailedError("expires_in_days must not be negative.")
    invite = OrgInvite(
        code=await _unused_code(store),
        org_id=org_id,
        role=invite_role,
        uses=0,
        max_uses=max_uses,
        expires_at=current_time + datetime.timedelta(days=days) if days else None,
        created_at=current_time,
        created_by=actor.id,
    )
    async with store.transaction():
        store.add_invite(invite)

    log.info("invite_created", org_id=str(org_id), role=invite_role.value, max_uses=max_uses)
    activity_recorder.record(
        ActivityKind.INVITE_CREATE,
        f"{actor.email} created an invite for {invite_role.value}",
        actor_id=actor.id,
        org_id=org_id,
    )
    return invite


async def list_invites(store: CredentialStore, actor: User, org_id: uuid.UUID) -> Sequence[OrgInvite]:
    await require_role(store, org_id, actor.id, MembershipRole.ADMIN)
    return await store.list_invites(org_id, INVITE_LIST_LIMIT)


async def redeem_invite(
    store: CredentialStore,
    user: User,
    code: str,
    *,
    now: datetime.datetime | None = None,
) -> RedeemedInvite:
    current_time = now or utcnow()
    normalized = normalize_invite_code(code)
    invite = await store.get_invite(normalized) if normalized else None
    if invite is None:
        raise InvalidInviteError()
    org_id, role = invite.org_id, invite.role
    if await store.get_membership(org_id, user.id) is not None:
        raise ConflictError("Already a member of this organization.")

    membership = Membership(org_id=org_id, user_id=user.id, role=role, created_at=current_time)
    async with store.transaction():
        if not await store.consume_invite_use(normalized, current_time):
            current = await store.get_invite(normalized)
            if current is None:
                raise InvalidInviteError()
            if current.expires_at is not None and is_expired(current.expires_at, current_time):
                raise InviteExpiredError()
            raise InviteExhaustedError()
        store.add_membership(membership)
        try:
            await store.flush()
        except IntegrityError as exc:
            raise ConflictError("Already a member of this organization.") from exc

    log.info("invite_redeemed", org_id=str(org_id), user_id=str(user.id), role=role.value)
    activity_recorder.record(
        ActivityKind.INVITE_REDEEM,
        f"{user.email} joined as {role.value}",
        actor_id=user.id,
        org_id=org_id,
    )
    return RedeemedInvite(org_id=org_id, membership=membership)
