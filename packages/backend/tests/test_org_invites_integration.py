from __future__ import annotations

import asyncio
import datetime

import pytest

from app.core.errors import (
    ConflictError,
    InsufficientRoleError,
    InvalidInviteError,
    InviteExhaustedError,
    InviteExpiredError,
    NotAMemberError,
    ValidationFailedError,
)
from app.core.timeutil import utcnow
from app.db.store import CredentialStore
from app.models.activity_log import ActivityKind, ActivityLog
from app.models.organization import MembershipRole
from app.security.invite_codes import INVITE_CODE_ALPHABET, INVITE_CODE_LENGTH
from app.services import authorization, invites
from app.services.activity import activity_recorder
from conftest import bearer, register


@pytest.mark.asyncio
async def test_admin_creates_and_lists_invites(store) -> None:
    owner = await register(store)
    org_id = owner.organization.id
    now = utcnow()

    invite = await invites.create_invite(store, owner.session.user, org_id, role="admin", max_uses=3, now=now)
    forever = await invites.create_invite(store, owner.session.user, org_id, expires_in_days=0)

    assert len(invite.code) == INVITE_CODE_LENGTH
    assert set(invite.code) <= set(INVITE_CODE_ALPHABET)
    assert invite.role == MembershipRole.ADMIN
    assert (invite.uses, invite.max_uses) == (0, 3)
    assert invite.expires_at == now + datetime.timedelta(days=14)
    assert forever.role == MembershipRole.MEMBER
    assert forever.expires_at is None
    listed = await invites.list_invites(store, owner.session.user, org_id)
    assert {item.code for item in listed} == {invite.code, forever.code}


@pytest.mark.asyncio
@pytest.mark.parametrize("role", ["owner", "viewer"])
async def test_invites_only_grant_member_or_admin(store, role: str) -> None:
    owner = await register(store)

    with pytest.raises(ValidationFailedError):
        await invites.create_invite(store, owner.session.user, owner.organization.id, role=role)


@pytest.mark.asyncio
async def test_invite_limits_are_validated(store) -> None:
    owner = await register(store)
    org_id = owner.organization.id

    with pytest.raises(ValidationFailedError):
        await invites.create_invite(store, owner.session.user, org_id, max_uses=0)
    with pytest.raises(ValidationFailedError):
        await invites.create_invite(store, owner.session.user, org_id, max_uses=101)
    with pytest.raises(ValidationFailedError):
        await invites.create_invite(store, owner.session.user, org_id, expires_in_days=-1)


@pytest.mark.asyncio
async def test_members_below_admin_cannot_manage_invites(store) -> None:
    owner = await register(store)
    member = await register(store)
    outsider = await register(store)
    org_id = owner.organization.id
    await authorization.add_member(store, owner.session.user, org_id, email=member.session.user.email, role="member")

    with pytest.raises(InsufficientRoleError):
        await invites.create_invite(store, member.session.user, org_id)
    with pytest.raises(InsufficientRoleError):
        await invites.list_invites(store, member.session.user, org_id)
    with pytest.raises(NotAMemberError):
        await invites.create_invite(store, outsider.session.user, org_id)


@pytest.mark.asyncio
async def test_redeem_joins_with_the_invite_role_and_counts_uses(store) -> None:
    owner = await register(store)
    joiner = await register(store)
    org_id = owner.organization.id
    invite = await invites.create_invite(store, owner.session.user, org_id, role="admin", max_uses=2)
    messy_code = "-".join([invite.code[:5].lower(), invite.code[5:]])

    redeemed = await invites.redeem_invite(store, joiner.session.user, messy_code)

    assert redeemed.org_id == org_id
    assert redeemed.membership.role == MembershipRole.ADMIN
    membership = await store.get_membership(org_id, joiner.session.user.id)
    assert membership is not None and membership.role == MembershipRole.ADMIN
    assert (await store.get_invite(invite.code)).uses == 1


@pytest.mark.asyncio
async def test_redeem_rejects_unknown_expired_and_used_up_codes(store) -> None:
    owner = await register(store)
    first = await register(store)
    second = await register(store)
    org_id = owner.organization.id
    first_id, second_id = first.session.user.id, second.session.user.id
    short_lived = (await invites.create_invite(store, owner.session.user, org_id, expires_in_days=1)).code
    single_use = (await invites.create_invite(store, owner.session.user, org_id, max_uses=1)).code

    with pytest.raises(InvalidInviteError):
        await invites.redeem_invite(store, first.session.user, "NOPE-NOPE")
    with pytest.raises(InvalidInviteError):
        await invites.redeem_invite(store, first.session.user, "--")
    with pytest.raises(InviteExpiredError):
        await invites.redeem_invite(store, first.session.user, short_lived, now=utcnow() + datetime.timedelta(days=2))
    assert (await store.get_invite(short_lived)).uses == 0

    # a failed transaction expires loaded rows
    await invites.redeem_invite(store, await store.get_user(first_id), single_use)
    with pytest.raises(InviteExhaustedError):
        await invites.redeem_invite(store, await store.get_user(second_id), single_use)
    assert await store.get_membership(org_id, second_id) is None
    assert (await store.get_invite(single_use)).uses == 1


@pytest.mark.asyncio
async def test_existing_members_cannot_redeem_again(store) -> None:
    owner = await register(store)
    org_id = owner.organization.id
    invite = await invites.create_invite(store, owner.session.user, org_id)

    with pytest.raises(ConflictError):
        await invites.redeem_invite(store, owner.session.user, invite.code)
    assert (await store.get_invite(invite.code)).uses == 0
    owner_membership = await store.get_membership(org_id, owner.session.user.id)
    assert owner_membership.role == MembershipRole.OWNER


@pytest.mark.asyncio
async def test_concurrent_redeems_never_exceed_max_uses(session_factory) -> None:
    async with session_factory() as session:
        store = CredentialStore(session)
        owner = await register(store)
        joiners = [await register(store) for _ in range(3)]
        org_id = owner.organization.id
        invite = await invites.create_invite(store, owner.session.user, org_id, max_uses=2)

    async def redeem(user):
        async with session_factory() as session:
            return await invites.redeem_invite(CredentialStore(session), user, invite.code)

    results = await asyncio.gather(
        *(redeem(joiner.session.user) for joiner in joiners),
        return_exceptions=True,
    )

    failures = [result for result in results if isinstance(result, BaseException)]
    assert len(failures) == 1
    assert isinstance(failures[0], InviteExhaustedError)
    async with session_factory() as session:
        store = CredentialStore(session)
        assert (await store.get_invite(invite.code)).uses == 2
        members = await store.list_memberships(org_id)
    assert len(members) == 3


@pytest.mark.asyncio
async def test_activity_feed_is_newest_first_and_visible_to_viewers(store) -> None:
    owner = await register(store)
    viewer = await register(store)
    outsider = await register(store)
    org_id = owner.organization.id
    await authorization.add_member(store, owner.session.user, org_id, email=viewer.session.user.email, role="viewer")
    await activity_recorder.drain()
    later = utcnow() + datetime.timedelta(hours=1)
    async with store.transaction():
        for minutes in range(5):
            store.add_activity(
                ActivityLog(
                    org_id=org_id,
                    actor_id=owner.session.user.id,
                    kind=ActivityKind.MEMBER_ROLE_CHANGE,
                    message=f"entry {minutes}",
                    created_at=later + datetime.timedelta(minutes=minutes),
                )
            )

    entries = await authorization.list_org_activity(store, viewer.session.user, org_id, 3)

    assert [entry.message for entry in entries] == ["entry 4", "entry 3", "entry 2"]
    everything = await authorization.list_org_activity(store, owner.session.user, org_id, 100)
    assert ActivityKind.MEMBER_ADD in {entry.kind for entry in everything}
    assert all(entry.org_id == org_id for entry in everything)
    with pytest.raises(NotAMemberError):
        await authorization.list_org_activity(store, outsider.session.user, org_id, 10)
    with pytest.raises(ValidationFailedError):
        await authorization.list_org_activity(store, owner.session.user, org_id, 0)


@pytest.mark.asyncio
async def test_invite_and_activity_endpoints(client) -> None:
    owner = (
        await client.post(
            "/api/v1/auth/register",
            json={"email": "owner@example.com", "password": "correct horse battery", "name": "O", "org_name": "Acme"},
        )
    ).json()
    joiner = (
        await client.post(
            "/api/v1/auth/register",
            json={"email": "joiner@example.com", "password": "correct horse battery", "name": "J", "org_name": "Own"},
        )
    ).json()
    owner_headers = bearer(owner["access_token"])
    joiner_headers = bearer(joiner["access_token"])
    org_id = owner["org"]["id"]

    created = await client.post(f"/api/v1/orgs/{org_id}/invites", headers=owner_headers, json={"role": "admin"})
    assert created.status_code == 201
    code = created.json()["invite"]["code"]
    assert created.json()["invite"]["max_uses"] == 1
    rejected = await client.post(f"/api/v1/orgs/{org_id}/invites", headers=owner_headers, json={"role": "owner"})
    assert rejected.status_code == 400
    too_many = await client.post(f"/api/v1/orgs/{org_id}/invites", headers=owner_headers, json={"max_uses": 500})
    assert too_many.status_code == 400
    assert too_many.json()["error"] == "VALIDATION"
    forbidden = await client.get(f"/api/v1/orgs/{org_id}/invites", headers=joiner_headers)
    assert forbidden.status_code == 403

    bogus = await client.post("/api/v1/invites/redeem", headers=joiner_headers, json={"code": "ZZZZZZZZZZ"})
    assert bogus.status_code == 400
    assert bogus.json()["error"] == "INVALID_INVITE"
    redeemed = await client.post("/api/v1/invites/redeem", headers=joiner_headers, json={"code": code.lower()})
    assert redeemed.status_code == 200
    assert redeemed.json() == {"ok": True, "org_id": org_id, "role": "admin"}
    again = await client.post("/api/v1/invites/redeem", headers=joiner_headers, json={"code": code})
    assert again.status_code == 409

    listed = await client.get(f"/api/v1/orgs/{org_id}/invites", headers=joiner_headers)
    assert listed.status_code == 200
    assert [invite["uses"] for invite in listed.json()["invites"]] == [1]

    await activity_recorder.drain()
    feed = await client.get(f"/api/v1/orgs/{org_id}/activity", headers=joiner_headers, params={"limit": 2})
    assert feed.status_code == 200
    kinds = [entry["kind"] for entry in feed.json()["activity"]]
    assert len(kinds) == 2
    assert set(kinds) <= {"invite_create", "invite_redeem"}
    out_of_range = await client.get(f"/api/v1/orgs/{org_id}/activity", headers=joiner_headers, params={"limit": 0})
    assert out_of_range.status_code == 400
    unauthenticated = await client.get(f"/api/v1/orgs/{org_id}/activity")
    assert unauthenticated.status_code == 401
