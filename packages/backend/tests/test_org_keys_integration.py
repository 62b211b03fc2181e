from __future__ import annotations

import asyncio
import uuid

import pytest
from sqlalchemy import delete

from app.core.errors import InsufficientRoleError, NotAMemberError, NotFoundError, ValidationFailedError
from app.db.store import CredentialStore
from app.models.org_key import OrgKeyVersion
from app.security import zk
from app.services import authorization, org_keys
from app.services.org_keys import WrapInput
from conftest import bearer, register


async def _org_with_member(store):
    owner = await register(store)
    member = await register(store)
    org_id = owner.organization.id
    await authorization.add_member(store, owner.session.user, org_id, email=member.session.user.email, role="member")
    return owner.session.user, member.session.user, org_id


@pytest.mark.asyncio
async def test_publish_fetch_and_unwrap_round_trip(store) -> None:
    owner, member, org_id = await _org_with_member(store)
    owner_device = zk.DeviceKeyPair.generate()
    member_device = zk.DeviceKeyPair.generate()
    await org_keys.register_public_key(store, owner, owner_device.public_jwk)
    await org_keys.register_public_key(store, member, member_device.public_jwk)
    org_key = zk.generate_org_key()

    result = await org_keys.publish_wrapped_keys(
        store,
        owner,
        org_id,
        [
            WrapInput(user_id=owner.id, wrapped_key=zk.wrap_org_key(org_key, owner_device.public_jwk).to_json()),
            WrapInput(user_id=member.id, wrapped_key=zk.wrap_org_key(org_key, member_device.public_jwk).to_dict()),
        ],
    )
    assert result.stored == 2
    assert result.key_version == 1

    fetched = await org_keys.fetch_wrapped_key(store, member, org_id)
    assert fetched.has_key is True
    assert fetched.wrap_version == 1
    assert fetched.kid == member_device.kid
    assert fetched.stale is False
    assert zk.unwrap_org_key(fetched.wrapped_key, member_device) == org_key
    with pytest.raises(zk.KeyUnwrapError):
        zk.unwrap_org_key(fetched.wrapped_key, owner_device)


@pytest.mark.asyncio
async def test_publish_requires_admin_and_valid_envelopes_for_members(store) -> None:
    owner, member, org_id = await _org_with_member(store)
    owner_id, member_id = owner.id, member.id
    device = zk.DeviceKeyPair.generate()
    envelope = zk.wrap_org_key(zk.generate_org_key(), device.public_jwk).to_json()

    with pytest.raises(InsufficientRoleError):
        await org_keys.publish_wrapped_keys(store, member, org_id, [WrapInput(user_id=member_id, wrapped_key=envelope)])
    with pytest.raises(ValidationFailedError):
        await org_keys.publish_wrapped_keys(store, owner, org_id, [])

    rejected = [
        [WrapInput(user_id=member_id, wrapped_key="{}")],
        [WrapInput(user_id=uuid.uuid4(), wrapped_key=envelope)],
        [WrapInput(user_id=member_id, wrapped_key=envelope), WrapInput(user_id=member_id, wrapped_key=envelope)],
    ]
    for wraps in rejected:
        # a failed transaction expires loaded rows
        actor = await store.get_user(owner_id)
        with pytest.raises(ValidationFailedError):
            await org_keys.publish_wrapped_keys(store, actor, org_id, wraps)

    fetched = await org_keys.fetch_wrapped_key(store, await store.get_user(member_id), org_id)
    assert fetched.has_key is False
    assert fetched.key_version == 1


@pytest.mark.asyncio
async def test_rotation_bumps_version_and_marks_old_wraps_stale(store) -> None:
    owner, member, org_id = await _org_with_member(store)
    device = zk.DeviceKeyPair.generate()
    first_key = zk.generate_org_key()
    await org_keys.publish_wrapped_keys(
        store,
        owner,
        org_id,
        [
            WrapInput(user_id=owner.id, wrapped_key=zk.wrap_org_key(first_key, device.public_jwk).to_json()),
            WrapInput(user_id=member.id, wrapped_key=zk.wrap_org_key(first_key, device.public_jwk).to_json()),
        ],
    )

    second_key = zk.generate_org_key()
    rotated = await org_keys.rotate_key_version(
        store,
        owner,
        org_id,
        [WrapInput(user_id=owner.id, wrapped_key=zk.wrap_org_key(second_key, device.public_jwk).to_json())],
    )
    assert rotated.key_version == 2
    assert rotated.stored == 1

    member_view = await org_keys.fetch_wrapped_key(store, member, org_id)
    assert member_view.key_version == 2
    assert member_view.wrap_version == 1
    assert member_view.stale is True
    assert zk.unwrap_org_key(member_view.wrapped_key, device) == first_key

    owner_status = await org_keys.key_status(store, owner, org_id)
    assert owner_status.enabled is True
    assert owner_status.my_wrap_version == 2
    assert owner_status.pending_rewrap == [member.id]
    member_status = await org_keys.key_status(store, member, org_id)
    assert member_status.pending_rewrap is None

    again = await org_keys.rotate_key_version(store, owner, org_id)
    assert again.key_version == 3


@pytest.mark.asyncio
async def test_concurrent_rotations_each_get_a_distinct_version(session_factory) -> None:
    async with session_factory() as session:
        store = CredentialStore(session)
        registered = await register(store)
        owner, org_id = registered.session.user, registered.organization.id
        await org_keys.rotate_key_version(store, owner, org_id)
        start = await store.get_org_key_version(org_id)
    rotations = 5

    async def rotate():
        async with session_factory() as session:
            return (await org_keys.rotate_key_version(CredentialStore(session), owner, org_id)).key_version

    versions = await asyncio.gather(*(rotate() for _ in range(rotations)))

    assert sorted(versions) == list(range(start + 1, start + rotations + 1))
    async with session_factory() as session:
        assert await CredentialStore(session).get_org_key_version(org_id) == start + rotations


@pytest.mark.asyncio
async def test_key_operations_without_a_version_row_are_not_found(session_factory) -> None:
    async with session_factory() as session:
        registered = await register(CredentialStore(session))
        await session.execute(delete(OrgKeyVersion).where(OrgKeyVersion.org_id == registered.organization.id))
        await session.commit()
    owner, org_id = registered.session.user, registered.organization.id
    envelope = zk.wrap_org_key(zk.generate_org_key(), zk.DeviceKeyPair.generate().public_jwk).to_json()

    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await org_keys.rotate_key_version(CredentialStore(session), owner, org_id)
    async with session_factory() as session:
        with pytest.raises(NotFoundError):
            await org_keys.publish_wrapped_keys(
                CredentialStore(session), owner, org_id, [WrapInput(user_id=owner.id, wrapped_key=envelope)]
            )
    async with session_factory() as session:
        assert await CredentialStore(session).get_org_key_version(org_id) is None


@pytest.mark.asyncio
async def test_removing_a_member_drops_their_wrap(store) -> None:
    owner, member, org_id = await _org_with_member(store)
    device = zk.DeviceKeyPair.generate()
    await org_keys.publish_wrapped_keys(
        store,
        owner,
        org_id,
        [WrapInput(user_id=member.id, wrapped_key=zk.wrap_org_key(zk.generate_org_key(), device.public_jwk).to_json())],
    )

    await authorization.remove_member(store, owner, org_id, member.id)

    with pytest.raises(NotAMemberError):
        await org_keys.fetch_wrapped_key(store, member, org_id)
    status = await org_keys.key_status(store, owner, org_id)
    assert status.enabled is False


@pytest.mark.asyncio
async def test_register_public_key_rejects_invalid_points(store) -> None:
    registered = await register(store)
    jwk = dict(zk.DeviceKeyPair.generate().public_jwk)
    jwk["crv"] = "P-521"

    with pytest.raises(ValidationFailedError):
        await org_keys.register_public_key(store, registered.session.user, jwk)


@pytest.mark.asyncio
async def test_key_endpoints_publish_fetch_and_rotate(client) -> None:
    owner = (
        await client.post(
            "/api/v1/auth/register",
            json={"email": "keys@example.com", "password": "correct horse battery", "name": "K", "org_name": "Acme"},
        )
    ).json()
    headers = bearer(owner["access_token"])
    org_id = owner["org"]["id"]
    device = zk.DeviceKeyPair.generate()

    published_key = await client.post("/api/v1/auth/keys", headers=headers, json={"public_key": device.public_jwk})
    assert published_key.status_code == 200
    assert published_key.json()["kid"] == device.kid
    assert (await client.get("/api/v1/auth/keys", headers=headers)).json()["public_key"] == device.public_jwk

    members = await client.get(f"/api/v1/orgs/{org_id}/keys/members", headers=headers)
    assert members.json()["members"][0]["kid"] == device.kid
    assert members.json()["members"][0]["wrap_version"] is None

    org_key = zk.generate_org_key()
    wrap = zk.wrap_org_key(org_key, device.public_jwk).to_dict()
    published = await client.post(
        f"/api/v1/orgs/{org_id}/keys/wrapped",
        headers=headers,
        json={"wrapped_keys": [{"user_id": owner["user"]["id"], "wrapped_key": wrap}]},
    )
    assert published.status_code == 200
    assert published.json() == {"ok": True, "stored": 1, "key_version": 1}

    fetched = await client.get(f"/api/v1/orgs/{org_id}/keys/wrapped", headers=headers)
    assert fetched.json()["has_key"] is True
    assert zk.unwrap_org_key(fetched.json()["wrapped_key"], device) == org_key

    rotated = await client.post(f"/api/v1/orgs/{org_id}/keys/rotate", headers=headers, json={})
    assert rotated.json()["key_version"] == 2
    status = await client.get(f"/api/v1/orgs/{org_id}/keys/status", headers=headers)
    assert status.json()["key_version"] == 2
    assert status.json()["pending_rewrap"] == [owner["user"]["id"]]

    malformed = await client.post(
        f"/api/v1/orgs/{org_id}/keys/wrapped",
        headers=headers,
        json={"wrapped_keys": [{"user_id": owner["user"]["id"], "wrapped_key": {"v": 9}}]},
    )
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "VALIDATION"
