import uuid

from fastapi import APIRouter, Depends, Query

from app.api.dependencies.auth import get_current_user, require_org_role
from app.core.errors import NotFoundError
from app.core.settings import settings
from app.db.session import get_credential_store
from app.db.store import CredentialStore
from app.models.organization import Membership, MembershipRole
from app.models.user import User
from app.schemas.auth import OkResponse
from app.schemas.org import (
    ActivityListResponse,
    ActivityResponse,
    AddMemberRequest,
    AddMemberResponse,
    CreateInviteRequest,
    CreateInviteResponse,
    CreateOrganizationRequest,
    CreateOrganizationResponse,
    InviteListResponse,
    InviteResponse,
    MemberListResponse,
    MemberResponse,
    OrganizationListResponse,
    OrganizationResponse,
    UpdateMemberRoleRequest,
    UpdateMemberRoleResponse,
)
from app.services import authorization as authorization_service
from app.services import invites as invite_service


router = APIRouter(prefix="/api/v1/orgs", tags=["orgs"])


@router.get("", response_model=OrganizationListResponse)
async def list_organizations(
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> OrganizationListResponse:
    rows = await authorization_service.list_organizations(store, current_user)
    return OrganizationListResponse(
        orgs=[
            OrganizationResponse(id=org.id, name=org.name, role=membership.role, created_at=org.created_at)
            for membership, org in rows
        ]
    )


@router.post("", response_model=CreateOrganizationResponse, status_code=201)
async def create_organization(
    payload: CreateOrganizationRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> CreateOrganizationResponse:
    organization = await authorization_service.create_organization(store, current_user, payload.name)
    return CreateOrganizationResponse(
        org=OrganizationResponse(
            id=organization.id,
            name=organization.name,
            role=MembershipRole.OWNER,
            created_at=organization.created_at,
        )
    )


@router.get("/{org_id}", response_model=CreateOrganizationResponse)
async def get_organization(
    org_id: uuid.UUID,
    membership: Membership = Depends(require_org_role(MembershipRole.VIEWER)),
    store: CredentialStore = Depends(get_credential_store),
) -> CreateOrganizationResponse:
    organization = await store.get_organization(org_id)
    if organization is None:
        raise NotFoundError("Organization not found.")
    return CreateOrganizationResponse(
        org=OrganizationResponse(
            id=organization.id,
            name=organization.name,
            role=membership.role,
            created_at=organization.created_at,
        )
    )


@router.get("/{org_id}/members", response_model=MemberListResponse)
async def list_members(
    org_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> MemberListResponse:
    members = await authorization_service.list_members(store, current_user, org_id)
    return MemberListResponse(members=[MemberResponse.from_view(view) for view in members])


@router.post("/{org_id}/members", response_model=AddMemberResponse, status_code=201)
async def add_member(
    org_id: uuid.UUID,
    payload: AddMemberRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> AddMemberResponse:
    view = await authorization_service.add_member(
        store,
        current_user,
        org_id,
        email=payload.email,
        role=payload.role,
    )
    return AddMemberResponse(member=MemberResponse.from_view(view))


@router.put("/{org_id}/members", response_model=UpdateMemberRoleResponse)
async def update_member_role(
    org_id: uuid.UUID,
    payload: UpdateMemberRoleRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> UpdateMemberRoleResponse:
    role = await authorization_service.change_member_role(store, current_user, org_id, payload.user_id, payload.role)
    return UpdateMemberRoleResponse(user_id=payload.user_id, role=role)


@router.delete("/{org_id}/members/{user_id}", response_model=OkResponse)
async def remove_member(
    org_id: uuid.UUID,
    user_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> OkResponse:
    await authorization_service.remove_member(store, current_user, org_id, user_id)
    return OkResponse()


@router.get("/{org_id}/invites", response_model=InviteListResponse)
async def list_invites(
    org_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> InviteListResponse:
    invites = await invite_service.list_invites(store, current_user, org_id)
    return InviteListResponse(invites=[InviteResponse.from_model(invite) for invite in invites])


@router.post("/{org_id}/invites", response_model=CreateInviteResponse, status_code=201)
async def create_invite(
    org_id: uuid.UUID,
    payload: CreateInviteRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> CreateInviteResponse:
    invite = await invite_service.create_invite(
        store,
        current_user,
        org_id,
        role=payload.role,
        max_uses=payload.max_uses,
        expires_in_days=payload.expires_in_days,
    )
    return CreateInviteResponse(invite=InviteResponse.from_model(invite))


@router.get("/{org_id}/activity", response_model=ActivityListResponse)
async def list_activity(
    org_id: uuid.UUID,
    limit: int = Query(settings.activity_feed_default_limit, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> ActivityListResponse:
    entries = await authorization_service.list_org_activity(store, current_user, org_id, limit)
    return ActivityListResponse(
        activity=[
            ActivityResponse(
                id=entry.id,
                kind=entry.kind.value,
                message=entry.message,
                actor_id=entry.actor_id,
                created_at=entry.created_at,
            )
            for entry in entries
        ]
    )
