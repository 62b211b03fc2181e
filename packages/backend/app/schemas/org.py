from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, Field, field_validator

from app.models.organization import MembershipRole


class CreateOrganizationRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)

    @field_validator("name")
    @classmethod
    def _strip(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped


class OrganizationResponse(BaseModel):
    id: uuid.UUID
    name: str
    role: MembershipRole
    created_at: datetime.datetime | None = None


class OrganizationListResponse(BaseModel):
    ok: bool = True
    orgs: list[OrganizationResponse]


class CreateOrganizationResponse(BaseModel):
    ok: bool = True
    org: OrganizationResponse


class MemberResponse(BaseModel):
    user_id: uuid.UUID
    email: str
    name: str
    role: MembershipRole
    created_at: datetime.datetime | None = None

    @classmethod
    def from_view(cls, view: Any) -> "MemberResponse":
        return cls(
            user_id=view.user.id,
            email=view.user.email,
            name=view.user.name,
            role=view.membership.role,
            created_at=view.membership.created_at,
        )


class MemberListResponse(BaseModel):
    ok: bool = True
    members: list[MemberResponse]


class AddMemberRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    role: MembershipRole = MembershipRole.MEMBER


class AddMemberResponse(BaseModel):
    ok: bool = True
    member: MemberResponse


class UpdateMemberRoleRequest(BaseModel):
    user_id: uuid.UUID
    role: MembershipRole


class UpdateMemberRoleResponse(BaseModel):
    ok: bool = True
    user_id: uuid.UUID
    role: MembershipRole


class CreateInviteRequest(BaseModel):
    role: MembershipRole = MembershipRole.MEMBER
    max_uses: int = Field(default=1, ge=1, le=100)
    expires_in_days: int | None = Field(default=None, ge=0, le=365)


class InviteResponse(BaseModel):
    code: str
    org_id: uuid.UUID
    role: MembershipRole
    uses: int
    max_uses: int
    expires_at: datetime.datetime | None = None
    created_at: datetime.datetime | None = None

    @classmethod
    def from_model(cls, invite: Any) -> "InviteResponse":
        return cls(
            code=invite.code,
            org_id=invite.org_id,
            role=invite.role,
            uses=invite.uses,
            max_uses=invite.max_uses,
            expires_at=invite.expires_at,
            created_at=invite.created_at,
        )


class CreateInviteResponse(BaseModel):
    ok: bool = True
    invite: InviteResponse


class InviteListResponse(BaseModel):
    ok: bool = True
    invites: list[InviteResponse]


class RedeemInviteRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)


class RedeemInviteResponse(BaseModel):
    ok: bool = True
    org_id: uuid.UUID
    role: MembershipRole


class ActivityResponse(BaseModel):
    id: uuid.UUID
    kind: str
    message: str
    actor_id: uuid.UUID | None = None
    created_at: datetime.datetime | None = None


class ActivityListResponse(BaseModel):
    ok: bool = True
    activity: list[ActivityResponse]
