from __future__ import annotations

import uuid
from typing import Any

from pydantic import BaseModel, Field

from app.models.organization import MembershipRole


class WrappedKeyIn(BaseModel):
    user_id: uuid.UUID
    wrapped_key: str | dict[str, Any]
    key_version: int | None = Field(default=None, ge=1)
    kid: str | None = Field(default=None, max_length=64)


class PublishWrappedKeysRequest(BaseModel):
    wrapped_keys: list[WrappedKeyIn] = Field(min_length=1, max_length=500)
    key_version: int | None = Field(default=None, ge=1)


class RotateKeyRequest(BaseModel):
    wrapped_keys: list[WrappedKeyIn] = Field(default_factory=list, max_length=500)


class PublishResponse(BaseModel):
    ok: bool = True
    stored: int
    key_version: int


class WrappedKeyResponse(BaseModel):
    ok: bool = True
    has_key: bool
    key_version: int
    wrapped_key: str | None = None
    wrap_version: int | None = None
    kid: str | None = None
    stale: bool = False


class KeyStatusResponse(BaseModel):
    ok: bool = True
    enabled: bool
    key_version: int
    my_wrap_version: int | None = None
    pending_rewrap: list[uuid.UUID] | None = None


class MemberKeyResponse(BaseModel):
    user_id: uuid.UUID
    email: str
    name: str
    role: MembershipRole
    public_key: dict[str, Any] | None = None
    kid: str | None = None
    wrap_version: int | None = None


class MemberKeyListResponse(BaseModel):
    ok: bool = True
    members: list[MemberKeyResponse]

