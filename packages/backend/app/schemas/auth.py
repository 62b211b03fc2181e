from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def _normalize_email(value: str) -> str:
    email = value.strip().lower()
    local, _, domain = email.partition("@")
    if not local or not domain or " " in email:
        raise ValueError("email is not valid")
    return email


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=8, max_length=1024)
    name: str = Field(default="", max_length=255)
    org_name: str = Field(min_length=1, max_length=255)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return _normalize_email(value)

    @field_validator("name", "org_name")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320)
    password: str = Field(min_length=1, max_length=1024)

    @field_validator("email")
    @classmethod
    def _email(cls, value: str) -> str:
        return value.strip().lower()


class MfaLoginRequest(BaseModel):
    challenge_id: uuid.UUID
    code: str | None = Field(default=None, max_length=32)
    recovery_code: str | None = Field(default=None, max_length=64)

    @model_validator(mode="after")
    def _one_factor(self) -> "MfaLoginRequest":
        if not (self.code or "").strip() and not (self.recovery_code or "").strip():
            raise ValueError("code or recovery_code is required")
        return self


class RefreshRequest(BaseModel):
    refresh_token: str | None = Field(default=None, min_length=16, max_length=4096)


class LogoutRequest(BaseModel):
    refresh_token: str | None = Field(default=None, min_length=16, max_length=4096)


class UserResponse(BaseModel):
    id: uuid.UUID
    email: str
    name: str

    @classmethod
    def from_user(cls, user: Any) -> "UserResponse":
        return cls(id=user.id, email=user.email, name=user.name)


class OrganizationSummary(BaseModel):
    id: uuid.UUID
    name: str
    role: str


class TokenResponse(BaseModel):
    ok: bool = True
    access_token: str
    access_expires_at: datetime.datetime
    refresh_token: str
    refresh_expires_at: datetime.datetime
    user: UserResponse


class RegisterResponse(TokenResponse):
    org: OrganizationSummary


class LoginResponse(BaseModel):
    ok: bool = True
    mfa_required: bool = False
    challenge_id: uuid.UUID | None = None
    challenge_expires_at: datetime.datetime | None = None
    access_token: str | None = None
    access_expires_at: datetime.datetime | None = None
    refresh_token: str | None = None
    refresh_expires_at: datetime.datetime | None = None
    user: UserResponse | None = None


class OkResponse(BaseModel):
    ok: bool = True


class LogoutAllResponse(OkResponse):
    revoked: int


class MeResponse(BaseModel):
    ok: bool = True
    user: UserResponse
    mfa_enabled: bool
    recovery_codes_remaining: int
    has_public_key: bool
    public_key_kid: str | None = None
    orgs: list[OrganizationSummary]


class SessionResponse(BaseModel):
    id: uuid.UUID
    ip_address: str
    user_agent: str
    created_at: datetime.datetime
    expires_at: datetime.datetime

    @classmethod
    def from_token(cls, token: Any) -> "SessionResponse":
        return cls(
            id=token.id,
            ip_address=token.ip_address,
            user_agent=token.user_agent,
            created_at=token.created_at,
            expires_at=token.expires_at,
        )


class SessionListResponse(BaseModel):
    ok: bool = True
    sessions: list[SessionResponse]


class MfaSetupResponse(BaseModel):
    ok: bool = True
    secret: str
    otpauth_uri: str


class MfaCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=32)


class MfaConfirmResponse(BaseModel):
    ok: bool = True
    mfa_enabled: bool = True
    recovery_codes: list[str]


class MfaDisableResponse(BaseModel):
    ok: bool = True
    mfa_enabled: bool = False


class PublicKeyRequest(BaseModel):
    public_key: dict[str, Any]


class PublicKeyResponse(BaseModel):
    ok: bool = True
    public_key: dict[str, Any] | None = None
    kid: str | None = None
