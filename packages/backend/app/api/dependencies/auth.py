from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.errors import UnauthenticatedError
from app.core.settings import settings
from app.db.session import get_credential_store
from app.db.store import CredentialStore
from app.models.organization import Membership, MembershipRole
from app.models.user import User
from app.services.auth import get_user_from_access_token
from app.services.authorization import parse_role, require_role


bearer_scheme = HTTPBearer(auto_error=False)


async def get_access_token(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> str:
    if credentials is not None:
        if credentials.scheme.lower() != "bearer" or not credentials.credentials.strip():
            raise UnauthenticatedError("Invalid authorization scheme.")
        return credentials.credentials
    cookie_token = request.cookies.get(settings.access_cookie_name, "").strip()
    if cookie_token:
        return cookie_token
    raise UnauthenticatedError("Missing access token.")


async def get_current_user(
    access_token: str = Depends(get_access_token),
    store: CredentialStore = Depends(get_credential_store),
) -> User:
    return await get_user_from_access_token(store, access_token)


def require_org_role(min_role: MembershipRole | str) -> Callable[..., Awaitable[Membership]]:
    """Route guard: the caller must hold at least ``min_role`` in ``{org_id}``."""
    required = parse_role(min_role)

    async def role_dependency(
        org_id: uuid.UUID,
        current_user: User = Depends(get_current_user),
        store: CredentialStore = Depends(get_credential_store),
    ) -> Membership:
        return await require_role(store, org_id, current_user.id, required)

    return role_dependency


def get_client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded and settings.trust_forwarded_for:
        return forwarded.split(",", 1)[0].strip()
    return request.client.host if request.client and request.client.host else "0.0.0.0"


def get_user_agent(request: Request) -> str:
    return request.headers.get("user-agent", "")
