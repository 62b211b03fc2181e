import uuid

from fastapi import APIRouter, Depends

from app.api.dependencies.auth import get_current_user
from app.db.session import get_credential_store
from app.db.store import CredentialStore
from app.models.user import User
from app.schemas.keys import (
    KeyStatusResponse,
    MemberKeyListResponse,
    MemberKeyResponse,
    PublishResponse,
    PublishWrappedKeysRequest,
    RotateKeyRequest,
    WrappedKeyIn,
    WrappedKeyResponse,
)
from app.services import org_keys as org_keys_service
from app.services.org_keys import WrapInput


router = APIRouter(prefix="/api/v1/orgs/{org_id}/keys", tags=["keys"])


def _wrap_inputs(items: list[WrappedKeyIn]) -> list[WrapInput]:
    return [
        WrapInput(user_id=item.user_id, wrapped_key=item.wrapped_key, key_version=item.key_version, kid=item.kid)
        for item in items
    ]


@router.get("/status", response_model=KeyStatusResponse)
async def key_status(
    org_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> KeyStatusResponse:
    status = await org_keys_service.key_status(store, current_user, org_id)
    return KeyStatusResponse(
        enabled=status.enabled,
        key_version=status.key_version,
        my_wrap_version=status.my_wrap_version,
        pending_rewrap=status.pending_rewrap,
    )


@router.get("/wrapped", response_model=WrappedKeyResponse)
async def fetch_wrapped_key(
    org_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> WrappedKeyResponse:
    result = await org_keys_service.fetch_wrapped_key(store, current_user, org_id)
    return WrappedKeyResponse(
        has_key=result.has_key,
        key_version=result.key_version,
        wrapped_key=result.wrapped_key,
        wrap_version=result.wrap_version,
        kid=result.kid,
        stale=result.stale,
    )


@router.post("/wrapped", response_model=PublishResponse)
async def publish_wrapped_keys(
    org_id: uuid.UUID,
    payload: PublishWrappedKeysRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> PublishResponse:
    result = await org_keys_service.publish_wrapped_keys(
        store,
        current_user,
        org_id,
        _wrap_inputs(payload.wrapped_keys),
        key_version=payload.key_version,
    )
    return PublishResponse(stored=result.stored, key_version=result.key_version)


@router.post("/rotate", response_model=PublishResponse)
async def rotate_key(
    org_id: uuid.UUID,
    payload: RotateKeyRequest | None = None,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> PublishResponse:
    wraps = _wrap_inputs(payload.wrapped_keys) if payload else []
    result = await org_keys_service.rotate_key_version(store, current_user, org_id, wraps)
    return PublishResponse(stored=result.stored, key_version=result.key_version)


@router.get("/members", response_model=MemberKeyListResponse)
async def list_member_keys(
    org_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> MemberKeyListResponse:
    members = await org_keys_service.list_member_public_keys(store, current_user, org_id)
    return MemberKeyListResponse(
        members=[
            MemberKeyResponse(
                user_id=member.user_id,
                email=member.email,
                name=member.name,
                role=member.role,
                public_key=member.public_key,
                kid=member.kid,
                wrap_version=member.wrap_version,
            )
            for member in members
        ]
    )
