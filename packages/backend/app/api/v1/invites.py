from fastapi import APIRouter, Depends

from app.api.dependencies.auth import get_current_user
from app.db.session import get_credential_store
from app.db.store import CredentialStore
from app.models.user import User
from app.schemas.org import RedeemInviteRequest, RedeemInviteResponse
from app.services import invites as invite_service


router = APIRouter(prefix="/api/v1/invites", tags=["invites"])


@router.post("/redeem", response_model=RedeemInviteResponse)
async def redeem_invite(
    payload: RedeemInviteRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> RedeemInviteResponse:
    redeemed = await invite_service.redeem_invite(store, current_user, payload.code)
    return RedeemInviteResponse(org_id=redeemed.org_id, role=redeemed.membership.role)
