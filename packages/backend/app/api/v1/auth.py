import uuid

from fastapi import APIRouter, Body, Depends, Request, Response

from app.api.cookies import clear_session_cookies, set_session_cookies
from app.api.dependencies.auth import get_client_ip, get_current_user, get_user_agent
from app.core.errors import InvalidRefreshTokenError
from app.core.settings import settings
from app.db.session import get_credential_store
from app.db.store import CredentialStore
from app.models.user import User
from app.schemas.auth import (
    LoginRequest,
    LoginResponse,
    LogoutAllResponse,
    LogoutRequest,
    MeResponse,
    MfaCodeRequest,
    MfaConfirmResponse,
    MfaDisableResponse,
    MfaLoginRequest,
    MfaSetupResponse,
    OkResponse,
    OrganizationSummary,
    PublicKeyRequest,
    PublicKeyResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    SessionListResponse,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from app.services import auth as auth_service
from app.services import mfa as mfa_service
from app.services import org_keys as org_keys_service
from app.services.auth import IssuedSession


router = APIRouter(prefix="/api/v1/auth", tags=["auth"])


def _token_response(response: Response, session: IssuedSession) -> TokenResponse:
    set_session_cookies(
        response,
        access_token=session.access_token,
        access_expires_at=session.access_expires_at,
        refresh_token=session.refresh_token,
        refresh_expires_at=session.refresh_expires_at,
    )
    return TokenResponse(
        access_token=session.access_token,
        access_expires_at=session.access_expires_at,
        refresh_token=session.refresh_token,
        refresh_expires_at=session.refresh_expires_at,
        user=UserResponse.from_user(session.user),
    )


@router.post("/register", response_model=RegisterResponse, status_code=201)
async def register(
    payload: RegisterRequest,
    request: Request,
    response: Response,
    store: CredentialStore = Depends(get_credential_store),
) -> RegisterResponse:
    result = await auth_service.register_user(
        store,
        payload,
        client_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    tokens = _token_response(response, result.session)
    return RegisterResponse(
        **tokens.model_dump(),
        org=OrganizationSummary(id=result.organization.id, name=result.organization.name, role=result.role.value),
    )


@router.post("/login", response_model=LoginResponse, response_model_exclude_none=True)
async def login(
    payload: LoginRequest,
    request: Request,
    response: Response,
    store: CredentialStore = Depends(get_credential_store),
) -> LoginResponse:
    result = await auth_service.login_user(
        store,
        payload,
        client_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    if result.session is None:
        return LoginResponse(
            mfa_required=True,
            challenge_id=result.challenge_id,
            challenge_expires_at=result.challenge_expires_at,
        )
    tokens = _token_response(response, result.session)
    return LoginResponse(mfa_required=False, **tokens.model_dump(exclude={"ok"}))


@router.post("/login/mfa", response_model=TokenResponse)
async def login_mfa(
    payload: MfaLoginRequest,
    request: Request,
    response: Response,
    store: CredentialStore = Depends(get_credential_store),
) -> TokenResponse:
    session = await mfa_service.verify_during_login(
        store,
        payload.challenge_id,
        code=payload.code,
        recovery_code=payload.recovery_code,
        client_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _token_response(response, session)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    request: Request,
    response: Response,
    payload: RefreshRequest | None = Body(default=None),
    store: CredentialStore = Depends(get_credential_store),
) -> TokenResponse:
    refresh_token = (payload.refresh_token if payload else None) or request.cookies.get(settings.refresh_cookie_name)
    if not refresh_token:
        raise InvalidRefreshTokenError()
    session = await auth_service.refresh_tokens(
        store,
        refresh_token,
        client_ip=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    return _token_response(response, session)


@router.post("/logout", response_model=OkResponse)
async def logout(
    request: Request,
    response: Response,
    payload: LogoutRequest | None = Body(default=None),
    store: CredentialStore = Depends(get_credential_store),
) -> OkResponse:
    refresh_token = (payload.refresh_token if payload else None) or request.cookies.get(settings.refresh_cookie_name)
    if refresh_token:
        await auth_service.logout(store, refresh_token)
    clear_session_cookies(response)
    return OkResponse()


@router.post("/logout_all", response_model=LogoutAllResponse)
async def logout_all(
    response: Response,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> LogoutAllResponse:
    revoked = await auth_service.logout_all(store, current_user)
    clear_session_cookies(response)
    return LogoutAllResponse(revoked=revoked)


@router.get("/me", response_model=MeResponse)
async def me(
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> MeResponse:
    profile = await auth_service.get_profile(store, current_user)
    return MeResponse(
        user=UserResponse.from_user(current_user),
        mfa_enabled=current_user.mfa_enabled,
        recovery_codes_remaining=profile.recovery_codes_remaining,
        has_public_key=bool(current_user.public_key),
        public_key_kid=current_user.public_key_kid,
        orgs=[
            OrganizationSummary(id=org.id, name=org.name, role=membership.role.value)
            for membership, org in profile.memberships
        ],
    )


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions(
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> SessionListResponse:
    sessions = await auth_service.list_sessions(store, current_user)
    return SessionListResponse(sessions=[SessionResponse.from_token(token) for token in sessions])


@router.delete("/sessions/{session_id}", response_model=OkResponse)
async def revoke_session(
    session_id: uuid.UUID,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> OkResponse:
    await auth_service.revoke_session(store, current_user, session_id)
    return OkResponse()


@router.post("/mfa/setup", response_model=MfaSetupResponse)
async def mfa_setup(
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> MfaSetupResponse:
    result = await mfa_service.setup_totp(store, current_user)
    return MfaSetupResponse(secret=result.secret, otpauth_uri=result.otpauth_uri)


@router.post("/mfa/confirm", response_model=MfaConfirmResponse)
async def mfa_confirm(
    payload: MfaCodeRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> MfaConfirmResponse:
    codes = await mfa_service.confirm_totp(store, current_user, payload.code)
    return MfaConfirmResponse(recovery_codes=codes)


@router.post("/mfa/disable", response_model=MfaDisableResponse)
async def mfa_disable(
    payload: MfaCodeRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> MfaDisableResponse:
    await mfa_service.disable_mfa(store, current_user, payload.code)
    return MfaDisableResponse()


@router.get("/keys", response_model=PublicKeyResponse)
async def get_public_key(current_user: User = Depends(get_current_user)) -> PublicKeyResponse:
    public_key, kid = org_keys_service.get_public_key(current_user)
    return PublicKeyResponse(public_key=public_key, kid=kid)


@router.post("/keys", response_model=PublicKeyResponse)
async def register_public_key(
    payload: PublicKeyRequest,
    current_user: User = Depends(get_current_user),
    store: CredentialStore = Depends(get_credential_store),
) -> PublicKeyResponse:
    public_key, kid = await org_keys_service.register_public_key(store, current_user, payload.public_key)
    return PublicKeyResponse(public_key=public_key, kid=kid)
