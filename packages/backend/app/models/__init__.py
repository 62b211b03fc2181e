from app.models.activity_log import ActivityKind, ActivityLog
from app.models.invite import OrgInvite
from app.models.mfa import LoginMfaChallenge, RecoveryCode
from app.models.org_key import OrgKeyVersion, WrappedOrgKey
from app.models.organization import ROLE_RANK, Membership, MembershipRole, Organization
from app.models.rate_limit import RateLimitCounter
from app.models.refresh_token import RefreshToken
from app.models.user import User

__all__ = [
    "ActivityKind",
    "ActivityLog",
    "LoginMfaChallenge",
    "Membership",
    "MembershipRole",
    "OrgInvite",
    "OrgKeyVersion",
    "Organization",
    "ROLE_RANK",
    "RateLimitCounter",
    "RecoveryCode",
    "RefreshToken",
    "User",
    "WrappedOrgKey",
]
