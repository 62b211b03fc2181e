"""Import all models so SQLAlchemy metadata is fully populated."""

from app.models.activity_log import ActivityLog  # noqa: F401
from app.models.invite import OrgInvite  # noqa: F401
from app.models.mfa import LoginMfaChallenge, RecoveryCode  # noqa: F401
from app.models.org_key import OrgKeyVersion, WrappedOrgKey  # noqa: F401
from app.models.organization import Membership, Organization  # noqa: F401
from app.models.rate_limit import RateLimitCounter  # noqa: F401
from app.models.refresh_token import RefreshToken  # noqa: F401
from app.models.user import User  # noqa: F401
