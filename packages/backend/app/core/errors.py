from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base for failures that map onto a stable ``{ok: false, error: ...}`` response."""

    status_code: int = 400
    error: str = "VALIDATION"
    detail: str = "Request could not be processed."

    def __init__(self, detail: str | None = None, **extra: Any) -> None:
        super().__init__(detail or self.detail)
        if detail is not None:
            self.detail = detail
        self.extra: dict[str, Any] = extra


class ValidationFailedError(ServiceError):
    status_code = 400
    error = "VALIDATION"
    detail = "Request payload is invalid."


class UnauthenticatedError(ServiceError):
    status_code = 401
    error = "UNAUTHENTICATED"
    detail = "Missing or invalid credentials."


class InvalidLoginError(ServiceError):
    status_code = 401
    error = "INVALID_LOGIN"
    detail = "Invalid email or password."


class InvalidRefreshTokenError(ServiceError):
    status_code = 401
    error = "INVALID_REFRESH"
    detail = "Invalid refresh token."


class ExpiredRefreshTokenError(ServiceError):
    status_code = 401
    error = "EXPIRED_REFRESH"
    detail = "Refresh token has expired."


class InvalidChallengeError(ServiceError):
    status_code = 401
    error = "INVALID_CHALLENGE"
    detail = "MFA challenge not found."


class ChallengeUsedError(ServiceError):
    status_code = 401
    error = "CHALLENGE_USED"
    detail = "MFA challenge was already completed."


class ChallengeExpiredError(ServiceError):
    status_code = 401
    error = "CHALLENGE_EXPIRED"
    detail = "MFA challenge has expired."


class ChallengeFailedError(ServiceError):
    status_code = 401
    error = "CHALLENGE_FAILED"
    detail = "Too many invalid codes for this MFA challenge."


class InvalidMfaCodeError(ServiceError):
    status_code = 401
    error = "INVALID_MFA"
    detail = "Invalid or expired MFA code."


class MfaNotEnabledError(ServiceError):
    status_code = 400
    error = "MFA_NOT_ENABLED"
    detail = "MFA is not enabled for this account."


class MfaNotSetupError(ServiceError):
    status_code = 400
    error = "MFA_NOT_SETUP"
    detail = "MFA setup has not been started."


class CryptoFailureError(ServiceError):
    status_code = 400
    error = "CRYPTO_FAILURE"
    detail = "Stored secret could not be decrypted."


class ForbiddenError(ServiceError):
    status_code = 403
    error = "FORBIDDEN"
    detail = "Action not permitted."


class NotAMemberError(ForbiddenError):
    error = "NOT_A_MEMBER"
    detail = "Not a member of this organization."


class InsufficientRoleError(ForbiddenError):
    error = "INSUFFICIENT_ROLE"
    detail = "Insufficient role for this action."


class OwnerRequiredError(ForbiddenError):
    error = "OWNER_REQUIRED"
    detail = "Only an owner may perform this action."


class CsrfError(ForbiddenError):
    error = "CSRF"
    detail = "Invalid or missing CSRF token."


class InvalidInviteError(ServiceError):
    status_code = 400
    error = "INVALID_INVITE"
    detail = "Invalid invite code."


class InviteExpiredError(ServiceError):
    status_code = 400
    error = "INVITE_EXPIRED"
    detail = "Invite has expired."


class InviteExhaustedError(ServiceError):
    status_code = 400
    error = "INVITE_EXHAUSTED"
    detail = "Invite has no uses left."


class NotFoundError(ServiceError):
    status_code = 404
    error = "NOT_FOUND"
    detail = "Resource not found."


class ConflictError(ServiceError):
    status_code = 409
    error = "CONFLICT"
    detail = "Request conflicts with current state."


class DuplicateEmailError(ConflictError):
    error = "EMAIL_EXISTS"
    detail = "A user with this email already exists."


class MfaAlreadyEnabledError(ConflictError):
    error = "MFA_ALREADY_ENABLED"
    detail = "MFA is already enabled. Disable it before enrolling again."


class LastOwnerError(ConflictError):
    error = "LAST_OWNER"
    detail = "An organization must keep at least one owner."


class RateLimitedError(ServiceError):
    status_code = 429
    error = "RATE_LIMITED"
    detail = "Too many attempts. Try again later."
