from __future__ import annotations

import datetime
import secrets

from fastapi import Response

from app.core.settings import settings
from app.core.timeutil import ensure_utc, utcnow


def _max_age(expires_at: datetime.datetime) -> int:
    return max(0, int((ensure_utc(expires_at) - utcnow()).total_seconds()))


def set_session_cookies(
    response: Response,
    *,
    access_token: str,
    access_expires_at: datetime.datetime,
    refresh_token: str,
    refresh_expires_at: datetime.datetime,
) -> str:
    """Set the access, refresh and CSRF cookies. Returns the new CSRF token."""
    secure = settings.is_production
    csrf_token = secrets.token_urlsafe(32)
    response.set_cookie(
        settings.access_cookie_name,
        access_token,
        max_age=_max_age(access_expires_at),
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        max_age=_max_age(refresh_expires_at),
        path=settings.refresh_cookie_path,
        secure=secure,
        httponly=True,
        samesite="lax",
    )
    # readable by scripts so it can be echoed back in the CSRF header
    response.set_cookie(
        settings.csrf_cookie_name,
        csrf_token,
        max_age=_max_age(refresh_expires_at),
        path="/",
        secure=secure,
        httponly=False,
        samesite="lax",
    )
    return csrf_token


def clear_session_cookies(response: Response) -> None:
    secure = settings.is_production
    response.delete_cookie(settings.access_cookie_name, path="/", secure=secure, httponly=True, samesite="lax")
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        secure=secure,
        httponly=True,
        samesite="lax",
    )
    response.delete_cookie(settings.csrf_cookie_name, path="/", secure=secure, httponly=False, samesite="lax")
