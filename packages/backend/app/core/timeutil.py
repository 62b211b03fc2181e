from __future__ import annotations

import datetime


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def ensure_utc(value: datetime.datetime) -> datetime.datetime:
    # sqlite hands back naive datetimes for timezone-aware columns
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value


def is_expired(expires_at: datetime.datetime, reference: datetime.datetime) -> bool:
    return ensure_utc(expires_at) <= ensure_utc(reference)
