from __future__ import annotations

import datetime
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import RateLimitedError
from app.core.timeutil import ensure_utc, is_expired, utcnow
from app.db.store import CredentialStore
from app.models.rate_limit import RateLimitCounter


log = structlog.get_logger(__name__)


class CounterStore(Protocol):
    async def increment(
        self, key: str, window_seconds: int, now: datetime.datetime
    ) -> tuple[int, datetime.datetime]: ...


class SqlCounterStore:
    """Fixed-window counters kept in ``rate_limit_counters``.

    Runs on its own session so a counter failure never poisons the caller's
    transaction.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session_factory = session_factory

    def bind(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    async def increment(
        self, key: str, window_seconds: int, now: datetime.datetime
    ) -> tuple[int, datetime.datetime]:
        if self._session_factory is None:
            raise RuntimeError("counter store is not bound to a database")

        next_reset = now + datetime.timedelta(seconds=window_seconds)
        async with self._session_factory() as session:
            store = CredentialStore(session)
            async with store.transaction():
                counter = await store.get_rate_limit_counter(key)
                if counter is None:
                    store.add_rate_limit_counter(RateLimitCounter(key=key, count=1, reset_at=next_reset))
                    return 1, next_reset
                if is_expired(counter.reset_at, now):
                    if await store.restart_rate_limit_window(key, now=now, reset_at=next_reset):
                        return 1, next_reset
                count = await store.increment_rate_limit_counter(key)
                return count, ensure_utc(counter.reset_at)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime.datetime | None
    retry_after: int = 0
    degraded: bool = False


class RateLimiter:
    def __init__(self, counters: CounterStore) -> None:
        self._counters = counters

    async def hit(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        now: datetime.datetime | None = None,
    ) -> RateLimitDecision:
        current_time = now or utcnow()
        try:
            count, reset_at = await self._counters.increment(key, window_seconds, current_time)
        except Exception as exc:
            # fail open
            log.warning(
                "rate_limit_degraded",
                action=key.split(":", 1)[0],
                error_type=type(exc).__name__,
            )
            return RateLimitDecision(allowed=True, remaining=limit, reset_at=None, degraded=True)

        allowed = count <= limit
        retry_after = 0
        if not allowed:
            retry_after = max(1, math.ceil((ensure_utc(reset_at) - current_time).total_seconds()))
        return RateLimitDecision(
            allowed=allowed,
            remaining=max(0, limit - count),
            reset_at=reset_at,
            retry_after=retry_after,
        )

    async def enforce(
        self,
        key: str,
        *,
        limit: int,
        window_seconds: int,
        now: datetime.datetime | None = None,
    ) -> RateLimitDecision:
        decision = await self.hit(key, limit=limit, window_seconds=window_seconds, now=now)
        if not decision.allowed:
            log.info("rate_limited", action=key.split(":", 1)[0], retry_after=decision.retry_after)
            raise RateLimitedError(retry_after=decision.retry_after)
        return decision


def login_key(client_ip: str, email: str) -> str:
    return f"login:{client_ip}:{email.strip().lower()}"


def mfa_key(client_ip: str, challenge_id: object) -> str:
    return f"mfa:{client_ip}:{challenge_id}"


def register_key(client_ip: str) -> str:
    return f"register:{client_ip}"


counter_store = SqlCounterStore()
rate_limiter = RateLimiter(counter_store)
