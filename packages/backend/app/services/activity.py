from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.store import CredentialStore
from app.models.activity_log import ActivityKind, ActivityLog


log = structlog.get_logger(__name__)


class ActivityRecorder:
    """Best-effort activity trail written off the request path.

    ``record`` schedules the insert on its own session and returns at once.
    A failed write is logged and dropped; it never reaches the caller.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession] | None = None) -> None:
        self._session_factory = session_factory
        self._pending: set[asyncio.Task[None]] = set()

    def bind(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    def record(
        self,
        kind: ActivityKind,
        message: str,
        *,
        actor_id: uuid.UUID | None = None,
        org_id: uuid.UUID | None = None,
    ) -> None:
        if self._session_factory is None:
            log.debug("activity_recorder_unbound", kind=kind.value)
            return
        task = asyncio.get_running_loop().create_task(
            self._write(kind, message, actor_id=actor_id, org_id=org_id)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(
        self,
        kind: ActivityKind,
        message: str,
        *,
        actor_id: uuid.UUID | None,
        org_id: uuid.UUID | None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                store = CredentialStore(session)
                async with store.transaction():
                    store.add_activity(
                        ActivityLog(org_id=org_id, actor_id=actor_id, kind=kind, message=message[:1000])
                    )
        except Exception as exc:
            log.warning("activity_write_failed", kind=kind.value, error_type=type(exc).__name__)

    async def drain(self) -> None:
        """Wait for every scheduled write. Used at shutdown and in tests."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


activity_recorder = ActivityRecorder()
