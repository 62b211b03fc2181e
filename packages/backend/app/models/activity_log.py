from __future__ import annotations

import datetime
import enum
import uuid

from sqlalchemy import DateTime, Enum, ForeignKey, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.timeutil import utcnow
from app.db.base import Base


class ActivityKind(str, enum.Enum):
    REGISTER = "register"
    ORG_CREATE = "org_create"
    MEMBER_ADD = "member_add"
    MEMBER_ROLE_CHANGE = "member_role_change"
    MEMBER_REMOVE = "member_remove"
    MFA_ENABLE = "mfa_enable"
    MFA_DISABLE = "mfa_disable"
    LOGOUT_ALL = "logout_all"
    KEY_REGISTER = "key_register"
    KEY_WRAP_PUBLISH = "key_wrap_publish"
    KEY_ROTATE = "key_rotate"
    INVITE_CREATE = "invite_create"
    INVITE_REDEEM = "invite_redeem"


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    kind: Mapped[ActivityKind] = mapped_column(
        Enum(ActivityKind, name="activity_kind", native_enum=True),
        nullable=False,
    )
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
    )
