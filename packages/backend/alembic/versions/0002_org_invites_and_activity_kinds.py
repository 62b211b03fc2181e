"""Create org invites and add invite activity kinds.

Revision ID: 0002_org_invites_and_activity_kinds
Revises: 0001_create_credential_schema
Create Date: 2026-10-19 00:00:02
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


# revision identifiers, used by Alembic.
revision: str = "0002_org_invites_and_activity_kinds"
down_revision: Union[str, None] = "0001_create_credential_schema"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


_ACTIVITY_KIND_VALUES_WITHOUT_INVITES = (
    "register",
    "org_create",
    "member_add",
    "member_role_change",
    "member_remove",
    "mfa_enable",
    "mfa_disable",
    "logout_all",
    "key_register",
    "key_wrap_publish",
    "key_rotate",
)

_ACTIVITY_KIND_VALUES_WITH_INVITES = _ACTIVITY_KIND_VALUES_WITHOUT_INVITES + (
    "invite_create",
    "invite_redeem",
)


def _enum_sql(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{value}'" for value in values)


def upgrade() -> None:
    op.create_table(
        "org_invites",
        sa.Column("code", sa.String(length=16), primary_key=True, nullable=False),
        sa.Column("org_id", sa.Uuid(), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "role",
            sa.Enum("viewer", "member", "admin", "owner", name="membership_role"),
            nullable=False,
        ),
        sa.Column("uses", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_uses", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_by", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    )
    op.create_index("ix_org_invites_org_id", "org_invites", ["org_id"], unique=False)
    op.create_index(
        "ix_activity_logs_org_id_created_at",
        "activity_logs",
        ["org_id", "created_at"],
        unique=False,
    )
    op.execute(
        f"""
        ALTER TABLE activity_logs
        MODIFY COLUMN kind ENUM({_enum_sql(_ACTIVITY_KIND_VALUES_WITH_INVITES)}) NOT NULL
        """
    )


def downgrade() -> None:
    op.execute("DELETE FROM activity_logs WHERE kind IN ('invite_create', 'invite_redeem')")
    op.execute(
        f"""
        ALTER TABLE activity_logs
        MODIFY COLUMN kind ENUM({_enum_sql(_ACTIVITY_KIND_VALUES_WITHOUT_INVITES)}) NOT NULL
        """
    )
    op.drop_index("ix_activity_logs_org_id_created_at", table_name="activity_logs")
    op.drop_index("ix_org_invites_org_id", table_name="org_invites")
    op.drop_table("org_invites")
