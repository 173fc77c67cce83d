"""Forwarding schedules

Revision ID: 0001_forwarding_schedules
Revises:
Create Date: 2026-02-24

Tables:
- forwarding_schedules: declared OOO forwarding windows per mailbox
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001_forwarding_schedules"
down_revision = None
branch_labels = None
depends_on = None

OPEN_STATUS_FILTER = "status IN ('pending', 'active')"


def upgrade() -> None:
    op.create_table(
        "forwarding_schedules",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("user_email", sa.String(255), nullable=False),
        sa.Column("forward_to_email", sa.String(255), nullable=False),
        sa.Column("forward_to_name", sa.String(255), nullable=True),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "status", sa.String(20), nullable=False, server_default="pending"
        ),  # pending, active, expired, cancelled
        sa.Column("external_rule_id", sa.String(512), nullable=True),
        sa.Column(
            "rule_cleanup_pending", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index(
        "idx_forwarding_schedules_status_starts",
        "forwarding_schedules",
        ["status", "starts_at"],
    )
    op.create_index(
        "idx_forwarding_schedules_status_ends",
        "forwarding_schedules",
        ["status", "ends_at"],
    )
    op.create_index(
        "idx_forwarding_schedules_user_status",
        "forwarding_schedules",
        ["user_email", "status"],
    )
    # One pending/active schedule per mailbox
    op.create_index(
        "uq_forwarding_schedules_user_open",
        "forwarding_schedules",
        ["user_email"],
        unique=True,
        postgresql_where=sa.text(OPEN_STATUS_FILTER),
        sqlite_where=sa.text(OPEN_STATUS_FILTER),
    )


def downgrade() -> None:
    op.drop_index("uq_forwarding_schedules_user_open", table_name="forwarding_schedules")
    op.drop_index("idx_forwarding_schedules_user_status", table_name="forwarding_schedules")
    op.drop_index("idx_forwarding_schedules_status_ends", table_name="forwarding_schedules")
    op.drop_index("idx_forwarding_schedules_status_starts", table_name="forwarding_schedules")
    op.drop_table("forwarding_schedules")
