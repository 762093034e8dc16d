"""Initial schema: platforms, announcements, sagas, error_logs.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "platforms",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("community_id", sa.Uuid(), nullable=True),
        sa.Column("name", sa.String(), nullable=False, server_default="discord"),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("disconnected_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_platforms_community_id", "platforms", ["community_id"])

    op.create_table(
        "announcements",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(), nullable=True),
        sa.Column("community_id", sa.Uuid(), nullable=True),
        sa.Column("draft", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_announcements_community_id", "announcements", ["community_id"])
    op.create_index("ix_announcements_job_id", "announcements", ["job_id"])

    op.create_table(
        "sagas",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column(
            "announcement_id",
            sa.Uuid(),
            sa.ForeignKey("announcements.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("trigger_job_id", sa.String(), nullable=False),
        sa.Column("target_index", sa.Integer(), nullable=False),
        sa.Column("choreography", sa.String(), nullable=False),
        sa.Column("step", sa.String(), nullable=False, server_default="start"),
        sa.Column("status", sa.String(), nullable=False, server_default="running"),
        sa.Column("data", sa.JSON(), nullable=False),
        sa.Column("failed_step", sa.String(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "announcement_id", "trigger_job_id", "target_index", name="uq_saga_trigger_target"
        ),
    )
    op.create_index("ix_sagas_announcement_id", "sagas", ["announcement_id"])
    op.create_index("ix_sagas_status_updated_at", "sagas", ["status", "updated_at"])

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("service", sa.String(), nullable=False),
        sa.Column("error_type", sa.String(), nullable=False),
        sa.Column("exception_class", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("stack_trace", sa.Text(), nullable=True),
        sa.Column("step", sa.String(), nullable=True),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("announcement_id", sa.Uuid(), nullable=True),
        sa.Column("saga_id", sa.Uuid(), nullable=True),
        sa.Column("status", sa.String(), nullable=False, server_default="open"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_error_logs_status", "error_logs", ["status"])
    op.create_index("ix_error_logs_announcement_id", "error_logs", ["announcement_id"])
    op.create_index("ix_error_logs_created_at", "error_logs", ["created_at"])


def downgrade() -> None:
    op.drop_index("ix_error_logs_created_at", table_name="error_logs")
    op.drop_index("ix_error_logs_announcement_id", table_name="error_logs")
    op.drop_index("ix_error_logs_status", table_name="error_logs")
    op.drop_table("error_logs")
    op.drop_index("ix_sagas_status_updated_at", table_name="sagas")
    op.drop_index("ix_sagas_announcement_id", table_name="sagas")
    op.drop_table("sagas")
    op.drop_index("ix_announcements_job_id", table_name="announcements")
    op.drop_index("ix_announcements_community_id", table_name="announcements")
    op.drop_table("announcements")
    op.drop_index("ix_platforms_community_id", table_name="platforms")
    op.drop_table("platforms")
