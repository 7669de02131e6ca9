"""Create notification pipeline schema.

Revision ID: 001
Revises:
Create Date: 2024-06-01

Creates the four enum types plus the notifications, notification_attempts
and user_preferences tables.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

notification_status = postgresql.ENUM(
    "pending",
    "queued",
    "scheduled",
    "processing",
    "sent",
    "delivered",
    "read",
    "failed",
    "cancelled",
    "aggregated",
    name="notification_status",
    create_type=False,
)
channel_type = postgresql.ENUM("email", "sms", "push", name="channel_type", create_type=False)
notification_priority = postgresql.ENUM(
    "low", "medium", "high", "urgent", name="notification_priority", create_type=False
)
notification_category = postgresql.ENUM(
    "marketing", "system", "security", name="notification_category", create_type=False
)

ENUMS = [notification_status, channel_type, notification_priority, notification_category]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.Text(), nullable=False),
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("channel", channel_type, nullable=False),
        sa.Column("priority", notification_priority, nullable=False),
        sa.Column("category", notification_category, nullable=False),
        sa.Column("title", sa.Text(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("template_id", sa.Text(), nullable=True),
        sa.Column("template_data", postgresql.JSONB(), nullable=True),
        sa.Column("status", notification_status, nullable=False),
        sa.Column("content_hash", sa.Text(), nullable=False),
        sa.Column("scheduled_for", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("expires_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("last_retry_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("aggregated_into", sa.Text(), nullable=True),
        sa.Column("aggregated_from", postgresql.JSONB(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column("sent_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("delivered_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("read_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("notification_id", name=op.f("pk_notifications")),
    )
    op.create_index(
        "idx_notifications_user_channel", "notifications", ["user_id", "channel"]
    )
    op.create_index(
        "idx_notifications_content_hash", "notifications", ["content_hash", "created_at"]
    )
    op.create_index("idx_notifications_due", "notifications", ["status", "scheduled_for"])
    op.create_index(
        "idx_notifications_sent_at", "notifications", ["user_id", "channel", "sent_at"]
    )

    op.create_table(
        "notification_attempts",
        sa.Column("attempt_id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("notification_id", sa.Text(), nullable=False),
        sa.Column("attempted_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", notification_status, nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("provider", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["notification_id"],
            ["notifications.notification_id"],
            name=op.f("fk_notification_attempts_notification_id_notifications"),
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("attempt_id", name=op.f("pk_notification_attempts")),
    )
    op.create_index(
        "idx_notification_attempts_notification_id",
        "notification_attempts",
        ["notification_id"],
    )

    op.create_table(
        "user_preferences",
        sa.Column("user_id", sa.Text(), nullable=False),
        sa.Column("timezone", sa.Text(), server_default="UTC", nullable=True),
        sa.Column("channels", postgresql.JSONB(), server_default="{}", nullable=False),
        sa.Column("global_quiet_hours", postgresql.JSONB(), nullable=True),
        sa.Column("global_limits", postgresql.JSONB(), nullable=True),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.PrimaryKeyConstraint("user_id", name=op.f("pk_user_preferences")),
    )


def downgrade() -> None:
    op.drop_table("user_preferences")
    op.drop_index(
        "idx_notification_attempts_notification_id", table_name="notification_attempts"
    )
    op.drop_table("notification_attempts")
    op.drop_index("idx_notifications_sent_at", table_name="notifications")
    op.drop_index("idx_notifications_due", table_name="notifications")
    op.drop_index("idx_notifications_content_hash", table_name="notifications")
    op.drop_index("idx_notifications_user_channel", table_name="notifications")
    op.drop_table("notifications")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
