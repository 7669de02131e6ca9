"""SQLAlchemy Core table definitions for the database schema."""

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP

from .enums import (
    channel_type_enum,
    notification_category_enum,
    notification_priority_enum,
    notification_status_enum,
)

# Naming convention for constraints (helps Alembic generate better names)
convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}
metadata = MetaData(naming_convention=convention)


# =====================================================
# 1. NOTIFICATIONS
# =====================================================
notifications = Table(
    "notifications",
    metadata,
    Column("notification_id", Text, primary_key=True),
    Column("user_id", Text, nullable=False),
    Column("channel", channel_type_enum, nullable=False),
    Column("priority", notification_priority_enum, nullable=False),
    Column("category", notification_category_enum, nullable=False),
    Column("title", Text),
    Column("body", Text, nullable=False),
    Column("template_id", Text),
    Column("template_data", JSONB),
    Column("status", notification_status_enum, nullable=False),
    Column("content_hash", Text, nullable=False),
    Column("scheduled_for", TIMESTAMP(timezone=True)),
    Column("expires_at", TIMESTAMP(timezone=True)),
    Column("retry_count", Integer, nullable=False, server_default="0"),
    Column("last_retry_at", TIMESTAMP(timezone=True)),
    Column("failure_reason", Text),
    # Non-owning links between originals and their digest
    Column("aggregated_into", Text),
    Column("aggregated_from", JSONB),
    Column("metadata", JSONB),
    Column("created_at", TIMESTAMP(timezone=True), server_default=func.now()),
    Column("updated_at", TIMESTAMP(timezone=True), server_default=func.now()),
    Column("sent_at", TIMESTAMP(timezone=True)),
    Column("delivered_at", TIMESTAMP(timezone=True)),
    Column("read_at", TIMESTAMP(timezone=True)),
    Index("idx_notifications_user_channel", "user_id", "channel"),
    Index("idx_notifications_content_hash", "content_hash", "created_at"),
    Index("idx_notifications_due", "status", "scheduled_for"),
    Index("idx_notifications_sent_at", "user_id", "channel", "sent_at"),
)


# =====================================================
# 2. NOTIFICATION ATTEMPTS (append-only audit trail)
# =====================================================
notification_attempts = Table(
    "notification_attempts",
    metadata,
    Column("attempt_id", Integer, primary_key=True, autoincrement=True),
    Column(
        "notification_id",
        Text,
        ForeignKey("notifications.notification_id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("attempted_at", TIMESTAMP(timezone=True), nullable=False),
    Column("status", notification_status_enum, nullable=False),
    Column("error", Text),
    Column("provider", Text),
    Index("idx_notification_attempts_notification_id", "notification_id"),
)


# =====================================================
# 3. USER PREFERENCES
# =====================================================
user_preferences = Table(
    "user_preferences",
    metadata,
    Column("user_id", Text, primary_key=True),
    Column("timezone", Text, server_default="UTC"),
    # {"email": {"enabled": true, "quiet_hours": {...}, "limits": {...}}, ...}
    Column("channels", JSONB, nullable=False, server_default="{}"),
    Column("global_quiet_hours", JSONB),
    Column("global_limits", JSONB),
    Column("created_at", TIMESTAMP(timezone=True), server_default=func.now()),
    Column("updated_at", TIMESTAMP(timezone=True), server_default=func.now()),
)
