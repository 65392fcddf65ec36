"""Notification and audit trail tables (append-only side effects)."""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from clinicdesk.models.appointments import utcnow

metadata = MetaData()

notifications = Table(
    "notifications",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # Recipient account; no FK, the user directory is owned elsewhere
    Column("user_id", Uuid, nullable=False),
    Column("notification_type", String(50), nullable=False),
    Column("audience_role", String(20), nullable=True),
    Column("payload", JSON, nullable=False),
    Column("is_read", Boolean, nullable=False, server_default=text("false")),
    Column("read_at", DateTime(timezone=True), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    CheckConstraint(
        "notification_type IN ('APPOINTMENT_UPDATED', 'PAYMENT_SUCCESS', "
        "'PAYMENT_DECLINED', 'PAYMENT_ERROR')",
        name="notifications_type_check",
    ),
    Index("idx_notifications_user_read", "user_id", "is_read"),
    Index("idx_notifications_created_at", "created_at"),
)

audit_entries = Table(
    "audit_entries",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("entity_type", String(50), nullable=False),
    Column("entity_id", Text, nullable=False),
    Column("actor_id", Text, nullable=False),
    Column("action", String(50), nullable=False),
    Column("diff", JSON, nullable=True),
    Column("at", DateTime(timezone=True), nullable=False, default=utcnow),
    Index("idx_audit_entries_entity", "entity_type", "entity_id", "at"),
)
