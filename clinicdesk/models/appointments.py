"""Appointment and doctor roster tables using SQLAlchemy Core."""

from datetime import UTC, datetime
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    MetaData,
    Table,
    Text,
    Uuid,
    text,
)

# Metadata for scheduling tables
metadata = MetaData()


def utcnow() -> datetime:
    """Column default for audit timestamps."""
    return datetime.now(UTC)


LIVE_SLOT_PREDICATE = text("status <> 'CANCELLED'")

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # Denormalized correlation keys, resolved through the directory service
    Column("patient_id", Text, nullable=False, index=True),
    Column("doctor_id", Text, nullable=False, index=True),
    Column("department", Text, nullable=True),
    # Half-open interval [starts_at, ends_at)
    Column("starts_at", DateTime(timezone=True), nullable=False),
    Column("ends_at", DateTime(timezone=True), nullable=False),
    Column("status", Text, nullable=False, server_default="BOOKED"),
    Column("notes", Text, nullable=True),
    Column("previous_appointment_id", Uuid, nullable=True),
    # Audit fields
    Column("created_by", Text, nullable=True),
    Column("updated_by", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    CheckConstraint(
        "status IN ('BOOKED', 'CONFIRMED', 'APPROVED', 'ACCEPTED', 'RESCHEDULED', "
        "'CANCELLED', 'COMPLETED', 'NO_SHOW')",
        name="appointments_status_check",
    ),
    CheckConstraint("ends_at > starts_at", name="appointments_interval_check"),
    # One live appointment per doctor slot; cancelled rows free the slot
    Index(
        "uq_appointments_doctor_slot_live",
        "doctor_id",
        "starts_at",
        unique=True,
        postgresql_where=LIVE_SLOT_PREDICATE,
        sqlite_where=LIVE_SLOT_PREDICATE,
    ),
    Index("idx_appointments_patient_status", "patient_id", "status"),
)

# Doctor roster: explicit open or blocked ranges
doctor_roster_slots = Table(
    "doctor_roster_slots",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("doctor_id", Text, nullable=False),
    Column("start_at", DateTime(timezone=True), nullable=False),
    Column("end_at", DateTime(timezone=True), nullable=False),
    Column("is_blocked", Boolean, nullable=False, server_default=text("false")),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Index("idx_doctor_roster_doctor_start", "doctor_id", "start_at"),
)
