"""User account table (identity directory, read-only from this service)."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    MetaData,
    Table,
    Text,
    Uuid,
    text,
)

from clinicdesk.models.appointments import utcnow

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("email", Text, nullable=False, index=True),
    Column("full_name", Text),
    Column("role", Text, nullable=False, server_default=text("'patient'")),
    # Correlation keys into the denormalized appointment/bill records
    Column("linked_patient_id", Text, nullable=True, index=True),
    Column("doctor_profile_id", Text, nullable=True, index=True),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    CheckConstraint(
        "role IN ('patient', 'doctor', 'staff', 'manager', 'admin')",
        name="users_role_check",
    ),
)
