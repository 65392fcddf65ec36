"""Waitlist table using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, Index, MetaData, Table, Text, UniqueConstraint, Uuid

from clinicdesk.models.appointments import utcnow

metadata = MetaData()

# Patients queued for a doctor on a given clinic-local day
waitlist_entries = Table(
    "waitlist_entries",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("patient_id", Text, nullable=False),
    Column("doctor_id", Text, nullable=False),
    Column("desired_date", Date, nullable=False),
    Column("created_by", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    UniqueConstraint("patient_id", "doctor_id", "desired_date", name="uq_waitlist_patient_day"),
    Index("idx_waitlist_doctor_date", "doctor_id", "desired_date"),
)
