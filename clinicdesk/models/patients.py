"""Patient record table (owned by the records service, read here for billing)."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from clinicdesk.models.appointments import utcnow

metadata = MetaData()

patients = Table(
    "patients",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # Demographics
    Column("first_name", Text, nullable=False),
    Column("last_name", Text, nullable=False),
    Column("date_of_birth", Date),
    Column("phone", String(20)),
    Column("email", Text),
    # Insurance information
    Column("insurance_provider", Text),
    Column("insurance_policy_number", String(100)),
    Column("government_eligible", Boolean, nullable=False, server_default=text("false")),
    # Optimistic concurrency token, bumped on every update
    Column("version", Integer, nullable=False, server_default=text("0")),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
)
