"""Bill, line item, payment, receipt and config tables using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)

from clinicdesk.models.appointments import utcnow

metadata = MetaData()

PENDING_BILL_PREDICATE = text("status = 'PENDING'")
OPEN_PAYMENT_PREDICATE = text("status IN ('PENDING', 'SUCCESS')")

bills = Table(
    "bills",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("patient_id", Text, nullable=False, index=True),
    Column("status", String(20), nullable=False, server_default="PENDING"),
    Column("subtotal", Numeric(12, 2), nullable=False, server_default="0"),
    Column("insurance_discount", Numeric(12, 2), nullable=False, server_default="0"),
    Column("government_cover", Numeric(12, 2), nullable=False, server_default="0"),
    Column("total_payable", Numeric(12, 2), nullable=False, server_default="0"),
    Column("paid_at", DateTime(timezone=True), nullable=True),
    # Bumped on every reconciliation write; settlement requires the version it priced
    Column("version", Integer, nullable=False, default=0, server_default="0"),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    CheckConstraint("status IN ('PENDING', 'PAID', 'CANCELLED')", name="bills_status_check"),
    CheckConstraint(
        "subtotal >= 0 AND insurance_discount >= 0 AND government_cover >= 0 "
        "AND total_payable >= 0",
        name="bills_amounts_non_negative",
    ),
    # At most one pending bill per patient
    Index(
        "uq_bills_patient_pending",
        "patient_id",
        unique=True,
        postgresql_where=PENDING_BILL_PREDICATE,
        sqlite_where=PENDING_BILL_PREDICATE,
    ),
)

bill_items = Table(
    "bill_items",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("bill_id", Uuid, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False),
    Column("appointment_id", Uuid, nullable=False),
    Column("description", Text, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("insurance_discount", Numeric(12, 2), nullable=False, server_default="0"),
    Column("line_total", Numeric(12, 2), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    UniqueConstraint("appointment_id", name="uq_bill_items_appointment"),
    Index("idx_bill_items_bill", "bill_id"),
)

payments = Table(
    "payments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("bill_id", Uuid, ForeignKey("bills.id", ondelete="RESTRICT"), nullable=False),
    Column("method", String(20), nullable=False),
    Column("status", String(20), nullable=False, server_default="PENDING"),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("gateway_ref", Text, nullable=True),
    Column("auth_code", String(20), nullable=True),
    Column("card_last4", String(4), nullable=True),
    Column("failure_reason", Text, nullable=True),
    Column("created_by", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, default=utcnow),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
    CheckConstraint("method IN ('CARD', 'CASH', 'GOVERNMENT')", name="payments_method_check"),
    CheckConstraint(
        "status IN ('PENDING', 'SUCCESS', 'DECLINED', 'ERROR')",
        name="payments_status_check",
    ),
    # One in-flight or settled payment per bill
    Index(
        "uq_payments_bill_open",
        "bill_id",
        unique=True,
        postgresql_where=OPEN_PAYMENT_PREDICATE,
        sqlite_where=OPEN_PAYMENT_PREDICATE,
    ),
)

receipts = Table(
    "receipts",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("bill_id", Uuid, ForeignKey("bills.id", ondelete="CASCADE"), nullable=False),
    Column("payment_id", Uuid, ForeignKey("payments.id"), nullable=False),
    Column("receipt_number", String(40), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("verification_token", Text, nullable=False),
    Column("qr_code", Text, nullable=False),
    Column("issued_at", DateTime(timezone=True), nullable=False, default=utcnow),
    UniqueConstraint("payment_id", name="uq_receipts_payment"),
    UniqueConstraint("receipt_number", name="uq_receipts_number"),
)

# Key/value business configuration (e.g. billing.base_fee)
config_entries = Table(
    "config_entries",
    metadata,
    Column("key", String(100), primary_key=True),
    Column("value", JSON, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False, default=utcnow),
)
