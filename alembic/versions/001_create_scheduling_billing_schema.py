"""create scheduling, billing and settlement schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _id() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, postgresql.TIMESTAMP(timezone=True), nullable=True)
    return sa.Column(
        name,
        postgresql.TIMESTAMP(timezone=True),
        server_default=sa.text("NOW()"),
        nullable=False,
    )


def upgrade() -> None:
    """Create directory, scheduling, billing, settlement and audit tables."""
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # Identity directory (read-only here)
    op.create_table(
        "users",
        _id(),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("full_name", sa.Text(), nullable=True),
        sa.Column("role", sa.Text(), nullable=False, server_default=sa.text("'patient'")),
        sa.Column("linked_patient_id", sa.Text(), nullable=True),
        sa.Column("doctor_profile_id", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "role IN ('patient', 'doctor', 'staff', 'manager', 'admin')",
            name="users_role_check",
        ),
    )
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_linked_patient_id", "users", ["linked_patient_id"])
    op.create_index("ix_users_doctor_profile_id", "users", ["doctor_profile_id"])

    op.create_table(
        "patients",
        _id(),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("phone", sa.String(20), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("insurance_provider", sa.Text(), nullable=True),
        sa.Column("insurance_policy_number", sa.String(100), nullable=True),
        sa.Column(
            "government_eligible", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "appointments",
        _id(),
        sa.Column("patient_id", sa.Text(), nullable=False),
        sa.Column("doctor_id", sa.Text(), nullable=False),
        sa.Column("department", sa.Text(), nullable=True),
        sa.Column("starts_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("ends_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'BOOKED'")),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("previous_appointment_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("cancelled_at", nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('BOOKED', 'CONFIRMED', 'APPROVED', 'ACCEPTED', 'RESCHEDULED', "
            "'CANCELLED', 'COMPLETED', 'NO_SHOW')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint("ends_at > starts_at", name="appointments_interval_check"),
    )
    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index("ix_appointments_doctor_id", "appointments", ["doctor_id"])
    op.create_index("idx_appointments_patient_status", "appointments", ["patient_id", "status"])
    # Cancelled rows release the slot
    op.create_index(
        "uq_appointments_doctor_slot_live",
        "appointments",
        ["doctor_id", "starts_at"],
        unique=True,
        postgresql_where=sa.text("status <> 'CANCELLED'"),
    )

    op.create_table(
        "doctor_roster_slots",
        _id(),
        sa.Column("doctor_id", sa.Text(), nullable=False),
        sa.Column("start_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_at", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("is_blocked", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_doctor_roster_doctor_start", "doctor_roster_slots", ["doctor_id", "start_at"]
    )

    money = sa.Numeric(12, 2)

    op.create_table(
        "bills",
        _id(),
        sa.Column("patient_id", sa.Text(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("subtotal", money, nullable=False, server_default=sa.text("0")),
        sa.Column("insurance_discount", money, nullable=False, server_default=sa.text("0")),
        sa.Column("government_cover", money, nullable=False, server_default=sa.text("0")),
        sa.Column("total_payable", money, nullable=False, server_default=sa.text("0")),
        _timestamp("paid_at", nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("status IN ('PENDING', 'PAID', 'CANCELLED')", name="bills_status_check"),
        sa.CheckConstraint(
            "subtotal >= 0 AND insurance_discount >= 0 AND government_cover >= 0 "
            "AND total_payable >= 0",
            name="bills_amounts_non_negative",
        ),
    )
    op.create_index("ix_bills_patient_id", "bills", ["patient_id"])
    op.create_index(
        "uq_bills_patient_pending",
        "bills",
        ["patient_id"],
        unique=True,
        postgresql_where=sa.text("status = 'PENDING'"),
    )

    op.create_table(
        "bill_items",
        _id(),
        sa.Column("bill_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("appointment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("unit_price", money, nullable=False),
        sa.Column("insurance_discount", money, nullable=False, server_default=sa.text("0")),
        sa.Column("line_total", money, nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["bill_id"], ["bills.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("appointment_id", name="uq_bill_items_appointment"),
    )
    op.create_index("idx_bill_items_bill", "bill_items", ["bill_id"])

    op.create_table(
        "payments",
        _id(),
        sa.Column("bill_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("method", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("amount", money, nullable=False),
        sa.Column("gateway_ref", sa.Text(), nullable=True),
        sa.Column("auth_code", sa.String(20), nullable=True),
        sa.Column("card_last4", sa.String(4), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_by", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["bill_id"], ["bills.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "method IN ('CARD', 'CASH', 'GOVERNMENT')", name="payments_method_check"
        ),
        sa.CheckConstraint(
            "status IN ('PENDING', 'SUCCESS', 'DECLINED', 'ERROR')",
            name="payments_status_check",
        ),
    )
    op.create_index(
        "uq_payments_bill_open",
        "payments",
        ["bill_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('PENDING', 'SUCCESS')"),
    )

    op.create_table(
        "receipts",
        _id(),
        sa.Column("bill_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("payment_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("receipt_number", sa.String(40), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("verification_token", sa.Text(), nullable=False),
        sa.Column("qr_code", sa.Text(), nullable=False),
        _timestamp("issued_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["bill_id"], ["bills.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["payment_id"], ["payments.id"]),
        sa.UniqueConstraint("payment_id", name="uq_receipts_payment"),
        sa.UniqueConstraint("receipt_number", name="uq_receipts_number"),
    )

    op.create_table(
        "config_entries",
        sa.Column("key", sa.String(100), nullable=False),
        sa.Column("value", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("key"),
    )

    op.create_table(
        "notifications",
        _id(),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("notification_type", sa.String(50), nullable=False),
        sa.Column("audience_role", sa.String(20), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("read_at", nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "notification_type IN ('APPOINTMENT_UPDATED', 'PAYMENT_SUCCESS', "
            "'PAYMENT_DECLINED', 'PAYMENT_ERROR')",
            name="notifications_type_check",
        ),
    )
    op.create_index("idx_notifications_user_read", "notifications", ["user_id", "is_read"])
    op.create_index("idx_notifications_created_at", "notifications", ["created_at"])

    op.create_table(
        "audit_entries",
        _id(),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.Text(), nullable=False),
        sa.Column("actor_id", sa.Text(), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("diff", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        _timestamp("at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_audit_entries_entity", "audit_entries", ["entity_type", "entity_id", "at"]
    )


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.drop_table("audit_entries")
    op.drop_table("notifications")
    op.drop_table("config_entries")
    op.drop_table("receipts")
    op.drop_table("payments")
    op.drop_table("bill_items")
    op.drop_table("bills")
    op.drop_table("doctor_roster_slots")
    op.drop_table("appointments")
    op.drop_table("patients")
    op.drop_table("users")
