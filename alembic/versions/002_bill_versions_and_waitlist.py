"""bill versions, retained payment attempts and waitlist

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 10:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Version bills, stop cascading bill deletes to payments, add the waitlist."""
    op.add_column(
        "bills",
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("0")),
    )

    # Payment attempts outlive their bill; a bill with attempts is cancelled, not deleted
    op.drop_constraint("payments_bill_id_fkey", "payments", type_="foreignkey")
    op.create_foreign_key(
        "payments_bill_id_fkey",
        "payments",
        "bills",
        ["bill_id"],
        ["id"],
        ondelete="RESTRICT",
    )

    op.create_table(
        "waitlist_entries",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("patient_id", sa.Text(), nullable=False),
        sa.Column("doctor_id", sa.Text(), nullable=False),
        sa.Column("desired_date", sa.Date(), nullable=False),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "patient_id", "doctor_id", "desired_date", name="uq_waitlist_patient_day"
        ),
    )
    op.create_index(
        "idx_waitlist_doctor_date", "waitlist_entries", ["doctor_id", "desired_date"]
    )


def downgrade() -> None:
    """Drop the waitlist and restore cascading payment deletes."""
    op.drop_index("idx_waitlist_doctor_date", table_name="waitlist_entries")
    op.drop_table("waitlist_entries")

    op.drop_constraint("payments_bill_id_fkey", "payments", type_="foreignkey")
    op.create_foreign_key(
        "payments_bill_id_fkey",
        "payments",
        "bills",
        ["bill_id"],
        ["id"],
        ondelete="CASCADE",
    )

    op.drop_column("bills", "version")
