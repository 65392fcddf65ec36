"""Database models."""

from sqlalchemy import MetaData

from clinicdesk.models.appointments import appointments, doctor_roster_slots
from clinicdesk.models.appointments import metadata as scheduling_metadata
from clinicdesk.models.billing import (
    bill_items,
    bills,
    config_entries,
    payments,
    receipts,
)
from clinicdesk.models.billing import metadata as billing_metadata
from clinicdesk.models.notifications import audit_entries, notifications
from clinicdesk.models.notifications import metadata as notifications_metadata
from clinicdesk.models.patients import metadata as patients_metadata
from clinicdesk.models.patients import patients
from clinicdesk.models.users import metadata as users_metadata
from clinicdesk.models.users import users
from clinicdesk.models.waitlist import metadata as waitlist_metadata
from clinicdesk.models.waitlist import waitlist_entries

# Combined metadata for create_all (scripts and tests)
metadata = MetaData()
for _source in (
    scheduling_metadata,
    billing_metadata,
    notifications_metadata,
    patients_metadata,
    users_metadata,
    waitlist_metadata,
):
    for _table in _source.tables.values():
        _table.to_metadata(metadata)

__all__ = [
    "appointments",
    "audit_entries",
    "bill_items",
    "bills",
    "config_entries",
    "doctor_roster_slots",
    "metadata",
    "notifications",
    "patients",
    "payments",
    "receipts",
    "users",
    "waitlist_entries",
]
