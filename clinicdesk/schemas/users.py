"""Actor (authenticated caller) schemas."""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class Role(str, Enum):
    """User role enumeration."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    STAFF = "staff"
    MANAGER = "manager"
    ADMIN = "admin"


# Roles with full back-office rights (billing, any patient, cash/government payments)
STAFF_ROLES = frozenset({Role.STAFF, Role.MANAGER, Role.ADMIN})


class Actor(BaseModel):
    """Identity of the caller as supplied by the authentication layer."""

    id: UUID
    role: Role
    email: str | None = None
    full_name: str | None = None
    linked_patient_id: str | None = None
    doctor_profile_id: str | None = None

    model_config = {"from_attributes": True, "frozen": True}

    @property
    def is_patient(self) -> bool:
        return self.role == Role.PATIENT

    @property
    def is_doctor(self) -> bool:
        return self.role == Role.DOCTOR

    @property
    def is_staff(self) -> bool:
        """Staff, managers and admins."""
        return self.role in STAFF_ROLES

    @property
    def display_name(self) -> str:
        """Human readable name for notification messages."""
        return self.full_name or self.email or self.role.value
