"""Directory lookups: user accounts behind denormalized patient/doctor ids."""

from typing import Any
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.database import row_to_dict
from clinicdesk.models.patients import patients
from clinicdesk.models.users import users
from clinicdesk.schemas.users import Role


class DirectoryService:
    """Read-only access to the identity directory and patient records."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db

    async def get_user(self, user_id: UUID) -> dict[str, Any] | None:
        """Get a user account by id, active or not."""
        result = await self.db.execute(select(users).where(users.c.id == user_id))
        return row_to_dict(result.fetchone())

    async def find_patient_user(self, patient_id: str) -> dict[str, Any] | None:
        """Get the patient account linked to a patient record."""
        stmt = select(users).where(
            and_(
                users.c.role == Role.PATIENT.value,
                users.c.linked_patient_id == patient_id,
                users.c.is_active.is_(True),
            )
        )
        result = await self.db.execute(stmt)
        return row_to_dict(result.first())

    async def find_doctor_user(self, doctor_id: str) -> dict[str, Any] | None:
        """Get the doctor account for a doctor profile id."""
        stmt = select(users).where(
            and_(
                users.c.role == Role.DOCTOR.value,
                users.c.doctor_profile_id == doctor_id,
                users.c.is_active.is_(True),
            )
        )
        result = await self.db.execute(stmt)
        return row_to_dict(result.first())

    async def list_users_by_roles(self, roles: list[Role]) -> list[dict[str, Any]]:
        """List active accounts holding any of the given roles."""
        stmt = select(users).where(
            and_(
                users.c.role.in_([role.value for role in roles]),
                users.c.is_active.is_(True),
            )
        )
        result = await self.db.execute(stmt)
        return [row_to_dict(row) for row in result.fetchall()]  # type: ignore[misc]

    async def get_patient(self, patient_id: str) -> dict[str, Any] | None:
        """
        Get a patient record by its id.

        Patient ids travel as opaque strings; anything that is not a UUID
        cannot name a stored record.
        """
        try:
            key = UUID(str(patient_id))
        except ValueError:
            return None

        result = await self.db.execute(select(patients).where(patients.c.id == key))
        return row_to_dict(result.fetchone())
