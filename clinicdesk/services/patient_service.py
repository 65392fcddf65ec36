"""Patient record service with optimistic concurrency."""

from datetime import UTC, datetime
from uuid import UUID

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.core.events import PostCommitHooks
from clinicdesk.core.exceptions import ForbiddenException, NotFoundException
from clinicdesk.database import row_to_dict
from clinicdesk.models.patients import patients
from clinicdesk.schemas.patients import PatientResponse, PatientUpdate, PatientUpdateResult
from clinicdesk.schemas.users import Actor
from clinicdesk.services.audit_service import AuditService
from clinicdesk.services.directory_service import DirectoryService

logger = structlog.get_logger(__name__)

# Columns that may not be cleared once set
REQUIRED_FIELDS = {"first_name", "last_name", "government_eligible"}


class PatientService:
    """Service for reading and updating patient records."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db
        self.directory = DirectoryService(db)
        self.hooks = PostCommitHooks()

    async def get_patient(self, patient_id: str, actor: Actor) -> PatientResponse:
        """
        Get a patient record.

        Raises:
            ForbiddenException: Patient reading someone else's record
            NotFoundException: Unknown patient
        """
        if actor.is_patient and actor.linked_patient_id != str(patient_id):
            raise ForbiddenException("Patients may only view their own record")

        patient = await self.directory.get_patient(patient_id)
        if patient is None:
            raise NotFoundException("Patient not found")
        return PatientResponse.model_validate(patient)

    async def update_patient(
        self,
        patient_id: UUID,
        data: PatientUpdate,
        actor: Actor,
    ) -> PatientUpdateResult:
        """
        Apply changes only if the stored version still equals ``expected_version``.

        Args:
            patient_id: Patient ID
            data: Changes plus the version the caller last read
            actor: Acting user (staff only)

        Returns:
            ok with the updated record, or not ok with the current version

        Raises:
            ForbiddenException: Actor is not staff
            NotFoundException: Unknown patient
        """
        if not actor.is_staff:
            raise ForbiddenException("Only staff can update patient records")

        submitted = data.model_dump(exclude_unset=True, exclude={"expected_version"})
        changes = {
            key: value
            for key, value in submitted.items()
            if value is not None or key not in REQUIRED_FIELDS
        }

        before = await self.directory.get_patient(str(patient_id))
        if before is None:
            raise NotFoundException("Patient not found")

        stmt = (
            update(patients)
            .where(
                and_(
                    patients.c.id == patient_id,
                    patients.c.version == data.expected_version,
                )
            )
            .values(
                **changes,
                version=patients.c.version + 1,
                updated_at=datetime.now(UTC),
            )
            .returning(patients)
        )
        result = await self.db.execute(stmt)
        updated = row_to_dict(result.fetchone())

        if updated is None:
            await self.db.rollback()
            current = await self.db.execute(
                select(patients.c.version).where(patients.c.id == patient_id)
            )
            current_version = current.scalar()
            logger.info(
                "patient_update_conflict",
                patient_id=str(patient_id),
                expected_version=data.expected_version,
                current_version=current_version,
            )
            return PatientUpdateResult(ok=False, current_version=current_version)

        await self.db.commit()

        self.hooks.add(
            "audit_patient_updated",
            AuditService.hook(
                "Patient",
                patient_id,
                actor.id,
                "updated",
                {
                    "changes": [
                        {"path": key, "before": before.get(key), "after": updated.get(key)}
                        for key in changes
                    ],
                    "version": updated["version"],
                },
            ),
        )
        await self.hooks.run(self.db)

        return PatientUpdateResult(
            ok=True,
            patient=PatientResponse.model_validate(updated),
            current_version=updated["version"],
        )
