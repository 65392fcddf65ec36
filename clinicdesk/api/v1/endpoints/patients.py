"""Patient record endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from clinicdesk.core.exceptions import ConflictException
from clinicdesk.dependencies import CurrentActor, DatabaseSession
from clinicdesk.schemas.patients import PatientResponse, PatientUpdate
from clinicdesk.services.patient_service import PatientService

router = APIRouter()


@router.get(
    "/{patient_id}",
    response_model=PatientResponse,
    status_code=status.HTTP_200_OK,
    tags=["Patients"],
    summary="Get patient record",
)
async def get_patient(
    patient_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> PatientResponse:
    service = PatientService(db)
    return await service.get_patient(str(patient_id), actor)


@router.patch(
    "/{patient_id}",
    response_model=PatientResponse,
    status_code=status.HTTP_200_OK,
    tags=["Patients"],
    summary="Update patient record",
)
async def update_patient(
    patient_id: UUID,
    data: PatientUpdate,
    actor: CurrentActor,
    db: DatabaseSession,
) -> PatientResponse:
    """
    Update a patient record if nobody changed it since ``expected_version``.

    Args:
        patient_id: Patient ID
        data: Changes plus the version the caller last read
        actor: Authenticated user (staff only)
        db: Database session

    Returns:
        Updated patient record

    Raises:
        ConflictException: Stale version; details carry the current version
    """
    service = PatientService(db)
    result = await service.update_patient(patient_id, data, actor)

    if not result.ok or result.patient is None:
        raise ConflictException(
            "Patient record was modified by someone else",
            details={
                "expected_version": data.expected_version,
                "current_version": result.current_version,
            },
        )

    return result.patient
