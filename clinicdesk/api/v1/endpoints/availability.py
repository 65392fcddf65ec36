"""Doctor availability endpoints."""

from datetime import date

from fastapi import APIRouter, Query, status

from clinicdesk.dependencies import CacheManagerDep, CurrentActor, DatabaseSession
from clinicdesk.schemas.appointments import AvailabilityResponse
from clinicdesk.services.availability_service import AvailabilityService

router = APIRouter()


@router.get(
    "/{doctor_id}",
    response_model=AvailabilityResponse,
    status_code=status.HTTP_200_OK,
    tags=["Availability"],
    summary="List a doctor's slots for a day",
)
async def list_slots(
    doctor_id: str,
    actor: CurrentActor,
    db: DatabaseSession,
    cache: CacheManagerDep,
    day: date = Query(..., description="Calendar day (YYYY-MM-DD) in the clinic timezone"),
) -> AvailabilityResponse:
    """
    List fixed-length slots for one doctor and day, flagged free or taken.

    Args:
        doctor_id: Doctor identifier
        actor: Authenticated user
        db: Database session
        cache: Slot cache
        day: Calendar day

    Returns:
        Slots sorted by start time
    """
    service = AvailabilityService(db, cache)
    slots = await service.list_available_slots(doctor_id, day)
    return AvailabilityResponse(doctor_id=doctor_id, day=day, slots=slots)
