"""Waitlist endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, Response, status

from clinicdesk.dependencies import CurrentActor, DatabaseSession
from clinicdesk.schemas.waitlist import WaitlistEntryCreate, WaitlistEntryResponse
from clinicdesk.services.waitlist_service import WaitlistService

router = APIRouter()


@router.get(
    "/",
    response_model=list[WaitlistEntryResponse],
    status_code=status.HTTP_200_OK,
    tags=["Waitlist"],
    summary="List waitlist entries",
)
async def list_waitlist(
    actor: CurrentActor,
    db: DatabaseSession,
    patient_id: str | None = Query(None, description="Filter by patient (staff)"),
    doctor_id: str | None = Query(None, description="Filter by doctor"),
) -> list[WaitlistEntryResponse]:
    service = WaitlistService(db)
    return await service.list_entries(actor, patient_id=patient_id, doctor_id=doctor_id)


@router.post(
    "/",
    response_model=WaitlistEntryResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Waitlist"],
    summary="Join a doctor's waitlist",
)
async def join_waitlist(
    data: WaitlistEntryCreate,
    actor: CurrentActor,
    db: DatabaseSession,
    response: Response,
) -> WaitlistEntryResponse:
    """
    Queue for a doctor on a preferred day.

    Args:
        data: Doctor, day and (for staff) the patient
        actor: Authenticated user
        db: Database session
        response: Response, downgraded to 200 when the entry already existed

    Returns:
        The new or existing entry
    """
    service = WaitlistService(db)
    entry, created = await service.join(data, actor)
    if not created:
        response.status_code = status.HTTP_200_OK
    return entry


@router.delete(
    "/{entry_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["Waitlist"],
    summary="Leave the waitlist",
)
async def leave_waitlist(
    entry_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> None:
    service = WaitlistService(db)
    await service.leave(entry_id, actor)
