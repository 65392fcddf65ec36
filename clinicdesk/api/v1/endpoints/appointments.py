"""Appointment endpoints."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Query, status

from clinicdesk.config import settings
from clinicdesk.dependencies import CacheManagerDep, CurrentActor, DatabaseSession
from clinicdesk.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    CancellationPolicyResponse,
)
from clinicdesk.services.appointment_service import AppointmentService

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Book appointment",
)
async def book_appointment(
    data: AppointmentCreate,
    actor: CurrentActor,
    db: DatabaseSession,
    cache: CacheManagerDep,
) -> AppointmentResponse:
    """
    Book a slot with a doctor.

    Patients always book for their own linked record; other roles must name
    the patient.

    Args:
        data: Booking request
        actor: Authenticated user
        db: Database session
        cache: Slot cache

    Returns:
        Created appointment
    """
    service = AppointmentService(db, cache)
    return await service.book(data, actor)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments",
)
async def list_appointments(
    actor: CurrentActor,
    db: DatabaseSession,
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    patient_id: str | None = Query(None),
    doctor_id: str | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    include_cancelled: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments visible to the authenticated user.

    Args:
        actor: Authenticated user
        db: Database session
        status_filter: Filter by status
        patient_id: Filter by patient (staff only)
        doctor_id: Filter by doctor (staff only)
        from_date: Earliest start time
        to_date: Latest start time
        include_cancelled: Include cancelled appointments
        page: Page number
        page_size: Items per page

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        status=status_filter,
        patient_id=patient_id,
        doctor_id=doctor_id,
        from_date=from_date,
        to_date=to_date,
        include_cancelled=include_cancelled,
        page=page,
        page_size=page_size,
    )
    service = AppointmentService(db)
    return await service.list_appointments(actor, filters)


@router.get(
    "/policy",
    response_model=CancellationPolicyResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Scheduling policy constants",
)
async def get_policy() -> CancellationPolicyResponse:
    """Expose the cancellation cutoff and slot length."""
    return CancellationPolicyResponse(
        cancel_cutoff_hours=settings.cancel_cutoff_hours,
        slot_minutes=settings.slot_minutes,
    )


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment",
)
async def get_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> AppointmentResponse:
    """Get one appointment visible to the authenticated user."""
    service = AppointmentService(db)
    return await service.get_appointment(appointment_id, actor)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
    cache: CacheManagerDep,
) -> AppointmentResponse:
    """
    Cancel an appointment subject to the cancellation policy.

    Staff cancellations purge the record; the response then has
    ``deleted`` set.
    """
    service = AppointmentService(db, cache)
    return await service.cancel(appointment_id, actor)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Reschedule appointment",
)
async def reschedule_appointment(
    appointment_id: UUID,
    data: AppointmentReschedule,
    actor: CurrentActor,
    db: DatabaseSession,
    cache: CacheManagerDep,
) -> AppointmentResponse:
    """Move an appointment to a new slot."""
    service = AppointmentService(db, cache)
    return await service.reschedule(appointment_id, data, actor)


@router.post(
    "/{appointment_id}/approve",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Approve appointment",
)
async def approve_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> AppointmentResponse:
    """Confirm an appointment and refresh the patient's pending bill."""
    service = AppointmentService(db)
    return await service.approve(appointment_id, actor)


@router.post(
    "/{appointment_id}/reject",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Reject appointment",
)
async def reject_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
    cache: CacheManagerDep,
) -> AppointmentResponse:
    """Reject an appointment."""
    service = AppointmentService(db, cache)
    return await service.reject(appointment_id, actor)
