"""Billing endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from clinicdesk.dependencies import CurrentActor, DatabaseSession
from clinicdesk.schemas.billing import BillResponse, PaymentResponse
from clinicdesk.services.billing_service import BillingService
from clinicdesk.services.payment_service import PaymentService

router = APIRouter()


@router.get(
    "/patients/{patient_id}/current",
    response_model=BillResponse | None,
    status_code=status.HTTP_200_OK,
    tags=["Billing"],
    summary="Get the patient's current bill",
)
async def get_current_bill(
    patient_id: str,
    actor: CurrentActor,
    db: DatabaseSession,
) -> BillResponse | None:
    """
    Get the pending bill, or the most recently paid one when nothing is pending.

    Args:
        patient_id: Patient ID
        actor: Authenticated user
        db: Database session

    Returns:
        Bill with its items, or null when the patient has never been billed
    """
    service = BillingService(db)
    return await service.get_current_bill(patient_id, actor)


@router.post(
    "/patients/{patient_id}/rebuild",
    response_model=BillResponse | None,
    status_code=status.HTTP_200_OK,
    tags=["Billing"],
    summary="Rebuild the patient's pending bill",
)
async def rebuild_bill(
    patient_id: str,
    actor: CurrentActor,
    db: DatabaseSession,
) -> BillResponse | None:
    """
    Reconcile the pending bill against the patient's approved appointments.

    Returns null when nothing is billable; any stale pending bill is
    discarded in that case.
    """
    service = BillingService(db)
    return await service.build_latest_bill(patient_id, actor)


@router.get(
    "/bills/{bill_id}",
    response_model=BillResponse,
    status_code=status.HTTP_200_OK,
    tags=["Billing"],
    summary="Get bill",
)
async def get_bill(
    bill_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> BillResponse:
    """Get a bill with its line items."""
    service = BillingService(db)
    return await service.get_bill(bill_id, actor)


@router.get(
    "/bills/{bill_id}/payments",
    response_model=list[PaymentResponse],
    status_code=status.HTTP_200_OK,
    tags=["Billing"],
    summary="List payment attempts for a bill",
)
async def list_bill_payments(
    bill_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> list[PaymentResponse]:
    service = PaymentService(db)
    return await service.list_bill_payments(bill_id, actor)
