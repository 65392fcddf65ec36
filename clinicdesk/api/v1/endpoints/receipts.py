"""Receipt endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from clinicdesk.dependencies import CurrentActor, DatabaseSession
from clinicdesk.schemas.billing import ReceiptResponse, ReceiptVerificationResponse
from clinicdesk.services.receipt_service import ReceiptService

router = APIRouter()


@router.get(
    "/verify",
    response_model=ReceiptVerificationResponse,
    status_code=status.HTTP_200_OK,
    tags=["Receipts"],
    summary="Verify a receipt token",
)
async def verify_receipt(
    db: DatabaseSession,
    token: str = Query(..., min_length=1, description="Token encoded in the receipt QR code"),
) -> ReceiptVerificationResponse:
    """
    Check a scanned receipt token against the stored receipt.

    No authentication: anyone holding the printed receipt can verify it.

    Args:
        db: Database session
        token: Signed receipt token

    Returns:
        Verification result
    """
    service = ReceiptService(db)
    return await service.verify_receipt(token)


@router.get(
    "/number/{receipt_number}",
    response_model=ReceiptResponse,
    status_code=status.HTTP_200_OK,
    tags=["Receipts"],
    summary="Get receipt by number",
)
async def get_receipt_by_number(
    receipt_number: str,
    actor: CurrentActor,
    db: DatabaseSession,
) -> ReceiptResponse:
    service = ReceiptService(db)
    return await service.get_receipt_by_number(receipt_number, actor)


@router.get(
    "/{receipt_id}",
    response_model=ReceiptResponse,
    status_code=status.HTTP_200_OK,
    tags=["Receipts"],
    summary="Get receipt",
)
async def get_receipt(
    receipt_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> ReceiptResponse:
    service = ReceiptService(db)
    return await service.get_receipt(receipt_id, actor)
