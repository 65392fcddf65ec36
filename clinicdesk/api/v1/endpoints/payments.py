"""Payment endpoints."""

from uuid import UUID

from fastapi import APIRouter, status

from clinicdesk.dependencies import (
    CardGatewayDep,
    CurrentActor,
    DatabaseSession,
    RateLimiterDep,
)
from clinicdesk.schemas.billing import (
    CardPaymentRequest,
    CashPaymentRequest,
    GovernmentPaymentRequest,
    PaymentResponse,
    ReceiptResponse,
    SettlementResponse,
)
from clinicdesk.services.payment_service import PaymentService
from clinicdesk.services.receipt_service import ReceiptService

router = APIRouter()


@router.post(
    "/card",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
    summary="Pay a bill by card",
)
async def pay_by_card(
    data: CardPaymentRequest,
    actor: CurrentActor,
    db: DatabaseSession,
    gateway: CardGatewayDep,
    rate_limiter: RateLimiterDep,
) -> SettlementResponse:
    """
    Charge the bill's payable amount to a card.

    A declined card answers 402 and a gateway outage 503; in both cases the
    attempt is kept as a failed payment and the bill stays pending.

    Args:
        data: Card details and bill id
        actor: Authenticated user
        db: Database session
        gateway: Card gateway adapter
        rate_limiter: Attempt limiter

    Returns:
        Successful payment and its receipt
    """
    service = PaymentService(db, gateway=gateway, rate_limiter=rate_limiter)
    return await service.pay_card(data, actor)


@router.post(
    "/cash",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
    summary="Record a cash payment",
)
async def pay_by_cash(
    data: CashPaymentRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> SettlementResponse:
    """
    Record cash taken at the desk (staff only).

    The amount must equal the bill's payable amount exactly.
    """
    service = PaymentService(db)
    return await service.pay_cash(data, actor)


@router.post(
    "/government",
    response_model=SettlementResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Payments"],
    summary="Settle a bill under government cover",
)
async def pay_by_government(
    data: GovernmentPaymentRequest,
    actor: CurrentActor,
    db: DatabaseSession,
) -> SettlementResponse:
    """Settle the bill of a government-eligible patient (staff only)."""
    service = PaymentService(db)
    return await service.pay_government(data, actor)


@router.get(
    "/{payment_id}",
    response_model=PaymentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Payments"],
    summary="Get payment",
)
async def get_payment(
    payment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> PaymentResponse:
    service = PaymentService(db)
    return await service.get_payment(payment_id, actor)


@router.post(
    "/{payment_id}/receipt",
    response_model=ReceiptResponse,
    status_code=status.HTTP_200_OK,
    tags=["Payments"],
    summary="Issue or fetch the receipt for a payment",
)
async def issue_receipt(
    payment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> ReceiptResponse:
    """
    Issue the receipt for a successful payment.

    Idempotent: returns the existing receipt when one was already issued.
    """
    service = PaymentService(db)
    return await service.reissue_receipt(payment_id, actor)


@router.get(
    "/{payment_id}/receipt",
    response_model=ReceiptResponse,
    status_code=status.HTTP_200_OK,
    tags=["Payments"],
    summary="Get the receipt issued for a payment",
)
async def get_payment_receipt(
    payment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> ReceiptResponse:
    service = ReceiptService(db)
    return await service.get_receipt_for_payment(payment_id, actor)
