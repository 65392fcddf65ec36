"""Payment settlement: card, cash and government payments against a pending bill."""

import asyncio
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.config import settings
from clinicdesk.core.events import PostCommitHooks
from clinicdesk.core.exceptions import (
    AppException,
    ConflictException,
    ForbiddenException,
    GatewayDeclinedException,
    GatewayTransientException,
    NotFoundException,
    RateLimitException,
    ValidationException,
)
from clinicdesk.core.redis_client import RateLimiter
from clinicdesk.database import row_to_dict
from clinicdesk.models.billing import bills, payments
from clinicdesk.schemas.billing import (
    BillStatus,
    CardPaymentRequest,
    CashPaymentRequest,
    GovernmentPaymentRequest,
    PaymentMethod,
    PaymentResponse,
    PaymentStatus,
    ReceiptResponse,
    SettlementResponse,
)
from clinicdesk.schemas.notifications import NotificationType
from clinicdesk.schemas.users import Actor
from clinicdesk.services.audit_service import AuditService
from clinicdesk.services.billing_service import ZERO, BillingService, to_money
from clinicdesk.services.directory_service import DirectoryService
from clinicdesk.services.notification_service import NotificationService
from clinicdesk.services.payment_gateway import (
    CardCharge,
    CardGateway,
    CardStatus,
    GatewayResult,
    get_payment_gateway,
)
from clinicdesk.services.receipt_service import ReceiptService

logger = structlog.get_logger(__name__)

ENTITY = "Payment"
BILL_SETTLED_REASON = "bill already settled"
BILL_CHANGED_REASON = "bill changed during payment"


class PaymentService:
    """Service for settling bills."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: CardGateway | None = None,
        rate_limiter: RateLimiter | None = None,
    ):
        """Initialize service with database session, card gateway and attempt limiter."""
        self.db = db
        self.gateway = gateway or get_payment_gateway()
        self.rate_limiter = rate_limiter
        self.billing = BillingService(db)
        self.receipts = ReceiptService(db)
        self.hooks = PostCommitHooks()
        self.gateway_timeout = settings.payment_gateway_timeout_seconds

    async def _load_bill(self, bill_id: UUID) -> dict[str, Any]:
        result = await self.db.execute(select(bills).where(bills.c.id == bill_id))
        bill = row_to_dict(result.fetchone())
        if bill is None:
            raise NotFoundException("Bill not found")
        return bill

    async def _load_payment(self, payment_id: UUID) -> dict[str, Any]:
        result = await self.db.execute(select(payments).where(payments.c.id == payment_id))
        payment = row_to_dict(result.fetchone())
        if payment is None:
            raise NotFoundException("Payment not found")
        return payment

    async def _prepare(self, bill_id: UUID, method: PaymentMethod, actor: Actor) -> dict[str, Any]:
        """
        Load the bill and check the actor may pay it with this method.

        Patients may pay their own bills by card only; staff may use any
        method; doctors never settle bills.
        """
        bill = await self._load_bill(bill_id)

        if actor.is_doctor:
            raise ForbiddenException("Doctors cannot record payments")
        if actor.is_patient and method != PaymentMethod.CARD:
            raise ForbiddenException("Patients may only pay by card")
        if not (actor.is_patient or actor.is_staff):
            raise ForbiddenException("Access denied to payments")

        await self.billing.assert_patient_access(bill["patient_id"], actor)

        if bill["status"] != BillStatus.PENDING.value:
            message = "Bill is not pending"
            if bill["status"] == BillStatus.PAID.value:
                message = "Bill already paid"
            raise ConflictException(message, details={"bill_status": bill["status"]})
        return bill

    def _check_rate_limit(self, actor: Actor) -> None:
        if self.rate_limiter is None:
            return
        allowed = self.rate_limiter.check_rate_limit(
            f"ratelimit:card:{actor.id}",
            settings.payment_rate_limit_per_minute,
        )
        if not allowed:
            raise RateLimitException("Too many payment attempts, try again in a minute")

    @staticmethod
    def _check_expiry(data: CardPaymentRequest) -> None:
        now = datetime.now(UTC)
        if (data.exp_year, data.exp_month) < (now.year, now.month):
            raise ValidationException("Card has expired")

    async def _mark_bill_paid(
        self,
        bill: dict[str, Any],
        government_cover: Decimal | None = None,
    ) -> bool:
        """
        Conditional PENDING -> PAID update.

        Only the bill version that was priced can be settled; returns False
        when another payment won or the bill was reconciled in between.
        """
        now = datetime.now(UTC)
        values: dict[str, Any] = {
            "status": BillStatus.PAID.value,
            "total_payable": ZERO,
            "paid_at": now,
            "updated_at": now,
        }
        if government_cover is not None:
            values["government_cover"] = government_cover

        result = await self.db.execute(
            update(bills)
            .where(
                and_(
                    bills.c.id == bill["id"],
                    bills.c.status == BillStatus.PENDING.value,
                    bills.c.version == bill["version"],
                )
            )
            .values(**values)
        )
        return (result.rowcount or 0) == 1

    async def _settlement_conflict(self, bill_id: UUID) -> tuple[str, str]:
        """Message and failure reason for a refused PENDING -> PAID update."""
        bill = await self._load_bill(bill_id)
        if bill["status"] == BillStatus.PAID.value:
            return "Bill already paid", BILL_SETTLED_REASON
        return "Bill changed while the payment was processed, review it and retry", (
            BILL_CHANGED_REASON
        )

    async def _reconcile_after_charge(self, bill: dict[str, Any], actor: Actor) -> None:
        """Pick up appointment changes the reconciler refused while the charge was in flight."""
        try:
            await self.billing.build_latest_bill(bill["patient_id"], actor)
        except AppException as e:
            logger.warning(
                "bill_reconcile_failed",
                trigger="card_payment",
                patient_id=bill["patient_id"],
                error=e.message,
            )

    async def _finish_success(
        self,
        payment: dict[str, Any],
        bill: dict[str, Any],
        actor: Actor,
    ) -> SettlementResponse:
        """Issue the receipt, then audit and notify; the settlement is already committed."""
        receipt: ReceiptResponse | None = None
        try:
            receipt = await self.receipts.issue_receipt(payment["id"])
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "receipt_issue_failed",
                payment_id=str(payment["id"]),
                bill_id=str(bill["id"]),
                error=str(e),
            )

        self._queue_outcome(
            payment,
            bill,
            actor,
            NotificationType.PAYMENT_SUCCESS,
            f"Payment of {to_money(payment['amount'])} received for bill {bill['id']}.",
            receipt_number=receipt.receipt_number if receipt else None,
        )
        await self.hooks.run(self.db)

        logger.info(
            "payment_settled",
            payment_id=str(payment["id"]),
            bill_id=str(bill["id"]),
            method=payment["method"],
            amount=str(payment["amount"]),
        )
        return SettlementResponse(payment=PaymentResponse.model_validate(payment), receipt=receipt)

    def _queue_outcome(
        self,
        payment: dict[str, Any],
        bill: dict[str, Any],
        actor: Actor,
        notification_type: NotificationType,
        message: str,
        receipt_number: str | None = None,
    ) -> None:
        """Queue the audit entry and notifications for a payment outcome."""
        self.hooks.add(
            f"audit_{notification_type.value.lower()}",
            AuditService.hook(
                ENTITY,
                payment["id"],
                actor.id,
                notification_type.value.lower(),
                {
                    "bill_id": bill["id"],
                    "method": payment["method"],
                    "amount": payment["amount"],
                    "status": payment["status"],
                    "failure_reason": payment.get("failure_reason"),
                    "receipt_number": receipt_number,
                },
            ),
        )
        self.hooks.add(
            f"notify_{notification_type.value.lower()}",
            NotificationService.payment_hook(
                notification_type,
                bill["patient_id"],
                {
                    "scope": "payment",
                    "bill_id": bill["id"],
                    "payment_id": payment["id"],
                    "method": payment["method"],
                    "amount": payment["amount"],
                    "status": payment["status"],
                    "receipt_number": receipt_number,
                    "message": message,
                },
            ),
        )

    async def _fail_card_payment(
        self,
        payment: dict[str, Any],
        bill: dict[str, Any],
        actor: Actor,
        status: PaymentStatus,
        reason: str,
    ) -> dict[str, Any]:
        result = await self.db.execute(
            update(payments)
            .where(payments.c.id == payment["id"])
            .values(status=status.value, failure_reason=reason, updated_at=datetime.now(UTC))
            .returning(payments)
        )
        failed = row_to_dict(result.fetchone())
        if failed is None:
            await self.db.rollback()
            raise NotFoundException("Payment not found")
        await self.db.commit()

        if status == PaymentStatus.DECLINED:
            notification_type = NotificationType.PAYMENT_DECLINED
            message = f"Card payment for bill {bill['id']} was declined."
        else:
            notification_type = NotificationType.PAYMENT_ERROR
            message = f"Card payment for bill {bill['id']} could not be completed: {reason}."

        self._queue_outcome(failed, bill, actor, notification_type, message)
        await self.hooks.run(self.db)

        logger.warning(
            "card_payment_failed",
            payment_id=str(payment["id"]),
            bill_id=str(bill["id"]),
            status=status.value,
            reason=reason,
        )
        return failed

    async def _charge(self, charge: CardCharge) -> GatewayResult:
        """Call the gateway with a bounded wait; adapter failures become NETWORK_ERROR."""
        try:
            return await asyncio.wait_for(self.gateway.charge(charge), self.gateway_timeout)
        except TimeoutError:
            return GatewayResult(status=CardStatus.NETWORK_ERROR, message="gateway timeout")
        except Exception as e:
            logger.error("card_gateway_failed", reference=charge.reference, error=str(e))
            return GatewayResult(status=CardStatus.NETWORK_ERROR, message=str(e))

    async def pay_card(self, data: CardPaymentRequest, actor: Actor) -> SettlementResponse:
        """
        Charge a card for the bill's payable amount.

        The PENDING payment is committed before the gateway is called, so no
        database lock is held during the call and a concurrent attempt for
        the same bill is refused.

        Args:
            data: Bill id and card details
            actor: Acting user

        Returns:
            The successful payment and its receipt

        Raises:
            NotFoundException: Unknown bill
            ForbiddenException: Actor may not pay this bill by card
            ConflictException: Bill not pending, nothing payable or payment in progress
            ValidationException: Expired card
            RateLimitException: Too many attempts
            GatewayDeclinedException: Card declined
            GatewayTransientException: Gateway unreachable, timed out or failed
        """
        self._check_rate_limit(actor)
        self._check_expiry(data)
        bill = await self._prepare(data.bill_id, PaymentMethod.CARD, actor)

        amount = to_money(bill["total_payable"])
        if amount <= ZERO:
            raise ConflictException("Nothing payable on this bill")

        now = datetime.now(UTC)
        try:
            result = await self.db.execute(
                insert(payments)
                .values(
                    bill_id=bill["id"],
                    method=PaymentMethod.CARD.value,
                    status=PaymentStatus.PENDING.value,
                    amount=amount,
                    card_last4=data.card_number[-4:],
                    created_by=str(actor.id),
                    created_at=now,
                    updated_at=now,
                )
                .returning(payments)
            )
            payment = row_to_dict(result.fetchone())
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictException("A payment for this bill is already in progress")
        if payment is None:
            raise AppException("Payment could not be recorded")

        outcome = await self._charge(
            CardCharge(
                card_number=data.card_number,
                exp_month=data.exp_month,
                exp_year=data.exp_year,
                cvc=data.cvc,
                amount=amount,
                reference=str(payment["id"]),
            )
        )

        if outcome.status == CardStatus.DECLINED:
            await self._fail_card_payment(
                payment,
                bill,
                actor,
                PaymentStatus.DECLINED,
                outcome.message or "card declined",
            )
            await self._reconcile_after_charge(bill, actor)
            raise GatewayDeclinedException(
                details={"payment_id": str(payment["id"]), "bill_id": str(bill["id"])}
            )

        if outcome.status != CardStatus.SUCCESS:
            await self._fail_card_payment(
                payment,
                bill,
                actor,
                PaymentStatus.ERROR,
                outcome.message or "gateway error",
            )
            await self._reconcile_after_charge(bill, actor)
            raise GatewayTransientException(
                details={"payment_id": str(payment["id"]), "bill_id": str(bill["id"])}
            )

        settled = await self.db.execute(
            update(payments)
            .where(
                and_(
                    payments.c.id == payment["id"],
                    payments.c.status == PaymentStatus.PENDING.value,
                )
            )
            .values(
                status=PaymentStatus.SUCCESS.value,
                gateway_ref=outcome.gateway_ref,
                auth_code=outcome.auth_code,
                updated_at=datetime.now(UTC),
            )
            .returning(payments)
        )
        succeeded = row_to_dict(settled.fetchone())

        if succeeded is None or not await self._mark_bill_paid(bill):
            await self.db.rollback()
            message, reason = await self._settlement_conflict(bill["id"])
            await self._fail_card_payment(payment, bill, actor, PaymentStatus.ERROR, reason)
            await self._reconcile_after_charge(bill, actor)
            raise ConflictException(
                message,
                details={"payment_id": str(payment["id"]), "bill_id": str(bill["id"])},
            )

        await self.db.commit()
        settlement = await self._finish_success(succeeded, bill, actor)
        await self._reconcile_after_charge(bill, actor)
        return settlement

    async def _record_immediate(
        self,
        bill: dict[str, Any],
        method: PaymentMethod,
        amount: Decimal,
        actor: Actor,
        government_cover: Decimal | None = None,
    ) -> SettlementResponse:
        """Insert a SUCCESS payment and mark the bill paid in one transaction."""
        now = datetime.now(UTC)
        try:
            result = await self.db.execute(
                insert(payments)
                .values(
                    bill_id=bill["id"],
                    method=method.value,
                    status=PaymentStatus.SUCCESS.value,
                    amount=amount,
                    created_by=str(actor.id),
                    created_at=now,
                    updated_at=now,
                )
                .returning(payments)
            )
            payment = row_to_dict(result.fetchone())

            if not await self._mark_bill_paid(bill, government_cover=government_cover):
                await self.db.rollback()
                message, _ = await self._settlement_conflict(bill["id"])
                raise ConflictException(message)

            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictException("A payment for this bill is already in progress")
        if payment is None:
            raise AppException("Payment could not be recorded")

        return await self._finish_success(payment, bill, actor)

    async def pay_cash(self, data: CashPaymentRequest, actor: Actor) -> SettlementResponse:
        """
        Record cash tendered at the desk; it must match the payable amount exactly.

        Raises:
            ForbiddenException: Actor is not staff
            ValidationException: Amount differs from the payable amount
        """
        bill = await self._prepare(data.bill_id, PaymentMethod.CASH, actor)
        payable = to_money(bill["total_payable"])
        if to_money(data.amount) != payable:
            raise ValidationException(f"Cash amount must equal the payable amount {payable}")

        return await self._record_immediate(bill, PaymentMethod.CASH, payable, actor)

    async def pay_government(
        self,
        data: GovernmentPaymentRequest,
        actor: Actor,
    ) -> SettlementResponse:
        """
        Settle a bill under government cover for an eligible patient.

        Raises:
            ForbiddenException: Actor is not staff or the patient is not eligible
        """
        bill = await self._prepare(data.bill_id, PaymentMethod.GOVERNMENT, actor)
        patient = await DirectoryService(self.db).get_patient(bill["patient_id"])
        if patient is None or not patient["government_eligible"]:
            raise ForbiddenException("Patient is not eligible for government cover")

        cover = to_money(bill["government_cover"]) + to_money(bill["total_payable"])
        return await self._record_immediate(
            bill, PaymentMethod.GOVERNMENT, ZERO, actor, government_cover=cover
        )

    async def get_payment(self, payment_id: UUID, actor: Actor) -> PaymentResponse:
        """Get a payment under the bill access rules."""
        payment = await self._load_payment(payment_id)
        bill = await self._load_bill(payment["bill_id"])
        await self.billing.assert_patient_access(bill["patient_id"], actor)
        return PaymentResponse.model_validate(payment)

    async def list_bill_payments(self, bill_id: UUID, actor: Actor) -> list[PaymentResponse]:
        """List all attempts against a bill, oldest first."""
        bill = await self._load_bill(bill_id)
        await self.billing.assert_patient_access(bill["patient_id"], actor)

        result = await self.db.execute(
            select(payments).where(payments.c.bill_id == bill_id).order_by(payments.c.created_at)
        )
        return [PaymentResponse.model_validate(row_to_dict(row)) for row in result.fetchall()]

    async def reissue_receipt(self, payment_id: UUID, actor: Actor) -> ReceiptResponse:
        """Issue (or return) the receipt for a successful payment."""
        await self.get_payment(payment_id, actor)
        return await self.receipts.issue_receipt(payment_id)
