"""Receipt issuance and verification."""

import base64
import io
import secrets
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import qrcode
import structlog
from qrcode.image.pil import PilImage
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.core.exceptions import ConflictException, NotFoundException
from clinicdesk.core.security import sign_payload, verify_signed_payload
from clinicdesk.database import row_to_dict
from clinicdesk.models.billing import payments, receipts
from clinicdesk.schemas.billing import (
    PaymentStatus,
    ReceiptResponse,
    ReceiptVerificationResponse,
)
from clinicdesk.schemas.users import Actor
from clinicdesk.services.audit_service import to_json_safe
from clinicdesk.services.billing_service import BillingService

logger = structlog.get_logger(__name__)

RECEIPT_TOKEN_TYPE = "receipt"
MAX_NUMBER_ATTEMPTS = 3


def build_receipt_number(now: datetime | None = None) -> str:
    """Human legible receipt number: RC-<UTC timestamp>-<random hex>."""
    now = now or datetime.now(UTC)
    return f"RC-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def render_qr_data_url(data: str) -> str:
    """Encode ``data`` as a PNG QR code data URL."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=6,
        border=4,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(image_factory=PilImage, fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(buffer.getvalue()).decode()}"


class ReceiptService:
    """Service for payment receipts."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db
        self.billing = BillingService(db)

    async def _by_payment(self, payment_id: UUID) -> dict[str, Any] | None:
        result = await self.db.execute(
            select(receipts).where(receipts.c.payment_id == payment_id)
        )
        return row_to_dict(result.fetchone())

    async def issue_receipt(self, payment_id: UUID) -> ReceiptResponse:
        """
        Issue the receipt for a successful payment, or return the one already issued.

        Args:
            payment_id: Payment ID

        Returns:
            The payment's receipt

        Raises:
            NotFoundException: If the payment does not exist
            ConflictException: If the payment did not succeed
        """
        existing = await self._by_payment(payment_id)
        if existing is not None:
            return ReceiptResponse.model_validate(existing)

        result = await self.db.execute(select(payments).where(payments.c.id == payment_id))
        payment = row_to_dict(result.fetchone())
        if payment is None:
            raise NotFoundException("Payment not found")
        if payment["status"] != PaymentStatus.SUCCESS.value:
            raise ConflictException(
                "Receipts are only issued for successful payments",
                details={"payment_status": payment["status"]},
            )

        bill = await self.billing.fetch_bill_with_items(payment["bill_id"])
        if bill is None:
            raise NotFoundException("Bill not found")

        for _ in range(MAX_NUMBER_ATTEMPTS):
            issued_at = datetime.now(UTC)
            receipt_number = build_receipt_number(issued_at)

            token = sign_payload(
                {
                    "typ": RECEIPT_TOKEN_TYPE,
                    "rn": receipt_number,
                    "bill_id": str(bill.id),
                    "amount": str(payment["amount"]),
                    "issued_at": issued_at.isoformat(),
                }
            )
            payload = to_json_safe(
                {
                    "receipt_number": receipt_number,
                    "bill_id": bill.id,
                    "payment_id": payment_id,
                    "patient_id": bill.patient_id,
                    "method": payment["method"],
                    "amount": payment["amount"],
                    "card_last4": payment["card_last4"],
                    "subtotal": bill.subtotal,
                    "insurance_discount": bill.insurance_discount,
                    "government_cover": bill.government_cover,
                    "items": [
                        {
                            "appointment_id": item.appointment_id,
                            "description": item.description,
                            "unit_price": item.unit_price,
                            "insurance_discount": item.insurance_discount,
                            "line_total": item.line_total,
                        }
                        for item in bill.items
                    ],
                    "issued_at": issued_at,
                }
            )

            try:
                inserted = await self.db.execute(
                    insert(receipts)
                    .values(
                        bill_id=bill.id,
                        payment_id=payment_id,
                        receipt_number=receipt_number,
                        payload=payload,
                        verification_token=token,
                        qr_code=render_qr_data_url(token),
                        issued_at=issued_at,
                    )
                    .returning(receipts)
                )
                receipt = row_to_dict(inserted.fetchone())
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                # Lost a race for this payment, or a receipt number collided
                existing = await self._by_payment(payment_id)
                if existing is not None:
                    return ReceiptResponse.model_validate(existing)
                continue

            logger.info(
                "receipt_issued",
                receipt_number=receipt_number,
                payment_id=str(payment_id),
                bill_id=str(bill.id),
            )
            return ReceiptResponse.model_validate(receipt)

        raise ConflictException("Could not allocate a receipt number, retry")

    async def _authorize(self, receipt: dict[str, Any] | None, actor: Actor) -> ReceiptResponse:
        if receipt is None:
            raise NotFoundException("Receipt not found")
        await self.billing.assert_patient_access(receipt["payload"]["patient_id"], actor)
        return ReceiptResponse.model_validate(receipt)

    async def get_receipt(self, receipt_id: UUID, actor: Actor) -> ReceiptResponse:
        """Get a receipt by id under the bill access rules."""
        result = await self.db.execute(select(receipts).where(receipts.c.id == receipt_id))
        return await self._authorize(row_to_dict(result.fetchone()), actor)

    async def get_receipt_by_number(self, receipt_number: str, actor: Actor) -> ReceiptResponse:
        """Get a receipt by its receipt number under the bill access rules."""
        result = await self.db.execute(
            select(receipts).where(receipts.c.receipt_number == receipt_number)
        )
        return await self._authorize(row_to_dict(result.fetchone()), actor)

    async def get_receipt_for_payment(self, payment_id: UUID, actor: Actor) -> ReceiptResponse:
        """Get the receipt issued for a payment under the bill access rules."""
        return await self._authorize(await self._by_payment(payment_id), actor)

    async def verify_receipt(self, token: str) -> ReceiptVerificationResponse:
        """
        Check a scanned verification token against the stored receipts.

        A token is valid when its signature checks out and it names a stored
        receipt that carries exactly this token.
        """
        claims = verify_signed_payload(token)
        if not claims or claims.get("typ") != RECEIPT_TOKEN_TYPE:
            return ReceiptVerificationResponse(valid=False)

        result = await self.db.execute(
            select(receipts).where(receipts.c.receipt_number == claims.get("rn"))
        )
        receipt = row_to_dict(result.fetchone())
        if (
            receipt is None
            or receipt["verification_token"] != token
            or str(receipt["bill_id"]) != claims.get("bill_id")
        ):
            return ReceiptVerificationResponse(valid=False)

        return ReceiptVerificationResponse(
            valid=True,
            receipt_number=receipt["receipt_number"],
            bill_id=receipt["bill_id"],
            amount=claims.get("amount"),
            issued_at=receipt["issued_at"],
        )
