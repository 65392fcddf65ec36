"""Bill, payment and receipt schemas."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class BillStatus(str, Enum):
    """Bill status enumeration."""

    PENDING = "PENDING"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


class PaymentMethod(str, Enum):
    """Payment method enumeration."""

    CARD = "CARD"
    CASH = "CASH"
    GOVERNMENT = "GOVERNMENT"


class PaymentStatus(str, Enum):
    """Payment status enumeration."""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    DECLINED = "DECLINED"
    ERROR = "ERROR"


class BillItemResponse(BaseModel):
    """Schema for one bill line."""

    id: UUID
    bill_id: UUID
    appointment_id: UUID
    description: str
    unit_price: Decimal
    insurance_discount: Decimal
    line_total: Decimal
    created_at: datetime

    model_config = {"from_attributes": True}


class BillResponse(BaseModel):
    """Schema for a bill with its line items."""

    id: UUID
    patient_id: str
    status: BillStatus
    subtotal: Decimal
    insurance_discount: Decimal
    government_cover: Decimal
    total_payable: Decimal
    paid_at: datetime | None = None
    version: int = 0
    created_at: datetime
    updated_at: datetime
    items: list[BillItemResponse] = []

    model_config = {"from_attributes": True}


class CardPaymentRequest(BaseModel):
    """Schema for a card payment attempt."""

    bill_id: UUID
    card_number: str = Field(..., min_length=12, max_length=19)
    exp_month: int = Field(..., ge=1, le=12)
    exp_year: int = Field(..., ge=2000, le=2100)
    cvc: str = Field(..., min_length=3, max_length=4)

    @field_validator("card_number", "cvc")
    @classmethod
    def validate_digits(cls, v: str) -> str:
        """Card number and CVC must be digits only (spaces allowed in the number)."""
        cleaned = v.replace(" ", "")
        if not cleaned.isdigit():
            raise ValueError("Must contain only digits")
        return cleaned


class CashPaymentRequest(BaseModel):
    """Schema for recording a cash payment at the desk."""

    bill_id: UUID
    amount: Decimal = Field(..., ge=0, decimal_places=2)


class GovernmentPaymentRequest(BaseModel):
    """Schema for settling a bill under government cover."""

    bill_id: UUID


class PaymentResponse(BaseModel):
    """Schema for a payment record."""

    id: UUID
    bill_id: UUID
    method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    gateway_ref: str | None = None
    auth_code: str | None = None
    card_last4: str | None = None
    failure_reason: str | None = None
    created_by: str | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ReceiptResponse(BaseModel):
    """Schema for an issued receipt."""

    id: UUID
    bill_id: UUID
    payment_id: UUID
    receipt_number: str
    payload: dict[str, Any]
    verification_token: str
    qr_code: str
    issued_at: datetime

    model_config = {"from_attributes": True}


class SettlementResponse(BaseModel):
    """Outcome of a successful payment."""

    payment: PaymentResponse
    receipt: ReceiptResponse | None = None


class ReceiptVerificationResponse(BaseModel):
    """Result of checking a scanned receipt token."""

    valid: bool
    receipt_number: str | None = None
    bill_id: UUID | None = None
    amount: str | None = None
    issued_at: datetime | None = None
