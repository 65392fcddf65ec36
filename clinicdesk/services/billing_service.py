"""Billing service: pending bill reconciliation and bill lookups."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, delete, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.config import Settings, settings
from clinicdesk.core.events import PostCommitHooks
from clinicdesk.core.exceptions import (
    ConflictException,
    ForbiddenException,
    NotFoundException,
)
from clinicdesk.database import acquire_advisory_lock, row_to_dict
from clinicdesk.models.appointments import appointments
from clinicdesk.models.billing import bill_items, bills, config_entries, payments
from clinicdesk.schemas.appointments import APPROVED_STATUSES
from clinicdesk.schemas.billing import BillResponse, BillStatus, PaymentStatus
from clinicdesk.schemas.users import Actor
from clinicdesk.services.audit_service import AuditService
from clinicdesk.services.directory_service import DirectoryService

logger = structlog.get_logger(__name__)

BASE_FEE_KEY = "billing.base_fee"
CENTS = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Any) -> Decimal:
    """Round half-up to cents and clamp at zero."""
    amount = Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)
    return max(amount, ZERO)


@dataclass(frozen=True)
class BillingSettings:
    """Pricing constants for bill reconciliation."""

    default_base_fee: Decimal = Decimal("2000")
    insurance_discount_rate: Decimal = Decimal("0.25")
    eligible_statuses: frozenset[str] = field(
        default_factory=lambda: frozenset(status.value for status in APPROVED_STATUSES)
    )

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "BillingSettings":
        """Build pricing constants from application settings."""
        return cls(
            default_base_fee=config.billing_default_base_fee,
            insurance_discount_rate=config.insurance_discount_rate,
        )


@dataclass(frozen=True)
class Financials:
    """Bill level amounts."""

    subtotal: Decimal
    insurance_discount: Decimal
    government_cover: Decimal
    total_payable: Decimal

    def as_values(self) -> dict[str, Decimal]:
        return {
            "subtotal": self.subtotal,
            "insurance_discount": self.insurance_discount,
            "government_cover": self.government_cover,
            "total_payable": self.total_payable,
        }


def is_insured(patient: dict[str, Any]) -> bool:
    return bool((patient.get("insurance_provider") or "").strip())


def compute_line(
    unit_price: Decimal,
    patient: dict[str, Any],
    pricing: BillingSettings,
) -> tuple[Decimal, Decimal]:
    """
    Price one bill line.

    Returns:
        Tuple of (insurance_discount, line_total)
    """
    discount = ZERO
    if is_insured(patient):
        discount = to_money(unit_price * pricing.insurance_discount_rate)
    if patient.get("government_eligible"):
        return discount, ZERO
    return discount, to_money(unit_price - discount)


def compute_financials(
    unit_prices: list[Decimal],
    patient: dict[str, Any],
    pricing: BillingSettings,
) -> Financials:
    """
    Compute bill totals from line unit prices.

    Insured patients get the discount rate off the subtotal; for government
    eligible patients the remainder is covered and nothing is payable.
    """
    subtotal = to_money(sum(unit_prices, ZERO))
    discount = ZERO
    if is_insured(patient):
        discount = min(to_money(subtotal * pricing.insurance_discount_rate), subtotal)

    remainder = to_money(subtotal - discount)
    if patient.get("government_eligible"):
        return Financials(subtotal, discount, remainder, ZERO)
    return Financials(subtotal, discount, ZERO, remainder)


class BillingService:
    """Service for patient bills."""

    def __init__(self, db: AsyncSession, pricing: BillingSettings | None = None):
        """Initialize service with database session and pricing constants."""
        self.db = db
        self.pricing = pricing or BillingSettings.from_settings()
        self.directory = DirectoryService(db)
        self.hooks = PostCommitHooks()
        self.tz = ZoneInfo(settings.clinic_timezone)

    async def assert_patient_access(self, patient_id: str, actor: Actor) -> None:
        """
        Gate access to a patient's billing records.

        Patients see only their own, doctors only patients they have at least
        one appointment with, staff see everyone.

        Raises:
            ForbiddenException: If the actor may not see this patient's bills
        """
        if actor.is_staff:
            return

        if actor.is_patient:
            if actor.linked_patient_id != str(patient_id):
                raise ForbiddenException("Patients may only access their own billing records")
            return

        if actor.is_doctor:
            if not actor.doctor_profile_id:
                raise ForbiddenException("Doctor profile incomplete")
            stmt = (
                select(appointments.c.id)
                .where(
                    and_(
                        appointments.c.doctor_id == actor.doctor_profile_id,
                        appointments.c.patient_id == str(patient_id),
                    )
                )
                .limit(1)
            )
            if (await self.db.execute(stmt)).first() is None:
                raise ForbiddenException("Doctor may only view billing for their patients")
            return

        raise ForbiddenException("Access denied to billing records")

    async def resolve_base_fee(self) -> Decimal:
        """Consultation fee from config entry ``billing.base_fee`` or the default."""
        result = await self.db.execute(
            select(config_entries.c.value).where(config_entries.c.key == BASE_FEE_KEY)
        )
        value = result.scalar()
        if isinstance(value, dict) and value.get("amount") is not None:
            try:
                amount = to_money(value["amount"])
                if amount > ZERO:
                    return amount
            except (InvalidOperation, ValueError):
                logger.warning("invalid_base_fee_config", value=value)
        return to_money(self.pricing.default_base_fee)

    def _describe(self, appointment: dict[str, Any]) -> str:
        local = appointment["starts_at"].astimezone(self.tz)
        return f"Consultation with Dr. {appointment['doctor_id']} @ {local:%Y-%m-%d %H:%M}"

    async def fetch_bill_with_items(self, bill_id: UUID) -> BillResponse | None:
        """Load one bill and its items ordered by creation."""
        result = await self.db.execute(select(bills).where(bills.c.id == bill_id))
        bill = row_to_dict(result.fetchone())
        if bill is None:
            return None

        items_result = await self.db.execute(
            select(bill_items)
            .where(bill_items.c.bill_id == bill_id)
            .order_by(bill_items.c.created_at, bill_items.c.appointment_id)
        )
        bill["items"] = [row_to_dict(row) for row in items_result.fetchall()]
        return BillResponse.model_validate(bill)

    async def _pending_bill(self, patient_id: str) -> dict[str, Any] | None:
        result = await self.db.execute(
            select(bills).where(
                and_(
                    bills.c.patient_id == patient_id,
                    bills.c.status == BillStatus.PENDING.value,
                )
            )
        )
        return row_to_dict(result.fetchone())

    async def _payment_statuses(self, bill_id: UUID) -> set[str]:
        result = await self.db.execute(
            select(payments.c.status).where(payments.c.bill_id == bill_id)
        )
        return set(result.scalars())

    async def _retire_pending_bill(
        self, pending: dict[str, Any], patient_id: str, actor: Actor
    ) -> None:
        """
        Drop a pending bill that has nothing left to charge.

        A bill with recorded payment attempts is kept as CANCELLED so those
        attempts stay inspectable; a bill nobody tried to pay is deleted.
        """
        await self.db.execute(delete(bill_items).where(bill_items.c.bill_id == pending["id"]))

        if await self._payment_statuses(pending["id"]):
            await self.db.execute(
                update(bills)
                .where(bills.c.id == pending["id"])
                .values(
                    status=BillStatus.CANCELLED.value,
                    subtotal=ZERO,
                    insurance_discount=ZERO,
                    government_cover=ZERO,
                    total_payable=ZERO,
                    version=bills.c.version + 1,
                    updated_at=datetime.now(UTC),
                )
            )
            action = "cancelled"
        else:
            await self.db.execute(delete(bills).where(bills.c.id == pending["id"]))
            action = "discarded"

        self.hooks.add(
            f"audit_bill_{action}",
            AuditService.hook("Bill", pending["id"], actor.id, action, {"patient_id": patient_id}),
        )

    async def _billable_appointments(self, patient_id: str) -> list[dict[str, Any]]:
        """Eligible appointments not already on a settled or cancelled bill."""
        eligible_result = await self.db.execute(
            select(appointments)
            .where(
                and_(
                    appointments.c.patient_id == patient_id,
                    appointments.c.status.in_(self.pricing.eligible_statuses),
                )
            )
            .order_by(appointments.c.starts_at)
        )
        eligible: list[dict[str, Any]] = [
            row_to_dict(row) for row in eligible_result.fetchall()  # type: ignore[misc]
        ]
        if not eligible:
            return []

        billed_result = await self.db.execute(
            select(bill_items.c.appointment_id)
            .select_from(bill_items.join(bills, bill_items.c.bill_id == bills.c.id))
            .where(
                and_(
                    bills.c.status != BillStatus.PENDING.value,
                    bill_items.c.appointment_id.in_([appt["id"] for appt in eligible]),
                )
            )
        )
        billed = set(billed_result.scalars())
        return [appt for appt in eligible if appt["id"] not in billed]

    async def build_latest_bill(self, patient_id: str, actor: Actor) -> BillResponse | None:
        """
        Reconcile the patient's single pending bill with their billable appointments.

        Kept lines are repriced, lines for appointments that are no longer
        eligible are removed and new ones are added. Running it again without
        changes leaves the same bill and items. With nothing billable the
        pending bill is dropped. A bill with a card charge in flight is left
        alone until the charge settles.

        Args:
            patient_id: Patient record id
            actor: Acting user

        Returns:
            The pending bill with items, or None when nothing is billable

        Raises:
            ForbiddenException: If the actor may not bill this patient
            NotFoundException: If the patient does not exist
            ConflictException: If a payment is in flight or a concurrent
                reconciliation won a uniqueness race
        """
        patient_id = str(patient_id)
        await self.assert_patient_access(patient_id, actor)

        patient = await self.directory.get_patient(patient_id)
        if patient is None:
            raise NotFoundException("Patient not found")

        try:
            await acquire_advisory_lock(self.db, f"bill:{patient_id}")

            base_fee = await self.resolve_base_fee()
            billable = await self._billable_appointments(patient_id)
            pending = await self._pending_bill(patient_id)

            if pending is not None and PaymentStatus.PENDING.value in (
                await self._payment_statuses(pending["id"])
            ):
                await self.db.rollback()
                raise ConflictException(
                    "A payment for this bill is in progress, retry once it completes",
                    details={"bill_id": str(pending["id"])},
                )

            if not billable:
                if pending is not None:
                    await self._retire_pending_bill(pending, patient_id, actor)
                await self.db.commit()
                await self.hooks.run(self.db)
                return None

            financials = compute_financials([base_fee] * len(billable), patient, self.pricing)
            discount, line_total = compute_line(base_fee, patient, self.pricing)
            now = datetime.now(UTC)

            if pending is None:
                result = await self.db.execute(
                    insert(bills)
                    .values(
                        patient_id=patient_id,
                        status=BillStatus.PENDING.value,
                        created_at=now,
                        updated_at=now,
                        **financials.as_values(),
                    )
                    .returning(bills.c.id)
                )
                bill_id = result.scalar_one()
                totals_changed = True
            else:
                bill_id = pending["id"]
                totals_changed = any(
                    to_money(pending[key]) != value
                    for key, value in financials.as_values().items()
                )

            items_result = await self.db.execute(
                select(bill_items).where(bill_items.c.bill_id == bill_id)
            )
            existing = {row.appointment_id: row_to_dict(row) for row in items_result.fetchall()}
            wanted = {appt["id"]: appt for appt in billable}

            removed = [appt_id for appt_id in existing if appt_id not in wanted]
            if removed:
                await self.db.execute(
                    delete(bill_items).where(
                        and_(
                            bill_items.c.bill_id == bill_id,
                            bill_items.c.appointment_id.in_(removed),
                        )
                    )
                )

            repriced = False
            added = []
            for appt_id, appt in wanted.items():
                line = {
                    "description": self._describe(appt),
                    "unit_price": base_fee,
                    "insurance_discount": discount,
                    "line_total": line_total,
                }
                current = existing.get(appt_id)
                if current is None:
                    added.append(appt_id)
                    await self.db.execute(
                        insert(bill_items).values(
                            bill_id=bill_id, appointment_id=appt_id, created_at=now, **line
                        )
                    )
                elif any(
                    (to_money(current[key]) if key != "description" else current[key]) != value
                    for key, value in line.items()
                ):
                    repriced = True
                    await self.db.execute(
                        update(bill_items).where(bill_items.c.id == current["id"]).values(**line)
                    )

            if pending is not None and (added or removed or totals_changed or repriced):
                await self.db.execute(
                    update(bills)
                    .where(bills.c.id == bill_id)
                    .values(
                        updated_at=now,
                        version=bills.c.version + 1,
                        **financials.as_values(),
                    )
                )

            if added or removed or totals_changed:
                self.hooks.add(
                    "audit_bill_reconciled",
                    AuditService.hook(
                        "Bill",
                        bill_id,
                        actor.id,
                        "reconciled",
                        {
                            "patient_id": patient_id,
                            "added": added,
                            "removed": removed,
                            **financials.as_values(),
                        },
                    ),
                )

            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictException("Bill is being updated concurrently, retry")

        logger.info(
            "bill_reconciled",
            patient_id=patient_id,
            bill_id=str(bill_id),
            items=len(wanted),
            added=len(added),
            removed=len(removed),
            total_payable=str(financials.total_payable),
        )
        await self.hooks.run(self.db)

        return await self.fetch_bill_with_items(bill_id)

    async def get_current_bill(self, patient_id: str, actor: Actor) -> BillResponse | None:
        """
        Get the patient's pending bill, else the most recently updated paid bill.

        Raises:
            ForbiddenException: If the actor may not see this patient's bills
        """
        patient_id = str(patient_id)
        await self.assert_patient_access(patient_id, actor)

        pending = await self._pending_bill(patient_id)
        if pending is not None:
            return await self.fetch_bill_with_items(pending["id"])

        result = await self.db.execute(
            select(bills.c.id)
            .where(
                and_(
                    bills.c.patient_id == patient_id,
                    bills.c.status == BillStatus.PAID.value,
                )
            )
            .order_by(bills.c.updated_at.desc())
            .limit(1)
        )
        last_paid_id = result.scalar()
        if last_paid_id is None:
            return None
        return await self.fetch_bill_with_items(last_paid_id)

    async def get_bill(self, bill_id: UUID, actor: Actor) -> BillResponse:
        """
        Get one bill with items.

        Raises:
            NotFoundException: If the bill does not exist
            ForbiddenException: If the actor may not see this patient's bills
        """
        bill = await self.fetch_bill_with_items(bill_id)
        if bill is None:
            raise NotFoundException("Bill not found")
        await self.assert_patient_access(bill.patient_id, actor)
        return bill
