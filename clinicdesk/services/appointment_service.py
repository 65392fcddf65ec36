"""Appointment service for business logic."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import and_, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.core.events import PostCommitHooks
from clinicdesk.core.exceptions import (
    AppException,
    BadRequestException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
)
from clinicdesk.core.redis_client import CacheManager
from clinicdesk.database import ensure_utc, row_to_dict
from clinicdesk.models.appointments import appointments
from clinicdesk.schemas.appointments import (
    APPROVED_STATUSES,
    TERMINAL_STATUSES,
    AppointmentCreate,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
)
from clinicdesk.schemas.users import Actor
from clinicdesk.services import policy_service
from clinicdesk.services.audit_service import AuditService
from clinicdesk.services.availability_service import AvailabilityService
from clinicdesk.services.billing_service import BillingService
from clinicdesk.services.notification_service import NotificationService
from clinicdesk.services.policy_service import PolicySettings

logger = structlog.get_logger(__name__)

ENTITY = "Appointment"
APPROVABLE_STATUSES = (AppointmentStatus.BOOKED.value, AppointmentStatus.RESCHEDULED.value)
APPROVED_VALUES = frozenset(status.value for status in APPROVED_STATUSES)


def _change(path: str, before: Any, after: Any) -> dict[str, Any]:
    return {"path": path, "before": before, "after": after}


class AppointmentService:
    """Service for the appointment lifecycle."""

    def __init__(
        self,
        db: AsyncSession,
        cache_manager: CacheManager | None = None,
        policy: PolicySettings | None = None,
        billing: BillingService | None = None,
    ):
        """Initialize service with database session and collaborators."""
        self.db = db
        self.availability = AvailabilityService(db, cache_manager)
        self.policy = policy or PolicySettings.from_settings()
        self.billing = billing or BillingService(db)
        self.hooks = PostCommitHooks()

    @staticmethod
    def _now() -> datetime:
        return datetime.now(UTC)

    @staticmethod
    def _linked_patient_id(actor: Actor) -> str:
        if not actor.linked_patient_id:
            raise ForbiddenException("Your account is not linked to a patient record")
        return actor.linked_patient_id

    @staticmethod
    def _doctor_id(actor: Actor) -> str:
        if not actor.doctor_profile_id:
            raise ForbiddenException("Doctor profile incomplete")
        return actor.doctor_profile_id

    def _assert_access(self, appointment: dict[str, Any], actor: Actor) -> None:
        """Patients reach only their own appointments, doctors only their own schedule."""
        if actor.is_patient and appointment["patient_id"] != self._linked_patient_id(actor):
            raise ForbiddenException("Patients may only manage their own appointments")
        if actor.is_doctor and appointment["doctor_id"] != self._doctor_id(actor):
            raise ForbiddenException("Doctors may only manage their own schedule")

    async def _load(self, appointment_id: UUID) -> dict[str, Any]:
        result = await self.db.execute(
            select(appointments).where(appointments.c.id == appointment_id)
        )
        appointment = row_to_dict(result.fetchone())
        if appointment is None:
            raise NotFoundException("Appointment not found")
        return appointment

    async def _dispatch(self) -> None:
        """Run queued audit and notification hooks after the commit."""
        await self.hooks.run(self.db)

    async def book(self, data: AppointmentCreate, actor: Actor) -> AppointmentResponse:
        """
        Book a new appointment in BOOKED status.

        Args:
            data: Booking request
            actor: Acting user

        Returns:
            Created appointment

        Raises:
            ForbiddenException: Patient booking for someone else or unlinked account
            BadRequestException: No target patient or an empty interval
            ConflictException: Slot already taken
        """
        starts_at = ensure_utc(data.starts_at)
        ends_at = ensure_utc(data.ends_at)
        if ends_at <= starts_at:
            raise BadRequestException("End time must be after start time")

        target_patient_id = data.patient_id
        if actor.is_patient:
            linked_id = self._linked_patient_id(actor)
            if target_patient_id and target_patient_id != linked_id:
                raise ForbiddenException("Patients can only book appointments for themselves")
            target_patient_id = linked_id

        if not target_patient_id:
            raise BadRequestException("patient_id is required to book an appointment")

        if not await self.availability.is_available(data.doctor_id, starts_at):
            raise ConflictException("Selected time slot is no longer available")

        now = self._now()
        stmt = (
            insert(appointments)
            .values(
                patient_id=target_patient_id,
                doctor_id=data.doctor_id,
                department=data.department,
                starts_at=starts_at,
                ends_at=ends_at,
                status=AppointmentStatus.BOOKED.value,
                notes=data.reason,
                created_by=str(actor.id),
                updated_by=str(actor.id),
                created_at=now,
                updated_at=now,
            )
            .returning(appointments)
        )

        try:
            result = await self.db.execute(stmt)
            appointment = row_to_dict(result.fetchone())
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictException("Selected time slot is already booked")

        if appointment is None:
            raise AppException("Appointment could not be recorded")
        logger.info(
            "appointment_booked",
            appointment_id=str(appointment["id"]),
            doctor_id=data.doctor_id,
            starts_at=starts_at.isoformat(),
        )

        self.availability.invalidate(data.doctor_id)
        self.hooks.add(
            "audit_booked",
            AuditService.hook(
                ENTITY,
                appointment["id"],
                actor.id,
                "booked",
                {"changes": [_change("status", None, appointment["status"])]},
            ),
        )
        self.hooks.add(
            "notify_booked", NotificationService.appointment_hook(appointment, "BOOKED", actor)
        )
        await self._dispatch()

        return AppointmentResponse.model_validate(appointment)

    async def cancel(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Cancel an appointment.

        Staff and doctors are exempt from the approved lock and the cutoff
        window. When staff cancel, the row is purged after the transition and
        the response is flagged ``deleted``.

        Raises:
            NotFoundException: Unknown appointment
            ForbiddenException: Not the actor's appointment
            ConflictException: Already cancelled
            BadRequestException: Refused by the cancellation policy
        """
        appointment = await self._load(appointment_id)
        self._assert_access(appointment, actor)

        privileged = actor.is_staff or actor.is_doctor
        decision = policy_service.can_cancel(
            appointment,
            self._now(),
            allow_approved=privileged,
            ignore_cutoff=privileged,
            policy=self.policy,
        )
        if not decision.ok:
            if decision.code == policy_service.ALREADY_CANCELLED:
                raise ConflictException(decision.reason or "Appointment is already cancelled")
            raise BadRequestException(decision.reason or "Cancellation not allowed")

        now = self._now()
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status == appointment["status"],
                )
            )
            .values(
                status=AppointmentStatus.CANCELLED.value,
                cancelled_at=now,
                updated_at=now,
                updated_by=str(actor.id),
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        cancelled = row_to_dict(result.fetchone())
        if cancelled is None:
            await self.db.rollback()
            raise ConflictException("Appointment changed concurrently, reload and retry")

        purge = actor.is_staff
        if purge:
            await self.db.execute(delete(appointments).where(appointments.c.id == appointment_id))
        await self.db.commit()

        logger.info(
            "appointment_cancelled",
            appointment_id=str(appointment_id),
            actor_role=actor.role.value,
            purged=purge,
        )

        self.availability.invalidate(appointment["doctor_id"])
        self.hooks.add(
            "audit_cancelled",
            AuditService.hook(
                ENTITY,
                appointment_id,
                actor.id,
                "cancelled",
                {
                    "changes": [_change("status", appointment["status"], cancelled["status"])],
                    "purged": purge,
                },
            ),
        )
        self.hooks.add(
            "notify_cancelled",
            NotificationService.appointment_hook(cancelled, "CANCELLED", actor),
        )
        await self._dispatch()

        if appointment["status"] in APPROVED_VALUES:
            await self._refresh_bill(appointment["patient_id"], actor, "cancelled")

        response = AppointmentResponse.model_validate(cancelled)
        if purge:
            response.deleted = True
        return response

    async def reschedule(
        self,
        appointment_id: UUID,
        data: AppointmentReschedule,
        actor: Actor,
    ) -> AppointmentResponse:
        """
        Move an appointment to a new slot, optionally with another doctor.

        Args:
            appointment_id: Appointment ID
            data: New slot (and doctor, staff only)
            actor: Acting user

        Returns:
            Updated appointment in RESCHEDULED status

        Raises:
            NotFoundException: Unknown appointment
            ForbiddenException: Not the actor's appointment or doctor change by non-staff
            BadRequestException: Refused by the reschedule policy
            ConflictException: New slot is taken
        """
        appointment = await self._load(appointment_id)
        self._assert_access(appointment, actor)

        new_starts_at = ensure_utc(data.starts_at) if data.starts_at else None
        new_ends_at = ensure_utc(data.ends_at) if data.ends_at else None

        privileged = actor.is_staff or actor.is_doctor
        decision = policy_service.can_reschedule(
            appointment,
            new_starts_at,
            new_ends_at,
            self._now(),
            allow_approved=privileged,
            ignore_cutoff=privileged,
            policy=self.policy,
        )
        if not decision.ok:
            raise BadRequestException(decision.reason or "Reschedule not allowed")
        if new_starts_at is None or new_ends_at is None:
            raise BadRequestException("New start and end times are required")

        next_doctor_id = appointment["doctor_id"]
        requested_doctor_id = (data.doctor_id or "").strip()
        if requested_doctor_id and requested_doctor_id != appointment["doctor_id"]:
            if not actor.is_staff:
                raise ForbiddenException("Only staff can reassign doctors")
            next_doctor_id = requested_doctor_id

        if not await self.availability.is_available(
            next_doctor_id, new_starts_at, exclude_appointment_id=appointment_id
        ):
            raise ConflictException("Requested slot is unavailable")

        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status == appointment["status"],
                )
            )
            .values(
                starts_at=new_starts_at,
                ends_at=new_ends_at,
                doctor_id=next_doctor_id,
                status=AppointmentStatus.RESCHEDULED.value,
                updated_at=self._now(),
                updated_by=str(actor.id),
            )
            .returning(appointments)
        )

        try:
            result = await self.db.execute(stmt)
            updated = row_to_dict(result.fetchone())
            if updated is None:
                await self.db.rollback()
                raise ConflictException("Appointment changed concurrently, reload and retry")
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictException("Requested slot is unavailable")

        previous = {
            "starts_at": appointment["starts_at"],
            "ends_at": appointment["ends_at"],
            "status": appointment["status"],
            "doctor_id": appointment["doctor_id"],
        }
        changes = [
            _change("starts_at", previous["starts_at"], updated["starts_at"]),
            _change("ends_at", previous["ends_at"], updated["ends_at"]),
            _change("status", previous["status"], updated["status"]),
        ]
        if previous["doctor_id"] != updated["doctor_id"]:
            changes.append(_change("doctor_id", previous["doctor_id"], updated["doctor_id"]))

        logger.info(
            "appointment_rescheduled",
            appointment_id=str(appointment_id),
            starts_at=new_starts_at.isoformat(),
            doctor_changed=previous["doctor_id"] != updated["doctor_id"],
        )

        self.availability.invalidate(previous["doctor_id"])
        if next_doctor_id != previous["doctor_id"]:
            self.availability.invalidate(next_doctor_id)

        self.hooks.add(
            "audit_rescheduled",
            AuditService.hook(
                ENTITY, appointment_id, actor.id, "rescheduled", {"changes": changes}
            ),
        )
        self.hooks.add(
            "notify_rescheduled",
            NotificationService.appointment_hook(updated, "RESCHEDULED", actor, previous),
        )
        await self._dispatch()

        if previous["status"] in APPROVED_VALUES:
            await self._refresh_bill(updated["patient_id"], actor, "rescheduled")

        return AppointmentResponse.model_validate(updated)

    async def _refresh_bill(self, patient_id: str, actor: Actor, trigger: str) -> None:
        """Reconcile the patient's pending bill after an approval-affecting change."""
        try:
            await self.billing.build_latest_bill(patient_id, actor)
        except AppException as e:
            # The transition stands; the bill can be rebuilt through the billing API
            logger.warning(
                "bill_reconcile_failed",
                trigger=trigger,
                patient_id=patient_id,
                error=e.message,
            )

    async def approve(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Confirm a booked or rescheduled appointment and refresh the patient's bill.

        Raises:
            ForbiddenException: Actor is neither staff nor the appointment's doctor
            NotFoundException: Unknown appointment
            ConflictException: Appointment is not awaiting approval
        """
        if not (actor.is_staff or actor.is_doctor):
            raise ForbiddenException("Only staff or doctors can approve appointments")

        appointment = await self._load(appointment_id)
        self._assert_access(appointment, actor)

        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status.in_(APPROVABLE_STATUSES),
                )
            )
            .values(
                status=AppointmentStatus.CONFIRMED.value,
                updated_at=self._now(),
                updated_by=str(actor.id),
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        approved = row_to_dict(result.fetchone())
        if approved is None:
            await self.db.rollback()
            raise ConflictException(
                f"Appointment in status {appointment['status']} cannot be approved",
                details={"status": appointment["status"]},
            )
        await self.db.commit()

        logger.info("appointment_approved", appointment_id=str(appointment_id))

        self.hooks.add(
            "audit_approved",
            AuditService.hook(
                ENTITY,
                appointment_id,
                actor.id,
                "approved",
                {"changes": [_change("status", appointment["status"], approved["status"])]},
            ),
        )
        await self._dispatch()

        await self._refresh_bill(approved["patient_id"], actor, "approved")

        self.hooks.add(
            "notify_approved", NotificationService.appointment_hook(approved, "APPROVED", actor)
        )
        await self._dispatch()

        return AppointmentResponse.model_validate(approved)

    async def reject(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Reject an appointment that is not yet closed, moving it to CANCELLED.

        Raises:
            ForbiddenException: Actor is neither staff nor the appointment's doctor
            NotFoundException: Unknown appointment
            ConflictException: Appointment is already closed
        """
        if not (actor.is_staff or actor.is_doctor):
            raise ForbiddenException("Only staff or doctors can reject appointments")

        appointment = await self._load(appointment_id)
        self._assert_access(appointment, actor)

        now = self._now()
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status.not_in([s.value for s in TERMINAL_STATUSES]),
                )
            )
            .values(
                status=AppointmentStatus.CANCELLED.value,
                cancelled_at=now,
                updated_at=now,
                updated_by=str(actor.id),
            )
            .returning(appointments)
        )
        result = await self.db.execute(stmt)
        rejected = row_to_dict(result.fetchone())
        if rejected is None:
            await self.db.rollback()
            raise ConflictException(
                f"Appointment in status {appointment['status']} cannot be rejected",
                details={"status": appointment["status"]},
            )
        await self.db.commit()

        logger.info("appointment_rejected", appointment_id=str(appointment_id))

        self.availability.invalidate(appointment["doctor_id"])
        self.hooks.add(
            "audit_rejected",
            AuditService.hook(
                ENTITY,
                appointment_id,
                actor.id,
                "rejected",
                {"changes": [_change("status", appointment["status"], rejected["status"])]},
            ),
        )
        self.hooks.add(
            "notify_rejected", NotificationService.appointment_hook(rejected, "REJECTED", actor)
        )
        await self._dispatch()

        if appointment["status"] in APPROVED_VALUES:
            await self._refresh_bill(appointment["patient_id"], actor, "rejected")

        return AppointmentResponse.model_validate(rejected)

    async def get_appointment(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If user doesn't have access
        """
        appointment = await self._load(appointment_id)
        self._assert_access(appointment, actor)
        return AppointmentResponse.model_validate(appointment)

    async def list_appointments(
        self,
        actor: Actor,
        filters: AppointmentFilters,
    ) -> AppointmentListResponse:
        """
        List appointments visible to the actor, ordered by start time.

        Patients see their own appointments and doctors their own schedule;
        staff see everything and may filter by patient and doctor. Cancelled
        appointments are hidden unless requested or filtered for explicitly.

        Args:
            actor: Acting user
            filters: Filter and pagination parameters

        Returns:
            Paginated list of appointments
        """
        conditions = []

        if actor.is_patient:
            conditions.append(appointments.c.patient_id == self._linked_patient_id(actor))
        elif actor.is_doctor:
            conditions.append(appointments.c.doctor_id == self._doctor_id(actor))
        else:
            if filters.patient_id:
                conditions.append(appointments.c.patient_id == filters.patient_id)
            if filters.doctor_id:
                conditions.append(appointments.c.doctor_id == filters.doctor_id)

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)
        elif not filters.include_cancelled:
            conditions.append(appointments.c.status != AppointmentStatus.CANCELLED.value)

        if filters.from_date:
            conditions.append(appointments.c.starts_at >= ensure_utc(filters.from_date))

        if filters.to_date:
            conditions.append(appointments.c.starts_at <= ensure_utc(filters.to_date))

        # Count total
        count_stmt = select(func.count()).select_from(appointments).where(*conditions)
        total_result = await self.db.execute(count_stmt)
        total = total_result.scalar() or 0

        # Get paginated results
        offset = (filters.page - 1) * filters.page_size

        stmt = (
            select(appointments)
            .where(*conditions)
            .order_by(appointments.c.starts_at.asc())
            .limit(filters.page_size)
            .offset(offset)
        )

        result = await self.db.execute(stmt)
        items = [
            AppointmentResponse.model_validate(row_to_dict(row)) for row in result.fetchall()
        ]

        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=items,
        )
