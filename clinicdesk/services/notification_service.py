"""Notification service for in-app notifications."""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.config import settings
from clinicdesk.core.events import Hook
from clinicdesk.core.exceptions import NotFoundException
from clinicdesk.database import row_to_dict
from clinicdesk.models.notifications import notifications
from clinicdesk.schemas.notifications import NotificationType
from clinicdesk.schemas.users import Actor, Role
from clinicdesk.services.audit_service import to_json_safe
from clinicdesk.services.directory_service import DirectoryService

logger = structlog.get_logger(__name__)

# Payment outcomes are announced to the back office, never to doctors
PAYMENT_AUDIENCE = [Role.STAFF, Role.MANAGER]


def _format_when(value: datetime | None) -> str | None:
    """Format a timestamp like 'Mar 4, 2026 9:30 AM' in the clinic timezone."""
    if value is None:
        return None
    local = value.astimezone(ZoneInfo(settings.clinic_timezone))
    hour = local.hour % 12 or 12
    return f"{local:%b} {local.day}, {local.year} {hour}:{local:%M %p}"


def _user_name(user: dict[str, Any] | None, fallback: str) -> str:
    if not user:
        return fallback
    return user.get("full_name") or user.get("email") or fallback


def build_appointment_message(event: str, recipient: str, context: dict[str, Any]) -> str:
    """
    Render the human readable message for an appointment event.

    Args:
        event: BOOKED, APPROVED, RESCHEDULED, CANCELLED or REJECTED
        recipient: patient or doctor
        context: starts_at, previous_starts_at, names and actor_role

    Returns:
        Message text
    """
    start = _format_when(context.get("starts_at")) or "the scheduled time"
    previous_start = _format_when(context.get("previous_starts_at"))
    doctor_name = context.get("doctor_name") or "the doctor"
    patient_name = context.get("patient_name") or "the patient"
    actor_name = (
        "You"
        if context.get("actor_role") == recipient
        else context.get("actor_name") or "a team member"
    )
    moved_from = f" (previously {previous_start})" if previous_start else ""
    to_doctor = recipient == "doctor"

    if event == "BOOKED":
        if to_doctor:
            return f"{patient_name} booked an appointment for {start}."
        return f"Your appointment with {doctor_name} is booked for {start}."
    if event == "APPROVED":
        if to_doctor:
            return f"{actor_name} approved the visit with {patient_name} on {start}."
        return f"Your appointment with {doctor_name} on {start} was approved."
    if event == "RESCHEDULED":
        if to_doctor:
            return f"{actor_name} moved the appointment with {patient_name} to {start}{moved_from}."
        return (
            f"{actor_name} rescheduled your appointment with {doctor_name} "
            f"to {start}{moved_from}."
        )
    if event == "CANCELLED":
        if to_doctor:
            return (
                f"{actor_name} cancelled the appointment with {patient_name} "
                f"scheduled for {start}."
            )
        return f"{actor_name} cancelled your appointment with {doctor_name} for {start}."
    if event == "REJECTED":
        if to_doctor:
            return f"{actor_name} rejected the appointment with {patient_name} set for {start}."
        return f"Your appointment with {doctor_name} on {start} was rejected."
    return f"Update for the appointment on {start}."


class NotificationService:
    """Service for managing in-app notifications."""

    @staticmethod
    async def create(
        db: AsyncSession,
        user_id: UUID,
        notification_type: NotificationType,
        payload: dict[str, Any],
        audience_role: str | None = None,
    ) -> None:
        """Insert one notification (caller commits)."""
        await db.execute(
            insert(notifications).values(
                user_id=user_id,
                notification_type=notification_type.value,
                audience_role=audience_role,
                payload=to_json_safe(payload),
            )
        )

    @staticmethod
    async def notify_appointment_participants(
        db: AsyncSession,
        appointment: dict[str, Any],
        event: str,
        actor: Actor,
        previous: dict[str, Any] | None = None,
    ) -> int:
        """
        Notify the patient and doctor accounts behind an appointment.

        Args:
            db: Database session
            appointment: Appointment row after the change
            event: BOOKED, APPROVED, RESCHEDULED, CANCELLED or REJECTED
            actor: Acting user
            previous: Prior starts_at/ends_at/doctor_id for reschedules

        Returns:
            Number of notifications written
        """
        previous = previous or {}
        directory = DirectoryService(db)
        patient_user = await directory.find_patient_user(appointment["patient_id"])
        doctor_user = await directory.find_doctor_user(appointment["doctor_id"])

        patient_name = _user_name(patient_user, f"Patient {appointment['patient_id']}")
        doctor_name = _user_name(doctor_user, appointment["doctor_id"])
        if not doctor_name.lower().startswith("dr."):
            doctor_name = f"Dr. {doctor_name}"

        base_payload = {
            "scope": "appointment",
            "appointment_id": appointment["id"],
            "event": event,
            "starts_at": appointment["starts_at"],
            "ends_at": appointment["ends_at"],
            "patient_id": appointment["patient_id"],
            "doctor_id": appointment["doctor_id"],
            "status": appointment["status"],
            "previous": {
                "starts_at": previous.get("starts_at"),
                "ends_at": previous.get("ends_at"),
                "doctor_id": previous.get("doctor_id"),
            },
            "actor_role": actor.role.value,
            "actor_name": actor.display_name,
            "patient_name": patient_name,
            "doctor_name": doctor_name,
        }
        context = {**base_payload, "previous_starts_at": previous.get("starts_at")}

        sent = 0
        for recipient, user in (("patient", patient_user), ("doctor", doctor_user)):
            if user is None:
                continue
            await NotificationService.create(
                db,
                user_id=user["id"],
                notification_type=NotificationType.APPOINTMENT_UPDATED,
                payload={
                    **base_payload,
                    "recipient": recipient,
                    "message": build_appointment_message(event, recipient, context),
                },
                audience_role=recipient,
            )
            sent += 1

        logger.info(
            "appointment_notifications_sent",
            appointment_id=str(appointment["id"]),
            notification_event=event,
            count=sent,
        )
        return sent

    @staticmethod
    async def notify_payment_outcome(
        db: AsyncSession,
        notification_type: NotificationType,
        patient_id: str,
        payload: dict[str, Any],
    ) -> int:
        """
        Notify the patient and every staff and manager account of a payment result.

        Returns:
            Number of notifications written
        """
        directory = DirectoryService(db)
        recipients: list[tuple[dict[str, Any], str]] = []

        patient_user = await directory.find_patient_user(patient_id)
        if patient_user:
            recipients.append((patient_user, Role.PATIENT.value))
        for user in await directory.list_users_by_roles(PAYMENT_AUDIENCE):
            recipients.append((user, user["role"]))

        for user, role in recipients:
            await NotificationService.create(
                db,
                user_id=user["id"],
                notification_type=notification_type,
                payload=payload,
                audience_role=role,
            )

        logger.info(
            "payment_notifications_sent",
            notification_type=notification_type.value,
            count=len(recipients),
        )
        return len(recipients)

    @staticmethod
    def appointment_hook(
        appointment: dict[str, Any],
        event: str,
        actor: Actor,
        previous: dict[str, Any] | None = None,
    ) -> Hook:
        """Build a post-commit hook for appointment participant notifications."""

        async def _notify(db: AsyncSession) -> None:
            await NotificationService.notify_appointment_participants(
                db, appointment, event, actor, previous
            )

        return _notify

    @staticmethod
    def payment_hook(
        notification_type: NotificationType,
        patient_id: str,
        payload: dict[str, Any],
    ) -> Hook:
        """Build a post-commit hook for payment outcome notifications."""

        async def _notify(db: AsyncSession) -> None:
            await NotificationService.notify_payment_outcome(
                db, notification_type, patient_id, payload
            )

        return _notify

    @staticmethod
    async def list_for_user(
        db: AsyncSession,
        user_id: UUID,
        unread_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[dict[str, Any]], int, int]:
        """
        List a user's notifications, newest first.

        Args:
            db: Database session
            user_id: Recipient id
            unread_only: Only unread notifications
            limit: Page size
            offset: Page offset

        Returns:
            Tuple of (notifications, total matching, total unread)
        """
        conditions = [notifications.c.user_id == user_id]
        if unread_only:
            conditions.append(notifications.c.is_read.is_(False))

        total = (
            await db.execute(
                select(func.count()).select_from(notifications).where(and_(*conditions))
            )
        ).scalar() or 0

        unread = (
            await db.execute(
                select(func.count())
                .select_from(notifications)
                .where(
                    and_(
                        notifications.c.user_id == user_id,
                        notifications.c.is_read.is_(False),
                    )
                )
            )
        ).scalar() or 0

        stmt = (
            select(notifications)
            .where(and_(*conditions))
            .order_by(notifications.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await db.execute(stmt)
        items = [row_to_dict(row) for row in result.fetchall()]

        return items, total, unread  # type: ignore[return-value]

    @staticmethod
    async def mark_read(
        db: AsyncSession,
        notification_id: UUID,
        user_id: UUID,
    ) -> dict[str, Any]:
        """
        Mark one notification as read by its recipient.

        Raises:
            NotFoundException: If the notification does not exist or belongs to
                someone else
        """
        stmt = (
            update(notifications)
            .where(
                and_(
                    notifications.c.id == notification_id,
                    notifications.c.user_id == user_id,
                )
            )
            .values(is_read=True, read_at=datetime.now(UTC))
            .returning(notifications)
        )
        result = await db.execute(stmt)
        row = result.fetchone()

        if row is None:
            await db.rollback()
            raise NotFoundException("Notification not found")

        await db.commit()
        return row_to_dict(row)  # type: ignore[return-value]

    @staticmethod
    async def mark_all_read(db: AsyncSession, user_id: UUID) -> int:
        """Mark every unread notification of a user as read."""
        stmt = (
            update(notifications)
            .where(
                and_(
                    notifications.c.user_id == user_id,
                    notifications.c.is_read.is_(False),
                )
            )
            .values(is_read=True, read_at=datetime.now(UTC))
        )
        result = await db.execute(stmt)
        await db.commit()
        return result.rowcount or 0
