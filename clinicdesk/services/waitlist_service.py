"""Waitlist service: patients queue for a doctor on a preferred day."""

from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.config import settings
from clinicdesk.core.events import PostCommitHooks
from clinicdesk.core.exceptions import (
    AppException,
    BadRequestException,
    ForbiddenException,
    NotFoundException,
)
from clinicdesk.database import row_to_dict
from clinicdesk.models.waitlist import waitlist_entries
from clinicdesk.schemas.users import Actor
from clinicdesk.schemas.waitlist import WaitlistEntryCreate, WaitlistEntryResponse
from clinicdesk.services.audit_service import AuditService
from clinicdesk.services.directory_service import DirectoryService

logger = structlog.get_logger(__name__)

ENTITY = "WaitlistEntry"


class WaitlistService:
    """Service for waitlist entries."""

    def __init__(self, db: AsyncSession):
        """Initialize service with database session."""
        self.db = db
        self.directory = DirectoryService(db)
        self.hooks = PostCommitHooks()
        self.tz = ZoneInfo(settings.clinic_timezone)

    @staticmethod
    def _resolve_patient_id(actor: Actor, requested: str | None) -> str:
        """Patients act for their linked record; staff must name a patient."""
        if actor.is_patient:
            if not actor.linked_patient_id:
                raise ForbiddenException("Your account is not linked to a patient record")
            if requested and requested != actor.linked_patient_id:
                raise ForbiddenException("Patients can only manage their own waitlist")
            return actor.linked_patient_id

        if actor.is_staff:
            if not requested:
                raise BadRequestException("patient_id is required")
            return requested

        raise ForbiddenException("Only patients and staff can join the waitlist")

    async def _find(
        self, patient_id: str, doctor_id: str, desired_date: date
    ) -> dict[str, Any] | None:
        result = await self.db.execute(
            select(waitlist_entries).where(
                and_(
                    waitlist_entries.c.patient_id == patient_id,
                    waitlist_entries.c.doctor_id == doctor_id,
                    waitlist_entries.c.desired_date == desired_date,
                )
            )
        )
        return row_to_dict(result.fetchone())

    async def join(
        self,
        data: WaitlistEntryCreate,
        actor: Actor,
    ) -> tuple[WaitlistEntryResponse, bool]:
        """
        Queue a patient for a doctor on a clinic-local day.

        Joining twice for the same doctor and day returns the existing entry.

        Returns:
            Tuple of (entry, created)

        Raises:
            ForbiddenException: Doctor, or patient queueing someone else
            BadRequestException: Day already past, or staff gave no patient
            NotFoundException: Unknown patient
        """
        patient_id = self._resolve_patient_id(actor, data.patient_id)
        doctor_id = data.doctor_id.strip()

        today = datetime.now(UTC).astimezone(self.tz).date()
        if data.desired_date < today:
            raise BadRequestException("Waitlist date cannot be in the past")

        if await self.directory.get_patient(patient_id) is None:
            raise NotFoundException("Patient not found")

        existing = await self._find(patient_id, doctor_id, data.desired_date)
        if existing is not None:
            return WaitlistEntryResponse.model_validate(existing), False

        try:
            result = await self.db.execute(
                insert(waitlist_entries)
                .values(
                    patient_id=patient_id,
                    doctor_id=doctor_id,
                    desired_date=data.desired_date,
                    created_by=str(actor.id),
                    created_at=datetime.now(UTC),
                )
                .returning(waitlist_entries)
            )
            entry = row_to_dict(result.fetchone())
            await self.db.commit()
        except IntegrityError:
            # Lost a race with an identical request; theirs is the entry
            await self.db.rollback()
            existing = await self._find(patient_id, doctor_id, data.desired_date)
            if existing is None:
                raise
            return WaitlistEntryResponse.model_validate(existing), False

        if entry is None:
            raise AppException("Waitlist entry could not be recorded")

        logger.info(
            "waitlist_joined",
            entry_id=str(entry["id"]),
            doctor_id=doctor_id,
            desired_date=data.desired_date.isoformat(),
        )
        self.hooks.add(
            "audit_waitlist_joined",
            AuditService.hook(
                ENTITY,
                entry["id"],
                actor.id,
                "joined",
                {
                    "patient_id": patient_id,
                    "doctor_id": doctor_id,
                    "desired_date": data.desired_date,
                },
            ),
        )
        await self.hooks.run(self.db)

        return WaitlistEntryResponse.model_validate(entry), True

    async def list_entries(
        self,
        actor: Actor,
        patient_id: str | None = None,
        doctor_id: str | None = None,
    ) -> list[WaitlistEntryResponse]:
        """
        List waitlist entries by desired day, oldest request first.

        Patients see their own entries and doctors the entries queued for
        them; staff see every entry unless they filter by patient.
        """
        stmt = select(waitlist_entries)
        if actor.is_patient:
            stmt = stmt.where(
                waitlist_entries.c.patient_id == self._resolve_patient_id(actor, patient_id)
            )
        elif actor.is_doctor:
            if not actor.doctor_profile_id:
                raise ForbiddenException("Doctor profile incomplete")
            stmt = stmt.where(waitlist_entries.c.doctor_id == actor.doctor_profile_id)
        elif not actor.is_staff:
            raise ForbiddenException("Access denied to the waitlist")
        elif patient_id:
            stmt = stmt.where(waitlist_entries.c.patient_id == patient_id)

        if doctor_id:
            stmt = stmt.where(waitlist_entries.c.doctor_id == doctor_id)

        result = await self.db.execute(
            stmt.order_by(waitlist_entries.c.desired_date, waitlist_entries.c.created_at)
        )
        return [
            WaitlistEntryResponse.model_validate(row_to_dict(row)) for row in result.fetchall()
        ]

    async def leave(self, entry_id: UUID, actor: Actor) -> None:
        """
        Remove a waitlist entry.

        Raises:
            NotFoundException: Unknown entry, or a patient removing someone else's
            ForbiddenException: Actor is neither patient nor staff
        """
        conditions = [waitlist_entries.c.id == entry_id]
        if actor.is_patient:
            conditions.append(
                waitlist_entries.c.patient_id == self._resolve_patient_id(actor, None)
            )
        elif not actor.is_staff:
            raise ForbiddenException("Only patients and staff can leave the waitlist")

        result = await self.db.execute(
            delete(waitlist_entries).where(and_(*conditions)).returning(waitlist_entries)
        )
        removed = row_to_dict(result.fetchone())
        if removed is None:
            await self.db.rollback()
            raise NotFoundException("Waitlist entry not found")
        await self.db.commit()

        logger.info("waitlist_left", entry_id=str(entry_id))
        self.hooks.add(
            "audit_waitlist_left",
            AuditService.hook(
                ENTITY,
                entry_id,
                actor.id,
                "left",
                {
                    "patient_id": removed["patient_id"],
                    "doctor_id": removed["doctor_id"],
                    "desired_date": removed["desired_date"],
                },
            ),
        )
        await self.hooks.run(self.db)
