"""Slot allocation: conflict checks and daily slot listings for a doctor."""

from datetime import date, datetime, time, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clinicdesk.config import settings
from clinicdesk.core.redis_client import CacheManager
from clinicdesk.database import ensure_utc
from clinicdesk.models.appointments import appointments, doctor_roster_slots
from clinicdesk.schemas.appointments import AppointmentStatus, SlotResponse

logger = structlog.get_logger(__name__)


class AvailabilityService:
    """Sole arbiter of scheduling conflicts."""

    def __init__(self, db: AsyncSession, cache_manager: CacheManager | None = None):
        """Initialize service with database session and optional slot cache."""
        self.db = db
        self.cache = cache_manager
        self.slot_length = timedelta(minutes=settings.slot_minutes)
        self.tz = ZoneInfo(settings.clinic_timezone)

    @staticmethod
    def _get_slots_cache_key(doctor_id: str, day: date) -> str:
        """Generate cache key for a doctor's day listing."""
        return f"slots:{doctor_id}:{day.isoformat()}"

    async def is_available(
        self,
        doctor_id: str,
        starts_at: datetime,
        exclude_appointment_id: UUID | None = None,
    ) -> bool:
        """
        Check that no live appointment already holds the doctor's slot.

        Always reads the database; the slot cache is never consulted here.

        Args:
            doctor_id: Doctor identifier
            starts_at: Exact slot start
            exclude_appointment_id: Appointment being moved, ignored in the check

        Returns:
            True if the slot is free
        """
        conditions = [
            appointments.c.doctor_id == doctor_id,
            appointments.c.starts_at == ensure_utc(starts_at),
            appointments.c.status != AppointmentStatus.CANCELLED.value,
        ]
        if exclude_appointment_id is not None:
            conditions.append(appointments.c.id != exclude_appointment_id)

        stmt = select(func.count()).select_from(appointments).where(and_(*conditions))
        result = await self.db.execute(stmt)
        return (result.scalar() or 0) == 0

    def _day_bounds(self, day: date) -> tuple[datetime, datetime]:
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        return ensure_utc(start), ensure_utc(start + timedelta(days=1))

    async def list_available_slots(
        self,
        doctor_id: str | None,
        day: date | None,
    ) -> list[SlotResponse]:
        """
        List the doctor's fixed-length slots for one day.

        Open roster ranges for the day are split into slots; blocked ranges are
        skipped. Without roster rows the default working window is used. A slot
        that would overrun its range is dropped.

        Args:
            doctor_id: Doctor identifier
            day: Calendar day in the clinic timezone

        Returns:
            Slots sorted by start; empty if doctor or day is missing
        """
        if not doctor_id or not day:
            return []

        cache_key = self._get_slots_cache_key(doctor_id, day)
        if self.cache:
            cached = self.cache.get_json(cache_key)
            if cached is not None:
                return [SlotResponse.model_validate(slot) for slot in cached]

        day_start, day_end = self._day_bounds(day)

        roster_stmt = (
            select(doctor_roster_slots)
            .where(
                and_(
                    doctor_roster_slots.c.doctor_id == doctor_id,
                    doctor_roster_slots.c.start_at >= day_start,
                    doctor_roster_slots.c.start_at < day_end,
                )
            )
            .order_by(doctor_roster_slots.c.start_at)
        )
        roster = (await self.db.execute(roster_stmt)).fetchall()

        if roster:
            ranges = [
                (ensure_utc(row.start_at), ensure_utc(row.end_at))
                for row in roster
                if not row.is_blocked
            ]
        else:
            local_start = datetime.combine(day, time.min, tzinfo=self.tz)
            ranges = [
                (
                    ensure_utc(local_start + timedelta(hours=settings.default_day_start_hour)),
                    ensure_utc(local_start + timedelta(hours=settings.default_day_end_hour)),
                )
            ]

        taken_stmt = select(appointments.c.starts_at).where(
            and_(
                appointments.c.doctor_id == doctor_id,
                appointments.c.starts_at >= day_start,
                appointments.c.starts_at < day_end,
                appointments.c.status != AppointmentStatus.CANCELLED.value,
            )
        )
        taken = {ensure_utc(value) for value in (await self.db.execute(taken_stmt)).scalars()}

        slots: list[SlotResponse] = []
        for range_start, range_end in ranges:
            cursor = range_start
            while cursor + self.slot_length <= range_end:
                slots.append(
                    SlotResponse(
                        starts_at=cursor,
                        ends_at=cursor + self.slot_length,
                        available=cursor not in taken,
                    )
                )
                cursor += self.slot_length

        slots.sort(key=lambda slot: slot.starts_at)

        if self.cache:
            self.cache.set_json(
                cache_key,
                [slot.model_dump(mode="json") for slot in slots],
                ttl=settings.slot_cache_ttl,
            )

        return slots

    def invalidate(self, doctor_id: str) -> None:
        """Drop every cached listing for a doctor after a booking change."""
        if self.cache:
            deleted = self.cache.delete_pattern(f"slots:{doctor_id}:*")
            logger.debug("slot_cache_invalidated", doctor_id=doctor_id, keys=deleted)
