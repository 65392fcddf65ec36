"""Tests for slot availability."""

from datetime import UTC, datetime, time, timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import insert

from clinicdesk.models.appointments import doctor_roster_slots
from clinicdesk.services.availability_service import AvailabilityService
from conftest import DOCTOR_ID, future_slot, insert_appointment


class FakeCache:
    """In-process stand-in for CacheManager."""

    def __init__(self) -> None:
        self.store: dict[str, object] = {}
        self.deleted: list[str] = []

    def get_json(self, key):
        return self.store.get(key)

    def set_json(self, key, value, ttl=None):
        self.store[key] = value
        return True

    def delete_pattern(self, pattern):
        prefix = pattern.rstrip("*")
        doomed = [key for key in self.store if key.startswith(prefix)]
        for key in doomed:
            del self.store[key]
        self.deleted.append(pattern)
        return len(doomed)


@pytest.mark.asyncio
async def test_default_hours_when_no_roster(db_session, patient) -> None:
    starts_at, _ = future_slot(hour=10)
    await insert_appointment(db_session, patient["id"], starts_at=starts_at)

    service = AvailabilityService(db_session)
    slots = await service.list_available_slots(DOCTOR_ID, starts_at.date())

    # 09:00-17:00 in 30 minute slots
    assert len(slots) == 16
    assert slots[0].starts_at == datetime.combine(starts_at.date(), time(9), tzinfo=UTC)
    taken = [slot for slot in slots if not slot.available]
    assert [slot.starts_at for slot in taken] == [starts_at]


@pytest.mark.asyncio
async def test_cancelled_appointments_free_their_slot(db_session, patient) -> None:
    starts_at, _ = future_slot(hour=11)
    await insert_appointment(db_session, patient["id"], starts_at=starts_at, status="CANCELLED")

    service = AvailabilityService(db_session)
    assert await service.is_available(DOCTOR_ID, starts_at)
    slots = await service.list_available_slots(DOCTOR_ID, starts_at.date())
    assert all(slot.available for slot in slots)


@pytest.mark.asyncio
async def test_roster_ranges_drop_overrun_and_skip_blocked(db_session) -> None:
    day_start, _ = future_slot(hour=8)
    await db_session.execute(
        insert(doctor_roster_slots),
        [
            {
                "doctor_id": DOCTOR_ID,
                "start_at": day_start,
                # 75 minutes: two full slots, the third would overrun
                "end_at": day_start + timedelta(minutes=75),
                "is_blocked": False,
            },
            {
                "doctor_id": DOCTOR_ID,
                "start_at": day_start + timedelta(hours=4),
                "end_at": day_start + timedelta(hours=6),
                "is_blocked": True,
            },
        ],
    )
    await db_session.commit()

    service = AvailabilityService(db_session)
    slots = await service.list_available_slots(DOCTOR_ID, day_start.date())

    assert [slot.starts_at for slot in slots] == [
        day_start,
        day_start + timedelta(minutes=30),
    ]


@pytest.mark.asyncio
async def test_missing_doctor_or_day_yields_empty(db_session) -> None:
    service = AvailabilityService(db_session)
    assert await service.list_available_slots(None, future_slot()[0].date()) == []
    assert await service.list_available_slots(DOCTOR_ID, None) == []


@pytest.mark.asyncio
async def test_is_available_excludes_the_moving_appointment(db_session, patient) -> None:
    starts_at, _ = future_slot(hour=14)
    appt = await insert_appointment(db_session, patient["id"], starts_at=starts_at)

    service = AvailabilityService(db_session)
    assert not await service.is_available(DOCTOR_ID, starts_at)
    assert await service.is_available(DOCTOR_ID, starts_at, exclude_appointment_id=appt["id"])


@pytest.mark.asyncio
async def test_listing_is_cached_and_invalidated(db_session, patient) -> None:
    cache = FakeCache()
    starts_at, _ = future_slot(hour=10)
    service = AvailabilityService(db_session, cache)

    first = await service.list_available_slots(DOCTOR_ID, starts_at.date())
    assert all(slot.available for slot in first)
    assert f"slots:{DOCTOR_ID}:{starts_at.date().isoformat()}" in cache.store

    # Cached listing is served until invalidated
    await insert_appointment(db_session, patient["id"], starts_at=starts_at)
    cached = await service.list_available_slots(DOCTOR_ID, starts_at.date())
    assert all(slot.available for slot in cached)

    service.invalidate(DOCTOR_ID)
    fresh = await service.list_available_slots(DOCTOR_ID, starts_at.date())
    assert not all(slot.available for slot in fresh)


@pytest.mark.asyncio
async def test_availability_endpoint(client: AsyncClient, patient_headers, patient) -> None:
    starts_at, _ = future_slot(hour=9)
    response = await client.get(
        f"/api/v1/availability/{DOCTOR_ID}",
        params={"day": starts_at.date().isoformat()},
        headers=patient_headers,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["doctor_id"] == DOCTOR_ID
    assert len(data["slots"]) == 16
    assert all(slot["available"] for slot in data["slots"])


@pytest.mark.asyncio
async def test_availability_requires_authentication(client: AsyncClient) -> None:
    response = await client.get(f"/api/v1/availability/{DOCTOR_ID}", params={"day": "2030-01-01"})
    assert response.status_code in (401, 403)
