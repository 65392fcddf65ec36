"""Tests for the doctor waitlist."""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from clinicdesk.models.notifications import audit_entries
from conftest import DOCTOR_ID, OTHER_DOCTOR_ID, headers_for


def day(offset: int) -> str:
    return (datetime.now(UTC).date() + timedelta(days=offset)).isoformat()


async def join(client: AsyncClient, headers: dict, **overrides):
    body = {"doctor_id": DOCTOR_ID, "desired_date": day(3), **overrides}
    return await client.post("/api/v1/waitlist/", json=body, headers=headers)


@pytest.mark.asyncio
async def test_patient_joins_once_per_doctor_and_day(
    client: AsyncClient, patient: dict, patient_headers: dict
) -> None:
    first = await join(client, patient_headers)
    assert first.status_code == 201
    entry = first.json()
    assert entry["patient_id"] == str(patient["id"])
    assert entry["doctor_id"] == DOCTOR_ID
    assert entry["desired_date"] == day(3)

    again = await join(client, patient_headers)
    assert again.status_code == 200
    assert again.json()["id"] == entry["id"]

    other_day = await join(client, patient_headers, desired_date=day(5))
    assert other_day.status_code == 201
    assert other_day.json()["id"] != entry["id"]


@pytest.mark.asyncio
async def test_past_day_is_rejected(client: AsyncClient, patient_headers: dict) -> None:
    response = await join(client, patient_headers, desired_date=day(-2))
    assert response.status_code == 400
    assert response.json()["message"] == "Waitlist date cannot be in the past"


@pytest.mark.asyncio
async def test_listing_is_scoped_to_the_patient(
    client: AsyncClient,
    patient_headers: dict,
    other_patient_user: dict,
    uninsured_patient: dict,
) -> None:
    await join(client, patient_headers, desired_date=day(6))
    await join(client, patient_headers, desired_date=day(2), doctor_id=OTHER_DOCTOR_ID)
    other_headers = headers_for(other_patient_user)
    await join(client, other_headers)

    mine = await client.get("/api/v1/waitlist/", headers=patient_headers)
    assert mine.status_code == 200
    assert [entry["desired_date"] for entry in mine.json()] == [day(2), day(6)]

    by_doctor = await client.get(
        "/api/v1/waitlist/", params={"doctor_id": DOCTOR_ID}, headers=patient_headers
    )
    assert [entry["desired_date"] for entry in by_doctor.json()] == [day(6)]

    theirs = await client.get("/api/v1/waitlist/", headers=other_headers)
    assert [entry["patient_id"] for entry in theirs.json()] == [str(uninsured_patient["id"])]

    peek = await client.get(
        "/api/v1/waitlist/",
        params={"patient_id": str(uninsured_patient["id"])},
        headers=patient_headers,
    )
    assert peek.status_code == 403


@pytest.mark.asyncio
async def test_staff_queue_a_named_patient(
    client: AsyncClient, uninsured_patient: dict, staff_headers: dict
) -> None:
    missing_patient = await join(client, staff_headers)
    assert missing_patient.status_code == 400

    unknown = await join(client, staff_headers, patient_id=str(uuid4()))
    assert unknown.status_code == 404

    created = await join(client, staff_headers, patient_id=str(uninsured_patient["id"]))
    assert created.status_code == 201

    listing = await client.get(
        "/api/v1/waitlist/",
        params={"patient_id": str(uninsured_patient["id"])},
        headers=staff_headers,
    )
    assert [entry["id"] for entry in listing.json()] == [created.json()["id"]]


@pytest.mark.asyncio
async def test_doctor_sees_own_queue_but_cannot_join(
    client: AsyncClient, patient_headers: dict, doctor_headers: dict
) -> None:
    await join(client, patient_headers)
    await join(client, patient_headers, doctor_id=OTHER_DOCTOR_ID)

    queue = await client.get("/api/v1/waitlist/", headers=doctor_headers)
    assert [entry["doctor_id"] for entry in queue.json()] == [DOCTOR_ID]

    response = await join(client, doctor_headers)
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_leave_waitlist(
    client: AsyncClient,
    db_session,
    patient_headers: dict,
    other_patient_user: dict,
) -> None:
    entry = (await join(client, patient_headers)).json()

    stranger = await client.delete(
        f"/api/v1/waitlist/{entry['id']}", headers=headers_for(other_patient_user)
    )
    assert stranger.status_code == 404

    removed = await client.delete(f"/api/v1/waitlist/{entry['id']}", headers=patient_headers)
    assert removed.status_code == 204

    gone = await client.delete(f"/api/v1/waitlist/{entry['id']}", headers=patient_headers)
    assert gone.status_code == 404

    listing = await client.get("/api/v1/waitlist/", headers=patient_headers)
    assert listing.json() == []

    actions = await db_session.execute(
        select(audit_entries.c.action)
        .where(audit_entries.c.entity_id == entry["id"])
        .order_by(audit_entries.c.at)
    )
    assert list(actions.scalars()) == ["joined", "left"]
