"""Tests for in-app notifications."""

from datetime import UTC, datetime
from uuid import uuid4

import pytest
from httpx import AsyncClient

from clinicdesk.services.notification_service import build_appointment_message
from conftest import DOCTOR_ID, future_slot, headers_for

WHEN = datetime(2026, 3, 4, 9, 30, tzinfo=UTC)


def test_booked_messages() -> None:
    context = {"starts_at": WHEN, "doctor_name": "Dr. House", "patient_name": "Jane Doe"}
    assert (
        build_appointment_message("BOOKED", "patient", context)
        == "Your appointment with Dr. House is booked for Mar 4, 2026 9:30 AM."
    )
    assert (
        build_appointment_message("BOOKED", "doctor", context)
        == "Jane Doe booked an appointment for Mar 4, 2026 9:30 AM."
    )


def test_reschedule_message_mentions_previous_time() -> None:
    context = {
        "starts_at": WHEN,
        "previous_starts_at": datetime(2026, 3, 3, 14, 0, tzinfo=UTC),
        "doctor_name": "Dr. House",
        "actor_role": "staff",
        "actor_name": "Front Desk",
    }
    assert build_appointment_message("RESCHEDULED", "patient", context) == (
        "Front Desk rescheduled your appointment with Dr. House "
        "to Mar 4, 2026 9:30 AM (previously Mar 3, 2026 2:00 PM)."
    )


def test_actor_is_you_for_own_action() -> None:
    context = {"starts_at": WHEN, "doctor_name": "Dr. House", "actor_role": "patient"}
    assert build_appointment_message("CANCELLED", "patient", context).startswith("You cancelled")


def test_unknown_event_falls_back() -> None:
    assert build_appointment_message("ARCHIVED", "patient", {}) == (
        "Update for the appointment on the scheduled time."
    )


async def book(client: AsyncClient, headers: dict) -> dict:
    starts_at, ends_at = future_slot()
    response = await client.post(
        "/api/v1/appointments/",
        json={
            "doctor_id": DOCTOR_ID,
            "starts_at": starts_at.isoformat(),
            "ends_at": ends_at.isoformat(),
        },
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.mark.asyncio
async def test_booking_notifies_patient_and_doctor(
    client: AsyncClient, patient_headers: dict, doctor_headers: dict
) -> None:
    appt = await book(client, patient_headers)

    mine = await client.get("/api/v1/notifications/", headers=patient_headers)
    assert mine.status_code == 200
    data = mine.json()
    assert data["total"] == 1
    assert data["unread"] == 1
    note = data["items"][0]
    assert note["notification_type"] == "APPOINTMENT_UPDATED"
    assert note["audience_role"] == "patient"
    assert note["payload"]["appointment_id"] == appt["id"]
    assert note["payload"]["event"] == "BOOKED"
    assert note["payload"]["message"].startswith("Your appointment with Dr. Gregory House")

    doctors = await client.get("/api/v1/notifications/", headers=doctor_headers)
    doctor_note = doctors.json()["items"][0]
    assert doctor_note["audience_role"] == "doctor"
    assert doctor_note["payload"]["message"].startswith("Jane Doe booked an appointment")


@pytest.mark.asyncio
async def test_mark_read_and_unread_filter(
    client: AsyncClient, patient_headers: dict, doctor_user: dict
) -> None:
    appt = await book(client, patient_headers)
    await client.post(f"/api/v1/appointments/{appt['id']}/cancel", headers=patient_headers)

    listing = await client.get("/api/v1/notifications/", headers=patient_headers)
    assert listing.json()["unread"] == 2
    newest = listing.json()["items"][0]
    assert newest["payload"]["event"] == "CANCELLED"

    marked = await client.post(
        f"/api/v1/notifications/{newest['id']}/read", headers=patient_headers
    )
    assert marked.status_code == 200
    assert marked.json()["is_read"] is True
    assert marked.json()["read_at"] is not None

    unread = await client.get(
        "/api/v1/notifications/", params={"unread_only": True}, headers=patient_headers
    )
    assert unread.json()["total"] == 1
    assert unread.json()["unread"] == 1
    assert unread.json()["items"][0]["payload"]["event"] == "BOOKED"


@pytest.mark.asyncio
async def test_cannot_mark_someone_elses_notification(
    client: AsyncClient, patient_headers: dict, doctor_headers: dict
) -> None:
    await book(client, patient_headers)
    doctors = await client.get("/api/v1/notifications/", headers=doctor_headers)
    doctor_note_id = doctors.json()["items"][0]["id"]

    response = await client.post(
        f"/api/v1/notifications/{doctor_note_id}/read", headers=patient_headers
    )
    assert response.status_code == 404

    missing = await client.post(f"/api/v1/notifications/{uuid4()}/read", headers=patient_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_mark_all_read(
    client: AsyncClient, patient_headers: dict, doctor_user: dict, staff_user: dict
) -> None:
    appt = await book(client, patient_headers)
    await client.post(
        f"/api/v1/appointments/{appt['id']}/approve", headers=headers_for(staff_user)
    )

    response = await client.post("/api/v1/notifications/read-all", headers=patient_headers)
    assert response.status_code == 200
    assert response.json() == {"updated": 2}

    again = await client.post("/api/v1/notifications/read-all", headers=patient_headers)
    assert again.json() == {"updated": 0}

    listing = await client.get("/api/v1/notifications/", headers=patient_headers)
    assert listing.json()["unread"] == 0
    assert listing.json()["total"] == 2


@pytest.mark.asyncio
async def test_notifications_require_authentication(client: AsyncClient) -> None:
    response = await client.get("/api/v1/notifications/")
    assert response.status_code in (401, 403)
