"""Tests for card, cash and government settlement."""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

import pytest
from httpx import AsyncClient
from sqlalchemy import insert, select, update

from clinicdesk.dependencies import get_card_gateway, get_rate_limiter
from clinicdesk.core.exceptions import ConflictException
from clinicdesk.main import app
from clinicdesk.models.billing import bills, payments
from clinicdesk.models.notifications import audit_entries, notifications
from clinicdesk.services.billing_service import BillingService
from clinicdesk.services.payment_gateway import MockCardGateway
from conftest import (
    DECLINED_CARD,
    NETWORK_ERROR_CARD,
    SUCCESS_CARD,
    future_slot,
    actor_for,
    headers_for,
    insert_appointment,
)

NEXT_YEAR = datetime.now(UTC).year + 1


def card(bill_id: str, number: str = SUCCESS_CARD, **overrides) -> dict:
    return {
        "bill_id": bill_id,
        "card_number": number,
        "exp_month": 12,
        "exp_year": NEXT_YEAR,
        "cvc": "123",
        **overrides,
    }


async def pending_bill(
    client: AsyncClient, db_session, patient: dict, staff_headers: dict, count: int = 2
) -> dict:
    for days in range(2, 2 + count):
        await insert_appointment(
            db_session, patient["id"], status="CONFIRMED", starts_at=future_slot(days=days)[0]
        )
    response = await client.post(
        f"/api/v1/billing/patients/{patient['id']}/rebuild", headers=staff_headers
    )
    assert response.status_code == 200, response.text
    return response.json()


async def notified_users(db_session, notification_type: str) -> set:
    result = await db_session.execute(
        select(notifications.c.user_id).where(
            notifications.c.notification_type == notification_type
        )
    )
    return set(result.scalars())


class FailingGateway:
    async def charge(self, charge):
        raise RuntimeError("connection reset")


class ExhaustedLimiter:
    def check_rate_limit(self, key, limit, window=60):
        return False


@pytest.mark.asyncio
async def test_card_payment_settles_bill(
    client: AsyncClient,
    db_session,
    patient: dict,
    patient_user: dict,
    patient_headers: dict,
    staff_user: dict,
    staff_headers: dict,
    manager_user: dict,
    doctor_user: dict,
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)
    assert Decimal(bill["total_payable"]) == Decimal("3000")

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )

    assert response.status_code == 201, response.text
    data = response.json()
    assert data["payment"]["status"] == "SUCCESS"
    assert data["payment"]["method"] == "CARD"
    assert data["payment"]["card_last4"] == "1111"
    assert Decimal(data["payment"]["amount"]) == Decimal("3000")
    assert data["payment"]["gateway_ref"]
    assert data["receipt"]["receipt_number"].startswith("RC-")

    current = await client.get(
        f"/api/v1/billing/bills/{bill['id']}", headers=patient_headers
    )
    assert current.json()["status"] == "PAID"
    assert Decimal(current.json()["total_payable"]) == Decimal("0")
    assert current.json()["paid_at"] is not None

    recipients = await notified_users(db_session, "PAYMENT_SUCCESS")
    assert recipients == {patient_user["id"], staff_user["id"], manager_user["id"]}
    assert doctor_user["id"] not in recipients


@pytest.mark.asyncio
async def test_paid_bill_refuses_second_payment(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)
    first = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert first.status_code == 201

    second = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert second.status_code == 409
    assert second.json()["message"] == "Bill already paid"


@pytest.mark.asyncio
async def test_declined_card_keeps_bill_pending_and_allows_retry(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)

    declined = await client.post(
        "/api/v1/payments/card", json=card(bill["id"], DECLINED_CARD), headers=patient_headers
    )
    assert declined.status_code == 402
    assert declined.json()["details"]["bill_id"] == bill["id"]

    attempts = await client.get(
        f"/api/v1/billing/bills/{bill['id']}/payments", headers=patient_headers
    )
    assert [attempt["status"] for attempt in attempts.json()] == ["DECLINED"]
    assert attempts.json()[0]["failure_reason"]

    current = await client.get(f"/api/v1/billing/bills/{bill['id']}", headers=patient_headers)
    assert current.json()["status"] == "PENDING"

    retry = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert retry.status_code == 201

    assert await notified_users(db_session, "PAYMENT_DECLINED")


@pytest.mark.asyncio
async def test_network_error_is_transient(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"], NETWORK_ERROR_CARD), headers=patient_headers
    )
    assert response.status_code == 503

    payment = await client.get(
        f"/api/v1/payments/{response.json()['details']['payment_id']}", headers=patient_headers
    )
    assert payment.json()["status"] == "ERROR"


@pytest.mark.asyncio
async def test_gateway_exception_becomes_network_error(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)
    app.dependency_overrides[get_card_gateway] = lambda: FailingGateway()

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_one_audit_entry_per_outcome(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)
    await client.post(
        "/api/v1/payments/card", json=card(bill["id"], DECLINED_CARD), headers=patient_headers
    )
    await client.post("/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers)

    result = await db_session.execute(
        select(audit_entries.c.action)
        .where(audit_entries.c.entity_type == "Payment")
        .order_by(audit_entries.c.at)
    )
    assert list(result.scalars()) == ["payment_declined", "payment_success"]


@pytest.mark.asyncio
async def test_expired_card_is_rejected(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)

    response = await client.post(
        "/api/v1/payments/card",
        json=card(bill["id"], exp_month=1, exp_year=2020),
        headers=patient_headers,
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_rate_limited_card_attempts(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)
    app.dependency_overrides[get_rate_limiter] = lambda: ExhaustedLimiter()

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert response.status_code == 429


@pytest.mark.asyncio
async def test_doctors_cannot_pay(
    client: AsyncClient, db_session, patient: dict, doctor_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=doctor_headers
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_patient_cannot_pay_another_patients_bill(
    client: AsyncClient,
    db_session,
    patient: dict,
    other_patient_user: dict,
    staff_headers: dict,
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=headers_for(other_patient_user)
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_cash_is_staff_only_and_exact(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)

    by_patient = await client.post(
        "/api/v1/payments/cash",
        json={"bill_id": bill["id"], "amount": "3000.00"},
        headers=patient_headers,
    )
    assert by_patient.status_code == 403

    short = await client.post(
        "/api/v1/payments/cash",
        json={"bill_id": bill["id"], "amount": "2999.99"},
        headers=staff_headers,
    )
    assert short.status_code == 422

    exact = await client.post(
        "/api/v1/payments/cash",
        json={"bill_id": bill["id"], "amount": "3000.00"},
        headers=staff_headers,
    )
    assert exact.status_code == 201
    assert exact.json()["payment"]["method"] == "CASH"
    assert exact.json()["receipt"] is not None


@pytest.mark.asyncio
async def test_government_settlement(
    client: AsyncClient, db_session, government_patient: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, government_patient, staff_headers, count=1)

    response = await client.post(
        "/api/v1/payments/government", json={"bill_id": bill["id"]}, headers=staff_headers
    )
    assert response.status_code == 201, response.text
    assert Decimal(response.json()["payment"]["amount"]) == Decimal("0")

    settled = await client.get(f"/api/v1/billing/bills/{bill['id']}", headers=staff_headers)
    assert settled.json()["status"] == "PAID"
    assert Decimal(settled.json()["government_cover"]) == Decimal("2000")


@pytest.mark.asyncio
async def test_government_settlement_requires_eligibility(
    client: AsyncClient, db_session, patient: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers, count=1)

    response = await client.post(
        "/api/v1/payments/government", json={"bill_id": bill["id"]}, headers=staff_headers
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_nothing_payable_by_card(
    client: AsyncClient, db_session, government_patient: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, government_patient, staff_headers, count=1)

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=staff_headers
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_unknown_bill(client: AsyncClient, staff_headers: dict) -> None:
    response = await client.post(
        "/api/v1/payments/cash",
        json={"bill_id": "00000000-0000-0000-0000-000000000000", "amount": "1.00"},
        headers=staff_headers,
    )
    assert response.status_code == 404


class ReconcilingGateway:
    """Approves another appointment and rebuilds the bill while the charge is in flight."""

    def __init__(self, db_session, patient_id, actor):
        self.db_session = db_session
        self.patient_id = patient_id
        self.actor = actor
        self.refused = None

    async def charge(self, charge):
        await insert_appointment(
            self.db_session, self.patient_id, status="CONFIRMED", starts_at=future_slot(days=6)[0]
        )
        try:
            await BillingService(self.db_session).build_latest_bill(self.patient_id, self.actor)
        except ConflictException as e:
            self.refused = e
        return await MockCardGateway(latency_ms=0).charge(charge)


class BillBumpingGateway:
    """Moves the bill to a new version behind the payment's back, then approves."""

    def __init__(self, db_session, bill_id):
        self.db_session = db_session
        self.bill_id = bill_id

    async def charge(self, charge):
        await self.db_session.execute(
            update(bills).where(bills.c.id == self.bill_id).values(version=bills.c.version + 1)
        )
        await self.db_session.commit()
        return await MockCardGateway(latency_ms=0).charge(charge)


@pytest.mark.asyncio
async def test_emptied_bill_keeps_failed_attempts(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers, count=1)
    declined = await client.post(
        "/api/v1/payments/card", json=card(bill["id"], DECLINED_CARD), headers=patient_headers
    )
    assert declined.status_code == 402

    appointment_id = bill["items"][0]["appointment_id"]
    cancelled = await client.post(
        f"/api/v1/appointments/{appointment_id}/cancel", headers=staff_headers
    )
    assert cancelled.status_code == 200

    kept = await client.get(f"/api/v1/billing/bills/{bill['id']}", headers=staff_headers)
    assert kept.status_code == 200
    assert kept.json()["status"] == "CANCELLED"
    assert kept.json()["items"] == []
    assert Decimal(kept.json()["total_payable"]) == Decimal("0")

    attempts = await client.get(
        f"/api/v1/billing/bills/{bill['id']}/payments", headers=staff_headers
    )
    assert [attempt["status"] for attempt in attempts.json()] == ["DECLINED"]

    current = await client.get(
        f"/api/v1/billing/patients/{patient['id']}/current", headers=staff_headers
    )
    assert current.json() is None

    actions = await db_session.execute(
        select(audit_entries.c.action).where(audit_entries.c.entity_type == "Bill")
    )
    assert "cancelled" in list(actions.scalars())


@pytest.mark.asyncio
async def test_bill_is_not_repriced_under_an_inflight_charge(
    client: AsyncClient,
    db_session,
    patient: dict,
    patient_headers: dict,
    staff_user: dict,
    staff_headers: dict,
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers, count=1)
    gateway = ReconcilingGateway(db_session, str(patient["id"]), actor_for(staff_user))
    app.dependency_overrides[get_card_gateway] = lambda: gateway

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert response.status_code == 201, response.text
    assert isinstance(gateway.refused, ConflictException)

    payment = response.json()["payment"]
    assert Decimal(payment["amount"]) == Decimal("1500")
    assert len(response.json()["receipt"]["payload"]["items"]) == 1

    paid = await client.get(f"/api/v1/billing/bills/{bill['id']}", headers=staff_headers)
    assert paid.json()["status"] == "PAID"
    assert Decimal(paid.json()["subtotal"]) == Decimal("2000")
    assert len(paid.json()["items"]) == 1

    # The appointment approved mid-charge lands on a fresh pending bill
    current = await client.get(
        f"/api/v1/billing/patients/{patient['id']}/current", headers=staff_headers
    )
    assert current.json()["status"] == "PENDING"
    assert current.json()["id"] != bill["id"]
    assert Decimal(current.json()["total_payable"]) == Decimal("1500")


@pytest.mark.asyncio
async def test_bill_changed_during_charge_is_not_settled(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers, count=1)
    app.dependency_overrides[get_card_gateway] = lambda: BillBumpingGateway(
        db_session, UUID(bill["id"])
    )

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert response.status_code == 409
    assert response.json()["message"].startswith("Bill changed while the payment was processed")

    attempts = await client.get(
        f"/api/v1/billing/bills/{bill['id']}/payments", headers=staff_headers
    )
    assert [attempt["status"] for attempt in attempts.json()] == ["ERROR"]
    assert attempts.json()[0]["failure_reason"] == "bill changed during payment"

    current = await client.get(f"/api/v1/billing/bills/{bill['id']}", headers=staff_headers)
    assert current.json()["status"] == "PENDING"

    app.dependency_overrides[get_card_gateway] = lambda: MockCardGateway(latency_ms=0)
    retry = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert retry.status_code == 201


@pytest.mark.asyncio
async def test_payment_in_progress_blocks_attempts_and_rebuilds(
    client: AsyncClient, db_session, patient: dict, patient_headers: dict, staff_headers: dict
) -> None:
    bill = await pending_bill(client, db_session, patient, staff_headers)
    now = datetime.now(UTC)
    await db_session.execute(
        insert(payments).values(
            bill_id=UUID(bill["id"]),
            method="CARD",
            status="PENDING",
            amount=Decimal("3000.00"),
            created_at=now,
            updated_at=now,
        )
    )
    await db_session.commit()

    response = await client.post(
        "/api/v1/payments/card", json=card(bill["id"]), headers=patient_headers
    )
    assert response.status_code == 409
    assert response.json()["message"] == "A payment for this bill is already in progress"

    rebuild = await client.post(
        f"/api/v1/billing/patients/{patient['id']}/rebuild", headers=staff_headers
    )
    assert rebuild.status_code == 409
    assert rebuild.json()["details"] == {"bill_id": bill["id"]}
