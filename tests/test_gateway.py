"""Tests for the card gateway adapters."""

import json
from decimal import Decimal

import httpx
import pytest

from clinicdesk.config import settings
from clinicdesk.services.payment_gateway import (
    CardCharge,
    CardStatus,
    HttpCardGateway,
    MockCardGateway,
    get_payment_gateway,
)

CHARGE = CardCharge(
    card_number="4111111111111111",
    exp_month=12,
    exp_year=2099,
    cvc="123",
    amount=Decimal("3000.00"),
    reference="pay-1",
)


def gateway_answering(status_code: int, content: bytes | dict, seen: list | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if isinstance(content, dict):
            return httpx.Response(status_code, json=content)
        return httpx.Response(status_code, content=content)

    return HttpCardGateway(
        "https://gateway.test/v1/", "sk_test", transport=httpx.MockTransport(handler)
    )


@pytest.mark.asyncio
async def test_mock_gateway_matrix() -> None:
    gateway = MockCardGateway()
    assert (await gateway.charge(CHARGE)).status == CardStatus.SUCCESS

    declined = CardCharge(**{**CHARGE.__dict__, "card_number": "4000000000000002"})
    assert (await gateway.charge(declined)).status == CardStatus.DECLINED

    broken = CardCharge(**{**CHARGE.__dict__, "card_number": "4084084084084084"})
    assert (await gateway.charge(broken)).status == CardStatus.NETWORK_ERROR

    unknown = CardCharge(**{**CHARGE.__dict__, "card_number": "5555555555554444"})
    result = await gateway.charge(unknown)
    assert result.status == CardStatus.SUCCESS
    assert result.gateway_ref.startswith("mock_")


@pytest.mark.asyncio
async def test_http_success_sends_charge() -> None:
    seen: list[httpx.Request] = []
    gateway = gateway_answering(
        200, {"status": "SUCCESS", "id": "ch_1", "auth_code": "A1B2C3"}, seen
    )

    result = await gateway.charge(CHARGE)

    assert result.status == CardStatus.SUCCESS
    assert result.gateway_ref == "ch_1"
    assert result.auth_code == "A1B2C3"
    request = seen[0]
    assert str(request.url) == "https://gateway.test/v1/charges"
    assert request.headers["Authorization"] == "Bearer sk_test"
    body = json.loads(request.content)
    assert body["amount"] == "3000.00"
    assert body["reference"] == "pay-1"
    assert "currency" not in body


@pytest.mark.asyncio
async def test_http_decline() -> None:
    result = await gateway_answering(402, {"message": "insufficient funds"}).charge(CHARGE)
    assert result.status == CardStatus.DECLINED
    assert result.message == "insufficient funds"

    result = await gateway_answering(200, {"status": "DECLINED"}).charge(CHARGE)
    assert result.status == CardStatus.DECLINED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,content",
    [
        (500, {"status": "SUCCESS"}),
        (200, b"not json"),
        (200, {"status": "PROCESSING"}),
    ],
)
async def test_http_failures_are_network_errors(status_code, content) -> None:
    result = await gateway_answering(status_code, content).charge(CHARGE)
    assert result.status == CardStatus.NETWORK_ERROR


@pytest.mark.asyncio
async def test_http_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = HttpCardGateway(
        "https://gateway.test", "sk_test", transport=httpx.MockTransport(handler)
    )
    result = await gateway.charge(CHARGE)
    assert result.status == CardStatus.NETWORK_ERROR
    assert "connection refused" in result.message


def test_gateway_selection() -> None:
    assert isinstance(get_payment_gateway(settings), MockCardGateway)

    http_settings = settings.model_copy(
        update={"payment_gateway_mode": "http", "payment_gateway_url": "https://gateway.test"}
    )
    gateway = get_payment_gateway(http_settings)
    assert isinstance(gateway, HttpCardGateway)
    assert gateway.base_url == "https://gateway.test"
