"""Card gateway adapters."""

import asyncio
import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Protocol

import httpx
import structlog

from clinicdesk.config import Settings, settings

logger = structlog.get_logger(__name__)


class CardStatus(str, Enum):
    """Gateway verdict for a card charge."""

    SUCCESS = "SUCCESS"
    DECLINED = "DECLINED"
    NETWORK_ERROR = "NETWORK_ERROR"


@dataclass(frozen=True)
class CardCharge:
    """Card details and amount for one charge."""

    card_number: str
    exp_month: int
    exp_year: int
    cvc: str
    amount: Decimal
    reference: str


@dataclass(frozen=True)
class GatewayResult:
    """Outcome reported by the gateway."""

    status: CardStatus
    gateway_ref: str | None = None
    auth_code: str | None = None
    message: str | None = None


class CardGateway(Protocol):
    """Adapter contract: charge a card, never raise for a decline."""

    async def charge(self, charge: CardCharge) -> GatewayResult: ...


class MockCardGateway:
    """
    Deterministic gateway for development and tests.

    Known test numbers map to fixed verdicts; any other number succeeds.
    """

    CARD_MATRIX = {
        "4111111111111111": CardStatus.SUCCESS,
        "4000000000000002": CardStatus.DECLINED,
        "4084084084084084": CardStatus.NETWORK_ERROR,
    }

    def __init__(self, latency_ms: int = 0):
        self.latency_ms = latency_ms

    async def charge(self, charge: CardCharge) -> GatewayResult:
        if self.latency_ms:
            await asyncio.sleep(self.latency_ms / 1000)

        status = self.CARD_MATRIX.get(charge.card_number, CardStatus.SUCCESS)
        if status == CardStatus.SUCCESS:
            return GatewayResult(
                status=status,
                gateway_ref=f"mock_{int(time.time() * 1000)}",
                auth_code=secrets.token_hex(3).upper(),
            )
        if status == CardStatus.DECLINED:
            return GatewayResult(status=status, message="Card declined by issuer")
        return GatewayResult(status=status, message="Gateway network error")


class HttpCardGateway:
    """Card gateway reached over HTTP."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def charge(self, charge: CardCharge) -> GatewayResult:
        """
        POST the charge to ``{base_url}/charges``.

        Transport errors, timeouts and 5xx responses are reported as
        NETWORK_ERROR; 402 and 4xx answers as DECLINED.
        """
        body = {
            "amount": str(charge.amount),
            "reference": charge.reference,
            "card": {
                "number": charge.card_number,
                "exp_month": charge.exp_month,
                "exp_year": charge.exp_year,
                "cvc": charge.cvc,
            },
        }

        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
            headers={"Authorization": f"Bearer {self.api_key}"},
        ) as client:
            try:
                response = await client.post("/charges", json=body)
            except httpx.HTTPError as e:
                logger.warning(
                    "card_gateway_unreachable", reference=charge.reference, error=str(e)
                )
                return GatewayResult(status=CardStatus.NETWORK_ERROR, message=str(e))

        if response.status_code >= 500:
            return GatewayResult(
                status=CardStatus.NETWORK_ERROR,
                message=f"Gateway returned {response.status_code}",
            )

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            return GatewayResult(
                status=CardStatus.NETWORK_ERROR, message="Malformed gateway reply"
            )

        if response.status_code >= 400 or data.get("status") == CardStatus.DECLINED.value:
            return GatewayResult(
                status=CardStatus.DECLINED,
                message=data.get("message") or "Card declined by issuer",
            )

        if data.get("status") != CardStatus.SUCCESS.value:
            return GatewayResult(
                status=CardStatus.NETWORK_ERROR,
                message=f"Unexpected gateway status {data.get('status')!r}",
            )

        return GatewayResult(
            status=CardStatus.SUCCESS,
            gateway_ref=data.get("id") or data.get("gateway_ref"),
            auth_code=data.get("auth_code"),
        )


def get_payment_gateway(config: Settings = settings) -> CardGateway:
    """Select the gateway adapter for the configured mode."""
    if config.payment_gateway_mode == "http":
        return HttpCardGateway(
            base_url=config.payment_gateway_url,
            api_key=config.payment_gateway_api_key,
            timeout=config.payment_gateway_timeout_seconds,
        )
    return MockCardGateway(latency_ms=config.mock_gateway_latency_ms)
