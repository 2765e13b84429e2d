"""Клиент платёжного шлюза Razorpay.

Все суммы на границе со шлюзом - целые числа в минимальных единицах валюты
(пайсы для INR). Перевод из/в десятичные суммы делается только здесь.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Any, Protocol, runtime_checkable

import httpx

from storefront.config import Settings
from storefront.core.errors import (
    AlreadyRefunded,
    GatewayNotFound,
    GatewayRejected,
    GatewayUnavailable,
    InvalidGatewayRequest,
)

logger = logging.getLogger(__name__)

# Количество знаков минимальной единицы для валют с нестандартной экспонентой
CURRENCY_EXPONENTS = {
    "JPY": 0,
    "KRW": 0,
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
}
DEFAULT_EXPONENT = 2


def _exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get((currency or "").upper(), DEFAULT_EXPONENT)


def to_minor_units(amount: Decimal | int | float | str, currency: str = "INR") -> int:
    """499.00 -> 49900. Банковское округление до целой минимальной единицы."""
    scaled = Decimal(str(amount)).scaleb(_exponent(currency))
    return int(scaled.quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))


def from_minor_units(amount: int, currency: str = "INR") -> Decimal:
    """49900 -> Decimal("499.00")."""
    exponent = _exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return Decimal(int(amount)).scaleb(-exponent).quantize(quantum)


def _from_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.utcfromtimestamp(int(value))


@dataclass
class GatewayIntent:
    id: str
    amount: int
    currency: str
    receipt: str | None
    status: str
    created_at: datetime | None


@dataclass
class GatewayPayment:
    id: str
    amount_minor: int
    currency: str
    status: str
    method: str | None = None
    order_id: str | None = None
    bank: str | None = None
    wallet: str | None = None
    vpa: str | None = None
    fee_minor: int | None = None
    raw: dict = field(default_factory=dict)

    @property
    def captured(self) -> bool:
        return self.status == "captured"

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor, self.currency)

    @property
    def fee(self) -> Decimal:
        return from_minor_units(self.fee_minor or 0, self.currency)

    @classmethod
    def from_payload(cls, data: dict) -> "GatewayPayment":
        return cls(
            id=data["id"],
            amount_minor=int(data.get("amount") or 0),
            currency=data.get("currency") or "INR",
            status=data.get("status") or "",
            method=data.get("method"),
            order_id=data.get("order_id"),
            bank=data.get("bank"),
            wallet=data.get("wallet"),
            vpa=data.get("vpa"),
            fee_minor=data.get("fee"),
            raw=data,
        )


@dataclass
class GatewayRefund:
    id: str
    amount_minor: int
    currency: str
    status: str
    created_at: datetime | None

    @property
    def amount(self) -> Decimal:
        return from_minor_units(self.amount_minor, self.currency)


@runtime_checkable
class PaymentGateway(Protocol):
    """Узкий интерфейс шлюза, от которого зависят settlement и возвраты."""

    name: str

    async def create_intent(
        self, amount_minor: int, currency: str, receipt: str, notes: dict | None = None
    ) -> GatewayIntent: ...

    async def fetch_payment(self, gateway_payment_id: str) -> GatewayPayment: ...

    async def refund(
        self, gateway_payment_id: str, amount_minor: int | None = None, notes: dict | None = None
    ) -> GatewayRefund: ...


class RazorpayClient:
    """HTTP-клиент Razorpay (Basic Auth key_id:key_secret)."""

    name = "Razorpay"

    def __init__(self, config: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.config = config
        self._transport = transport
        if not config.razorpay_key_id or not config.razorpay_key_secret:
            logger.warning("Razorpay credentials not configured")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.razorpay_base_url,
            auth=(self.config.razorpay_key_id, self.config.razorpay_key_secret),
            timeout=self.config.gateway_timeout_seconds,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=payload)
        except httpx.TimeoutException:
            logger.error(f"Razorpay API timeout: {method} {path}")
            raise GatewayUnavailable("Payment gateway timed out")
        except httpx.RequestError as e:
            logger.error(f"Razorpay API request error: {method} {path}: {e}")
            raise GatewayUnavailable(f"Payment gateway request failed: {e}")

        if response.status_code in (200, 201):
            return response.json()

        self._raise_for_error(response, path)

    def _raise_for_error(self, response: httpx.Response, path: str):
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        description = error.get("description") or response.text or f"HTTP {response.status_code}"
        text = description.lower()

        logger.error(f"Razorpay API error: {response.status_code} {path} - {description}")

        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayUnavailable(f"Payment gateway error: {description}")
        if response.status_code == 404 or "does not exist" in text or "not found" in text:
            raise GatewayNotFound(description)
        if "refunded" in text and ("already" in text or "fully" in text):
            raise AlreadyRefunded(description)
        if response.status_code == 400:
            raise InvalidGatewayRequest(description)
        raise GatewayRejected(description)

    async def create_intent(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict | None = None,
    ) -> GatewayIntent:
        """
        Создать заказ (intent) в Razorpay.

        Валюта сверяется с allow-list из настроек до обращения к API.
        """
        currency = (currency or "").upper()
        if currency not in self.config.allowed_currencies:
            raise InvalidGatewayRequest(
                f"Currency {currency} is not supported. "
                f"Supported currencies: {', '.join(self.config.allowed_currencies)}"
            )
        if amount_minor <= 0:
            raise InvalidGatewayRequest("Amount must be greater than 0")

        payload = {
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        logger.info(f"Creating Razorpay order: amount={amount_minor} {currency}, receipt={receipt}")
        data = await self._request("POST", "/orders", payload)

        return GatewayIntent(
            id=data["id"],
            amount=int(data["amount"]),
            currency=data["currency"],
            receipt=data.get("receipt"),
            status=data.get("status", "created"),
            created_at=_from_timestamp(data.get("created_at")),
        )

    async def fetch_payment(self, gateway_payment_id: str) -> GatewayPayment:
        """Получить платёж из Razorpay."""
        data = await self._request("GET", f"/payments/{gateway_payment_id}")
        return GatewayPayment.from_payload(data)

    async def refund(
        self,
        gateway_payment_id: str,
        amount_minor: int | None = None,
        notes: dict | None = None,
    ) -> GatewayRefund:
        """Возврат платежа. Без amount - полный возврат."""
        payload: dict[str, Any] = {"notes": notes or {}}
        if amount_minor is not None:
            payload["amount"] = amount_minor

        logger.info(f"Refunding Razorpay payment {gateway_payment_id}: amount={amount_minor or 'full'}")
        data = await self._request("POST", f"/payments/{gateway_payment_id}/refund", payload)

        return GatewayRefund(
            id=data["id"],
            amount_minor=int(data["amount"]),
            currency=data.get("currency") or "INR",
            status=data.get("status", "processed"),
            created_at=_from_timestamp(data.get("created_at")),
        )
