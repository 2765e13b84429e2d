"""
Shared fixtures: file-backed SQLite database, fake payment gateway, API client.
"""

import os

# Settings are read once at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "test_secret"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ENVIRONMENT"] = "test"
os.environ["REDIS_URL"] = ""

import asyncio
from datetime import datetime, timedelta
from typing import Optional

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from storefront.core.errors import GatewayNotFound
from storefront.core.locks import KeyedLocks
from storefront.core.security import compute_payment_signature, create_access_token
from storefront.database import Base
from storefront.models import Order, Payment, SettlementIntent  # noqa: F401
from storefront.services.gateway_client import GatewayIntent, GatewayPayment, GatewayRefund

GATEWAY_SECRET = "test_secret"


# ============================================================================
# Fake gateway
# ============================================================================


class FakeGateway:
    """In-memory stand-in for the Razorpay client."""

    name = "Razorpay"

    def __init__(self):
        self.payments: dict[str, dict] = {}
        self.fetch_calls: list[str] = []
        self.refund_calls: list[dict] = []
        self.intents: list[dict] = []
        self.delay: float = 0
        self.fetch_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.refund_status = "processed"

    def add_payment(
        self,
        payment_id: str = "pay_1",
        amount_minor: int = 49900,
        status: str = "captured",
        order_id: str = "order_1",
        method: str = "upi",
        fee: int | None = None,
        **extra,
    ) -> dict:
        payload = {
            "id": payment_id,
            "entity": "payment",
            "amount": amount_minor,
            "currency": "INR",
            "status": status,
            "order_id": order_id,
            "method": method,
            "fee": fee,
            "created_at": 1767225600,
            **extra,
        }
        self.payments[payment_id] = payload
        return payload

    async def create_intent(self, amount_minor, currency, receipt, notes=None):
        self.intents.append({"amount": amount_minor, "currency": currency, "receipt": receipt, "notes": notes})
        return GatewayIntent(
            id=f"order_{len(self.intents)}",
            amount=amount_minor,
            currency=currency,
            receipt=receipt,
            status="created",
            created_at=datetime(2026, 1, 1),
        )

    async def fetch_payment(self, gateway_payment_id):
        self.fetch_calls.append(gateway_payment_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fetch_error is not None:
            raise self.fetch_error
        if gateway_payment_id not in self.payments:
            raise GatewayNotFound(f"The id provided does not exist: {gateway_payment_id}")
        return GatewayPayment.from_payload(self.payments[gateway_payment_id])

    async def refund(self, gateway_payment_id, amount_minor=None, notes=None):
        self.refund_calls.append({"payment_id": gateway_payment_id, "amount": amount_minor, "notes": notes})
        if self.refund_error is not None:
            raise self.refund_error
        if amount_minor is None:
            amount_minor = self.payments[gateway_payment_id]["amount"]
        return GatewayRefund(
            id=f"rfnd_{len(self.refund_calls)}",
            amount_minor=amount_minor,
            currency="INR",
            status=self.refund_status,
            created_at=datetime(2026, 1, 2),
        )


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def count_rows(session_factory):
    """Count rows of a model in a fresh session."""

    async def _count(model) -> int:
        async with session_factory() as session:
            result = await session.execute(select(func.count()).select_from(model))
            return result.scalar_one()

    return _count


# ============================================================================
# Gateway / settlement helpers
# ============================================================================


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def locks():
    return KeyedLocks(timeout=5)


@pytest.fixture
def sign():
    def _sign(order_id: str, payment_id: str) -> str:
        return compute_payment_signature(order_id, payment_id, GATEWAY_SECRET)

    return _sign


@pytest.fixture
def order_draft():
    return {
        "customer_info": {
            "first_name": "Asha",
            "last_name": "Rao",
            "email": "Asha.Rao@example.com",
            "phone_number": "9876543210",
        },
        "address": {
            "street_address": "12 MG Road",
            "city": "Bengaluru",
            "state": "Karnataka",
            "postal_code": "560001",
            "country": "India",
        },
        "products": [{"id": "p1", "name": "DSLR Camera", "quantity": 2, "price": 249.50}],
        "total_price": 499.00,
    }


@pytest.fixture
def customer_info():
    return {
        "first_name": "Vikram",
        "last_name": "Singh",
        "email": "vikram@example.com",
        "phone_number": "9123456780",
    }


@pytest.fixture
def address():
    return {
        "street_address": "4 Park Street",
        "city": "Kolkata",
        "state": "West Bengal",
        "postal_code": "700016",
        "country": "India",
    }


@pytest.fixture
def order_payload(customer_info, address):
    """Keyword arguments for OrderService.create_order."""
    return {
        "customer_info": customer_info,
        "shipping_address": address,
        "billing_address": None,
        "items": [{"product_id": "tent-4p", "product_name": "Tent", "quantity": 2, "unit_price": "150.00"}],
        "pricing": {"subtotal": "300.00", "tax": "54.00", "shipping": "50.00", "discount": "4.00", "total": "400.00"},
        "payment_method": "CreditCard",
    }


# ============================================================================
# API
# ============================================================================


@pytest.fixture
async def client(session_factory, gateway):
    from storefront.core.dependencies import get_gateway
    from storefront.database import get_db
    from storefront.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    token = create_access_token({"sub": "admin", "role": "admin"}, expires_delta=timedelta(minutes=5))
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def user_headers():
    token = create_access_token({"sub": "someone", "role": "customer"}, expires_delta=timedelta(minutes=5))
    return {"Authorization": f"Bearer {token}"}
