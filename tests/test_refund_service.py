"""
Refunds against settled gateway payments.
"""

from decimal import Decimal

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from storefront.core.errors import (
    AlreadyRefunded,
    GatewayUnavailable,
    InvalidTransition,
    MissingField,
    NotFound,
    PersistenceFailure,
    ValidationError,
)
from storefront.models.refund import REFUND_INTENT_COMPLETED, REFUND_INTENT_PENDING, RefundIntent
from storefront.services.order_service import OrderService
from storefront.services.payment_service import PaymentService
from storefront.services.refund_service import RefundService
from storefront.services.settlement_service import SettlementService


@pytest.fixture
async def settled(db, gateway, locks, sign, order_draft):
    gateway.add_payment("pay_1", amount_minor=49900)
    service = SettlementService(db, gateway, locks=locks, secret="test_secret")
    return await service.settle("order_1", "pay_1", sign("order_1", "pay_1"), order_draft)


@pytest.fixture
def refunds(db, gateway, locks):
    return RefundService(db, gateway, locks=locks, timeout=2)


class TestRefund:

    @pytest.mark.asyncio
    async def test_partial_refund(self, settled, refunds, gateway):
        result = await refunds.refund("pay_1", amount=Decimal("200.00"))

        payment = result.payment
        assert payment.status == "PartiallyRefunded"
        assert payment.refund_amount == Decimal("200.00")
        assert payment.amount_refunded == Decimal("200.00")
        assert payment.refund_status == "Processed"
        assert payment.refund_reason == "Customer request"
        assert payment.refund_id == result.refund.id
        assert payment.refunded_at is not None
        assert gateway.refund_calls == [
            {"payment_id": "pay_1", "amount": 20000, "notes": {"reason": "Customer request"}}
        ]

    @pytest.mark.asyncio
    async def test_refunds_accumulate_to_full(self, db, settled, refunds):
        await refunds.refund("pay_1", amount="200.00")
        result = await refunds.refund("pay_1", amount="299.00", reason="Damaged item")

        assert result.payment.status == "Refunded"
        assert result.payment.amount_refunded == Decimal("499.00")
        assert result.payment.refund_reason == "Damaged item"
        order = await OrderService(db).get_by_id(settled.order.id)
        assert order.payment_status == "Refunded"

    @pytest.mark.asyncio
    async def test_full_refund_without_amount(self, db, settled, refunds, gateway):
        result = await refunds.refund("pay_1")

        assert gateway.refund_calls[0]["amount"] is None
        assert result.payment.status == "Refunded"
        assert result.payment.refund_amount == Decimal("499.00")
        order = await OrderService(db).get_by_id(settled.order.id)
        assert order.payment_status == "Refunded"

    @pytest.mark.asyncio
    async def test_pending_refund_counts(self, settled, refunds, gateway):
        gateway.refund_status = "pending"

        result = await refunds.refund("pay_1", amount=100)

        assert result.payment.status == "PartiallyRefunded"
        assert result.payment.refund_status == "Pending"

    @pytest.mark.asyncio
    async def test_failed_refund_changes_no_status(self, settled, refunds, gateway):
        gateway.refund_status = "failed"

        result = await refunds.refund("pay_1", amount=100)

        assert result.payment.status == "Completed"
        assert result.payment.refund_status == "Failed"
        assert result.payment.amount_refunded == Decimal("0.00")
        assert result.payment.refunded_at is None

    @pytest.mark.asyncio
    async def test_gateway_error_leaves_payment_untouched(self, db, settled, refunds, gateway):
        gateway.refund_error = AlreadyRefunded("The payment has been fully refunded already")

        with pytest.raises(AlreadyRefunded):
            await refunds.refund("pay_1", amount=100)

        payment = await PaymentService(db).get_by_gateway_payment_id("pay_1")
        assert payment.status == "Completed"
        assert payment.refund_id is None
        assert payment.amount_refunded == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_gateway_unavailable_surfaces(self, settled, refunds, gateway):
        gateway.refund_error = GatewayUnavailable("Payment gateway timed out")

        with pytest.raises(GatewayUnavailable) as exc_info:
            await refunds.refund("pay_1")
        assert exc_info.value.retryable is True


class TestRefundValidation:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "-0.01"])
    async def test_non_positive_amount(self, settled, refunds, gateway, amount):
        with pytest.raises(ValidationError):
            await refunds.refund("pay_1", amount=amount)
        assert gateway.refund_calls == []

    @pytest.mark.asyncio
    async def test_amount_over_balance(self, settled, refunds, gateway):
        await refunds.refund("pay_1", amount=400)
        with pytest.raises(ValidationError):
            await refunds.refund("pay_1", amount=100)
        assert len(gateway.refund_calls) == 1

    @pytest.mark.asyncio
    async def test_missing_payment_id(self, refunds):
        with pytest.raises(MissingField):
            await refunds.refund("")

    @pytest.mark.asyncio
    async def test_unknown_payment(self, refunds, gateway):
        with pytest.raises(NotFound):
            await refunds.refund("pay_unknown", amount=10)
        assert gateway.refund_calls == []

    @pytest.mark.asyncio
    async def test_fully_refunded_payment(self, settled, refunds):
        await refunds.refund("pay_1")
        with pytest.raises(InvalidTransition):
            await refunds.refund("pay_1")


class TestRefundNotRecorded:

    @pytest.fixture
    def broken_ledger(self, monkeypatch):
        original = PaymentService.record_refund

        async def record_then_fail(self, payment, refund, reason, commit=True):
            await original(self, payment, refund, reason, commit=False)
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(PaymentService, "record_refund", record_then_fail)
        return monkeypatch

    @pytest.mark.asyncio
    async def test_refund_is_queued_when_ledger_write_fails(
        self, settled, refunds, gateway, session_factory, broken_ledger
    ):
        with pytest.raises(PersistenceFailure) as exc_info:
            await refunds.refund("pay_1", amount=Decimal("200.00"))

        assert exc_info.value.retryable is True
        assert len(gateway.refund_calls) == 1
        async with session_factory() as session:
            payment = await PaymentService(session).get_by_gateway_payment_id("pay_1")
            assert payment.status == "Completed"
            assert payment.amount_refunded == Decimal("0.00")
            queued = (await session.execute(select(RefundIntent))).scalar_one()
        assert queued.gateway_refund_id == "rfnd_1"
        assert queued.gateway_payment_id == "pay_1"
        assert queued.amount_minor == 20000
        assert queued.status == REFUND_INTENT_PENDING
        assert "database is locked" in queued.last_error

    @pytest.mark.asyncio
    async def test_queued_refund_is_applied_once(
        self, settled, refunds, gateway, locks, session_factory, broken_ledger
    ):
        with pytest.raises(PersistenceFailure):
            await refunds.refund("pay_1", amount=Decimal("200.00"))
        broken_ledger.undo()

        async with session_factory() as session:
            report = await RefundService(session, gateway, locks=locks).reconcile()
        assert (report.checked, report.completed, report.failed) == (1, 1, 0)

        async with session_factory() as session:
            report = await RefundService(session, gateway, locks=locks).reconcile()
        assert report.checked == 0

        async with session_factory() as session:
            payment = await PaymentService(session).get_by_gateway_payment_id("pay_1")
            queued = (await session.execute(select(RefundIntent))).scalar_one()
        assert payment.status == "PartiallyRefunded"
        assert payment.amount_refunded == Decimal("200.00")
        assert payment.refund_id == "rfnd_1"
        assert queued.status == REFUND_INTENT_COMPLETED
        assert queued.last_error is None
        assert len(gateway.refund_calls) == 1
