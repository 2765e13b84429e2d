"""Сервис для работы с платежами."""
import logging
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.errors import InvalidStatus, InvalidTransition, MissingField, NotFound, ValidationError
from storefront.models.order import Order
from storefront.models.payment import (
    PAYMENT_STATUSES,
    PAYMENT_TRANSITIONS,
    Payment,
)
from storefront.schemas import payment_method_adapter
from storefront.services.gateway_client import GatewayRefund
from storefront.services.order_service import OrderService, to_money
from storefront.services.sequence_service import PAYMENT_SEQUENCE, SequenceService

logger = logging.getLogger(__name__)

# Статусы, с которыми можно создать платёж вручную
INITIAL_STATUSES = ("Pending", "Processing", "Completed", "Failed")
# Сводка оплаты в заказе для статусов платежа
ORDER_SUMMARY_BY_STATUS = {
    "Completed": "Paid",
    "Failed": "Failed",
    "Refunded": "Refunded",
}


def apply_status_timestamps(payment: Payment, status: str, now: datetime) -> None:
    """Каждая отметка времени ставится один раз, при первом входе в статус."""
    if payment.initiated_at is None:
        payment.initiated_at = now
    if status in ("Processing", "Completed") and payment.processed_at is None:
        payment.processed_at = now
    if status == "Completed" and payment.completed_at is None:
        payment.completed_at = now
    if status == "Failed" and payment.failed_at is None:
        payment.failed_at = now


def parse_payment_method(method: dict | None) -> dict:
    """Проверить способ оплаты по размеченному объединению и вернуть детали."""
    if not method or not method.get("type"):
        raise MissingField("payment_method.type")
    try:
        parsed = payment_method_adapter.validate_python(method)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid payment method: {e.errors()[0].get('msg')}")
    return parsed.model_dump(exclude_none=True)


class PaymentService:
    """Сервис для работы с платежами."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_payment(
        self,
        order: Order | UUID,
        payment_method: dict,
        amount: dict,
        customer_info: dict | None = None,
        status: str = "Pending",
        currency: str | None = None,
        transaction_id: str | None = None,
        gateway_transaction_id: str | None = None,
        gateway_response: dict | None = None,
        gateway_name: str | None = None,
        processing_fee: Decimal | None = None,
        notes: str | None = None,
        allow_gateway: bool = False,
        commit: bool = True,
    ) -> Payment:
        """
        Создать платёж по заказу.

        Способ оплаты Gateway записывает только SettlementService
        (allow_gateway=True): колонка gateway_payment_id с уникальным индексом
        служит ключом идемпотентности, и повторная запись того же платежа шлюза
        упадёт с IntegrityError.
        """
        if not isinstance(order, Order):
            order = await OrderService(self.db).get_or_raise(order)

        if status not in INITIAL_STATUSES:
            raise InvalidStatus(status, INITIAL_STATUSES)

        details = parse_payment_method(payment_method)
        method_type = details.pop("type")
        if method_type == "Gateway" and not allow_gateway:
            raise ValidationError("Gateway payments are recorded only through payment verification")

        if not amount or amount.get("subtotal") is None:
            raise MissingField("amount.subtotal")
        amounts = {}
        for name in ("subtotal", "tax", "shipping", "discount"):
            amounts[name] = to_money(amount.get(name) or 0, f"amount.{name}")
            if amounts[name] < 0:
                raise ValidationError(f"amount.{name} cannot be negative")
        if amounts["subtotal"] <= 0:
            raise ValidationError("Subtotal must be greater than 0")
        if amount.get("total") is not None:
            amounts["total"] = to_money(amount["total"], "amount.total")
        else:
            amounts["total"] = amounts["subtotal"] + amounts["tax"] + amounts["shipping"] - amounts["discount"]
        if amounts["total"] < 0:
            raise ValidationError("Total amount cannot be negative")

        customer = customer_info or {}
        payment_number = await SequenceService(self.db).next_number(PAYMENT_SEQUENCE)
        now = datetime.utcnow()

        payment = Payment(
            payment_number=payment_number,
            order_id=order.id,
            order_number=order.order_number,
            customer_first_name=customer.get("first_name") or order.customer_first_name,
            customer_last_name=customer.get("last_name") or order.customer_last_name,
            customer_email=(customer.get("email") or order.customer_email).strip().lower(),
            customer_phone=customer.get("phone_number") or order.customer_phone,
            method_type=method_type,
            method_details=details or None,
            gateway_payment_id=details.get("gateway_payment_id"),
            subtotal_amount=amounts["subtotal"],
            tax_amount=amounts["tax"],
            shipping_amount=amounts["shipping"],
            discount_amount=amounts["discount"],
            total_amount=amounts["total"],
            currency=currency or order.currency,
            status=status,
            transaction_id=transaction_id,
            gateway_transaction_id=gateway_transaction_id,
            gateway_response=gateway_response,
            gateway_name=gateway_name,
            processing_fee=processing_fee or Decimal("0"),
            amount_refunded=Decimal("0"),
            notes=notes,
        )
        apply_status_timestamps(payment, status, now)

        if status in ORDER_SUMMARY_BY_STATUS:
            OrderService(self.db).apply_payment_summary(
                order,
                ORDER_SUMMARY_BY_STATUS[status],
                transaction_id=transaction_id,
                paid_at=payment.completed_at,
            )

        self.db.add(payment)
        await self.db.flush()

        logger.info(
            f"Payment {payment.payment_number} created for order {order.order_number}: "
            f"{method_type}, {payment.total_amount} {payment.currency}, status={status}"
        )

        if commit:
            await self.db.commit()
            return await self.get_by_id(payment.id)
        return payment

    async def get_by_id(self, payment_id: UUID) -> Payment | None:
        """Получить платеж по ID."""
        stmt = select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, payment_id: UUID) -> Payment:
        payment = await self.get_by_id(payment_id)
        if not payment:
            raise NotFound(f"No payment found with ID '{payment_id}'")
        return payment

    async def get_by_order_id(self, order_id: UUID) -> Payment | None:
        """Получить платеж по ID заказа."""
        stmt = (
            select(Payment)
            .where(Payment.order_id == order_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_gateway_payment_id(self, gateway_payment_id: str, for_update: bool = False) -> Payment | None:
        """Получить платеж по ID платежа в шлюзе."""
        stmt = (
            select(Payment)
            .where(Payment.gateway_payment_id == gateway_payment_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_customer_email(self, email: str) -> list[Payment]:
        """Получить платежи покупателя по email."""
        stmt = (
            select(Payment)
            .where(Payment.customer_email == email.strip().lower())
            .order_by(Payment.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update_status(self, payment_id: UUID, status: str) -> Payment:
        """
        Обновить статус платежа.

        Pending/Processing -> Completed|Failed, любой -> Cancelled.
        Refunded и PartiallyRefunded ставит только RefundService.
        """
        if status not in PAYMENT_STATUSES:
            raise InvalidStatus(status, PAYMENT_STATUSES)

        payment = await self.get_or_raise(payment_id)
        if payment.status == status:
            return payment
        if status not in PAYMENT_TRANSITIONS[payment.status]:
            raise InvalidTransition("Payment", payment.status, status)

        old_status = payment.status
        payment.status = status
        apply_status_timestamps(payment, status, datetime.utcnow())

        if status in ORDER_SUMMARY_BY_STATUS:
            order = await OrderService(self.db).get_by_id(payment.order_id)
            if order:
                OrderService(self.db).apply_payment_summary(
                    order,
                    ORDER_SUMMARY_BY_STATUS[status],
                    transaction_id=payment.transaction_id,
                    paid_at=payment.completed_at,
                )
            else:
                logger.warning(f"Order not found for payment {payment.payment_number}")

        await self.db.commit()
        logger.info(f"Payment {payment.payment_number} status: {old_status} -> {status}")
        return await self.get_by_id(payment_id)

    async def record_refund(
        self, payment: Payment, refund: GatewayRefund, reason: str, commit: bool = True
    ) -> Payment:
        """
        Записать подтверждённый шлюзом возврат.

        Вызывается только после ответа шлюза, никогда заранее. При
        commit=False изменения только flush-ятся: так RefundService применяет
        возврат из очереди и закрывает запись очереди одной транзакцией.
        """
        refund_amount = refund.amount

        payment.refund_id = refund.id
        payment.refund_amount = refund_amount
        payment.refund_reason = reason

        if refund.status == "failed":
            payment.refund_status = "Failed"
            logger.warning(f"Gateway reported failed refund {refund.id} for payment {payment.payment_number}")
        else:
            payment.refund_status = "Processed" if refund.status == "processed" else "Pending"
            payment.refunded_at = datetime.utcnow()
            payment.amount_refunded = (payment.amount_refunded or Decimal("0")) + refund_amount

            if payment.amount_refunded >= payment.total_amount:
                payment.status = "Refunded"
                order = await OrderService(self.db).get_by_id(payment.order_id)
                if order:
                    OrderService(self.db).apply_payment_summary(order, "Refunded")
            else:
                payment.status = "PartiallyRefunded"

        if not commit:
            await self.db.flush()
            return payment

        await self.db.commit()
        logger.info(
            f"Refund {refund.id} recorded for payment {payment.payment_number}: "
            f"amount={refund_amount}, refunded_total={payment.amount_refunded}, status={payment.status}"
        )
        return await self.get_by_id(payment.id)
