"""Сервис для работы с заказами."""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from uuid import UUID

from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from storefront.core.errors import InvalidStatus, InvalidTransition, MissingField, NotFound, ValidationError
from storefront.models.order import (
    ORDER_PAYMENT_METHODS,
    ORDER_PAYMENT_STATUSES,
    ORDER_STATUSES,
    ORDER_TRANSITIONS,
    SHIPPING_METHODS,
    Order,
    OrderItem,
)
from storefront.models.payment import Payment
from storefront.models.settlement import INTENT_VOIDED, SettlementIntent
from storefront.services.sequence_service import ORDER_SEQUENCE, SequenceService

logger = logging.getLogger(__name__)

CUSTOMER_FIELDS = ("first_name", "last_name", "email", "phone_number")
ADDRESS_FIELDS = ("street_address", "city", "state", "postal_code", "country")
CENTS = Decimal("0.01")


def to_money(value, field_name: str) -> Decimal:
    """Привести сумму к Decimal с двумя знаками."""
    try:
        amount = Decimal(str(value)).quantize(CENTS)
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{field_name} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a number")
    return amount


def _require_fields(data: dict | None, fields: tuple, prefix: str) -> dict:
    data = data or {}
    missing = [f"{prefix}.{name}" for name in fields if not str(data.get(name) or "").strip()]
    if missing:
        raise MissingField(*missing)
    return {name: str(data[name]).strip() for name in fields}


class OrderService:
    """Сервис для работы с заказами."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_order(
        self,
        customer_info: dict,
        shipping_address: dict,
        billing_address: dict | None,
        items: list[dict],
        pricing: dict,
        payment_method: str,
        payment_status: str = "Pending",
        payment_transaction_id: str | None = None,
        paid_at: datetime | None = None,
        currency: str = "INR",
        notes: str | None = None,
        enforce_pricing_identity: bool = True,
        commit: bool = True,
    ) -> Order:
        """
        Создать заказ.

        Цены позиций фиксируются снимком на момент создания и дальше из каталога
        не пересчитываются. Итоговую сумму клиента принимаем как есть, но она
        должна быть больше нуля и (для обычного создания) совпадать с
        subtotal + tax + shipping - discount.

        При commit=False заказ только добавляется в сессию и flush-ится:
        так SettlementService пишет заказ и платёж одной транзакцией.
        """
        customer = _require_fields(customer_info, CUSTOMER_FIELDS, "customer_info")
        shipping = _require_fields(shipping_address, ADDRESS_FIELDS, "shipping_address")
        billing = _require_fields(billing_address or shipping_address, ADDRESS_FIELDS, "billing_address")

        if not items:
            raise ValidationError("At least one item is required")

        if payment_method not in ORDER_PAYMENT_METHODS:
            raise ValidationError(f"Payment method must be one of: {', '.join(ORDER_PAYMENT_METHODS)}")
        if payment_status not in ORDER_PAYMENT_STATUSES:
            raise InvalidStatus(payment_status, ORDER_PAYMENT_STATUSES)

        order_items = []
        for position, item in enumerate(items):
            product_id = str(item.get("product_id") or "").strip()
            if not product_id:
                raise MissingField(f"items[{position}].product_id")
            try:
                quantity = int(item.get("quantity") or 0)
            except (TypeError, ValueError):
                raise ValidationError(f"items[{position}].quantity must be an integer")
            if quantity < 1:
                raise ValidationError(f"items[{position}].quantity must be at least 1")
            unit_price = to_money(item.get("unit_price", 0), f"items[{position}].unit_price")
            if unit_price < 0:
                raise ValidationError(f"items[{position}].unit_price cannot be negative")

            order_items.append(
                OrderItem(
                    position=position,
                    product_id=product_id,
                    product_name=str(item.get("product_name") or "").strip() or product_id,
                    quantity=quantity,
                    unit_price=unit_price,
                    total_price=(unit_price * quantity).quantize(CENTS),
                )
            )

        amounts = {}
        for name in ("subtotal", "tax", "shipping", "discount", "total"):
            amounts[name] = to_money(pricing.get(name) or 0, f"pricing.{name}")
            if amounts[name] < 0:
                raise ValidationError(f"pricing.{name} cannot be negative")

        if amounts["total"] <= 0:
            raise ValidationError("Total amount must be greater than 0")

        expected_total = amounts["subtotal"] + amounts["tax"] + amounts["shipping"] - amounts["discount"]
        if expected_total != amounts["total"]:
            if enforce_pricing_identity:
                raise ValidationError(
                    f"Total {amounts['total']} does not match subtotal + tax + shipping - discount ({expected_total})"
                )
            logger.warning(f"Order pricing mismatch accepted: total={amounts['total']}, expected={expected_total}")

        if notes is not None and len(notes) > 500:
            raise ValidationError("Notes cannot exceed 500 characters")

        order_number = await SequenceService(self.db).next_number(ORDER_SEQUENCE)

        order = Order(
            order_number=order_number,
            customer_first_name=customer["first_name"],
            customer_last_name=customer["last_name"],
            customer_email=customer["email"].lower(),
            customer_phone=customer["phone_number"],
            shipping_address=shipping,
            billing_address=billing,
            subtotal_amount=amounts["subtotal"],
            tax_amount=amounts["tax"],
            shipping_amount=amounts["shipping"],
            discount_amount=amounts["discount"],
            total_amount=amounts["total"],
            currency=currency,
            payment_method=payment_method,
            payment_status=payment_status,
            payment_transaction_id=payment_transaction_id,
            paid_at=paid_at,
            status="Pending",
            notes=notes,
            items=order_items,
        )

        self.db.add(order)
        await self.db.flush()  # Получаем ID заказа

        logger.info(f"Order {order.order_number} created: total={order.total_amount} {order.currency}")

        if commit:
            await self.db.commit()
            return await self.get_by_id(order.id)
        return order

    async def get_by_id(self, order_id: UUID) -> Order | None:
        """Получить заказ по ID."""
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_raise(self, order_id: UUID) -> Order:
        order = await self.get_by_id(order_id)
        if not order:
            raise NotFound(f"No order found with ID '{order_id}'")
        return order

    async def get_by_customer_email(self, email: str) -> list[Order]:
        """Получить заказы покупателя по email."""
        stmt = (
            select(Order)
            .options(selectinload(Order.items))
            .where(Order.customer_email == email.strip().lower())
            .order_by(Order.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def update_status(self, order_id: UUID, status: str) -> Order:
        """
        Обновить статус заказа.

        Pending -> Confirmed -> Processing -> Shipped -> Delivered;
        Cancelled из любого незавершённого статуса, Returned только из Delivered.
        Повторная установка текущего статуса ничего не меняет.
        """
        if status not in ORDER_STATUSES:
            raise InvalidStatus(status, ORDER_STATUSES)

        order = await self.get_or_raise(order_id)
        if order.status == status:
            return order
        if status not in ORDER_TRANSITIONS[order.status]:
            raise InvalidTransition("Order", order.status, status)

        old_status = order.status
        order.status = status
        now = datetime.utcnow()
        if status == "Shipped" and order.shipped_at is None:
            order.shipped_at = now
        if status == "Delivered" and order.delivered_at is None:
            order.delivered_at = now

        await self.db.commit()
        logger.info(f"Order {order.order_number} status: {old_status} -> {status}")
        return await self.get_by_id(order_id)

    async def update_shipping(
        self,
        order_id: UUID,
        shipping_method: str | None = None,
        tracking_number: str | None = None,
        estimated_delivery: datetime | None = None,
    ) -> Order:
        """Обновить данные доставки."""
        order = await self.get_or_raise(order_id)

        if shipping_method is not None:
            if shipping_method not in SHIPPING_METHODS:
                raise ValidationError(f"Shipping method must be one of: {', '.join(SHIPPING_METHODS)}")
            order.shipping_method = shipping_method
        if tracking_number is not None:
            order.tracking_number = tracking_number.strip() or None
        if estimated_delivery is not None:
            order.estimated_delivery = estimated_delivery

        await self.db.commit()
        return await self.get_by_id(order_id)

    async def update_customer_info(self, order_id: UUID, customer_info: dict) -> Order:
        """Явное редактирование контактных данных покупателя в заказе."""
        order = await self.get_or_raise(order_id)

        columns = {
            "first_name": "customer_first_name",
            "last_name": "customer_last_name",
            "email": "customer_email",
            "phone_number": "customer_phone",
        }
        for key, column in columns.items():
            value = customer_info.get(key)
            if value is None:
                continue
            value = str(value).strip()
            if not value:
                raise ValidationError(f"customer_info.{key} cannot be empty")
            setattr(order, column, value.lower() if key == "email" else value)

        await self.db.commit()
        return await self.get_by_id(order_id)

    def apply_payment_summary(
        self,
        order: Order,
        payment_status: str,
        transaction_id: str | None = None,
        paid_at: datetime | None = None,
    ) -> None:
        """Синхронизировать сводку оплаты в заказе (без commit)."""
        if payment_status not in ORDER_PAYMENT_STATUSES:
            raise InvalidStatus(payment_status, ORDER_PAYMENT_STATUSES)
        order.payment_status = payment_status
        if transaction_id:
            order.payment_transaction_id = transaction_id
        if payment_status == "Paid" and order.paid_at is None:
            order.paid_at = paid_at or datetime.utcnow()

    async def delete_order(self, order_id: UUID) -> None:
        """
        Удалить заказ (административная операция).

        Вместе с заказом удаляются его платежи, а намерение settlement
        помечается voided, чтобы повторный callback не воссоздал заказ.
        """
        order = await self.get_or_raise(order_id)
        order_number = order.order_number

        await self.db.execute(
            update(SettlementIntent)
            .where(SettlementIntent.order_id == order_id)
            .values(status=INTENT_VOIDED, updated_at=datetime.utcnow())
        )
        await self.db.execute(delete(Payment).where(Payment.order_id == order_id))
        await self.db.execute(delete(OrderItem).where(OrderItem.order_id == order_id))
        await self.db.execute(delete(Order).where(Order.id == order_id))
        await self.db.commit()

        logger.info(f"Order {order_number} deleted together with its payments")
