"""
Проведение оплаченных через шлюз заказов (settlement).

Порядок: подпись -> блокировка по ID платежа -> проверка на повтор ->
авторитетные данные из шлюза -> write-ahead запись SettlementIntent ->
Order + Payment одной транзакцией. Для каждого платежа шлюза в БД либо ровно
один заказ и один платёж, либо ничего (и запись в очереди сверки).
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.errors import (
    DuplicateSettlement,
    GatewayFetchFailed,
    GatewayRejected,
    GatewayUnavailable,
    InvalidSignature,
    InvalidStatus,
    MissingField,
    NotFound,
    PersistenceFailure,
    StorefrontError,
    ValidationError,
)
from storefront.core.locks import KeyedLocks, settlement_locks
from storefront.core.security import verify_payment_signature
from storefront.models.order import Order
from storefront.models.payment import Payment
from storefront.models.settlement import (
    INTENT_COMPLETED,
    INTENT_FAILED,
    INTENT_PENDING,
    INTENT_STATUSES,
    INTENT_VOIDED,
    SettlementIntent,
)
from storefront.schemas import OrderDraft
from storefront.services.gateway_client import GatewayPayment, PaymentGateway
from storefront.services.order_service import OrderService
from storefront.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

GUEST_CUSTOMER = {
    "first_name": "Guest",
    "last_name": "User",
    "email": "guest@example.com",
    "phone_number": "0000000000",
}
PLACEHOLDER_ADDRESS = {
    "street_address": "Address",
    "city": "City",
    "state": "State",
    "postal_code": "000000",
    "country": "India",
}


@dataclass
class SettlementResult:
    order: Order
    payment: Payment
    created: bool = True


@dataclass
class ReconciliationReport:
    checked: int = 0
    completed: int = 0
    failed: int = 0


def _with_defaults(values: dict | None, defaults: dict) -> dict:
    values = values or {}
    return {key: (str(values.get(key) or "").strip() or default) for key, default in defaults.items()}


def build_order_fields(draft: OrderDraft, gateway_payment: GatewayPayment) -> dict:
    """
    Поля заказа из черновика клиента.

    Черновик может быть почти пустым (guest checkout), недостающее
    заполняется заглушками. Сумму берём из pricing, затем total_price,
    затем из суммы позиций и в последнюю очередь из суммы платежа в шлюзе.
    """
    customer = _with_defaults(
        draft.customer_info.model_dump() if draft.customer_info else None, GUEST_CUSTOMER
    )
    shipping = _with_defaults(draft.address.model_dump() if draft.address else None, PLACEHOLDER_ADDRESS)
    billing = (
        _with_defaults(draft.billing_address.model_dump(), PLACEHOLDER_ADDRESS) if draft.billing_address else shipping
    )

    items = []
    for product in draft.products or []:
        items.append(
            {
                "product_id": product.id or "unknown",
                "product_name": product.name or "Item",
                "quantity": max(product.quantity or 1, 1),
                "unit_price": product.price or product.rental_price or Decimal("0"),
            }
        )
    items_total = sum((item["unit_price"] * item["quantity"] for item in items), Decimal("0"))

    pricing = draft.pricing
    if pricing is not None and pricing.total:
        total = pricing.total
        pricing_fields = {
            "subtotal": pricing.subtotal if pricing.subtotal is not None else total,
            "tax": pricing.tax or 0,
            "shipping": pricing.shipping or 0,
            "discount": pricing.discount or 0,
            "total": total,
        }
    else:
        total = next(
            (value for value in (draft.total_price, items_total, gateway_payment.amount) if value and value > 0),
            gateway_payment.amount,
        )
        pricing_fields = {"subtotal": total, "tax": 0, "shipping": 0, "discount": 0, "total": total}

    if not items:
        # Заказ без позиций не создать, а деньги уже списаны
        items.append({"product_id": "unknown", "product_name": "Item", "quantity": 1, "unit_price": total})

    return {
        "customer_info": customer,
        "shipping_address": shipping,
        "billing_address": billing,
        "items": items,
        "pricing": pricing_fields,
        "notes": draft.notes,
    }


def build_gateway_method(gateway_order_id: str, signature: str | None, gateway_payment: GatewayPayment) -> dict:
    """Способ оплаты Gateway с деталями, которые сообщил шлюз."""
    return {
        "type": "Gateway",
        "gateway_order_id": gateway_order_id,
        "gateway_payment_id": gateway_payment.id,
        "signature": signature,
        "method": gateway_payment.method,
        "bank": gateway_payment.bank,
        "wallet": gateway_payment.wallet,
        "vpa": gateway_payment.vpa,
    }


class SettlementService:
    """Сервис проведения платежей шлюза в заказы и платежи."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        locks: KeyedLocks = settlement_locks,
        timeout: float | None = None,
        secret: str | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.locks = locks
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.secret = secret if secret is not None else settings.razorpay_key_secret

    async def settle(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        order_draft: dict | None = None,
    ) -> SettlementResult:
        """
        Провести подтверждённый клиентом платёж.

        Повторный вызов с тем же gateway_payment_id возвращает уже созданные
        заказ и платёж без изменений.
        """
        missing = [
            name
            for name, value in (
                ("razorpay_order_id", gateway_order_id),
                ("razorpay_payment_id", gateway_payment_id),
                ("razorpay_signature", signature),
            )
            if not value
        ]
        if missing:
            raise MissingField(*missing)

        if not verify_payment_signature(gateway_order_id, gateway_payment_id, signature, self.secret):
            logger.warning(
                f"Invalid payment signature for payment {gateway_payment_id} "
                f"(order {gateway_order_id}): possible tampering"
            )
            raise InvalidSignature("Payment verification failed")

        draft = self._parse_draft(order_draft)

        async with self.locks.acquire(f"settlement:{gateway_payment_id}"):
            existing = await self._find_existing(gateway_payment_id)
            if existing:
                logger.info(f"Payment {gateway_payment_id} already settled, returning existing order")
                return existing

            intent = await self._get_intent(gateway_payment_id)
            if intent is not None and intent.status == INTENT_VOIDED:
                raise NotFound(f"Settlement for payment '{gateway_payment_id}' was voided")

            gateway_payment = await self._fetch_gateway_payment(gateway_payment_id)
            if gateway_payment.order_id and gateway_payment.order_id != gateway_order_id:
                logger.warning(
                    f"Gateway payment {gateway_payment_id} belongs to order {gateway_payment.order_id}, "
                    f"callback claims {gateway_order_id}"
                )
                raise InvalidSignature("Payment does not belong to this order")

            intent_id = await self._record_intent(
                gateway_order_id, gateway_payment_id, signature, draft, gateway_payment
            )
            return await self._complete_or_existing(intent_id, gateway_order_id, signature, draft, gateway_payment)

    def _parse_draft(self, order_draft: dict | None) -> OrderDraft:
        try:
            return OrderDraft.model_validate(order_draft or {})
        except PydanticValidationError as e:
            error = e.errors()[0]
            location = ".".join(str(part) for part in error.get("loc", ()))
            raise ValidationError(f"Invalid order data: {location}: {error.get('msg')}")

    async def _find_existing(self, gateway_payment_id: str) -> SettlementResult | None:
        payment = await PaymentService(self.db).get_by_gateway_payment_id(gateway_payment_id)
        if payment is None:
            return None
        order = await OrderService(self.db).get_by_id(payment.order_id)
        return SettlementResult(order=order, payment=payment, created=False)

    async def _get_intent(self, gateway_payment_id: str) -> SettlementIntent | None:
        stmt = (
            select(SettlementIntent)
            .where(SettlementIntent.gateway_payment_id == gateway_payment_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _get_intent_by_id(self, intent_id: UUID) -> SettlementIntent | None:
        stmt = (
            select(SettlementIntent)
            .where(SettlementIntent.id == intent_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def _fetch_gateway_payment(self, gateway_payment_id: str) -> GatewayPayment:
        """Авторитетные данные платежа из шлюза (с ограничением по времени)."""
        try:
            return await asyncio.wait_for(self.gateway.fetch_payment(gateway_payment_id), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"Gateway fetch for payment {gateway_payment_id} timed out after {self.timeout}s")
            raise GatewayFetchFailed("Payment gateway timed out", retryable=True)
        except (GatewayUnavailable, NotFound, GatewayRejected) as e:
            logger.error(f"Failed to fetch payment {gateway_payment_id} from gateway: {e.message}")
            raise GatewayFetchFailed(
                f"Failed to fetch payment details: {e.message}", retryable=e.retryable
            ) from e

    async def _record_intent(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
        draft: OrderDraft,
        gateway_payment: GatewayPayment,
    ) -> UUID:
        """Write-ahead: зафиксировать платёж до записи заказа."""
        fields = {
            "gateway_order_id": gateway_order_id,
            "signature": signature,
            "status": INTENT_PENDING,
            "order_draft": draft.model_dump(mode="json", exclude_none=True),
            "gateway_payment": gateway_payment.raw,
        }

        try:
            intent = await self._get_intent(gateway_payment_id)
            if intent is None:
                intent = SettlementIntent(gateway_payment_id=gateway_payment_id, **fields)
                self.db.add(intent)
                try:
                    await self.db.commit()
                    return intent.id
                except IntegrityError:
                    # Запись создал параллельный процесс
                    await self.db.rollback()
                    intent = await self._get_intent(gateway_payment_id)

            for key, value in fields.items():
                setattr(intent, key, value)
            await self.db.commit()
            return intent.id
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(
                f"Payment {gateway_payment_id} captured but settlement intent was not recorded: {e}"
            )
            raise PersistenceFailure("Payment was received but could not be recorded, please retry") from e

    async def _complete(
        self,
        intent_id: UUID,
        gateway_order_id: str,
        signature: str | None,
        draft: OrderDraft,
        gateway_payment: GatewayPayment,
    ) -> SettlementResult:
        """Записать заказ и платёж одной транзакцией и закрыть intent."""
        gateway_payment_id = gateway_payment.id
        try:
            order_fields = build_order_fields(draft, gateway_payment)
            captured = gateway_payment.captured
            now = datetime.utcnow()

            order = await OrderService(self.db).create_order(
                **order_fields,
                payment_method="Gateway",
                payment_status="Paid" if captured else "Pending",
                payment_transaction_id=gateway_payment_id,
                paid_at=now if captured else None,
                currency=gateway_payment.currency,
                enforce_pricing_identity=False,
                commit=False,
            )
            total = order.total_amount
            payment = await PaymentService(self.db).create_payment(
                order,
                payment_method=build_gateway_method(gateway_order_id, signature, gateway_payment),
                amount={"subtotal": total, "total": total},
                status="Completed" if captured else "Processing",
                currency=gateway_payment.currency,
                transaction_id=gateway_payment_id,
                gateway_transaction_id=gateway_payment_id,
                gateway_response=gateway_payment.raw,
                gateway_name=self.gateway.name,
                processing_fee=gateway_payment.fee,
                allow_gateway=True,
                commit=False,
            )

            intent = await self._get_intent_by_id(intent_id)
            intent.status = INTENT_COMPLETED
            intent.order_id = order.id
            intent.payment_id = payment.id
            intent.attempts += 1
            intent.last_error = None
            order_id, payment_id = order.id, payment.id
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            # Дубликатом считаем только уже записанный платёж, прочие нарушения
            # уникальности (например, гонка счётчиков номеров) - сбой записи
            if await self._find_existing(gateway_payment_id) is not None:
                raise DuplicateSettlement(f"Payment {gateway_payment_id} was settled concurrently")
            await self._fail_retryable(intent_id, gateway_payment_id, e)
        except SQLAlchemyError as e:
            await self.db.rollback()
            await self._fail_retryable(intent_id, gateway_payment_id, e)
        except StorefrontError as e:
            await self.db.rollback()
            await self._mark_failed(intent_id, e)
            logger.critical(
                f"Payment {gateway_payment_id} captured but order data was rejected: {e.message}. "
                f"Manual review required"
            )
            raise PersistenceFailure(
                "Payment was received but the order data was rejected. Support will contact you",
                retryable=False,
            ) from e

        logger.info(f"Payment {gateway_payment_id} settled: order {order.order_number}, payment {payment.payment_number}")
        return SettlementResult(
            order=await OrderService(self.db).get_by_id(order_id),
            payment=await PaymentService(self.db).get_by_id(payment_id),
        )

    async def _complete_or_existing(
        self,
        intent_id: UUID,
        gateway_order_id: str,
        signature: str | None,
        draft: OrderDraft,
        gateway_payment: GatewayPayment,
    ) -> SettlementResult:
        try:
            return await self._complete(intent_id, gateway_order_id, signature, draft, gateway_payment)
        except DuplicateSettlement as e:
            logger.info(f"{e.message}, returning existing order")
            return await self._resolve_duplicate(intent_id, gateway_payment.id)

    async def _resolve_duplicate(self, intent_id: UUID, gateway_payment_id: str) -> SettlementResult:
        """Нарушение уникальности значит, что платёж уже проведён."""
        existing = await self._find_existing(gateway_payment_id)
        if existing is None:
            raise PersistenceFailure(f"Duplicate settlement for payment '{gateway_payment_id}' but no payment found")

        intent = await self._get_intent_by_id(intent_id)
        if intent is not None and intent.status != INTENT_COMPLETED:
            intent.status = INTENT_COMPLETED
            intent.order_id = existing.order.id
            intent.payment_id = existing.payment.id
            await self.db.commit()
        return existing

    async def _fail_retryable(self, intent_id: UUID, gateway_payment_id: str, error: Exception):
        await self._mark_failed(intent_id, error)
        logger.critical(
            f"Payment {gateway_payment_id} captured but order was not recorded: {error}. "
            f"Queued for reconciliation"
        )
        raise PersistenceFailure(
            "Payment was received but the order could not be saved. It will be completed automatically"
        ) from error

    async def _mark_failed(self, intent_id: UUID, error: Exception):
        try:
            intent = await self._get_intent_by_id(intent_id)
            intent.status = INTENT_FAILED
            intent.attempts += 1
            intent.last_error = str(error)[:1000]
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(f"Could not mark settlement intent {intent_id} as failed: {e}")

    async def reconcile(self, min_age_minutes: int | None = None, limit: int | None = None) -> ReconciliationReport:
        """
        Дозавершить зависшие intent (pending/failed старше min_age_minutes).

        Pending свежее порога может принадлежать запросу, который ещё идёт.
        """
        if min_age_minutes is None:
            min_age_minutes = settings.reconciliation_min_age_minutes
        if limit is None:
            limit = settings.reconciliation_batch_size

        cutoff = datetime.utcnow() - timedelta(minutes=min_age_minutes)
        stmt = (
            select(SettlementIntent.id)
            .where(
                SettlementIntent.status.in_((INTENT_PENDING, INTENT_FAILED)),
                SettlementIntent.updated_at <= cutoff,
            )
            .order_by(SettlementIntent.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        intent_ids = list(result.scalars().all())

        report = ReconciliationReport(checked=len(intent_ids))
        for intent_id in intent_ids:
            try:
                await self.retry_intent(intent_id)
                report.completed += 1
            except StorefrontError as e:
                report.failed += 1
                logger.error(f"Reconciliation of intent {intent_id} failed: {e.message}")

        if intent_ids:
            logger.info(
                f"Reconciliation: checked={report.checked}, completed={report.completed}, failed={report.failed}"
            )
        return report

    async def retry_intent(self, intent_id: UUID) -> SettlementResult:
        """Повторить проведение одного intent (задача сверки или администратор)."""
        intent = await self._get_intent_by_id(intent_id)
        if intent is None:
            raise NotFound(f"No settlement intent found with ID '{intent_id}'")

        gateway_payment_id = intent.gateway_payment_id
        async with self.locks.acquire(f"settlement:{gateway_payment_id}"):
            intent = await self._get_intent_by_id(intent_id)
            if intent.status == INTENT_VOIDED:
                raise NotFound(f"Settlement for payment '{gateway_payment_id}' was voided")

            existing = await self._find_existing(gateway_payment_id)
            if existing:
                if intent.status != INTENT_COMPLETED:
                    intent.status = INTENT_COMPLETED
                    intent.order_id = existing.order.id
                    intent.payment_id = existing.payment.id
                    intent.last_error = None
                    await self.db.commit()
                    logger.info(f"Intent {intent_id} marked completed: payment already recorded")
                return existing

            gateway_order_id = intent.gateway_order_id
            signature = intent.signature
            draft = self._parse_draft(intent.order_draft)
            if intent.gateway_payment:
                gateway_payment = GatewayPayment.from_payload(intent.gateway_payment)
            else:
                gateway_payment = await self._fetch_gateway_payment(gateway_payment_id)
                intent.gateway_payment = gateway_payment.raw
                await self.db.commit()

            return await self._complete_or_existing(intent_id, gateway_order_id, signature, draft, gateway_payment)

    async def list_intents(self, status: str | None = None, limit: int = 100) -> list[SettlementIntent]:
        """Список intent, по умолчанию все; для разбора очереди - status=failed."""
        stmt = select(SettlementIntent).order_by(SettlementIntent.created_at.desc()).limit(limit)
        if status is not None:
            if status not in INTENT_STATUSES:
                raise InvalidStatus(status, INTENT_STATUSES)
            stmt = stmt.where(SettlementIntent.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
