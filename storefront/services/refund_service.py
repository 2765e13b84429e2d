"""Возвраты по платежам шлюза."""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import settings
from storefront.core.errors import (
    GatewayUnavailable,
    InvalidStatus,
    InvalidTransition,
    MissingField,
    NotFound,
    PersistenceFailure,
    StorefrontError,
    ValidationError,
)
from storefront.core.locks import KeyedLocks, settlement_locks
from storefront.models.payment import REFUNDABLE_STATUSES, Payment
from storefront.models.refund import (
    REFUND_INTENT_COMPLETED,
    REFUND_INTENT_PENDING,
    REFUND_INTENT_STATUSES,
    RefundIntent,
)
from storefront.services.gateway_client import GatewayRefund, PaymentGateway, to_minor_units
from storefront.services.order_service import to_money
from storefront.services.payment_service import PaymentService
from storefront.services.settlement_service import ReconciliationReport

logger = logging.getLogger(__name__)

DEFAULT_REFUND_REASON = "Customer request"


@dataclass
class RefundResult:
    refund: GatewayRefund
    payment: Payment


class RefundService:
    """Сервис возвратов."""

    def __init__(
        self,
        db: AsyncSession,
        gateway: PaymentGateway,
        locks: KeyedLocks = settlement_locks,
        timeout: float | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.locks = locks
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds

    async def refund(
        self,
        gateway_payment_id: str,
        amount: Decimal | float | str | None = None,
        reason: str | None = None,
    ) -> RefundResult:
        """
        Вернуть деньги по платежу полностью или частично.

        Платёж в БД меняется только после подтверждения шлюза. При ошибке
        шлюза платёж остаётся как был, ошибка уходит вызывающему. Если шлюз
        вернул деньги, а запись в БД не удалась, возврат ставится в очередь
        refund_intents и применяется задачей сверки.
        """
        if not gateway_payment_id:
            raise MissingField("payment_id")

        amount_minor = None
        if amount is not None:
            amount = to_money(amount, "amount")
            if amount <= 0:
                raise ValidationError("Refund amount must be greater than 0")

        reason = reason or DEFAULT_REFUND_REASON
        payments = PaymentService(self.db)

        async with self.locks.acquire(f"refund:{gateway_payment_id}"):
            payment = await payments.get_by_gateway_payment_id(gateway_payment_id)
            if payment is None:
                raise NotFound(f"No payment found with gateway payment ID '{gateway_payment_id}'")
            if payment.status not in REFUNDABLE_STATUSES:
                raise InvalidTransition("Payment", payment.status, "Refunded")

            if amount is not None:
                remaining = payment.total_amount - (payment.amount_refunded or Decimal("0"))
                if amount > remaining:
                    raise ValidationError(f"Refund amount {amount} exceeds refundable balance {remaining}")
                amount_minor = to_minor_units(amount, payment.currency)

            try:
                gateway_refund = await asyncio.wait_for(
                    self.gateway.refund(gateway_payment_id, amount_minor, notes={"reason": reason}),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                logger.error(f"Gateway refund for payment {gateway_payment_id} timed out after {self.timeout}s")
                raise GatewayUnavailable("Payment gateway timed out")

            logger.info(
                f"Gateway refund {gateway_refund.id} for payment {gateway_payment_id}: "
                f"{gateway_refund.amount} {gateway_refund.currency}, status={gateway_refund.status}"
            )
            try:
                payment = await payments.record_refund(payment, gateway_refund, reason)
            except SQLAlchemyError as e:
                await self.db.rollback()
                logger.critical(
                    f"Refund {gateway_refund.id} for payment {gateway_payment_id} issued by gateway "
                    f"but not recorded: {e}. Queued for reconciliation"
                )
                await self._queue(gateway_payment_id, gateway_refund, reason, e)
                raise PersistenceFailure(
                    "Refund was issued but could not be saved. It will be applied automatically"
                ) from e

        return RefundResult(refund=gateway_refund, payment=payment)

    async def _queue(self, gateway_payment_id: str, gateway_refund: GatewayRefund, reason: str, error: Exception):
        """Сохранить возврат шлюза в очередь сверки."""
        self.db.add(
            RefundIntent(
                gateway_refund_id=gateway_refund.id,
                gateway_payment_id=gateway_payment_id,
                amount_minor=gateway_refund.amount_minor,
                currency=gateway_refund.currency,
                gateway_status=gateway_refund.status,
                reason=reason,
                status=REFUND_INTENT_PENDING,
                attempts=1,
                last_error=str(error)[:1000],
            )
        )
        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(
                f"Could not queue refund {gateway_refund.id} for payment {gateway_payment_id}: {e}. "
                f"Apply it manually: amount_minor={gateway_refund.amount_minor} {gateway_refund.currency}"
            )

    async def _get_intent(self, intent_id: UUID) -> RefundIntent | None:
        stmt = select(RefundIntent).where(RefundIntent.id == intent_id).execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def apply_queued(self, intent_id: UUID) -> Payment:
        """Применить к платежу возврат из очереди (одной транзакцией с закрытием записи)."""
        intent = await self._get_intent(intent_id)
        if intent is None:
            raise NotFound(f"No queued refund found with ID '{intent_id}'")

        gateway_payment_id = intent.gateway_payment_id
        payments = PaymentService(self.db)

        async with self.locks.acquire(f"refund:{gateway_payment_id}"):
            intent = await self._get_intent(intent_id)
            payment = await payments.get_by_gateway_payment_id(gateway_payment_id)
            if payment is None:
                raise NotFound(f"No payment found with gateway payment ID '{gateway_payment_id}'")
            if intent.status == REFUND_INTENT_COMPLETED:
                return payment

            gateway_refund = GatewayRefund(
                id=intent.gateway_refund_id,
                amount_minor=intent.amount_minor,
                currency=intent.currency,
                status=intent.gateway_status,
                created_at=None,
            )
            payment_id = payment.id
            try:
                if payment.refund_id != gateway_refund.id:
                    await payments.record_refund(payment, gateway_refund, intent.reason, commit=False)
                intent.status = REFUND_INTENT_COMPLETED
                intent.attempts += 1
                intent.last_error = None
                await self.db.commit()
            except SQLAlchemyError as e:
                await self.db.rollback()
                await self._mark_attempt(intent_id, e)
                raise PersistenceFailure(f"Queued refund {gateway_refund.id} could not be applied") from e

        logger.info(f"Queued refund {gateway_refund.id} applied to payment {gateway_payment_id}")
        return await payments.get_by_id(payment_id)

    async def _mark_attempt(self, intent_id: UUID, error: Exception):
        try:
            intent = await self._get_intent(intent_id)
            intent.attempts += 1
            intent.last_error = str(error)[:1000]
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.critical(f"Could not update queued refund {intent_id}: {e}")

    async def reconcile(self, limit: int | None = None) -> ReconciliationReport:
        """Применить все возвраты, ожидающие в очереди."""
        if limit is None:
            limit = settings.reconciliation_batch_size

        stmt = (
            select(RefundIntent.id)
            .where(RefundIntent.status == REFUND_INTENT_PENDING)
            .order_by(RefundIntent.created_at)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        intent_ids = list(result.scalars().all())

        report = ReconciliationReport(checked=len(intent_ids))
        for intent_id in intent_ids:
            try:
                await self.apply_queued(intent_id)
                report.completed += 1
            except StorefrontError as e:
                report.failed += 1
                logger.error(f"Reconciliation of queued refund {intent_id} failed: {e.message}")

        if intent_ids:
            logger.info(
                f"Refund reconciliation: checked={report.checked}, completed={report.completed}, "
                f"failed={report.failed}"
            )
        return report

    async def list_queued(self, status: str | None = None, limit: int = 100) -> list[RefundIntent]:
        """Очередь возвратов, по умолчанию все записи."""
        stmt = select(RefundIntent).order_by(RefundIntent.created_at.desc()).limit(limit)
        if status is not None:
            if status not in REFUND_INTENT_STATUSES:
                raise InvalidStatus(status, REFUND_INTENT_STATUSES)
            stmt = stmt.where(RefundIntent.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
