"""Settlements API: очереди сверки оплат и возвратов (только для администратора)."""
import uuid
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.v1.orders import build_order_response
from storefront.api.v1.payments import build_payment_response
from storefront.core.dependencies import get_current_admin, get_gateway
from storefront.database import get_db
from storefront.services.gateway_client import PaymentGateway, from_minor_units
from storefront.services.refund_service import RefundService
from storefront.services.settlement_service import SettlementService

router = APIRouter()


class SettlementIntentResponse(BaseModel):
    id: uuid.UUID
    gateway_payment_id: str
    gateway_order_id: str
    status: str
    order_id: uuid.UUID | None
    payment_id: uuid.UUID | None
    attempts: int
    last_error: str | None
    created_at: str
    updated_at: str


@router.get("", response_model=List[SettlementIntentResponse])
async def list_settlements(
    status: str | None = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: dict = Depends(get_current_admin),
):
    """Список записей settlement, например ?status=failed."""
    intents = await SettlementService(db, gateway).list_intents(status=status, limit=limit)
    return [
        SettlementIntentResponse(
            id=intent.id,
            gateway_payment_id=intent.gateway_payment_id,
            gateway_order_id=intent.gateway_order_id,
            status=intent.status,
            order_id=intent.order_id,
            payment_id=intent.payment_id,
            attempts=intent.attempts,
            last_error=intent.last_error,
            created_at=intent.created_at.isoformat(),
            updated_at=intent.updated_at.isoformat(),
        )
        for intent in intents
    ]


@router.post("/{intent_id}/retry")
async def retry_settlement(
    intent_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: dict = Depends(get_current_admin),
):
    """Повторить проведение оплаты вручную."""
    result = await SettlementService(db, gateway).retry_intent(intent_id)
    return {
        "success": True,
        "data": {
            "order": build_order_response(result.order).model_dump(mode="json"),
            "payment": build_payment_response(result.payment).model_dump(mode="json"),
        },
    }


class RefundIntentResponse(BaseModel):
    id: uuid.UUID
    gateway_refund_id: str
    gateway_payment_id: str
    amount: float
    currency: str
    gateway_status: str
    reason: str
    status: str
    attempts: int
    last_error: str | None
    created_at: str
    updated_at: str


@router.get("/refunds", response_model=List[RefundIntentResponse])
async def list_queued_refunds(
    status: str | None = None,
    limit: int = 100,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: dict = Depends(get_current_admin),
):
    """Возвраты, которые шлюз выполнил, а запись в платёж не удалась."""
    intents = await RefundService(db, gateway).list_queued(status=status, limit=limit)
    return [
        RefundIntentResponse(
            id=intent.id,
            gateway_refund_id=intent.gateway_refund_id,
            gateway_payment_id=intent.gateway_payment_id,
            amount=float(from_minor_units(intent.amount_minor, intent.currency)),
            currency=intent.currency,
            gateway_status=intent.gateway_status,
            reason=intent.reason,
            status=intent.status,
            attempts=intent.attempts,
            last_error=intent.last_error,
            created_at=intent.created_at.isoformat(),
            updated_at=intent.updated_at.isoformat(),
        )
        for intent in intents
    ]


@router.post("/refunds/{intent_id}/retry")
async def retry_queued_refund(
    intent_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: dict = Depends(get_current_admin),
):
    """Применить возврат из очереди вручную."""
    payment = await RefundService(db, gateway).apply_queued(intent_id)
    return {
        "success": True,
        "data": {"payment": build_payment_response(payment).model_dump(mode="json")},
    }
