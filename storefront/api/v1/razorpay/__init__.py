"""Razorpay API: создание заказа в шлюзе, проверка оплаты, возвраты."""
import logging
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.api.v1.orders import build_order_response
from storefront.api.v1.payments import build_payment_response
from storefront.config import settings
from storefront.core.dependencies import get_current_admin, get_gateway
from storefront.core.errors import GatewayRejected, GatewayUnavailable, MissingField, NotFound, ValidationError
from storefront.database import get_db
from storefront.services.gateway_client import PaymentGateway, to_minor_units
from storefront.services.payment_service import PaymentService
from storefront.services.refund_service import RefundService
from storefront.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateGatewayOrderRequest(BaseModel):
    """Запрос на создание заказа в Razorpay."""

    amount: float
    currency: str | None = None
    receipt: str | None = None
    notes: dict | None = None


class VerifyPaymentRequest(BaseModel):
    """Callback клиента после оплаты в окне Razorpay."""

    model_config = ConfigDict(populate_by_name=True)

    razorpay_order_id: str | None = None
    razorpay_payment_id: str | None = None
    razorpay_signature: str | None = None
    order_data: dict | None = Field(default=None, alias="orderData")


class RefundRequest(BaseModel):
    payment_id: str | None = None
    amount: float | None = None
    notes: dict | None = None


@router.post("/create-order")
async def create_gateway_order(
    request: CreateGatewayOrderRequest,
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Создать заказ (intent) в Razorpay на сумму корзины."""
    if request.amount <= 0:
        raise ValidationError("Amount must be greater than 0")
    if not request.receipt:
        raise MissingField("receipt")

    currency = (request.currency or settings.default_currency).upper()
    intent = await gateway.create_intent(
        amount_minor=to_minor_units(Decimal(str(request.amount)), currency),
        currency=currency,
        receipt=request.receipt,
        notes=request.notes,
    )

    return {
        "success": True,
        "message": "Razorpay order created successfully",
        "data": {
            "id": intent.id,
            "amount": intent.amount,
            "currency": intent.currency,
            "receipt": intent.receipt,
            "status": intent.status,
            "created_at": intent.created_at.isoformat() if intent.created_at else None,
        },
    }


@router.post("/verify-payment")
async def verify_payment(
    request: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Проверить подпись и провести оплату: создать заказ и платёж.

    Повторная отправка того же callback возвращает тот же заказ.
    """
    service = SettlementService(db, gateway)
    result = await service.settle(
        gateway_order_id=request.razorpay_order_id,
        gateway_payment_id=request.razorpay_payment_id,
        signature=request.razorpay_signature,
        order_draft=request.order_data,
    )

    payment = result.payment
    return {
        "success": True,
        "message": "Payment verified and order created successfully",
        "data": {
            "order": build_order_response(result.order).model_dump(mode="json"),
            "payment": build_payment_response(payment).model_dump(mode="json"),
            "razorpay_order_id": request.razorpay_order_id,
            "razorpay_payment_id": request.razorpay_payment_id,
            "amount": float(payment.total_amount),
            "currency": payment.currency,
            "status": payment.status,
        },
    }


@router.get("/payment/{gateway_payment_id}")
async def get_gateway_payment(
    gateway_payment_id: str,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Платёж из Razorpay, при недоступности шлюза - из нашей БД."""
    try:
        gateway_payment = await gateway.fetch_payment(gateway_payment_id)
    except (GatewayUnavailable, GatewayRejected, NotFound) as e:
        logger.warning(f"Gateway lookup for {gateway_payment_id} failed ({e.kind}), falling back to database")
        payment = await PaymentService(db).get_by_gateway_payment_id(gateway_payment_id)
        if not payment:
            raise NotFound(f"No payment found with ID: {gateway_payment_id}")
        return {
            "success": True,
            "source": "database",
            "data": build_payment_response(payment).model_dump(mode="json"),
        }

    return {
        "success": True,
        "source": "gateway",
        "data": {
            "razorpay_payment": gateway_payment.raw,
            "amount": float(gateway_payment.amount),
            "currency": gateway_payment.currency,
            "status": gateway_payment.status,
            "method": gateway_payment.method,
            "created_at": gateway_payment.raw.get("created_at"),
        },
    }


@router.post("/refund")
async def refund_payment(
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    admin: dict = Depends(get_current_admin),
):
    """Полный или частичный возврат (только для администратора)."""
    reason = (request.notes or {}).get("reason")
    result = await RefundService(db, gateway).refund(
        request.payment_id,
        amount=request.amount,
        reason=reason,
    )

    return {
        "success": True,
        "message": "Refund processed successfully",
        "data": {
            "refund_id": result.refund.id,
            "amount": float(result.refund.amount),
            "status": result.refund.status,
            "created_at": result.refund.created_at.isoformat() if result.refund.created_at else None,
            "payment": build_payment_response(result.payment).model_dump(mode="json"),
        },
    }


@router.get("/config")
async def get_checkout_config():
    """Публичные настройки окна оплаты (без секретного ключа)."""
    return {
        "success": True,
        "data": {
            "key_id": settings.razorpay_key_id,
            "currency": settings.default_currency,
            "name": settings.checkout_name,
            "description": settings.checkout_description,
            "image": settings.checkout_logo,
            "mode": settings.gateway_mode,
        },
    }
