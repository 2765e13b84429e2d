"""Payments API."""
import uuid
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.dependencies import get_current_admin, get_optional_admin
from storefront.core.errors import NotFound
from storefront.database import get_db
from storefront.models.payment import Payment
from storefront.schemas import CustomerInfo
from storefront.services.payment_service import PaymentService

router = APIRouter()


class PaymentAmountRequest(BaseModel):
    subtotal: float
    tax: float = 0
    shipping: float = 0
    discount: float = 0
    total: float | None = None


class CreatePaymentRequest(BaseModel):
    """Запрос на создание платежа вручную."""

    order_id: uuid.UUID
    payment_method: dict  # {"type": "CreditCard", ...}
    amount: PaymentAmountRequest
    customer_info: CustomerInfo | None = None
    status: str = "Pending"
    transaction_id: str | None = None
    notes: str | None = Field(default=None, max_length=500)


class UpdatePaymentStatusRequest(BaseModel):
    status: str


class PaymentAmountResponse(BaseModel):
    subtotal: float
    tax: float
    shipping: float
    discount: float
    total: float


class RefundDetailsResponse(BaseModel):
    refund_id: str | None
    refund_amount: float | None
    refund_reason: str | None
    refund_status: str | None
    refunded_at: str | None
    amount_refunded: float


class PaymentResponse(BaseModel):
    """Ответ с информацией о платеже."""

    id: uuid.UUID
    payment_number: str
    order_id: uuid.UUID
    order_number: str
    customer_info: dict
    payment_method: dict
    gateway_payment_id: str | None
    amount: PaymentAmountResponse
    currency: str
    status: str
    transaction_id: str | None
    gateway_transaction_id: str | None
    gateway_name: str | None
    processing_fee: float
    refund_details: RefundDetailsResponse
    initiated_at: str | None
    processed_at: str | None
    completed_at: str | None
    failed_at: str | None
    notes: str | None
    created_at: str
    updated_at: str


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def build_payment_response(payment: Payment) -> PaymentResponse:
    """Преобразовать платёж в ответ API."""
    return PaymentResponse(
        id=payment.id,
        payment_number=payment.payment_number,
        order_id=payment.order_id,
        order_number=payment.order_number,
        customer_info={
            "first_name": payment.customer_first_name,
            "last_name": payment.customer_last_name,
            "email": payment.customer_email,
            "phone_number": payment.customer_phone,
        },
        payment_method={"type": payment.method_type, **(payment.method_details or {})},
        gateway_payment_id=payment.gateway_payment_id,
        amount=PaymentAmountResponse(
            subtotal=float(payment.subtotal_amount),
            tax=float(payment.tax_amount),
            shipping=float(payment.shipping_amount),
            discount=float(payment.discount_amount),
            total=float(payment.total_amount),
        ),
        currency=payment.currency,
        status=payment.status,
        transaction_id=payment.transaction_id,
        gateway_transaction_id=payment.gateway_transaction_id,
        gateway_name=payment.gateway_name,
        processing_fee=float(payment.processing_fee),
        refund_details=RefundDetailsResponse(
            refund_id=payment.refund_id,
            refund_amount=float(payment.refund_amount) if payment.refund_amount is not None else None,
            refund_reason=payment.refund_reason,
            refund_status=payment.refund_status,
            refunded_at=_isoformat(payment.refunded_at),
            amount_refunded=float(payment.amount_refunded),
        ),
        initiated_at=_isoformat(payment.initiated_at),
        processed_at=_isoformat(payment.processed_at),
        completed_at=_isoformat(payment.completed_at),
        failed_at=_isoformat(payment.failed_at),
        notes=payment.notes,
        created_at=payment.created_at.isoformat(),
        updated_at=payment.updated_at.isoformat(),
    )


@router.post("", response_model=PaymentResponse, status_code=201)
async def create_payment(
    request: CreatePaymentRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict | None = Depends(get_optional_admin),
):
    """
    Создать платёж по существующему заказу.

    Без токена администратора платёж создаётся только в статусе Pending:
    статус Completed сразу отмечает заказ оплаченным.
    """
    if request.status != "Pending" and admin is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required to create a payment with status other than Pending",
        )
    service = PaymentService(db)
    payment = await service.create_payment(
        request.order_id,
        payment_method=request.payment_method,
        amount=request.amount.model_dump(),
        customer_info=request.customer_info.model_dump() if request.customer_info else None,
        status=request.status,
        transaction_id=request.transaction_id,
        notes=request.notes,
    )
    return build_payment_response(payment)


@router.get("/order/{order_id}", response_model=PaymentResponse)
async def get_order_payment(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Получить платёж по ID заказа."""
    payment = await PaymentService(db).get_by_order_id(order_id)
    if not payment:
        raise NotFound(f"No payment found for order '{order_id}'")
    return build_payment_response(payment)


@router.get("/customer/{email}", response_model=List[PaymentResponse])
async def get_customer_payments(
    email: str,
    db: AsyncSession = Depends(get_db),
):
    """Получить платежи покупателя по email."""
    payments = await PaymentService(db).get_by_customer_email(email)
    return [build_payment_response(payment) for payment in payments]


@router.get("/{payment_id}", response_model=PaymentResponse)
async def get_payment(
    payment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Получить платёж по ID."""
    payment = await PaymentService(db).get_or_raise(payment_id)
    return build_payment_response(payment)


@router.put("/{payment_id}/status", response_model=PaymentResponse)
async def update_payment_status(
    payment_id: uuid.UUID,
    request: UpdatePaymentStatusRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Обновить статус платежа (только для администратора)."""
    payment = await PaymentService(db).update_status(payment_id, request.status)
    return build_payment_response(payment)
