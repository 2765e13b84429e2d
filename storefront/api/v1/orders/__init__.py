"""Orders API."""
import uuid
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.dependencies import get_current_admin
from storefront.database import get_db
from storefront.models.order import Order
from storefront.schemas import CustomerInfo, PostalAddress, PricingBreakdown
from storefront.services.order_service import OrderService

router = APIRouter()


class OrderItemRequest(BaseModel):
    """Элемент заказа в запросе."""

    product_id: str
    product_name: str | None = None
    quantity: int = 1
    unit_price: float


class CreateOrderRequest(BaseModel):
    """Запрос на создание заказа."""

    customer_info: CustomerInfo
    shipping_address: PostalAddress
    billing_address: PostalAddress | None = None
    items: List[OrderItemRequest]
    pricing: PricingBreakdown
    payment_method: str  # CreditCard / DebitCard / PayPal / BankTransfer / CashOnDelivery / Gateway
    currency: str = "INR"
    notes: str | None = Field(default=None, max_length=500)


class UpdateOrderStatusRequest(BaseModel):
    status: str


class UpdateShippingRequest(BaseModel):
    shipping_method: str | None = None
    tracking_number: str | None = None
    estimated_delivery: datetime | None = None


class UpdateCustomerRequest(BaseModel):
    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None
    phone_number: str | None = None


class OrderItemResponse(BaseModel):
    """Элемент заказа в ответе."""

    id: uuid.UUID
    product_id: str
    product_name: str
    quantity: int
    unit_price: float
    total_price: float


class OrderPricingResponse(BaseModel):
    subtotal: float
    tax: float
    shipping: float
    discount: float
    total: float


class OrderResponse(BaseModel):
    """Ответ с информацией о заказе."""

    id: uuid.UUID
    order_number: str
    customer_info: dict
    shipping_address: dict
    billing_address: dict
    items: List[OrderItemResponse]
    pricing: OrderPricingResponse
    currency: str
    payment_method: str
    payment_status: str
    payment_transaction_id: str | None
    paid_at: str | None
    status: str
    shipping_method: str | None
    tracking_number: str | None
    estimated_delivery: str | None
    shipped_at: str | None
    delivered_at: str | None
    notes: str | None
    created_at: str
    updated_at: str
    payment: dict | None = None


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def build_order_response(order: Order, payment: dict | None = None) -> OrderResponse:
    """Преобразовать заказ в ответ API."""
    return OrderResponse(
        id=order.id,
        order_number=order.order_number,
        customer_info={
            "first_name": order.customer_first_name,
            "last_name": order.customer_last_name,
            "email": order.customer_email,
            "phone_number": order.customer_phone,
        },
        shipping_address=order.shipping_address,
        billing_address=order.billing_address,
        items=[
            OrderItemResponse(
                id=item.id,
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=float(item.unit_price),
                total_price=float(item.total_price),
            )
            for item in order.items
        ],
        pricing=OrderPricingResponse(
            subtotal=float(order.subtotal_amount),
            tax=float(order.tax_amount),
            shipping=float(order.shipping_amount),
            discount=float(order.discount_amount),
            total=float(order.total_amount),
        ),
        currency=order.currency,
        payment_method=order.payment_method,
        payment_status=order.payment_status,
        payment_transaction_id=order.payment_transaction_id,
        paid_at=_isoformat(order.paid_at),
        status=order.status,
        shipping_method=order.shipping_method,
        tracking_number=order.tracking_number,
        estimated_delivery=_isoformat(order.estimated_delivery),
        shipped_at=_isoformat(order.shipped_at),
        delivered_at=_isoformat(order.delivered_at),
        notes=order.notes,
        created_at=order.created_at.isoformat(),
        updated_at=order.updated_at.isoformat(),
        payment=payment,
    )


@router.post("", response_model=OrderResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Создать заказ.

    Итоговая сумма должна быть больше нуля и совпадать с
    subtotal + tax + shipping - discount.
    """
    service = OrderService(db)
    order = await service.create_order(
        customer_info=request.customer_info.model_dump(),
        shipping_address=request.shipping_address.model_dump(),
        billing_address=request.billing_address.model_dump() if request.billing_address else None,
        items=[item.model_dump() for item in request.items],
        pricing=request.pricing.model_dump(),
        payment_method=request.payment_method,
        currency=request.currency,
        notes=request.notes,
    )
    return build_order_response(order)


@router.get("/customer/{email}", response_model=List[OrderResponse])
async def get_customer_orders(
    email: str,
    db: AsyncSession = Depends(get_db),
):
    """Получить заказы покупателя по email."""
    service = OrderService(db)
    orders = await service.get_by_customer_email(email)
    return [build_order_response(order) for order in orders]


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Получить заказ вместе с его платежом."""
    from storefront.api.v1.payments import build_payment_response
    from storefront.services.payment_service import PaymentService

    order = await OrderService(db).get_or_raise(order_id)
    payment = await PaymentService(db).get_by_order_id(order.id)

    return build_order_response(
        order,
        payment=build_payment_response(payment).model_dump(mode="json") if payment else None,
    )


@router.put("/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: uuid.UUID,
    request: UpdateOrderStatusRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Обновить статус заказа (только для администратора)."""
    order = await OrderService(db).update_status(order_id, request.status)
    return build_order_response(order)


@router.put("/{order_id}/shipping", response_model=OrderResponse)
async def update_order_shipping(
    order_id: uuid.UUID,
    request: UpdateShippingRequest,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Обновить данные доставки (только для администратора)."""
    order = await OrderService(db).update_shipping(
        order_id,
        shipping_method=request.shipping_method,
        tracking_number=request.tracking_number,
        estimated_delivery=request.estimated_delivery,
    )
    return build_order_response(order)


@router.put("/{order_id}/customer", response_model=OrderResponse)
async def update_order_customer(
    order_id: uuid.UUID,
    request: UpdateCustomerRequest,
    db: AsyncSession = Depends(get_db),
):
    """Изменить контактные данные покупателя в заказе."""
    order = await OrderService(db).update_customer_info(order_id, request.model_dump(exclude_none=True))
    return build_order_response(order)


@router.delete("/{order_id}")
async def delete_order(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: dict = Depends(get_current_admin),
):
    """Удалить заказ вместе с платежами (только для администратора)."""
    await OrderService(db).delete_order(order_id)
    return {"success": True, "message": "Order deleted successfully"}
