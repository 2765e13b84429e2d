"""Модель платежа."""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import String, Text, Numeric, ForeignKey, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from storefront.database import Base

if TYPE_CHECKING:
    from storefront.models.order import Order

PAYMENT_STATUSES = (
    "Pending",
    "Processing",
    "Completed",
    "Failed",
    "Cancelled",
    "Refunded",
    "PartiallyRefunded",
)
PAYMENT_METHOD_TYPES = (
    "CreditCard",
    "DebitCard",
    "PayPal",
    "BankTransfer",
    "CashOnDelivery",
    "DigitalWallet",
    "Gateway",
)

# Переходы, доступные через обычное обновление статуса.
# Refunded / PartiallyRefunded выставляет только RefundService.
PAYMENT_TRANSITIONS = {
    "Pending": {"Processing", "Completed", "Failed", "Cancelled"},
    "Processing": {"Completed", "Failed", "Cancelled"},
    "Completed": {"Cancelled"},
    "Failed": {"Cancelled"},
    "PartiallyRefunded": {"Cancelled"},
    "Refunded": {"Cancelled"},
    "Cancelled": set(),
}
REFUNDABLE_STATUSES = ("Completed", "PartiallyRefunded")


class Payment(Base):
    """Модель платежа."""

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    payment_number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False, index=True)
    order_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("orders.id"), nullable=False, index=True)
    order_number: Mapped[str] = mapped_column(String(32), nullable=False)

    # Снимок данных клиента, не зависит от копии в заказе
    customer_first_name: Mapped[str] = mapped_column(String, nullable=False)
    customer_last_name: Mapped[str] = mapped_column(String, nullable=False)
    customer_email: Mapped[str] = mapped_column(String, nullable=False, index=True)
    customer_phone: Mapped[str] = mapped_column(String, nullable=False)

    method_type: Mapped[str] = mapped_column(String, nullable=False)  # см. PAYMENT_METHOD_TYPES
    method_details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    # Ключ идемпотентности settlement: один платёж шлюза - одна запись
    gateway_payment_id: Mapped[str | None] = mapped_column(String, unique=True, nullable=True)

    subtotal_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    shipping_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="INR")

    status: Mapped[str] = mapped_column(String, default="Pending")

    transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_transaction_id: Mapped[str | None] = mapped_column(String, nullable=True)
    gateway_response: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    gateway_name: Mapped[str | None] = mapped_column(String, nullable=True)
    processing_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    refund_id: Mapped[str | None] = mapped_column(String, nullable=True)
    refund_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    refund_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    refund_status: Mapped[str | None] = mapped_column(String, nullable=True)  # Pending / Processed / Failed
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)
    amount_refunded: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    initiated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    order: Mapped["Order"] = relationship("Order", back_populates="payments")
