"""Модель очереди возвратов, проведённых шлюзом, но не записанных в платёж."""
import uuid
from datetime import datetime

from sqlalchemy import String, Text, Integer, BigInteger
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database import Base

REFUND_INTENT_PENDING = "pending"
REFUND_INTENT_COMPLETED = "completed"
REFUND_INTENT_STATUSES = (REFUND_INTENT_PENDING, REFUND_INTENT_COMPLETED)


class RefundIntent(Base):
    """
    Возврат, который шлюз уже выполнил, а запись в платёж не удалась.

    Деньги клиенту ушли, поэтому запись хранит всё, что вернул шлюз, и
    задача сверки применяет её к платежу позже.
    """

    __tablename__ = "refund_intents"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    gateway_refund_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    gateway_payment_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    amount_minor: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    gateway_status: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=REFUND_INTENT_PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)
