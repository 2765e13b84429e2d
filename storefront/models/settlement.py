"""Модель намерения проведения платежа (write-ahead запись и очередь сверки)."""
import uuid
from datetime import datetime

from sqlalchemy import String, Text, Integer, JSON
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database import Base

INTENT_PENDING = "pending"
INTENT_COMPLETED = "completed"
INTENT_FAILED = "failed"
INTENT_VOIDED = "voided"
INTENT_STATUSES = (INTENT_PENDING, INTENT_COMPLETED, INTENT_FAILED, INTENT_VOIDED)


class SettlementIntent(Base):
    """
    Подтверждённый шлюзом платёж, ожидающий (или уже получивший) заказ и платёж в БД.

    Запись создаётся до записи Order/Payment и помечается completed в той же
    транзакции. Записи в статусах pending/failed дозавершает задача сверки.
    """

    __tablename__ = "settlement_intents"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    gateway_payment_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    gateway_order_id: Mapped[str] = mapped_column(String, nullable=False)
    signature: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default=INTENT_PENDING, index=True)
    order_draft: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    gateway_payment: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    order_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    payment_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, onupdate=datetime.utcnow)
