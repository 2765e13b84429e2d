"""Счётчики для человекочитаемых номеров."""
from sqlalchemy import String, BigInteger
from sqlalchemy.orm import Mapped, mapped_column

from storefront.database import Base


class NumberSequence(Base):
    """Последний выданный номер для каждого вида документов (order, payment)."""

    __tablename__ = "number_sequences"

    name: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
