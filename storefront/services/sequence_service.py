"""Сервис выдачи последовательных номеров заказов и платежей."""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.sequence import NumberSequence

ORDER_SEQUENCE = "order"
PAYMENT_SEQUENCE = "payment"

PREFIXES = {
    ORDER_SEQUENCE: "ORD",
    PAYMENT_SEQUENCE: "PAY",
}


class SequenceService:
    """Сервис выдачи номеров."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def next_value(self, name: str) -> int:
        """
        Следующее значение счётчика.

        Строка счётчика блокируется (FOR UPDATE) до конца текущей транзакции,
        поэтому номер не коммитится отдельно: при откате транзакции номер
        тоже откатывается.
        """
        stmt = select(NumberSequence).where(NumberSequence.name == name).with_for_update()
        result = await self.db.execute(stmt)
        sequence = result.scalar_one_or_none()

        if sequence is None:
            sequence = NumberSequence(name=name, last_value=0)
            self.db.add(sequence)

        sequence.last_value += 1
        await self.db.flush()
        return sequence.last_value

    async def next_number(self, name: str) -> str:
        """Номер вида ORD-000001."""
        value = await self.next_value(name)
        return f"{PREFIXES[name]}-{value:06d}"
