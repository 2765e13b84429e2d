"""Модели базы данных."""
from storefront.models.order import Order, OrderItem
from storefront.models.payment import Payment
from storefront.models.settlement import SettlementIntent
from storefront.models.refund import RefundIntent
from storefront.models.sequence import NumberSequence

__all__ = [
    "Order",
    "OrderItem",
    "Payment",
    "SettlementIntent",
    "RefundIntent",
    "NumberSequence",
]
