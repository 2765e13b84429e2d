"""API v1 роутеры."""
from fastapi import APIRouter

from storefront.api.v1 import orders, payments, razorpay, settlements

router = APIRouter()

# Подключаем все роутеры
router.include_router(razorpay.router, prefix="/razorpay", tags=["razorpay"])
router.include_router(orders.router, prefix="/orders", tags=["orders"])
router.include_router(payments.router, prefix="/payments", tags=["payments"])
router.include_router(settlements.router, prefix="/settlements", tags=["settlements"])
