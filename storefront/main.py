"""Главный файл приложения."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from storefront.config import settings
from storefront.api.v1 import router as api_v1_router
from storefront.core.dependencies import get_gateway
from storefront.core.errors import StorefrontError, storefront_error_handler
from storefront.core.locks import settlement_locks
from storefront.database import AsyncSessionLocal
from storefront.services.refund_service import RefundService
from storefront.services.settlement_service import SettlementService

# Настройка логирования
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Глобальный планировщик задач
scheduler = AsyncIOScheduler()


async def reconcile_settlements():
    """Периодическая задача: дозавершить оплаты без заказа и незаписанные возвраты."""
    try:
        async with AsyncSessionLocal() as db:
            gateway = get_gateway()
            report = await SettlementService(db, gateway).reconcile()
            if report.failed:
                logger.warning(f"Reconciliation left {report.failed} settlement(s) unresolved")
            report = await RefundService(db, gateway).reconcile()
            if report.failed:
                logger.warning(f"Reconciliation left {report.failed} refund(s) unapplied")
    except Exception as e:
        logger.error(f"Ошибка при сверке оплат: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения."""
    # Startup
    await settlement_locks.connect(settings.redis_url)

    scheduler.add_job(
        reconcile_settlements,
        trigger=IntervalTrigger(minutes=settings.reconciliation_interval_minutes),
        id="reconcile_settlements",
        name="Сверка оплат",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        f"Планировщик задач запущен. Сверка оплат каждые {settings.reconciliation_interval_minutes} мин"
    )

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await settlement_locks.disconnect()


app = FastAPI(
    title="Rental Storefront API",
    description="Backend API магазина аренды: заказы, платежи и оплата через Razorpay",
    version="1.0.0",
    lifespan=lifespan,
)

# В development разрешаем все origins
if settings.is_development:
    cors_origins = ["*"]
    # Нельзя использовать allow_credentials=True с allow_origins=["*"]
    allow_creds = False
else:
    cors_origins = list(set(settings.cors_origins))
    allow_creds = True

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_creds,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

app.add_exception_handler(StorefrontError, storefront_error_handler)

# Подключаем роутеры
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/")
async def root():
    """Корневой endpoint."""
    return {
        "message": "Rental Storefront API",
        "version": "1.0.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "gateway_mode": settings.gateway_mode,
        "locks": "redis" if settlement_locks.is_distributed else "local",
    }
