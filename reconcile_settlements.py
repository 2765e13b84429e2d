"""Скрипт для ручного запуска сверки оплат."""
import argparse
import asyncio
import logging

from storefront.config import settings
from storefront.core.dependencies import get_gateway
from storefront.core.locks import settlement_locks
from storefront.database import AsyncSessionLocal
from storefront.services.refund_service import RefundService
from storefront.services.settlement_service import SettlementService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main(min_age_minutes: int, limit: int):
    """Дозавершить зависшие оплаты и применить незаписанные возвраты."""
    await settlement_locks.connect(settings.redis_url)
    try:
        async with AsyncSessionLocal() as db:
            gateway = get_gateway()
            report = await SettlementService(db, gateway).reconcile(min_age_minutes=min_age_minutes, limit=limit)
            logger.info(
                f"Оплаты: проверено {report.checked}, проведено {report.completed}, с ошибкой {report.failed}"
            )
            report = await RefundService(db, gateway).reconcile(limit=limit)
            logger.info(
                f"Возвраты: проверено {report.checked}, применено {report.completed}, с ошибкой {report.failed}"
            )
    except Exception as e:
        logger.error(f"Ошибка при сверке оплат: {e}", exc_info=True)
        raise
    finally:
        await settlement_locks.disconnect()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Сверка оплат Razorpay с заказами")
    parser.add_argument("--min-age", type=int, default=settings.reconciliation_min_age_minutes)
    parser.add_argument("--limit", type=int, default=settings.reconciliation_batch_size)
    args = parser.parse_args()
    asyncio.run(main(args.min_age, args.limit))
