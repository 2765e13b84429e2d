"""Блокировки по ключу (например, по ID платежа в шлюзе)."""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import LockError, RedisError

from storefront.config import settings
from storefront.core.errors import ResourceBusy

logger = logging.getLogger(__name__)


class KeyedLocks:
    """
    Взаимное исключение по строковому ключу.

    Если настроен Redis, используется redis-lock (работает между процессами).
    Иначе - asyncio.Lock на ключ в пределах одного процесса. Уникальные
    индексы в БД остаются последней линией защиты в обоих режимах.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout
        self._redis: Optional[redis.Redis] = None
        self._local: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @property
    def is_distributed(self) -> bool:
        return self._redis is not None

    async def connect(self, redis_url: str):
        """Подключение к Redis."""
        if not redis_url or self._redis:
            return
        try:
            self._redis = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
            await self._redis.ping()
            logger.info("Distributed locks enabled (redis)")
        except (RedisError, OSError) as e:
            # Без Redis работаем на локальных блокировках, дубликаты отсекает БД
            logger.warning(f"Redis unavailable, falling back to in-process locks: {e}")
            self._redis = None

    async def disconnect(self):
        """Отключение от Redis."""
        if self._redis:
            await self._redis.close()
            self._redis = None

    @asynccontextmanager
    async def acquire(self, key: str):
        """Захватить блокировку по ключу на время блока ``async with``."""
        if self._redis is not None:
            async with self._acquire_redis(key):
                yield
            return

        lock = self._local.get(key)
        if lock is None:
            lock = self._local[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise ResourceBusy(f"Resource '{key}' is busy, retry later")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if not self._waiters[key]:
                del self._waiters[key]
                self._local.pop(key, None)

    @asynccontextmanager
    async def _acquire_redis(self, key: str):
        lock = self._redis.lock(f"lock:{key}", timeout=self.timeout, blocking_timeout=self.timeout)
        acquired = await lock.acquire()
        if not acquired:
            raise ResourceBusy(f"Resource '{key}' is busy, retry later")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Блокировка истекла по timeout раньше, чем закончилась работа
                logger.warning(f"Lock '{key}' expired before release: {e}")


# Глобальный экземпляр
settlement_locks = KeyedLocks(timeout=settings.lock_timeout_seconds)
