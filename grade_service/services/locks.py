# 按键加锁：串行化同一平均分键的“计算+写入”
import os
import threading
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, Optional

import redis

from ..errors import CalculationError

logger = logging.getLogger(__name__)


class LockManager(ABC):
    """按键互斥锁接口（读路径不加锁）"""

    @abstractmethod
    @contextmanager
    def acquire(self, key: Hashable) -> Iterator[None]:
        pass


class _RefCountedLock:
    __slots__ = ("lock", "holders")

    def __init__(self):
        self.lock = threading.Lock()
        self.holders = 0


class KeyedLockManager(LockManager):
    """进程内按键锁，无人持有的键自动回收"""

    def __init__(self, timeout: Optional[float] = 30.0):
        self.timeout = timeout
        self._locks: Dict[Hashable, _RefCountedLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def acquire(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = _RefCountedLock()
                self._locks[key] = entry
            entry.holders += 1

        acquired = False
        try:
            acquired = entry.lock.acquire(timeout=self.timeout if self.timeout is not None else -1)
            if not acquired:
                raise CalculationError(f"获取计算锁超时: {key}", details={"lockKey": str(key)})
            yield
        finally:
            if acquired:
                entry.lock.release()
            with self._guard:
                entry.holders -= 1
                if entry.holders == 0:
                    self._locks.pop(key, None)

    def active_keys(self) -> int:
        with self._guard:
            return len(self._locks)


class RedisKeyedLockManager(LockManager):
    """基于Redis的分布式按键锁（多进程部署）"""

    def __init__(self, redis_client: redis.Redis, timeout: float = 30.0,
                 blocking_timeout: float = 10.0, prefix: str = "grade-service:lock"):
        self.redis = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix

    def _lock_name(self, key: Hashable) -> str:
        parts = key if isinstance(key, tuple) else (key,)
        return self.prefix + ":" + ":".join("-" if part is None else str(part) for part in parts)

    @contextmanager
    def acquire(self, key: Hashable) -> Iterator[None]:
        lock = self.redis.lock(
            self._lock_name(key),
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        if not lock.acquire():
            raise CalculationError(f"获取计算锁超时: {key}", details={"lockKey": str(key)})
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError as e:
                # 锁已过期被其他进程获取
                logger.warning(f"Lock {self._lock_name(key)} expired before release: {str(e)}")


def create_lock_manager(redis_client: Optional[redis.Redis] = None) -> LockManager:
    """LOCK_BACKEND=redis 且Redis可用时使用分布式锁，否则使用进程内锁"""
    if redis_client is not None and os.getenv("LOCK_BACKEND", "local").lower() == "redis":
        logger.info("Using Redis keyed lock manager")
        return RedisKeyedLockManager(redis_client)
    return KeyedLockManager()
