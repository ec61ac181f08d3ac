# API依赖注入：数据库会话、共享的缓存/锁/事件分发器与服务实例
import logging
import threading
from typing import Optional

import redis
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from ..database.cache import CacheError, GradeCache, create_grade_cache, create_redis_client
from ..database.connection import get_db
from ..errors import GradeErrorCode, GradeServiceError
from ..services.calculation_service import CalculationService
from ..services.event_publisher import AsyncEventDispatcher, create_event_publisher
from ..services.grade_entry_service import GradeService
from ..services.locks import LockManager, create_lock_manager
from ..services.semester_config_service import SemesterConfigService

logger = logging.getLogger(__name__)

# 进程级共享资源（首次使用时初始化）
_init_lock = threading.Lock()
_redis_client: Optional[redis.Redis] = None
_grade_cache: Optional[GradeCache] = None
_dispatcher: Optional[AsyncEventDispatcher] = None
_lock_manager: Optional[LockManager] = None

ADMIN_ROLE = "ADMIN"


def _init_shared() -> None:
    global _redis_client, _grade_cache, _dispatcher, _lock_manager
    with _init_lock:
        if _grade_cache is not None:
            return
        try:
            _redis_client = create_redis_client()
        except CacheError as e:
            logger.warning(f"Redis unavailable, running without cache and broker: {str(e)}")
            _redis_client = None
        _grade_cache = create_grade_cache(_redis_client)
        _dispatcher = AsyncEventDispatcher(create_event_publisher(_redis_client))
        _lock_manager = create_lock_manager(_redis_client)


def get_grade_cache() -> GradeCache:
    _init_shared()
    return _grade_cache


def get_event_dispatcher() -> AsyncEventDispatcher:
    _init_shared()
    return _dispatcher


def get_lock_manager() -> LockManager:
    _init_shared()
    return _lock_manager


def shutdown_shared() -> None:
    """应用关闭时等待未完成的事件发布"""
    if _dispatcher is not None:
        _dispatcher.shutdown(wait=True)


def get_teacher_id(x_teacher_id: Optional[str] = Header(None, alias="X-Teacher-Id")) -> str:
    """教师身份由网关通过请求头传入"""
    if not x_teacher_id:
        raise GradeServiceError("缺少教师身份", code=GradeErrorCode.UNAUTHORIZED)
    return x_teacher_id


def require_admin(x_teacher_role: Optional[str] = Header(None, alias="X-Teacher-Role")) -> str:
    """默认配置只允许管理员维护，角色由网关通过请求头传入"""
    if not x_teacher_role:
        raise GradeServiceError("缺少角色信息", code=GradeErrorCode.UNAUTHORIZED)
    if x_teacher_role.strip().upper() != ADMIN_ROLE:
        raise GradeServiceError("需要管理员权限", code=GradeErrorCode.FORBIDDEN,
                                details={"role": x_teacher_role})
    return ADMIN_ROLE


def get_config_service(db: Session = Depends(get_db),
                       cache: GradeCache = Depends(get_grade_cache)) -> SemesterConfigService:
    return SemesterConfigService(db, cache)


def get_calculation_service(db: Session = Depends(get_db),
                            cache: GradeCache = Depends(get_grade_cache),
                            dispatcher: AsyncEventDispatcher = Depends(get_event_dispatcher),
                            lock_manager: LockManager = Depends(get_lock_manager)) -> CalculationService:
    return CalculationService(db, cache, dispatcher=dispatcher, lock_manager=lock_manager)


def get_grade_service(db: Session = Depends(get_db),
                      cache: GradeCache = Depends(get_grade_cache),
                      dispatcher: AsyncEventDispatcher = Depends(get_event_dispatcher),
                      lock_manager: LockManager = Depends(get_lock_manager)) -> GradeService:
    return GradeService(db, cache, dispatcher=dispatcher, lock_manager=lock_manager)
