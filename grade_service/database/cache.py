# 缓存层实现
import redis
import os
import json
import time
import fnmatch
import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional, Any, Dict, List, Tuple, Union

logger = logging.getLogger(__name__)

KEY_PREFIX = "grade-service"


class CacheError(Exception):
    """缓存相关异常"""
    pass


# 缓存键构建（纯函数，无共享状态）

def _semester_part(semester: Optional[int]) -> str:
    return "annual" if semester is None else str(semester)


def teacher_prefix(teacher_id: str) -> str:
    return f"{KEY_PREFIX}:teacher:{teacher_id}"


def class_prefix(teacher_id: str, class_id: str) -> str:
    return f"{teacher_prefix(teacher_id)}:class:{class_id}"


def student_average_key(teacher_id: str, student_id: str, class_id: str,
                        semester: Optional[int], academic_year: str) -> str:
    return (
        f"{class_prefix(teacher_id, class_id)}:student:{student_id}"
        f":semester:{_semester_part(semester)}:year:{academic_year}"
    )


def class_rankings_key(teacher_id: str, class_id: str,
                       semester: Optional[int], academic_year: str) -> str:
    return (
        f"{class_prefix(teacher_id, class_id)}:rankings"
        f":semester:{_semester_part(semester)}:year:{academic_year}"
    )


def subject_rankings_key(teacher_id: str, class_id: str, subject_id: str,
                         semester: Optional[int], academic_year: str) -> str:
    return (
        f"{class_prefix(teacher_id, class_id)}:subject:{subject_id}:rankings"
        f":semester:{_semester_part(semester)}:year:{academic_year}"
    )


def class_generation_key(class_id: str) -> str:
    # 不在 KEY_PREFIX 命名空间内，evict_all 不会重置代数
    return f"{KEY_PREFIX}-generation:class:{class_id}"


class CacheBackend(ABC):
    """缓存后端接口，调用方只依赖此接口"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        pass

    @abstractmethod
    def set(self, key: str, value: str, ttl: int) -> bool:
        pass

    @abstractmethod
    def delete(self, *keys: str) -> int:
        pass

    @abstractmethod
    def delete_pattern(self, pattern: str) -> int:
        pass

    @abstractmethod
    def count(self, pattern: str) -> int:
        pass

    @abstractmethod
    def incr(self, key: str) -> int:
        """计数器加一（不过期），返回新值"""
        pass

    @abstractmethod
    def get_counter(self, key: str) -> int:
        pass


class RedisCacheBackend(CacheBackend):
    """Redis缓存后端"""

    def __init__(self, redis_client: redis.Redis, scan_batch: int = 500):
        self.redis = redis_client
        self.scan_batch = scan_batch

    def get(self, key: str) -> Optional[str]:
        return self.redis.get(key)

    def set(self, key: str, value: str, ttl: int) -> bool:
        return bool(self.redis.setex(key, ttl, value))

    def delete(self, *keys: str) -> int:
        if keys:
            return self.redis.delete(*keys)
        return 0

    def delete_pattern(self, pattern: str) -> int:
        # SCAN 代替 KEYS，避免阻塞
        deleted = 0
        batch: List[str] = []
        for key in self.redis.scan_iter(match=pattern, count=self.scan_batch):
            batch.append(key)
            if len(batch) >= self.scan_batch:
                deleted += self.redis.delete(*batch)
                batch = []
        if batch:
            deleted += self.redis.delete(*batch)
        return deleted

    def count(self, pattern: str) -> int:
        return sum(1 for _ in self.redis.scan_iter(match=pattern, count=self.scan_batch))

    def incr(self, key: str) -> int:
        return int(self.redis.incr(key))

    def get_counter(self, key: str) -> int:
        value = self.redis.get(key)
        return int(value) if value is not None else 0


class InMemoryCacheBackend(CacheBackend):
    """进程内缓存后端（测试替身），支持TTL，线程安全"""

    def __init__(self):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._counters: Dict[str, int] = {}
        self._lock = threading.RLock()

    def _purge_expired(self) -> None:
        now = time.monotonic()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            self._purge_expired()
            entry = self._data.get(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl: int) -> bool:
        with self._lock:
            self._data[key] = (value, time.monotonic() + ttl)
            return True

    def delete(self, *keys: str) -> int:
        with self._lock:
            deleted = 0
            for key in keys:
                if self._data.pop(key, None) is not None:
                    deleted += 1
            return deleted

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [key for key in self._data if fnmatch.fnmatchcase(key, pattern)]
            return self.delete(*keys)

    def count(self, pattern: str) -> int:
        with self._lock:
            self._purge_expired()
            return sum(1 for key in self._data if fnmatch.fnmatchcase(key, pattern))

    def incr(self, key: str) -> int:
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + 1
            return self._counters[key]

    def get_counter(self, key: str) -> int:
        with self._lock:
            return self._counters.get(key, 0)

    def keys(self) -> List[str]:
        with self._lock:
            self._purge_expired()
            return sorted(self._data)


class GradeCache:
    """成绩缓存管理器

    读取失败一律按未命中处理，写入尽力而为，任何缓存异常都不向上抛出。
    backend 为 None 时缓存关闭（所有读取未命中）。
    """

    def __init__(self, backend: Optional[CacheBackend]):
        self.backend = backend
        self.ttl_config = {
            "student_average": 1800,    # 学生平均分缓存30分钟
            "rankings": 3600,           # 排名缓存60分钟
        }
        self._stats = {"hits": 0, "misses": 0, "errors": 0, "evictions": 0}
        self._stats_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.backend is not None

    def _count(self, stat: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[stat] += amount

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            cached_data = self.backend.get(key)
            if cached_data is None:
                self._count("misses")
                logger.debug(f"Cache miss: {key}")
                return None
            self._count("hits")
            logger.debug(f"Cache hit: {key}")
            return json.loads(cached_data)
        except Exception as e:
            self._count("errors")
            logger.warning(f"Cache get failed for {key}, treating as miss: {str(e)}")
            return None

    def put(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.enabled:
            return False
        try:
            payload = json.dumps(value, ensure_ascii=False, default=str)
            return self.backend.set(key, payload, ttl or self.ttl_config["student_average"])
        except Exception as e:
            self._count("errors")
            logger.warning(f"Cache put failed for {key}: {str(e)}")
            return False

    def evict(self, *keys: str) -> int:
        if not self.enabled or not keys:
            return 0
        try:
            deleted = self.backend.delete(*keys)
            self._count("evictions", deleted)
            return deleted
        except Exception as e:
            self._count("errors")
            logger.warning(f"Cache evict failed for {keys}: {str(e)}")
            return 0

    def evict_pattern(self, pattern: str) -> int:
        if not self.enabled:
            return 0
        try:
            deleted = self.backend.delete_pattern(pattern)
            self._count("evictions", deleted)
            logger.debug(f"Evicted {deleted} cache entries matching {pattern}")
            return deleted
        except Exception as e:
            self._count("errors")
            logger.warning(f"Cache pattern evict failed for {pattern}: {str(e)}")
            return 0

    # 班级代数：读路径在计算前记录，班级失效时加一

    def class_generation(self, class_id: str) -> Optional[int]:
        """班级缓存代数；缓存关闭或读取失败时为 None"""
        if not self.enabled:
            return None
        try:
            return self.backend.get_counter(class_generation_key(class_id))
        except Exception as e:
            self._count("errors")
            logger.warning(f"Cache generation read failed for class {class_id}: {str(e)}")
            return None

    def _bump_generation(self, class_id: str) -> None:
        try:
            self.backend.incr(class_generation_key(class_id))
        except Exception as e:
            self._count("errors")
            logger.warning(f"Cache generation bump failed for class {class_id}: {str(e)}")

    def _put_for_class(self, key: str, value: Any, ttl: int, class_id: str,
                       generation: Optional[int]) -> bool:
        """generation 不为 None 时，只有读取期间班级未失效才写入

        写入后再检查一次，写入与失效交错时删除刚写入的键。
        """
        if generation is None:
            return self.put(key, value, ttl)
        if self.class_generation(class_id) != generation:
            logger.debug(f"Skipped cache write for {key}, class {class_id} invalidated during read")
            return False
        if not self.put(key, value, ttl):
            return False
        if self.class_generation(class_id) != generation:
            self.evict(key)
            logger.debug(f"Dropped cache write for {key}, class {class_id} invalidated during write")
            return False
        return True

    # 业务读写

    def get_student_averages(self, teacher_id: str, student_id: str, class_id: str,
                             semester: Optional[int], academic_year: str) -> Optional[Any]:
        return self.get(student_average_key(teacher_id, student_id, class_id, semester, academic_year))

    def put_student_averages(self, teacher_id: str, student_id: str, class_id: str,
                             semester: Optional[int], academic_year: str, value: Any,
                             generation: Optional[int] = None) -> bool:
        key = student_average_key(teacher_id, student_id, class_id, semester, academic_year)
        return self._put_for_class(key, value, self.ttl_config["student_average"], class_id, generation)

    def get_class_rankings(self, teacher_id: str, class_id: str,
                           semester: Optional[int], academic_year: str) -> Optional[Any]:
        return self.get(class_rankings_key(teacher_id, class_id, semester, academic_year))

    def put_class_rankings(self, teacher_id: str, class_id: str, semester: Optional[int],
                           academic_year: str, value: Any, generation: Optional[int] = None) -> bool:
        key = class_rankings_key(teacher_id, class_id, semester, academic_year)
        return self._put_for_class(key, value, self.ttl_config["rankings"], class_id, generation)

    def get_subject_rankings(self, teacher_id: str, class_id: str, subject_id: str,
                             semester: Optional[int], academic_year: str) -> Optional[Any]:
        return self.get(subject_rankings_key(teacher_id, class_id, subject_id, semester, academic_year))

    def put_subject_rankings(self, teacher_id: str, class_id: str, subject_id: str,
                             semester: Optional[int], academic_year: str, value: Any,
                             generation: Optional[int] = None) -> bool:
        key = subject_rankings_key(teacher_id, class_id, subject_id, semester, academic_year)
        return self._put_for_class(key, value, self.ttl_config["rankings"], class_id, generation)

    # 失效策略

    def on_grade_modified(self, teacher_id: str, student_id: str, class_id: str,
                          semester: int, academic_year: str) -> int:
        """成绩变更后的缓存失效

        学生本人的学期与学年缓存、班级与科目排名，以及同班同学的缓存（排名会随之变化）。
        其他教师对同一班级的缓存同样包含全科平均，因此按班级跨教师清理。
        """
        deleted = self.evict(
            student_average_key(teacher_id, student_id, class_id, semester, academic_year),
            student_average_key(teacher_id, student_id, class_id, None, academic_year),
            class_rankings_key(teacher_id, class_id, semester, academic_year),
            class_rankings_key(teacher_id, class_id, None, academic_year),
        )
        deleted += self.evict_class_scope(class_id)
        logger.info(
            f"Cache invalidated after grade change: teacher={teacher_id}, student={student_id}, "
            f"class={class_id}, semester={semester}, year={academic_year}, entries={deleted}"
        )
        return deleted

    def evict_class_scope(self, class_id: str) -> int:
        """清理所有教师在该班级下的缓存，并使进行中的读取不再写入"""
        if self.enabled:
            self._bump_generation(class_id)
        return self.evict_pattern(f"{KEY_PREFIX}:teacher:*:class:{class_id}:*")

    def evict_teacher_cache(self, teacher_id: str) -> int:
        deleted = self.evict_pattern(f"{teacher_prefix(teacher_id)}:*")
        logger.info(f"Evicted {deleted} cache entries for teacher: {teacher_id}")
        return deleted

    def evict_class_cache(self, teacher_id: str, class_id: str,
                          semester: Optional[int], academic_year: str) -> int:
        pattern = (
            f"{class_prefix(teacher_id, class_id)}:*"
            f"semester:{_semester_part(semester)}:year:{academic_year}"
        )
        deleted = self.evict_pattern(pattern)
        logger.info(f"Evicted {deleted} cache entries for class: {class_id}")
        return deleted

    def evict_all(self) -> int:
        deleted = self.evict_pattern(f"{KEY_PREFIX}:*")
        logger.info(f"Evicted all grade cache entries: {deleted}")
        return deleted

    def get_cache_stats(self) -> Dict[str, Any]:
        """获取缓存统计信息"""
        with self._stats_lock:
            stats = dict(self._stats)
        lookups = stats["hits"] + stats["misses"]
        stats["hit_rate"] = round(stats["hits"] / lookups, 4) if lookups else 0.0
        stats["enabled"] = self.enabled
        stats["backend"] = type(self.backend).__name__ if self.backend else None
        stats["ttl_config"] = dict(self.ttl_config)
        if self.enabled:
            try:
                stats["total_keys"] = self.backend.count(f"{KEY_PREFIX}:*")
            except Exception as e:
                logger.warning(f"Error counting cache keys: {str(e)}")
                stats["total_keys"] = None
        return stats


def create_redis_client() -> redis.Redis:
    """创建Redis客户端"""
    socket_timeout = float(os.getenv("CACHE_SOCKET_TIMEOUT", "0.5"))
    redis_config: Dict[str, Union[str, int, float, bool]] = {
        "host": os.getenv("REDIS_HOST", "127.0.0.1"),
        "port": int(os.getenv("REDIS_PORT", 6379)),
        "db": int(os.getenv("REDIS_DB", 0)),
        "password": os.getenv("REDIS_PASSWORD"),
        "decode_responses": True,
        "max_connections": 50,
        "socket_timeout": socket_timeout,
        "socket_connect_timeout": socket_timeout,
        "retry_on_timeout": False,
    }

    # 移除空密码
    if redis_config["password"] is None:
        del redis_config["password"]

    try:
        client = redis.Redis(**redis_config)
        # 测试连接
        client.ping()
        logger.info("Redis client connected successfully")
        return client
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {str(e)}")
        raise CacheError(f"Redis connection failed: {str(e)}")


def cache_enabled() -> bool:
    return os.getenv("CACHE_ENABLED", "true").lower() not in ("0", "false", "no")


def create_grade_cache(redis_client: Optional[redis.Redis]) -> GradeCache:
    """创建成绩缓存；Redis不可用或 CACHE_ENABLED=false 时关闭缓存"""
    if not cache_enabled():
        logger.info("Grade cache disabled by configuration")
        return GradeCache(None)
    if redis_client is None:
        logger.warning("Grade cache disabled, Redis unavailable")
        return GradeCache(None)
    return GradeCache(RedisCacheBackend(redis_client))
