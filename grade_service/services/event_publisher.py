# 成绩事件发布（事务提交后调用，至少一次投递）
import os
import json
import time
import logging
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, Future
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import redis

from ..database.enums import GradeEventType

logger = logging.getLogger(__name__)


def _camel(name: str) -> str:
    head, *tail = name.split("_")
    return head + "".join(part.title() for part in tail)


def _json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


@dataclass
class GradeEvent:
    """成绩录入/修改/删除事件"""
    event_type: GradeEventType
    grade_id: int
    teacher_id: str
    student_id: str
    class_id: str
    subject_id: str
    assessment_code: str
    score: Decimal
    max_score: Decimal
    percentage: Decimal
    letter_grade: str
    semester: int
    academic_year: str
    subject_name: Optional[str] = None
    occurred_at: Optional[datetime] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {_camel(k): _json_value(v) for k, v in asdict(self).items()}
        payload["occurredAt"] = _json_value(self.occurred_at or datetime.utcnow())
        return payload


@dataclass
class AverageCalculatedEvent:
    """平均分计算完成事件"""
    student_id: str
    class_id: str
    average_type: str
    average_score: Decimal
    letter_grade: str
    academic_year: str
    subject_id: Optional[str] = None
    subject_name: Optional[str] = None
    semester: Optional[int] = None
    class_rank: Optional[int] = None
    subject_rank: Optional[int] = None
    total_students: Optional[int] = None
    calculated_at: Optional[datetime] = None

    event_type = GradeEventType.AVERAGE_CALCULATED

    def to_payload(self) -> Dict[str, Any]:
        payload = {_camel(k): _json_value(v) for k, v in asdict(self).items()}
        payload["calculatedAt"] = _json_value(self.calculated_at or datetime.utcnow())
        return payload


class EventPublisher(ABC):
    """事件发布端口"""

    @abstractmethod
    def publish(self, routing_key: str, payload: Dict[str, Any]) -> None:
        """发布失败时抛出异常，由调用方决定重试"""
        pass


class RedisEventPublisher(EventPublisher):
    """通过Redis Stream投递事件

    消息持久化在流中，下游以消费组读取并确认，没有在线消费者时事件也不会丢失。
    流长度按 max_length 近似裁剪。
    """

    def __init__(self, redis_client: redis.Redis, stream: str = "grade-service.events",
                 max_length: int = 100000):
        self.redis = redis_client
        self.stream = stream
        self.max_length = max_length

    def publish(self, routing_key: str, payload: Dict[str, Any]) -> None:
        fields = {
            "routingKey": routing_key,
            "publishedAt": datetime.utcnow().isoformat(),
            "payload": json.dumps(payload, ensure_ascii=False),
        }
        message_id = self.redis.xadd(self.stream, fields, maxlen=self.max_length, approximate=True)
        if not message_id:
            raise ConnectionError(f"Redis did not acknowledge {routing_key} on {self.stream}")
        logger.debug(f"Published {routing_key} to {self.stream}, id={message_id}")


class InMemoryEventPublisher(EventPublisher):
    """内存事件发布器（测试用）"""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def publish(self, routing_key: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((routing_key, payload))

    def of_type(self, routing_key: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [payload for key, payload in self.events if key == routing_key]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()


class LoggingEventPublisher(EventPublisher):
    """未配置消息通道时只记录日志"""

    def publish(self, routing_key: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Event {routing_key}: {json.dumps(payload, ensure_ascii=False)}")


class AsyncEventDispatcher:
    """异步事件分发器

    事务提交后把事件交给线程池发布，失败按退避重试，最终失败只记录日志，不向调用方抛出。
    synchronous=True 时在当前线程内发布（测试用）。
    """

    def __init__(self, publisher: EventPublisher, max_retries: int = 3,
                 backoff_seconds: float = 0.2, max_workers: int = 4,
                 synchronous: bool = False):
        self.publisher = publisher
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.synchronous = synchronous
        self._executor = None if synchronous else ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="grade-events"
        )
        self.failed_events = 0
        self._failed_lock = threading.Lock()

    def dispatch(self, routing_key: str, payload: Dict[str, Any]) -> Optional[Future]:
        try:
            if self._executor is None:
                self._publish_with_retry(routing_key, payload)
                return None
            return self._executor.submit(self._publish_with_retry, routing_key, payload)
        except Exception as e:
            logger.error(f"Failed to dispatch event {routing_key}: {str(e)}")
            return None

    def dispatch_grade_event(self, event: GradeEvent) -> Optional[Future]:
        return self.dispatch(event.event_type.value, event.to_payload())

    def dispatch_average_event(self, event: AverageCalculatedEvent) -> Optional[Future]:
        return self.dispatch(event.event_type.value, event.to_payload())

    def _publish_with_retry(self, routing_key: str, payload: Dict[str, Any]) -> bool:
        for attempt in range(1, self.max_retries + 1):
            try:
                self.publisher.publish(routing_key, payload)
                if attempt > 1:
                    logger.info(f"Event {routing_key} published on attempt {attempt}")
                return True
            except Exception as e:
                logger.warning(
                    f"Publish attempt {attempt}/{self.max_retries} failed for {routing_key}: {str(e)}"
                )
                if attempt < self.max_retries:
                    time.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
        with self._failed_lock:
            self.failed_events += 1
        logger.error(f"Giving up on event {routing_key} after {self.max_retries} attempts")
        return False

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def create_event_publisher(redis_client: Optional[redis.Redis] = None) -> EventPublisher:
    """有Redis时写入 EVENTS_STREAM 流，否则退化为日志发布器"""
    if redis_client is None:
        logger.warning("No event transport configured, events will only be logged")
        return LoggingEventPublisher()
    return RedisEventPublisher(
        redis_client,
        stream=os.getenv("EVENTS_STREAM", "grade-service.events"),
        max_length=int(os.getenv("EVENTS_STREAM_MAXLEN", 100000)),
    )
