"""
事件总线 - 进程内发布/订阅

服务在事务提交后发布预订 / 提现 / 对账事件，处理器同步执行，
处理器异常只记日志，不会回滚已经提交的迁移。
最近的事件保留在内存环形缓冲里，供 GET /bookings/{id}/events 查看预订时间线。
"""
import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from lockstay.config import settings

logger = logging.getLogger(__name__)


@dataclass
class Event:
    event_type: str
    timestamp: datetime
    data: Dict[str, Any]
    source: str  # 发布方服务名
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def booking_id(self) -> Optional[int]:
        return self.data.get("booking_id")


class EventBus:
    """
    线程安全单例

        event_bus.subscribe(EventType.BOOKING_PAID, on_paid)
        event_bus.publish(Event(...))
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    instance = super().__new__(cls)
                    instance._handlers = {}
                    instance._recent = deque(maxlen=settings.EVENT_HISTORY_SIZE)
                    instance._handlers_lock = threading.Lock()
                    cls._instance = instance
        return cls._instance

    def subscribe(self, event_type: str, handler: Callable[[Event], None]) -> None:
        with self._handlers_lock:
            handlers = self._handlers.setdefault(event_type, [])
            if handler in handlers:
                return
            handlers.append(handler)
        logger.debug(f"{handler.__name__} subscribed to {event_type}")

    def unsubscribe(self, event_type: str, handler: Callable[[Event], None]) -> None:
        with self._handlers_lock:
            handlers = self._handlers.get(event_type, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: Event) -> None:
        self._recent.append(event)
        with self._handlers_lock:
            handlers = list(self._handlers.get(event.event_type, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Handler {handler.__name__} failed on {event.event_type} "
                    f"(booking {event.booking_id}): {e}",
                    exc_info=True
                )

    def recent(self, event_type: Optional[str] = None, limit: int = 50) -> List[Event]:
        """最近的事件，新的在前"""
        events = [e for e in reversed(self._recent)
                  if event_type is None or e.event_type == event_type]
        return events[:limit]

    def booking_timeline(self, booking_id: int) -> List[Event]:
        """某个预订仍在缓冲区内的事件，按发生顺序"""
        return [e for e in self._recent if e.booking_id == booking_id]

    def clear_subscribers(self) -> None:
        with self._handlers_lock:
            self._handlers.clear()

    def clear_history(self) -> None:
        self._recent.clear()


# 全局事件总线实例
event_bus = EventBus()
