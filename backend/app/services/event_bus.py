"""
事件总线 - 内存级发布/订阅
ARI 变更与预订事件在事务提交后同步派发，处理器之间相互隔离
"""
from typing import Callable, Dict, List, Any
from dataclasses import dataclass, field
from datetime import datetime
from collections import deque
import logging
import threading
import uuid

logger = logging.getLogger(__name__)


@dataclass
class Event:
    """事件"""
    event_type: str
    data: Dict[str, Any]
    source: str  # 触发来源（服务名）
    timestamp: datetime = field(default_factory=datetime.now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))


def _type_key(event_type) -> str:
    return getattr(event_type, "value", event_type)


class EventBus:
    """
    内存级事件总线（线程安全单例）

    - subscribe(event_type, handler)
    - publish(event)：按订阅顺序同步调用，单个处理器异常只记录日志
    """

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return
        self._subscribers: Dict[str, List[Callable]] = {}
        self._history: deque = deque(maxlen=100)
        self._subscriber_lock = threading.Lock()
        self._initialized = True

    def subscribe(self, event_type, handler: Callable) -> None:
        """订阅事件"""
        key = _type_key(event_type)
        with self._subscriber_lock:
            handlers = self._subscribers.setdefault(key, [])
            if handler not in handlers:
                handlers.append(handler)
                logger.info(f"Handler {handler.__name__} subscribed to {key}")

    def unsubscribe(self, event_type, handler: Callable) -> None:
        """取消订阅"""
        key = _type_key(event_type)
        with self._subscriber_lock:
            handlers = self._subscribers.get(key, [])
            if handler in handlers:
                handlers.remove(handler)

    def publish(self, event: Event) -> int:
        """
        发布事件

        Returns:
            成功执行的处理器数量
        """
        key = _type_key(event.event_type)
        self._history.append(event)

        with self._subscriber_lock:
            handlers = list(self._subscribers.get(key, []))

        delivered = 0
        for handler in handlers:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Event handler {handler.__name__} error for {key}: {e}",
                    exc_info=True
                )
        return delivered

    def get_history(self, event_type=None, limit: int = 50) -> List[Event]:
        """获取最近的事件（最新的在前）"""
        history = list(self._history)
        if event_type is not None:
            key = _type_key(event_type)
            history = [e for e in history if _type_key(e.event_type) == key]
        return list(reversed(history))[:limit]

    def clear_subscribers(self) -> None:
        """清空所有订阅（用于测试）"""
        with self._subscriber_lock:
            self._subscribers.clear()

    def clear_history(self) -> None:
        """清空事件历史"""
        self._history.clear()


# 全局事件总线实例
event_bus = EventBus()
