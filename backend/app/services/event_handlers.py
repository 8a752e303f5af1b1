"""
事件处理器
订阅 ARI 变更事件：价格变化后淘汰受影响房型的缓存报价
"""
import logging

from app.services.event_bus import event_bus, Event
from app.models.events import EventType
from app.services.quote_service import QuoteCache, quote_cache

logger = logging.getLogger(__name__)


class EventHandlers:
    """
    事件处理器集合

    支持注入报价缓存以便于测试
    """

    def __init__(self, cache: QuoteCache = None):
        self._cache = cache if cache is not None else quote_cache
        self._registered = False

    def handle_rate_updated(self, event: Event) -> None:
        """
        处理价格变更事件：淘汰该酒店该房型的缓存报价

        缓存中的报价即使留着也会在预订时因签名漂移被拒绝，提前淘汰让客户端尽早重新报价
        """
        data = event.data
        property_id = data.get("property_id")
        if not property_id:
            logger.warning(f"Rate event {event.event_id} without property_id ignored")
            return

        evicted = self._cache.evict(property_id, data.get("room_type_code") or None)
        if evicted:
            logger.info(
                f"Evicted {evicted} cached quotes for {property_id}/{data.get('room_type_code')} "
                f"after rate change {data.get('rate_plan_codes')}"
            )

    def register_handlers(self, event_bus_instance=None) -> None:
        """注册所有事件处理器（重复注册不会重复订阅）"""
        bus = event_bus_instance or event_bus
        bus.subscribe(EventType.RATE_UPDATED, self.handle_rate_updated)

        self._registered = True
        logger.info("Event handlers registered successfully")

    def unregister_handlers(self, event_bus_instance=None) -> None:
        """取消注册所有事件处理器（用于测试）"""
        bus = event_bus_instance or event_bus
        bus.unsubscribe(EventType.RATE_UPDATED, self.handle_rate_updated)

        self._registered = False
        logger.info("Event handlers unregistered")


# 全局事件处理器实例
event_handlers = EventHandlers()


def register_event_handlers():
    """注册所有事件处理器（应用启动时调用）"""
    event_handlers.register_handlers()
