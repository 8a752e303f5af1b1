"""
事件总线单元测试
"""
import pytest

from app.models.events import EventType
from app.services.event_bus import EventBus, Event


class TestEventBus:
    """事件总线测试"""

    @pytest.fixture
    def event_bus(self):
        """创建新的事件总线实例"""
        bus = EventBus()
        bus.clear_subscribers()
        bus.clear_history()
        yield bus
        bus.clear_subscribers()
        bus.clear_history()

    @pytest.fixture
    def rate_event(self):
        return Event(
            event_type=EventType.RATE_UPDATED,
            data={"property_id": "hotel_001", "room_type_code": "STD"},
            source="ari_service"
        )

    def test_subscribe_and_publish(self, event_bus, rate_event):
        received_events = []
        event_bus.subscribe(EventType.RATE_UPDATED, received_events.append)

        assert event_bus.publish(rate_event) == 1
        assert received_events == [rate_event]

    def test_enum_and_string_keys_match(self, event_bus, rate_event):
        """按枚举订阅与按字符串值订阅是同一个主题"""
        received_events = []
        event_bus.subscribe("ari.rate_updated", received_events.append)
        event_bus.publish(rate_event)
        assert len(received_events) == 1

    def test_other_types_not_delivered(self, event_bus, rate_event):
        received_events = []
        event_bus.subscribe(EventType.RESERVATION_CREATED, received_events.append)
        assert event_bus.publish(rate_event) == 0
        assert received_events == []

    def test_unsubscribe(self, event_bus, rate_event):
        received_events = []

        def handler(event):
            received_events.append(event)

        event_bus.subscribe(EventType.RATE_UPDATED, handler)
        event_bus.unsubscribe(EventType.RATE_UPDATED, handler)
        event_bus.publish(rate_event)

        assert len(received_events) == 0

    def test_handler_exception_isolation(self, event_bus, rate_event):
        """测试处理器异常隔离"""
        successful_calls = []

        def failing_handler(event):
            raise ValueError("Test error")

        def successful_handler(event):
            successful_calls.append(event)

        event_bus.subscribe(EventType.RATE_UPDATED, failing_handler)
        event_bus.subscribe(EventType.RATE_UPDATED, successful_handler)

        # 不应该抛出异常
        assert event_bus.publish(rate_event) == 1
        assert len(successful_calls) == 1

    def test_duplicate_subscription(self, event_bus, rate_event):
        call_count = [0]

        def handler(event):
            call_count[0] += 1

        event_bus.subscribe(EventType.RATE_UPDATED, handler)
        event_bus.subscribe(EventType.RATE_UPDATED, handler)
        event_bus.publish(rate_event)

        assert call_count[0] == 1

    def test_event_history(self, event_bus):
        for i in range(5):
            event_bus.publish(Event(event_type=EventType.AVAILABILITY_UPDATED,
                                    data={"index": i}, source="test"))
        event_bus.publish(Event(event_type=EventType.RESERVATION_CREATED, data={}, source="test"))

        history = event_bus.get_history(event_type=EventType.AVAILABILITY_UPDATED)
        assert len(history) == 5
        # 最新的在前
        assert history[0].data["index"] == 4
        assert len(event_bus.get_history(limit=2)) == 2

    def test_history_bounded(self, event_bus):
        for i in range(150):
            event_bus.publish(Event(event_type="test.event", data={"index": i}, source="test"))
        history = event_bus.get_history(limit=500)
        assert len(history) == 100
        assert history[-1].data["index"] == 50

    def test_singleton_pattern(self):
        assert EventBus() is EventBus()
