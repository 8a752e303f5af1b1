"""
事件处理器单元测试
"""
import pytest
from datetime import date, timedelta

from app.models.events import EventType
from app.models.schemas import StayRequest
from app.services.event_bus import Event, EventBus
from app.services.event_handlers import EventHandlers
from app.services.quote_service import QuoteCache, QuoteService


def _rate_event(property_id="hotel_001", room_type_code="STD"):
    return Event(
        event_type=EventType.RATE_UPDATED,
        data={"property_id": property_id, "room_type_code": room_type_code, "rate_plan_codes": ["BASE"]},
        source="ari_service"
    )


class TestEventHandlers:
    """事件处理器测试"""

    @pytest.fixture
    def cache(self):
        return QuoteCache()

    @pytest.fixture
    def cached_quote(self, db_session, ctx, sample_room_type, make_inventory, cache):
        make_inventory(sample_room_type)
        stay = StayRequest(check_in=date(2030, 5, 1), check_out=date(2030, 5, 1) + timedelta(days=2),
                           adults=1, room_type_code="STD", rate_plan_code="BASE")
        return QuoteService(db_session, cache=cache).create_quote(ctx, stay)

    @pytest.fixture
    def bus(self):
        bus = EventBus()
        bus.clear_subscribers()
        yield bus
        bus.clear_subscribers()

    def test_rate_change_evicts_quotes(self, cache, cached_quote):
        EventHandlers(cache=cache).handle_rate_updated(_rate_event())
        assert cache.get(cached_quote.quote_id) is None

    def test_other_room_type_kept(self, cache, cached_quote):
        EventHandlers(cache=cache).handle_rate_updated(_rate_event(room_type_code="DLX"))
        assert cache.get(cached_quote.quote_id) is cached_quote

    def test_other_property_kept(self, cache, cached_quote):
        EventHandlers(cache=cache).handle_rate_updated(_rate_event(property_id="hotel_002"))
        assert len(cache) == 1

    def test_event_without_property_ignored(self, cache, cached_quote):
        EventHandlers(cache=cache).handle_rate_updated(
            Event(event_type=EventType.RATE_UPDATED, data={}, source="test"))
        assert len(cache) == 1

    def test_registered_on_bus(self, bus, cache, cached_quote):
        handlers = EventHandlers(cache=cache)
        handlers.register_handlers(bus)
        bus.publish(_rate_event())
        assert len(cache) == 0

    def test_unregister(self, bus, cache, cached_quote):
        handlers = EventHandlers(cache=cache)
        handlers.register_handlers(bus)
        handlers.unregister_handlers(bus)
        assert bus.publish(_rate_event()) == 0
        assert len(cache) == 1
