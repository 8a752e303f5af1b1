"""
Tests for app/services/undo_service.py
Covers: 变更前快照, 可用量撤销（超售保护重新裁剪）, 价格撤销（级联行、覆盖标记、新建行删除）,
        补偿事件, 重复撤销, 不支持撤销的事件, 撤销的撤销
"""
import pytest
from datetime import date, timedelta
from decimal import Decimal

from app.models.events import EventType
from app.models.ontology import (
    AriEvent, AriEventType, CellField, Inventory, Rate, Room, RoomStatus
)
from app.models.schemas import (
    AvailabilityUpdate, DateRange, RateUpdate, RestrictionUpdate, RestrictionValues, SingleCellUpdate
)
from app.security.context import build_context
from app.services.ari_service import AriService
from app.services.audit_service import AuditService
from app.services.errors import NotFoundError, ValidationError
from app.services.undo_service import PREVIOUS_INVENTORIES, PREVIOUS_RATES, UndoService

DAY = date(2030, 5, 1)


# ── helpers ──────────────────────────────────────────────────────────

def _range(days=1, start=DAY):
    return DateRange(date_from=start, date_to=start + timedelta(days=days - 1))


def _ari(db):
    return AriService(db, event_publisher=lambda e: None)


def _set_availability(db, ctx, value, days=1):
    _ari(db).update_availability(ctx, AvailabilityUpdate(
        room_type_code="STD", date_range=_range(days), availability=value))


def _set_base_rate(db, ctx, amount, days=1):
    _ari(db).update_rates(ctx, RateUpdate(room_type_code="STD", date_range=_range(days), base_rate=amount))


def _last_event(db, event_type, code=None):
    query = db.query(AriEvent).filter(AriEvent.event_type == event_type, AriEvent.undo_of_event_id.is_(None))
    if code:
        query = query.filter(AriEvent.rate_plan_code == code)
    return query.order_by(AriEvent.id.desc()).first()


def _available(db):
    db.expire_all()
    return [row.available for row in db.query(Inventory).order_by(Inventory.date).all()]


def _rate(db, code, day=DAY):
    db.expire_all()
    return db.query(Rate).filter(Rate.date == day, Rate.rate_plan_code == code).first()


# ── snapshots ────────────────────────────────────────────────────────

class TestSnapshots:

    def test_availability_event_carries_previous_values(self, db_session, ctx, sample_room_type, make_inventory):
        make_inventory(sample_room_type, nights=1, available=3, total=5)
        _set_availability(db_session, ctx, 1, days=2)

        payload = AuditService.event_payload(_last_event(db_session, AriEventType.AVAILABILITY))
        assert payload[PREVIOUS_INVENTORIES] == [
            {"date": "2030-05-01", "exists": True, "available": 3, "total": 5, "price": None},
            {"date": "2030-05-02", "exists": False, "available": None, "total": None, "price": None},
        ]

    def test_rate_event_covers_descendants(self, db_session, ctx, sample_room_type, rate_plan_tree):
        _set_base_rate(db_session, ctx, 200)

        payload = AuditService.event_payload(_last_event(db_session, AriEventType.RATE, "BASE"))
        assert [entry["ratePlanCode"] for entry in payload[PREVIOUS_RATES]] == ["BASE", "BAR", "PROMO", "NRF"]
        assert not any(entry["exists"] for entry in payload[PREVIOUS_RATES])
        assert len(payload[PREVIOUS_INVENTORIES]) == 1

    def test_restriction_event_has_no_snapshot(self, db_session, ctx, sample_room_type):
        _ari(db_session).update_restrictions(ctx, RestrictionUpdate(
            room_type_code="STD", date_range=_range(), restrictions=RestrictionValues(closed=True)))
        payload = AuditService.event_payload(_last_event(db_session, AriEventType.RESTRICTION))
        assert PREVIOUS_INVENTORIES not in payload
        assert PREVIOUS_RATES not in payload


# ── availability ─────────────────────────────────────────────────────

class TestUndoAvailability:

    def test_restores_previous_values(self, db_session, ctx, sample_room_type, make_inventory):
        """原来不存在的行恢复为 0，账本行不删除"""
        make_inventory(sample_room_type, nights=2, available=3, total=5)
        _set_availability(db_session, ctx, 1, days=3)
        assert _available(db_session) == [1, 1, 1]

        event = _last_event(db_session, AriEventType.AVAILABILITY)
        events = []
        result = UndoService(db_session, event_publisher=events.append).undo_event(ctx, event.event_id)

        assert result["undone"] == event.event_id
        assert result["restoredInventories"] == 3
        assert result["clampedDates"] == []
        assert _available(db_session) == [3, 3, 0]
        assert [e.event_type for e in events] == [EventType.AVAILABILITY_UPDATED]
        assert events[0].source == "undo_service"
        assert events[0].data["days_updated"] == 3

    def test_restored_value_clamped_to_current_rooms(self, db_session, ctx, sample_room_type, make_inventory):
        """撤销时房间已转为维修：恢复值重新经过超售保护"""
        make_inventory(sample_room_type, nights=1, available=5, total=5)
        _set_availability(db_session, ctx, 2)

        rooms = db_session.query(Room).filter(
            Room.room_type_id == sample_room_type.id,
            Room.status != RoomStatus.OUT_OF_ORDER
        ).limit(2).all()
        for room in rooms:
            room.status = RoomStatus.OUT_OF_ORDER
        db_session.commit()

        event = _last_event(db_session, AriEventType.AVAILABILITY)
        result = UndoService(db_session, event_publisher=lambda e: None).undo_event(ctx, event.event_id)

        assert result["clampedDates"] == ["2030-05-01"]
        db_session.expire_all()
        row = db_session.query(Inventory).one()
        assert row.available == 3
        assert row.total == 3

    def test_single_cell_availability(self, db_session, ctx, sample_room_type, make_inventory):
        make_inventory(sample_room_type, nights=1, available=4, total=5)
        _ari(db_session).single_cell_update(ctx, SingleCellUpdate(
            date=DAY, room_type_id=sample_room_type.id, field=CellField.AVAILABLE, value=1))

        event = _last_event(db_session, AriEventType.AVAILABILITY)
        UndoService(db_session, event_publisher=lambda e: None).undo_event(ctx, event.event_id)
        assert _available(db_session) == [4]


# ── rates ────────────────────────────────────────────────────────────

class TestUndoRates:

    def test_restores_base_and_cascaded_rows(self, db_session, ctx, sample_room_type, rate_plan_tree):
        _set_base_rate(db_session, ctx, 200)
        _set_base_rate(db_session, ctx, 300)
        assert _rate(db_session, "BAR").amount == Decimal("270.99")

        event = _last_event(db_session, AriEventType.RATE, "BASE")
        result = UndoService(db_session, event_publisher=lambda e: None).undo_event(ctx, event.event_id)

        assert result["restoredRates"] == 4
        assert _rate(db_session, "BASE").amount == Decimal("200.00")
        assert _rate(db_session, "BAR").amount == Decimal("180.99")
        assert _rate(db_session, "NRF").amount == Decimal("160.99")
        assert _rate(db_session, "PROMO").amount == Decimal("225.00")
        assert _rate(db_session, "BAR").is_manual_override is False
        assert db_session.query(Inventory).one().price == Decimal("200.00")

    def test_rows_created_by_the_change_are_removed(self, db_session, ctx, sample_room_type, rate_plan_tree):
        _set_base_rate(db_session, ctx, 200)
        event = _last_event(db_session, AriEventType.RATE, "BASE")

        UndoService(db_session, event_publisher=lambda e: None).undo_event(ctx, event.event_id)

        db_session.expire_all()
        assert db_session.query(Rate).count() == 0
        assert db_session.query(Inventory).one().price is None

    def test_cell_override_undone(self, db_session, ctx, sample_room_type, rate_plan_tree):
        """撤销单元格覆盖价：恢复派生值与非覆盖标记"""
        _set_base_rate(db_session, ctx, 200)
        _ari(db_session).single_cell_update(ctx, SingleCellUpdate(
            date=DAY, room_type_id=sample_room_type.id, rate_plan_code="BAR",
            field=CellField.PRICE, value=150))
        assert _rate(db_session, "BAR").is_manual_override is True
        assert _rate(db_session, "NRF").amount == Decimal("130.00")

        event = _last_event(db_session, AriEventType.RATE, "BAR")
        events = []
        UndoService(db_session, event_publisher=events.append).undo_event(ctx, event.event_id)

        bar = _rate(db_session, "BAR")
        assert bar.amount == Decimal("180.99")
        assert bar.is_manual_override is False
        assert _rate(db_session, "NRF").amount == Decimal("160.99")
        assert _rate(db_session, "BASE").amount == Decimal("200.00")
        assert events[0].event_type == EventType.RATE_UPDATED
        assert events[0].data["rate_plan_codes"] == ["BAR", "NRF"]

    def test_override_kept_by_cascade_is_restored_as_override(self, db_session, ctx, sample_room_type,
                                                              rate_plan_tree):
        _set_base_rate(db_session, ctx, 200)
        _ari(db_session).single_cell_update(ctx, SingleCellUpdate(
            date=DAY, room_type_id=sample_room_type.id, rate_plan_code="BAR",
            field=CellField.PRICE, value=150))
        _ari(db_session).single_cell_update(ctx, SingleCellUpdate(
            date=DAY, room_type_id=sample_room_type.id, rate_plan_code="BAR", field=CellField.CLEAR_PRICE, value=None))
        assert _rate(db_session, "BAR").amount == Decimal("180.99")

        event = _last_event(db_session, AriEventType.RATE, "BAR")
        UndoService(db_session, event_publisher=lambda e: None).undo_event(ctx, event.event_id)

        bar = _rate(db_session, "BAR")
        assert bar.amount == Decimal("150.00")
        assert bar.is_manual_override is True
        assert _rate(db_session, "NRF").amount == Decimal("130.00")


# ── compensation ─────────────────────────────────────────────────────

class TestCompensation:

    def test_original_event_untouched(self, db_session, ctx, sample_room_type, make_inventory):
        make_inventory(sample_room_type, nights=1, available=3, total=5)
        _set_availability(db_session, ctx, 1)
        event = _last_event(db_session, AriEventType.AVAILABILITY)
        original_payload, original_status = event.payload, event.status

        result = UndoService(db_session, event_publisher=lambda e: None).undo_event(ctx, event.event_id)

        db_session.expire_all()
        refreshed = db_session.query(AriEvent).filter(AriEvent.event_id == event.event_id).one()
        assert refreshed.payload == original_payload
        assert refreshed.status == original_status
        assert refreshed.undo_of_event_id is None

        compensation = db_session.query(AriEvent).filter(AriEvent.event_id == result["eventId"]).one()
        assert compensation.undo_of_event_id == event.event_id
        assert compensation.event_type == AriEventType.AVAILABILITY
        payload = AuditService.event_payload(compensation)
        assert payload["undoOf"] == event.event_id
        assert payload["_requestId"] == ctx.request_id
        assert payload[PREVIOUS_INVENTORIES][0]["available"] == 1

    def test_double_undo_rejected(self, db_session, ctx, sample_room_type, make_inventory):
        make_inventory(sample_room_type, nights=1, available=3, total=5)
        _set_availability(db_session, ctx, 1)
        event = _last_event(db_session, AriEventType.AVAILABILITY)
        svc = UndoService(db_session, event_publisher=lambda e: None)
        svc.undo_event(ctx, event.event_id)

        with pytest.raises(ValidationError) as exc:
            svc.undo_event(ctx, event.event_id)
        assert exc.value.code == "EVENT_ALREADY_UNDONE"
        assert _available(db_session) == [3]

    def test_undo_of_undo_reapplies_change(self, db_session, ctx, sample_room_type, make_inventory):
        make_inventory(sample_room_type, nights=1, available=3, total=5)
        _set_availability(db_session, ctx, 1)
        event = _last_event(db_session, AriEventType.AVAILABILITY)
        svc = UndoService(db_session, event_publisher=lambda e: None)

        undo = svc.undo_event(ctx, event.event_id)
        assert _available(db_session) == [3]
        svc.undo_event(ctx, undo["eventId"])
        assert _available(db_session) == [1]

    def test_restriction_event_not_supported(self, db_session, ctx, sample_room_type):
        _ari(db_session).update_restrictions(ctx, RestrictionUpdate(
            room_type_code="STD", date_range=_range(), restrictions=RestrictionValues(min_los=2)))
        event = _last_event(db_session, AriEventType.RESTRICTION)

        with pytest.raises(ValidationError) as exc:
            UndoService(db_session).undo_event(ctx, event.event_id)
        assert exc.value.code == "UNDO_NOT_SUPPORTED"

    def test_cascade_child_event_not_supported(self, db_session, ctx, sample_room_type, rate_plan_tree):
        _set_base_rate(db_session, ctx, 200)
        child = _last_event(db_session, AriEventType.RATE, "NRF")

        with pytest.raises(ValidationError) as exc:
            UndoService(db_session).undo_event(ctx, child.event_id)
        assert exc.value.code == "UNDO_NOT_SUPPORTED"

    def test_unknown_or_foreign_event(self, db_session, ctx, sample_room_type, make_inventory):
        make_inventory(sample_room_type, nights=1, available=3, total=5)
        _set_availability(db_session, ctx, 1)
        event = _last_event(db_session, AriEventType.AVAILABILITY)
        svc = UndoService(db_session)

        with pytest.raises(NotFoundError) as exc:
            svc.undo_event(ctx, "no-such-event")
        assert exc.value.code == "ARI_EVENT_NOT_FOUND"

        with pytest.raises(NotFoundError):
            svc.undo_event(build_context("hotel_002", "req-test-002"), event.event_id)
        assert _available(db_session) == [1]
