"""
并发预订集成测试
每个线程使用独立会话，共享同一个文件型 SQLite 库
"""
import threading
from datetime import date, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.database import Base
from app.models import ontology  # noqa
from app.models.ontology import IdempotencyStatus, Inventory, Reservation, Room, RoomType
from app.models.schemas import GuestInfo
from app.security.context import build_context
from app.services.errors import IdempotencyConflict, InventoryUnavailable
from app.services.idempotency_service import IdempotencyService
from app.services.reservation_service import ReservationService

CHECK_IN = date(2030, 5, 1)
NIGHTS = 2


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'race.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


def _seed(factory, available):
    db = factory()
    room_type = RoomType(property_id="hotel_001", code="STD", name="标准间",
                         base_price=Decimal("288.00"), max_occupancy=2)
    db.add(room_type)
    db.flush()
    for i in range(5):
        db.add(Room(room_number=str(101 + i), floor=1, room_type_id=room_type.id))
    for i in range(NIGHTS):
        db.add(Inventory(property_id="hotel_001", room_type_id=room_type.id,
                         date=CHECK_IN + timedelta(days=i), total=5, available=available, booked=0))
    db.commit()
    room_type_id = room_type.id
    db.close()
    return room_type_id


def _race(factory, room_type_id, workers):
    """所有线程在屏障处对齐后同时提交预订"""
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def book(index):
        db = factory()
        try:
            room_type = db.get(RoomType, room_type_id)
            ctx = build_context("hotel_001", f"req-race-{index}")
            barrier.wait()
            ReservationService(db, event_publisher=lambda e: None).commit_reservation(
                ctx, room_type, "BASE", CHECK_IN, CHECK_IN + timedelta(days=NIGHTS),
                GuestInfo(primary_guest_name=f"Guest {index}", email=f"g{index}@example.com"),
                Decimal("576.00"), "USD",
            )
            outcome = "ok"
        except InventoryUnavailable:
            outcome = "sold_out"
        finally:
            db.close()
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=book, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    return outcomes


class TestConcurrentBooking:

    def test_last_room_sold_once(self, session_factory):
        """最后一间房：两个并发请求恰好一个成功"""
        room_type_id = _seed(session_factory, available=1)
        outcomes = _race(session_factory, room_type_id, workers=2)

        assert sorted(outcomes) == ["ok", "sold_out"]
        db = session_factory()
        rows = db.query(Inventory).all()
        assert [r.available for r in rows] == [0, 0]
        assert [r.booked for r in rows] == [1, 1]
        assert db.query(Reservation).count() == 1
        db.close()

    def test_never_oversold(self, session_factory):
        room_type_id = _seed(session_factory, available=2)
        outcomes = _race(session_factory, room_type_id, workers=6)

        assert outcomes.count("ok") == 2
        assert outcomes.count("sold_out") == 4
        db = session_factory()
        assert all(r.available == 0 for r in db.query(Inventory).all())
        assert db.query(Reservation).count() == 2
        db.close()


class TestConcurrentIdempotency:

    def test_one_holder_per_key(self, session_factory):
        workers = 4
        barrier = threading.Barrier(workers)
        outcomes = []
        lock = threading.Lock()

        def acquire(index):
            db = session_factory()
            try:
                barrier.wait()
                IdempotencyService(db).acquire("idem-race", f"req-{index}")
                outcome = "locked"
            except IdempotencyConflict:
                outcome = "conflict"
            finally:
                db.close()
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=acquire, args=(i,)) for i in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        assert outcomes.count("locked") == 1
        assert outcomes.count("conflict") == workers - 1
        db = session_factory()
        assert IdempotencyService(db).get("idem-race").status == IdempotencyStatus.PENDING
        db.close()
