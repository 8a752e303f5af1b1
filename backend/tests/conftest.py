"""
Pytest 配置和共享 fixtures
"""
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from datetime import date, timedelta
from fastapi.testclient import TestClient
from decimal import Decimal

from app.database import Base, get_db
from app.models import ontology  # noqa
from app.models.ontology import (
    RoomType, Room, RoomStatus, Inventory, RatePlan, DerivedType, RoundingRule
)
from app.security.context import build_context
from app.services.quote_service import quote_cache
from app.main import app

PROPERTY_ID = "hotel_001"
STAY_START = date(2030, 5, 1)


@pytest.fixture(scope="function")
def db_engine():
    """创建内存数据库引擎"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine):
    """创建数据库会话"""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture(scope="function")
def client(db_session):
    """创建测试客户端"""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def clear_quote_cache():
    """报价缓存是进程级单例，每个测试前后清空"""
    quote_cache.clear()
    yield
    quote_cache.clear()


# ============== 上下文 Fixtures ==============

@pytest.fixture
def ctx():
    """测试用请求上下文"""
    return build_context(PROPERTY_ID, "req-test-001")


@pytest.fixture
def hotel_headers():
    """返回带酒店ID的请求头"""
    return {"x-hotel-id": PROPERTY_ID, "x-request-id": "req-api-001"}


# ============== 实体相关 Fixtures ==============

def add_rooms(db, room_type, count, status=RoomStatus.VACANT_CLEAN, start=101):
    rooms = []
    for i in range(count):
        room = Room(room_number=str(start + i), floor=1, room_type_id=room_type.id, status=status)
        db.add(room)
        rooms.append(room)
    db.flush()
    return rooms


def add_inventory(db, room_type, start, nights, available, total=None, property_id=PROPERTY_ID):
    rows = []
    for i in range(nights):
        row = Inventory(
            property_id=property_id,
            room_type_id=room_type.id,
            date=start + timedelta(days=i),
            total=total if total is not None else available,
            available=available,
            booked=0,
        )
        db.add(row)
        rows.append(row)
    db.flush()
    return rows


@pytest.fixture
def sample_room_type(db_session):
    """标准间：5 间可售房 + 1 间维修房"""
    room_type = RoomType(
        property_id=PROPERTY_ID,
        code="STD",
        name="标准间",
        description="Standard Room",
        base_price=Decimal("288.00"),
        max_occupancy=2
    )
    db_session.add(room_type)
    db_session.flush()
    add_rooms(db_session, room_type, 5)
    add_rooms(db_session, room_type, 1, status=RoomStatus.OUT_OF_ORDER, start=199)
    db_session.commit()
    db_session.refresh(room_type)
    return room_type


@pytest.fixture
def rate_plan_tree(db_session):
    """
    价格策略树：
        BASE
        ├── BAR   (-10%, ENDING_99)
        │   └── NRF (-20, NONE)
        └── PROMO (+25, MULTIPLE_5)
    """
    base = RatePlan(property_id=PROPERTY_ID, code="BASE", name="基础价")
    db_session.add(base)
    db_session.flush()

    bar = RatePlan(property_id=PROPERTY_ID, code="BAR", name="最优可用价",
                   parent_rate_plan_id=base.id, derived_type=DerivedType.PERCENTAGE,
                   derived_value=Decimal("-10"), rounding_rule=RoundingRule.ENDING_99)
    promo = RatePlan(property_id=PROPERTY_ID, code="PROMO", name="促销价",
                     parent_rate_plan_id=base.id, derived_type=DerivedType.FIXED_AMOUNT,
                     derived_value=Decimal("25"), rounding_rule=RoundingRule.MULTIPLE_5)
    db_session.add_all([bar, promo])
    db_session.flush()

    nrf = RatePlan(property_id=PROPERTY_ID, code="NRF", name="不可退款价",
                   parent_rate_plan_id=bar.id, derived_type=DerivedType.FIXED_AMOUNT,
                   derived_value=Decimal("-20"), rounding_rule=RoundingRule.NONE)
    db_session.add(nrf)
    db_session.commit()

    return {"BASE": base, "BAR": bar, "PROMO": promo, "NRF": nrf}


@pytest.fixture
def make_inventory(db_session):
    """库存账本行工厂"""
    def _make(room_type, start=STAY_START, nights=3, available=5, total=None):
        rows = add_inventory(db_session, room_type, start, nights, available, total)
        db_session.commit()
        return rows
    return _make
