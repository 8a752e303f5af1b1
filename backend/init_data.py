"""
初始化数据脚本
创建：房型、房间、价格策略树、未来 60 天的库存与基础价

价格策略树（每家酒店独立）：
  BASE 基础价
  ├── BAR   最优可用价 (-10%, ENDING_99)
  │   └── NRF 不可退款价 (-20, NONE)
  └── PROMO 促销价 (+25, MULTIPLE_5)

用法：
  python init_data.py
"""
import sys
sys.path.insert(0, '.')

from datetime import date, timedelta
from decimal import Decimal
from app.database import SessionLocal, init_db
from app.models.ontology import (
    RoomType, Room, RoomStatus, RatePlan, DerivedType, RoundingRule
)
from app.models.schemas import AvailabilityUpdate, RateUpdate, RestrictionUpdate
from app.security.context import build_context
from app.services.ari_service import AriService

PROPERTIES = ["hotel_001", "hotel_002"]
SEED_DAYS = 60

ROOM_TYPES = [
    # code, name, base_price, max_occupancy, 楼层 -> 房间数
    ("STD", "标准间", Decimal("288.00"), 2, {2: 6, 3: 4}),
    ("DBL", "大床房", Decimal("328.00"), 2, {3: 4, 4: 4}),
    ("STE", "豪华套房", Decimal("688.00"), 4, {5: 2}),
]


def init_room_types(db, property_id):
    """初始化房型与房间"""
    room_types = {}
    for code, name, base_price, max_occupancy, floors in ROOM_TYPES:
        room_type = db.query(RoomType).filter(
            RoomType.property_id == property_id, RoomType.code == code
        ).first()
        if not room_type:
            room_type = RoomType(
                property_id=property_id, code=code, name=name,
                base_price=base_price, max_occupancy=max_occupancy
            )
            db.add(room_type)
            db.flush()
            for floor, count in floors.items():
                for i in range(count):
                    db.add(Room(
                        room_number=f"{floor}{i + 1:02d}", floor=floor,
                        room_type_id=room_type.id, status=RoomStatus.VACANT_CLEAN
                    ))
        room_types[code] = room_type
    db.commit()
    print(f"[{property_id}] 房型初始化完成: {', '.join(room_types)}")
    return room_types


def init_rate_plans(db, property_id):
    """初始化价格策略树"""
    def get_or_create(code, name, parent=None, derived_type=None, derived_value=None,
                      rounding_rule=RoundingRule.NONE):
        plan = db.query(RatePlan).filter(
            RatePlan.property_id == property_id, RatePlan.code == code
        ).first()
        if not plan:
            plan = RatePlan(
                property_id=property_id, code=code, name=name,
                parent_rate_plan_id=parent.id if parent else None,
                derived_type=derived_type, derived_value=derived_value,
                rounding_rule=rounding_rule
            )
            db.add(plan)
            db.flush()
        return plan

    base = get_or_create("BASE", "基础价")
    bar = get_or_create("BAR", "最优可用价", base, DerivedType.PERCENTAGE, Decimal("-10"),
                        RoundingRule.ENDING_99)
    get_or_create("NRF", "不可退款价", bar, DerivedType.FIXED_AMOUNT, Decimal("-20"))
    get_or_create("PROMO", "促销价", base, DerivedType.FIXED_AMOUNT, Decimal("25"),
                  RoundingRule.MULTIPLE_5)
    db.commit()
    print(f"[{property_id}] 价格策略初始化完成")


def init_ari(db, property_id, room_types):
    """通过 ARI 服务写入库存、基础价与周末最少入住限制"""
    ari = AriService(db)
    ctx = build_context(property_id, f"seed-{property_id}")
    start = date.today()
    end = start + timedelta(days=SEED_DAYS - 1)
    date_range = {"from": start, "to": end}

    for code, room_type in room_types.items():
        # SET 超出物理房量时会被钳制到物理房量
        ari.update_availability(ctx, AvailabilityUpdate(
            room_type_code=code, date_range=date_range, availability=999
        ))
        ari.update_rates(ctx, RateUpdate(
            room_type_code=code, date_range=date_range, base_rate=room_type.base_price
        ))

        for offset in range(SEED_DAYS):
            day = start + timedelta(days=offset)
            if day.weekday() == 5:
                ari.update_restrictions(ctx, RestrictionUpdate(
                    room_type_code=code,
                    date_range={"from": day, "to": day},
                    restrictions={"minLOS": 2},
                ))
    print(f"[{property_id}] ARI 初始化完成: {start} ~ {end}")


def main():
    """主函数"""
    print("=" * 50)
    print("ARI-PMS 初始化数据")
    print("=" * 50)

    init_db()
    print("数据库表创建完成")

    db = SessionLocal()
    try:
        for property_id in PROPERTIES:
            room_types = init_room_types(db, property_id)
            init_rate_plans(db, property_id)
            init_ari(db, property_id, room_types)
        print("初始化完成")
    finally:
        db.close()


if __name__ == '__main__':
    main()
