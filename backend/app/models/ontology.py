"""
本体对象定义 (Ontology Objects)
ARI（可用量 / 价格 / 库存）核心实体：房型、房间、库存账本、价格图、限制、
预订聚合（预订 + 账夹 + 入住人）、幂等记录与 ARI 审计事件
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Date, ForeignKey, Text,
    Enum as SQLEnum, Boolean, Numeric, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import relationship
from app.database import Base


# ============== 枚举定义 ==============

class RoomStatus(str, Enum):
    """房间状态枚举"""
    VACANT_CLEAN = "vacant_clean"      # 空闲-已清洁
    OCCUPIED = "occupied"              # 入住中
    VACANT_DIRTY = "vacant_dirty"      # 空闲-待清洁
    OUT_OF_ORDER = "out_of_order"      # 维修中（不计入物理房量）


class ReservationStatus(str, Enum):
    """预订状态枚举"""
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"
    CANCELLED = "CANCELLED"


class DerivedType(str, Enum):
    """派生价格类型"""
    PERCENTAGE = "PERCENTAGE"          # 按父价百分比调整
    FIXED_AMOUNT = "FIXED_AMOUNT"      # 按固定金额调整


class RoundingRule(str, Enum):
    """派生价格取整规则"""
    NONE = "NONE"
    NEAREST_WHOLE = "NEAREST_WHOLE"
    ENDING_99 = "ENDING_99"
    ENDING_90 = "ENDING_90"
    MULTIPLE_5 = "MULTIPLE_5"
    MULTIPLE_10 = "MULTIPLE_10"


class IdempotencyStatus(str, Enum):
    """幂等记录状态"""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class AriEventType(str, Enum):
    """ARI 审计事件类型"""
    AVAILABILITY = "AVAILABILITY"
    RATE = "RATE"
    RESTRICTION = "RESTRICTION"


class AvailabilityUpdateType(str, Enum):
    """可用量更新方式"""
    SET = "SET"
    INCREMENT = "INCREMENT"
    DECREMENT = "DECREMENT"


class RestrictionField(str, Enum):
    """可编辑的限制字段（固定集合，不拼接列名）"""
    MIN_LOS = "minLOS"
    MAX_LOS = "maxLOS"
    CLOSED_TO_ARRIVAL = "closedToArrival"
    CLOSED_TO_DEPARTURE = "closedToDeparture"
    CLOSED = "closed"


class CellField(str, Enum):
    """ARI 网格单元格可编辑字段"""
    PRICE = "price"
    CLEAR_PRICE = "clear_price"
    AVAILABLE = "available"
    CLOSED = "closed"
    CLOSED_TO_ARRIVAL = "closedToArrival"
    CLOSED_TO_DEPARTURE = "closedToDeparture"
    MIN_LOS = "minLOS"
    MAX_LOS = "maxLOS"

    @property
    def restriction_field(self) -> "RestrictionField":
        return RestrictionField(self.value)

    @property
    def is_restriction(self) -> bool:
        return self.value in {f.value for f in RestrictionField}


class GuestType(str, Enum):
    """入住人类型"""
    ADULT = "ADULT"
    CHILD = "CHILD"


class FolioStatus(str, Enum):
    """账夹状态"""
    OPEN = "OPEN"
    CLOSED = "CLOSED"


# ============== 目录：房型 / 房间 ==============

class RoomType(Base):
    """
    房型对象
    由后台 CRUD 维护，ARI 各实体均以其为维度
    """
    __tablename__ = "room_types"
    __table_args__ = (
        UniqueConstraint("property_id", "code", name="uq_room_type_property_code"),
    )

    id = Column(Integer, primary_key=True, index=True)
    property_id = Column(String(64), nullable=False, index=True)   # 酒店
    code = Column(String(20), nullable=False)                      # 房型代码
    name = Column(String(50), nullable=False)                      # 房型名称
    description = Column(Text)
    base_price = Column(Numeric(10, 2), nullable=False, default=0)  # 无价格时的兜底价
    max_occupancy = Column(Integer, default=2)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    rooms = relationship("Room", back_populates="room_type")


class Room(Base):
    """
    房间对象 - 物理房
    非维修状态且启用的房间数即该房型每天的可售上限
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    room_number = Column(String(10), nullable=False)
    floor = Column(Integer, nullable=False, default=1)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    status = Column(SQLEnum(RoomStatus), default=RoomStatus.VACANT_CLEAN)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    room_type = relationship("RoomType", back_populates="rooms")


# ============== 库存账本 ==============

class Inventory(Base):
    """
    库存账本行：每个 (酒店, 房型, 日期) 一行
    不变量：0 <= available <= total，total 与物理房量同步
    """
    __tablename__ = "inventory"
    __table_args__ = (
        UniqueConstraint("property_id", "room_type_id", "date", name="uq_inventory_day"),
        CheckConstraint("available >= 0", name="ck_inventory_available_non_negative"),
    )

    id = Column(Integer, primary_key=True, index=True)
    property_id = Column(String(64), nullable=False, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    date = Column(Date, nullable=False)
    total = Column(Integer, nullable=False, default=0)        # 物理房量
    available = Column(Integer, nullable=False, default=0)    # 可售数量
    booked = Column(Integer, nullable=False, default=0)       # 已售数量
    price = Column(Numeric(10, 2))                            # 当日售价（展示用）
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    room_type = relationship("RoomType")


# ============== 价格图 ==============

class RatePlan(Base):
    """
    价格策略对象 - 价格图中的节点
    无父节点的策略为权威价（BASE），有父节点的为派生价
    """
    __tablename__ = "rate_plans"
    __table_args__ = (
        UniqueConstraint("property_id", "code", name="uq_rate_plan_property_code"),
    )

    id = Column(Integer, primary_key=True, index=True)
    property_id = Column(String(64), nullable=False, index=True)
    code = Column(String(20), nullable=False)
    name = Column(String(100), nullable=False)
    parent_rate_plan_id = Column(Integer, ForeignKey("rate_plans.id"), nullable=True)
    derived_type = Column(SQLEnum(DerivedType), nullable=True)
    derived_value = Column(Numeric(10, 2), nullable=True)     # 有符号：-10 表示九折
    rounding_rule = Column(SQLEnum(RoundingRule), default=RoundingRule.NONE, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    parent = relationship("RatePlan", remote_side=[id], back_populates="children")
    children = relationship("RatePlan", back_populates="parent", order_by="RatePlan.code")

    @property
    def is_derived(self) -> bool:
        return self.parent_rate_plan_id is not None


class Rate(Base):
    """
    价格行：每个 (酒店, 房型, 日期, 价格策略) 一行
    is_manual_override 为真时，父价级联不得改写 amount
    """
    __tablename__ = "rates"
    __table_args__ = (
        UniqueConstraint("property_id", "room_type_id", "date", "rate_plan_code", name="uq_rate_day_plan"),
    )

    id = Column(Integer, primary_key=True, index=True)
    property_id = Column(String(64), nullable=False, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    date = Column(Date, nullable=False)
    rate_plan_code = Column(String(20), nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    is_manual_override = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Restriction(Base):
    """销售限制：最短/最长入住、禁止到店/离店、关房"""
    __tablename__ = "restrictions"
    __table_args__ = (
        UniqueConstraint("property_id", "room_type_id", "date", "rate_plan_code", name="uq_restriction_day_plan"),
    )

    id = Column(Integer, primary_key=True, index=True)
    property_id = Column(String(64), nullable=False, index=True)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    date = Column(Date, nullable=False)
    rate_plan_code = Column(String(20), nullable=False, default="BASE")
    min_los = Column(Integer, nullable=True)
    max_los = Column(Integer, nullable=True)
    closed_to_arrival = Column(Boolean, default=False, nullable=False)
    closed_to_departure = Column(Boolean, default=False, nullable=False)
    closed = Column(Boolean, default=False, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ============== 预订聚合 ==============

class Guest(Base):
    """客人对象（预订人）"""
    __tablename__ = "guests"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(100), index=True)
    phone = Column(String(20))
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    reservations = relationship("Reservation", back_populates="guest")


class Reservation(Base):
    """
    预订对象 - 预订阶段的聚合根
    只能由预订提交器在同一事务中与账夹、入住人一起创建
    """
    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True)
    pnr = Column(String(12), unique=True, nullable=False)        # 对客预订号
    property_id = Column(String(64), nullable=False, index=True)
    guest_id = Column(Integer, ForeignKey("guests.id"), nullable=False)
    room_type_id = Column(Integer, ForeignKey("room_types.id"), nullable=False)
    rate_plan_code = Column(String(20), nullable=False)
    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    room_count = Column(Integer, default=1, nullable=False)
    adults = Column(Integer, default=1, nullable=False)
    children = Column(Integer, default=0, nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(SQLEnum(ReservationStatus), default=ReservationStatus.CONFIRMED, nullable=False)
    cancel_reason = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    guest = relationship("Guest", back_populates="reservations")
    room_type = relationship("RoomType")
    folio = relationship("Folio", back_populates="reservation", uselist=False)
    occupants = relationship("ReservationGuest", back_populates="reservation")


class ReservationGuest(Base):
    """入住人"""
    __tablename__ = "reservation_guests"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(String(36), ForeignKey("reservations.id"), nullable=False)
    name = Column(String(100), nullable=False)
    guest_type = Column(SQLEnum(GuestType), default=GuestType.ADULT, nullable=False)
    age = Column(Integer)
    is_representative = Column(Boolean, default=False, nullable=False)

    reservation = relationship("Reservation", back_populates="occupants")


class Folio(Base):
    """
    账夹 - 预订的流水账
    开账时以约定总价作为期初余额
    """
    __tablename__ = "folios"

    id = Column(Integer, primary_key=True, index=True)
    reservation_id = Column(String(36), ForeignKey("reservations.id"), unique=True, nullable=False)
    status = Column(SQLEnum(FolioStatus), default=FolioStatus.OPEN, nullable=False)
    base_amount = Column(Numeric(10, 2), default=0, nullable=False)
    tax_amount = Column(Numeric(10, 2), default=0, nullable=False)
    fee_amount = Column(Numeric(10, 2), default=0, nullable=False)
    total_amount = Column(Numeric(10, 2), default=0, nullable=False)
    paid_amount = Column(Numeric(10, 2), default=0, nullable=False)
    currency = Column(String(3), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    reservation = relationship("Reservation", back_populates="folio")

    @property
    def balance(self) -> Decimal:
        """计算余额"""
        return Decimal(self.total_amount or 0) - Decimal(self.paid_amount or 0)


# ============== 幂等与审计 ==============

class IdempotencyRecord(Base):
    """
    幂等记录
    PENDING 记录本身就是该键的锁；SUCCESS/FAILED 只会转换一次
    """
    __tablename__ = "idempotency_records"

    key = Column(String(128), primary_key=True)
    request_id = Column(String(64), nullable=False)
    status = Column(SQLEnum(IdempotencyStatus), default=IdempotencyStatus.PENDING, nullable=False)
    result = Column(Text)                                  # JSON
    locked_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)


class AriEvent(Base):
    """
    ARI 审计事件 - 只追加，不修改不删除
    仅用于追溯历史，不作为当前状态的来源
    """
    __tablename__ = "ari_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(36), unique=True, nullable=False)
    property_id = Column(String(64), nullable=False, index=True)
    room_type_code = Column(String(20), nullable=False)
    rate_plan_code = Column(String(20))
    event_type = Column(SQLEnum(AriEventType), nullable=False)
    date_from = Column(Date, nullable=False)
    date_to = Column(Date, nullable=False)
    payload = Column(Text)                                 # JSON
    status = Column(String(20), default="APPLIED", nullable=False)
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    undo_of_event_id = Column(String(36), unique=True, nullable=True)  # 补偿事件：被撤销的事件


class SystemLog(Base):
    """
    系统日志对象
    记录顶层操作（批量 ARI 更新、预订、取消）用于审计
    """
    __tablename__ = "system_logs"

    id = Column(Integer, primary_key=True, index=True)
    property_id = Column(String(64), index=True)
    request_id = Column(String(64))
    action = Column(String(100), nullable=False)           # 操作类型
    entity_type = Column(String(50))                       # 实体类型
    entity_id = Column(String(64))                         # 实体ID
    new_value = Column(Text)                               # 载荷(JSON)
    created_at = Column(DateTime, default=datetime.utcnow)
