"""
库存服务 - 库存账本与超售保护
任何写 available 的路径都经过 clamp_availability：
available = min(请求值, 物理房量)，total 同步为物理房量
"""
from typing import List, Optional, Tuple
from datetime import date
from decimal import Decimal
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.ontology import (
    Inventory, Room, RoomType, RoomStatus, AvailabilityUpdateType
)
from app.services.errors import NotFoundError

logger = logging.getLogger(__name__)


def clamp_availability(requested: int, physical_count: int) -> int:
    """超售保护：不超过物理房量，不低于 0"""
    return max(0, min(requested, physical_count))


def resolve_requested(current: Optional[int], value: int,
                      update_type: AvailabilityUpdateType, physical_count: int) -> int:
    """
    按更新方式计算请求值（未裁剪）

    行不存在时：INCREMENT 以 0 为基数，DECREMENT 以物理房量为基数
    """
    if update_type == AvailabilityUpdateType.SET:
        return value
    if update_type == AvailabilityUpdateType.INCREMENT:
        base = current if current is not None else 0
        return base + value
    base = current if current is not None else physical_count
    return base - value


class InventoryService:
    """库存服务"""

    def __init__(self, db: Session):
        self.db = db

    # ============== 房型 / 物理房量 ==============

    def get_room_type_by_code(self, property_id: str, code: str) -> RoomType:
        room_type = self.db.query(RoomType).filter(
            RoomType.property_id == property_id,
            RoomType.code == code
        ).first()
        if not room_type:
            raise NotFoundError(f"房型 {code} 不存在", code="ROOM_TYPE_NOT_FOUND",
                                details={"roomTypeCode": code})
        return room_type

    def get_room_type(self, property_id: str, room_type_id: int) -> RoomType:
        room_type = self.db.query(RoomType).filter(
            RoomType.id == room_type_id,
            RoomType.property_id == property_id
        ).first()
        if not room_type:
            raise NotFoundError(f"房型 {room_type_id} 不存在", code="ROOM_TYPE_NOT_FOUND",
                                details={"roomTypeId": room_type_id})
        return room_type

    def physical_room_count(self, room_type_id: int) -> int:
        """启用且非维修状态的房间数；在调用方的事务内读取"""
        return self.db.query(func.count(Room.id)).filter(
            Room.room_type_id == room_type_id,
            Room.is_active == True,
            Room.status != RoomStatus.OUT_OF_ORDER
        ).scalar() or 0

    # ============== 账本行 ==============

    def get_row(self, property_id: str, room_type_id: int, day: date,
                for_update: bool = False) -> Optional[Inventory]:
        query = self.db.query(Inventory).filter(
            Inventory.property_id == property_id,
            Inventory.room_type_id == room_type_id,
            Inventory.date == day
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def apply_availability(self, property_id: str, room_type: RoomType, day: date,
                           value: int, update_type: AvailabilityUpdateType,
                           physical_count: int) -> Tuple[Inventory, int]:
        """
        写入某天的可用量（不提交）

        Returns:
            (账本行, 裁剪前的请求值)
        """
        row = self.get_row(property_id, room_type.id, day, for_update=True)
        requested = resolve_requested(row.available if row else None, value,
                                      update_type, physical_count)
        applied = clamp_availability(requested, physical_count)

        if row is None:
            row = Inventory(
                property_id=property_id,
                room_type_id=room_type.id,
                date=day,
                booked=0,
            )
            self.db.add(row)
        row.total = physical_count
        row.available = applied

        if applied != requested:
            logger.warning(
                f"Availability clamped for {room_type.code} on {day}: "
                f"requested {requested}, applied {applied} (physical {physical_count})"
            )
        return row, requested

    def ensure_row(self, property_id: str, room_type: RoomType, day: date,
                   physical_count: int) -> Inventory:
        """
        取得某天的账本行，不存在则以物理房量创建；total 重新同步（不提交）
        """
        row = self.get_row(property_id, room_type.id, day, for_update=True)
        if row is None:
            row = Inventory(
                property_id=property_id,
                room_type_id=room_type.id,
                date=day,
                total=physical_count,
                available=physical_count,
                booked=0,
            )
            self.db.add(row)
            return row
        row.total = physical_count
        row.available = clamp_availability(row.available, physical_count)
        return row

    def set_price(self, property_id: str, room_type: RoomType, day: date,
                  amount: Decimal, physical_count: int) -> Inventory:
        """价格写入只改 price 字段，但同样同步 total"""
        row = self.ensure_row(property_id, room_type, day, physical_count)
        row.price = amount
        return row

    def get_ledger(self, property_id: str, room_type_id: int,
                   date_from: date, date_to: date) -> List[Inventory]:
        """查询闭区间内的账本行"""
        return self.db.query(Inventory).filter(
            Inventory.property_id == property_id,
            Inventory.room_type_id == room_type_id,
            Inventory.date >= date_from,
            Inventory.date <= date_to
        ).order_by(Inventory.date).all()

    def has_availability(self, property_id: str, room_type_id: int,
                         nights: List[date], quantity: int = 1) -> bool:
        """非加锁读：每一晚都有账本行且 available >= quantity"""
        if not nights:
            return False
        count = self.db.query(func.count(Inventory.id)).filter(
            Inventory.property_id == property_id,
            Inventory.room_type_id == room_type_id,
            Inventory.date.in_(nights),
            Inventory.available >= quantity
        ).scalar() or 0
        return count == len(nights)
