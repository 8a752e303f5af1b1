"""
领域事件定义 (Domain Events)
ARI 变更与预订生命周期事件，提交后发布到进程内事件总线
"""
from enum import Enum
from dataclasses import dataclass, field, asdict
from datetime import datetime, date
from typing import Optional, Dict, Any, List


class EventType(str, Enum):
    """事件类型枚举"""
    # ARI 相关
    AVAILABILITY_UPDATED = "ari.availability_updated"
    RATE_UPDATED = "ari.rate_updated"
    RESTRICTION_UPDATED = "ari.restriction_updated"

    # 预订相关
    RESERVATION_CREATED = "reservation.created"
    RESERVATION_CANCELLED = "reservation.cancelled"


@dataclass
class BaseEventData:
    """事件数据基类"""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, (datetime, date)):
                result[key] = value.isoformat()
        return result


@dataclass
class AriChangedData(BaseEventData):
    """ARI 变更事件数据（可用量 / 价格 / 限制共用）"""
    property_id: str = ""
    request_id: str = ""
    room_type_id: int = 0
    room_type_code: str = ""
    rate_plan_codes: List[str] = field(default_factory=list)  # 含级联影响的子策略
    date_from: str = ""
    date_to: str = ""
    days_updated: int = 0


@dataclass
class ReservationCreatedData(BaseEventData):
    """预订创建事件数据"""
    property_id: str = ""
    request_id: str = ""
    reservation_id: str = ""
    pnr: str = ""
    room_type_id: int = 0
    rate_plan_code: str = ""
    check_in: str = ""
    check_out: str = ""
    total_amount: float = 0.0
    currency: str = ""


@dataclass
class ReservationCancelledData(BaseEventData):
    """预订取消事件数据"""
    property_id: str = ""
    request_id: str = ""
    reservation_id: str = ""
    pnr: str = ""
    previous_status: str = ""
    cancel_reason: Optional[str] = None


# 事件数据类型映射
EVENT_DATA_CLASSES = {
    EventType.AVAILABILITY_UPDATED: AriChangedData,
    EventType.RATE_UPDATED: AriChangedData,
    EventType.RESTRICTION_UPDATED: AriChangedData,
    EventType.RESERVATION_CREATED: ReservationCreatedData,
    EventType.RESERVATION_CANCELLED: ReservationCancelledData,
}
