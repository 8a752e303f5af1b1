"""
Pydantic 模式定义
用于 API 请求/响应验证；对外字段使用 camelCase
"""
from datetime import datetime, date
from decimal import Decimal
from typing import Optional, List, Any, Literal
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from pydantic.alias_generators import to_camel
from app.models.ontology import (
    AvailabilityUpdateType, CellField, DerivedType, RoundingRule,
    ReservationStatus, GuestType, FolioStatus
)


def _calendar_day(v: Any) -> Any:
    """日期规整为自然日：截掉时间部分"""
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, str) and len(v) > 10:
        return v[:10]
    return v


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============== ARI Schemas ==============

class DateRange(BaseModel):
    date_from: date = Field(..., alias="from")
    date_to: date = Field(..., alias="to")
    model_config = ConfigDict(populate_by_name=True)

    @field_validator('date_from', 'date_to', mode='before')
    @classmethod
    def normalize_day(cls, v: Any) -> Any:
        return _calendar_day(v)

    @model_validator(mode='after')
    def check_order(self):
        if self.date_to < self.date_from:
            raise ValueError("结束日期不能早于开始日期")
        return self

    def to_dict(self) -> dict:
        return {"from": self.date_from.isoformat(), "to": self.date_to.isoformat()}


class AvailabilityUpdate(CamelModel):
    room_type_code: str = Field(..., min_length=1)
    date_range: DateRange
    availability: int = Field(..., ge=0)
    update_type: AvailabilityUpdateType = AvailabilityUpdateType.SET


class RateItem(CamelModel):
    date: date
    price: Decimal = Field(..., gt=0)

    @field_validator('date', mode='before')
    @classmethod
    def normalize_day(cls, v: Any) -> Any:
        return _calendar_day(v)


class RateUpdate(CamelModel):
    room_type_code: str = Field(..., min_length=1)
    date_range: DateRange
    rate_plan_code: Optional[str] = None
    rates: Optional[List[RateItem]] = None
    base_rate: Optional[Decimal] = Field(None, gt=0)

    @model_validator(mode='after')
    def require_rates(self):
        if not self.rates and self.base_rate is None:
            raise ValueError("必须提供 rates 或 baseRate")
        return self


class RestrictionValues(BaseModel):
    min_los: Optional[int] = Field(None, alias="minLOS", ge=1)
    max_los: Optional[int] = Field(None, alias="maxLOS", ge=1)
    closed_to_arrival: Optional[bool] = Field(None, alias="closedToArrival")
    closed_to_departure: Optional[bool] = Field(None, alias="closedToDeparture")
    closed: Optional[bool] = None
    model_config = ConfigDict(populate_by_name=True)


class RestrictionUpdate(CamelModel):
    room_type_code: str = Field(..., min_length=1)
    date_range: DateRange
    rate_plan_code: Optional[str] = None
    restrictions: RestrictionValues


class SingleCellUpdate(CamelModel):
    date: date
    room_type_id: int
    rate_plan_code: Optional[str] = None
    field: CellField
    value: Any

    @field_validator('date', mode='before')
    @classmethod
    def normalize_day(cls, v: Any) -> Any:
        return _calendar_day(v)


class UndoRequest(CamelModel):
    event_id: str = Field(..., min_length=1)


# ============== 价格策略 Schemas ==============

class RatePlanCreate(CamelModel):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., max_length=100)
    parent_rate_plan_id: Optional[int] = None
    derived_type: Optional[DerivedType] = None
    derived_value: Optional[Decimal] = None
    rounding_rule: RoundingRule = RoundingRule.NONE
    is_active: bool = True


class RatePlanUpdate(CamelModel):
    name: Optional[str] = Field(None, max_length=100)
    parent_rate_plan_id: Optional[int] = None
    derived_type: Optional[DerivedType] = None
    derived_value: Optional[Decimal] = None
    rounding_rule: Optional[RoundingRule] = None
    is_active: Optional[bool] = None


class RatePlanResponse(CamelModel):
    id: int
    code: str
    name: str
    parent_rate_plan_id: Optional[int] = None
    derived_type: Optional[DerivedType] = None
    derived_value: Optional[Decimal] = None
    rounding_rule: RoundingRule
    is_active: bool
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ============== 报价 / 预订 Schemas ==============

class StayRequest(CamelModel):
    check_in: date
    check_out: date
    adults: int = Field(..., ge=1)
    children: int = Field(default=0, ge=0)
    room_type_code: str = Field(..., min_length=1)
    rate_plan_code: str = Field(..., min_length=1)

    @field_validator('check_in', 'check_out', mode='before')
    @classmethod
    def normalize_day(cls, v: Any) -> Any:
        return _calendar_day(v)


class QuoteRequest(CamelModel):
    stay: StayRequest


class BookingContext(CamelModel):
    domain: Literal["PROPERTY", "DISTRIBUTION"]
    hotel_id: Optional[str] = None
    hub_id: Optional[str] = None
    channel_code: Optional[str] = None
    request_id: str = Field(..., min_length=1)


class QuoteReference(CamelModel):
    quote_id: str = Field(..., min_length=1)
    pricing_signature: str = Field(..., min_length=1)


class GuestInfo(CamelModel):
    primary_guest_name: str = Field(..., min_length=1)
    email: str
    phone: Optional[str] = None

    @field_validator('email')
    @classmethod
    def check_email(cls, v: str) -> str:
        v = v.strip()
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("无效的邮箱地址")
        return v.lower()


class OccupantInfo(CamelModel):
    name: str = Field(..., min_length=1)
    type: GuestType = GuestType.ADULT
    age: Optional[int] = Field(None, ge=0)
    is_representative: bool = False


class BookRequest(CamelModel):
    context: BookingContext
    idempotency_key: str = Field(..., min_length=1, max_length=128)
    quote: QuoteReference
    guest: GuestInfo
    stay: StayRequest
    occupants: Optional[List[OccupantInfo]] = None


class CancelRequest(CamelModel):
    reason: Optional[str] = None


class OccupantResponse(CamelModel):
    name: str
    guest_type: GuestType
    age: Optional[int] = None
    is_representative: bool


class FolioResponse(CamelModel):
    status: FolioStatus
    total_amount: Decimal
    paid_amount: Decimal
    balance: Decimal
    currency: str


class ReservationResponse(CamelModel):
    id: str
    pnr: str
    status: ReservationStatus
    guest_id: int
    guest_name: str
    guest_email: Optional[str] = None
    room_type_id: int
    room_type_code: str
    rate_plan_code: str
    check_in: date
    check_out: date
    room_count: int
    adults: int
    children: int
    total_amount: Decimal
    currency: str
    cancel_reason: Optional[str] = None
    folio: Optional[FolioResponse] = None
    occupants: List[OccupantResponse] = []
    created_at: datetime
