"""
限制服务
限制字段通过固定的 RestrictionField -> setter 映射写入，不按名称拼接列
"""
from datetime import date
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.models.ontology import Restriction, RestrictionField
from app.services.errors import RestrictionViolation, ValidationError

logger = logging.getLogger(__name__)


def _as_los(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError("入住晚数限制必须是正整数", code="INVALID_RESTRICTION_VALUE")
    try:
        number = int(value)
        whole = number == float(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("入住晚数限制必须是正整数", code="INVALID_RESTRICTION_VALUE",
                              details={"value": str(value)})
    if number < 1 or not whole:
        raise ValidationError("入住晚数限制必须是正整数", code="INVALID_RESTRICTION_VALUE",
                              details={"value": str(value)})
    return number


def _as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    if value in (0, 1):
        return bool(value)
    raise ValidationError("限制开关必须是布尔值", code="INVALID_RESTRICTION_VALUE",
                          details={"value": str(value)})


def _set_min_los(row: Restriction, value: Any) -> None:
    row.min_los = _as_los(value)


def _set_max_los(row: Restriction, value: Any) -> None:
    row.max_los = _as_los(value)


def _set_cta(row: Restriction, value: Any) -> None:
    row.closed_to_arrival = _as_flag(value)


def _set_ctd(row: Restriction, value: Any) -> None:
    row.closed_to_departure = _as_flag(value)


def _set_closed(row: Restriction, value: Any) -> None:
    row.closed = _as_flag(value)


RESTRICTION_SETTERS: Dict[RestrictionField, Callable[[Restriction, Any], None]] = {
    RestrictionField.MIN_LOS: _set_min_los,
    RestrictionField.MAX_LOS: _set_max_los,
    RestrictionField.CLOSED_TO_ARRIVAL: _set_cta,
    RestrictionField.CLOSED_TO_DEPARTURE: _set_ctd,
    RestrictionField.CLOSED: _set_closed,
}


def restriction_to_dict(row: Restriction) -> Dict[str, Any]:
    return {
        "date": row.date.isoformat(),
        "ratePlanCode": row.rate_plan_code,
        "minLOS": row.min_los,
        "maxLOS": row.max_los,
        "closedToArrival": row.closed_to_arrival,
        "closedToDeparture": row.closed_to_departure,
        "closed": row.closed,
    }


class RestrictionService:
    """限制服务"""

    def __init__(self, db: Session):
        self.db = db

    def get_row(self, property_id: str, room_type_id: int, day: date,
                rate_plan_code: str) -> Optional[Restriction]:
        return self.db.query(Restriction).filter(
            Restriction.property_id == property_id,
            Restriction.room_type_id == room_type_id,
            Restriction.date == day,
            Restriction.rate_plan_code == rate_plan_code
        ).first()

    def upsert(self, property_id: str, room_type_id: int, day: date, rate_plan_code: str,
               values: Dict[RestrictionField, Any]) -> Restriction:
        """只改写给出的字段（不提交）"""
        row = self.get_row(property_id, room_type_id, day, rate_plan_code)
        if row is None:
            row = Restriction(
                property_id=property_id,
                room_type_id=room_type_id,
                date=day,
                rate_plan_code=rate_plan_code,
                closed_to_arrival=False,
                closed_to_departure=False,
                closed=False,
            )
            self.db.add(row)
        for field, value in values.items():
            RESTRICTION_SETTERS[RestrictionField(field)](row, value)

        if row.min_los is not None and row.max_los is not None and row.min_los > row.max_los:
            raise ValidationError("最短入住晚数不能大于最长入住晚数", code="INVALID_RESTRICTION_VALUE",
                                  details={"minLOS": row.min_los, "maxLOS": row.max_los})
        return row

    def _effective(self, property_id: str, room_type_id: int, days: List[date],
                   rate_plan_code: str) -> Dict[date, Restriction]:
        """每天取该策略的限制，没有则回退到默认策略的限制"""
        codes = {rate_plan_code, settings.DEFAULT_RATE_PLAN_CODE}
        rows = self.db.query(Restriction).filter(
            Restriction.property_id == property_id,
            Restriction.room_type_id == room_type_id,
            Restriction.date.in_(days),
            Restriction.rate_plan_code.in_(codes)
        ).all()

        result: Dict[date, Restriction] = {}
        for row in rows:
            if row.rate_plan_code == rate_plan_code or row.date not in result:
                result[row.date] = row
        return result

    def validate_stay(self, property_id: str, room_type_id: int, rate_plan_code: str,
                      check_in: date, check_out: date, nights: List[date]) -> None:
        """
        校验入住是否违反限制

        Raises:
            RestrictionViolation: 关房、禁止到店/离店或入住晚数不符
        """
        length = len(nights)
        effective = self._effective(property_id, room_type_id, nights + [check_out], rate_plan_code)

        for night in nights:
            row = effective.get(night)
            if row is not None and row.closed:
                raise RestrictionViolation(f"{night} 已关房", code="RESTRICTION_CLOSED",
                                           details={"date": night.isoformat()})

        arrival = effective.get(check_in)
        if arrival is not None:
            if arrival.closed_to_arrival:
                raise RestrictionViolation(f"{check_in} 禁止到店", code="RESTRICTION_CTA",
                                           details={"date": check_in.isoformat()})
            if arrival.min_los is not None and length < arrival.min_los:
                raise RestrictionViolation(
                    f"入住晚数 {length} 少于最短要求 {arrival.min_los}", code="RESTRICTION_MIN_LOS",
                    details={"nights": length, "minLOS": arrival.min_los})
            if arrival.max_los is not None and length > arrival.max_los:
                raise RestrictionViolation(
                    f"入住晚数 {length} 超过最长限制 {arrival.max_los}", code="RESTRICTION_MAX_LOS",
                    details={"nights": length, "maxLOS": arrival.max_los})

        departure = effective.get(check_out)
        if departure is not None and departure.closed_to_departure:
            raise RestrictionViolation(f"{check_out} 禁止离店", code="RESTRICTION_CTD",
                                       details={"date": check_out.isoformat()})
