"""
日期工具
所有键比较前先规整为自然日（去掉时间部分）
"""
from datetime import date, datetime, timedelta
from typing import List, Union

from app.config import settings
from app.services.errors import ValidationError

DateLike = Union[date, datetime, str]


def to_calendar_day(value: DateLike) -> date:
    """规整为自然日：接受 date / datetime / ISO 字符串"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return date.fromisoformat(text[:10])
        except ValueError:
            raise ValidationError(f"无效日期: {value}", details={"value": value})
    raise ValidationError(f"无效日期类型: {type(value).__name__}")


def each_day(date_from: DateLike, date_to: DateLike) -> List[date]:
    """闭区间 [from, to] 内的每一天"""
    start = to_calendar_day(date_from)
    end = to_calendar_day(date_to)
    if end < start:
        raise ValidationError("结束日期不能早于开始日期",
                              details={"from": start.isoformat(), "to": end.isoformat()})
    span = (end - start).days + 1
    if span > settings.MAX_DATE_RANGE_DAYS:
        raise ValidationError(f"日期范围不能超过 {settings.MAX_DATE_RANGE_DAYS} 天")
    return [start + timedelta(days=i) for i in range(span)]


def stay_nights(check_in: DateLike, check_out: DateLike) -> List[date]:
    """半开区间 [check_in, check_out) 内的每一晚"""
    start = to_calendar_day(check_in)
    end = to_calendar_day(check_out)
    if end <= start:
        raise ValidationError("离店日期必须晚于入住日期", code="INVALID_STAY_DURATION")
    return [start + timedelta(days=i) for i in range((end - start).days)]
