"""
ARI 服务 - 可用量 / 价格 / 限制的管理入口
每个批量更新或单元格编辑是一个事务：
状态变更与级联审计同事务提交，顶层审计事件与操作日志在提交后尽力写入，
最后向事件总线发布 ARI 变更事件
"""
from datetime import date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.models.ontology import AriEventType, AvailabilityUpdateType, CellField, RestrictionField
from app.models.schemas import AvailabilityUpdate, RateUpdate, RestrictionUpdate, SingleCellUpdate
from app.models.events import EventType, AriChangedData
from app.security.context import RequestContext
from app.services.audit_service import AuditService
from app.services.date_utils import each_day, to_calendar_day
from app.services.errors import AriError, InternalError, ValidationError
from app.services.event_bus import event_bus, Event
from app.services.inventory_service import InventoryService
from app.services.rate_cascade import RateCascadeEngine
from app.services.restriction_service import RestrictionService, restriction_to_dict
from app.services.undo_service import PREVIOUS_INVENTORIES, PREVIOUS_RATES, UndoService

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def _parse_amount(value: Any) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("价格必须是正数", code="INVALID_PRICE", details={"value": str(value)})
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError("价格必须是正数", code="INVALID_PRICE", details={"value": str(value)})
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("价格必须是正数", code="INVALID_PRICE", details={"value": str(value)})
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def _parse_count(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("可用量必须是非负整数", code="INVALID_AVAILABILITY", details={"value": str(value)})
    try:
        number = int(value)
        whole = number == float(value)
    except (TypeError, ValueError, OverflowError):
        raise ValidationError("可用量必须是非负整数", code="INVALID_AVAILABILITY", details={"value": str(value)})
    if number < 0 or not whole:
        raise ValidationError("可用量必须是非负整数", code="INVALID_AVAILABILITY", details={"value": str(value)})
    return number


class AriService:
    """ARI 服务"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None):
        self.db = db
        self.inventory = InventoryService(db)
        self.audit = AuditService(db)
        self.rates = RateCascadeEngine(db, self.audit)
        self.restrictions = RestrictionService(db)
        self._publish_event = event_publisher or event_bus.publish
        self.undo = UndoService(db, event_publisher=self._publish_event)

    # ============== 事务收尾 ==============

    def _commit(self, operation: str) -> None:
        try:
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"{operation} commit failed: {e}", exc_info=True)
            raise InternalError(f"{operation} 提交失败", details={"error": str(e)})

    def _abort(self, operation: str, error: Exception) -> AriError:
        """回滚并把意外异常转换为 InternalError"""
        self.db.rollback()
        if isinstance(error, AriError):
            return error
        logger.error(f"{operation} failed: {error}", exc_info=True)
        return InternalError(f"{operation} 失败", details={"error": str(error)})

    def _publish(self, event_type: EventType, ctx: RequestContext, room_type, days: List[date],
                 rate_plan_codes: Optional[List[str]] = None) -> None:
        self._publish_event(Event(
            event_type=event_type,
            data=AriChangedData(
                property_id=ctx.property_id,
                request_id=ctx.request_id,
                room_type_id=room_type.id,
                room_type_code=room_type.code,
                rate_plan_codes=rate_plan_codes or [],
                date_from=days[0].isoformat(),
                date_to=days[-1].isoformat(),
                days_updated=len(days),
            ).to_dict(),
            source="ari_service"
        ))

    def _snapshot_rates(self, ctx: RequestContext, room_type, plan, plan_code: str,
                        days: List[date]) -> Dict[str, Any]:
        """变更前的价格行（策略及全部后代）；默认策略同时快照账本价格"""
        codes = [plan_code] + [d.code for d in self.rates.descendants(plan)]
        snapshots = {PREVIOUS_RATES: self.undo.snapshot_rates(ctx.property_id, room_type.id, days, codes)}
        if plan_code == settings.DEFAULT_RATE_PLAN_CODE:
            snapshots[PREVIOUS_INVENTORIES] = self.undo.snapshot_inventory(ctx.property_id, room_type.id, days)
        return snapshots

    # ============== 批量更新 ==============

    def update_availability(self, ctx: RequestContext, data: AvailabilityUpdate) -> Dict[str, Any]:
        """批量更新可用量（SET / INCREMENT / DECREMENT），逐日经过超售保护"""
        days = each_day(data.date_range.date_from, data.date_range.date_to)
        room_type = self.inventory.get_room_type_by_code(ctx.property_id, data.room_type_code)

        clamped = []
        try:
            previous = self.undo.snapshot_inventory(ctx.property_id, room_type.id, days)
            physical = self.inventory.physical_room_count(room_type.id)
            for day in days:
                row, requested = self.inventory.apply_availability(
                    ctx.property_id, room_type, day, data.availability, data.update_type, physical
                )
                if row.available != requested:
                    clamped.append(day.isoformat())
            self._commit("Availability update")
        except Exception as e:
            raise self._abort("Availability update", e)

        payload = {
            "availability": data.availability,
            "updateType": data.update_type.value,
            "physicalCount": physical,
            "clampedDates": clamped,
        }
        logger.info(
            f"Availability {data.update_type.value} {data.availability} applied to "
            f"{room_type.code} for {len(days)} days ({ctx.property_id})"
        )
        self.audit.record_event_safely(ctx, AriEventType.AVAILABILITY, room_type.code,
                                       days[0], days[-1], {**payload, PREVIOUS_INVENTORIES: previous})
        self.audit.log_operation(ctx, "ari.availability_update", "room_type", room_type.id,
                                 {"roomTypeCode": room_type.code, **data.date_range.to_dict(), **payload})
        self._publish(EventType.AVAILABILITY_UPDATED, ctx, room_type, days)

        return {
            "updated": len(days),
            "roomTypeCode": room_type.code,
            "dateRange": data.date_range.to_dict(),
            "availability": data.availability,
            "clampedDates": clamped,
        }

    def update_rates(self, ctx: RequestContext, data: RateUpdate) -> Dict[str, Any]:
        """批量写入显式价格并级联到派生策略"""
        days = each_day(data.date_range.date_from, data.date_range.date_to)
        plan_code = data.rate_plan_code or settings.DEFAULT_RATE_PLAN_CODE

        if data.rates:
            prices = {}
            for item in data.rates:
                if item.date < days[0] or item.date > days[-1]:
                    raise ValidationError(f"{item.date} 不在日期范围内", code="RATE_OUTSIDE_RANGE",
                                          details={"date": item.date.isoformat()})
                prices[item.date] = _parse_amount(item.price)
        else:
            base = _parse_amount(data.base_rate)
            prices = {day: base for day in days}

        room_type = self.inventory.get_room_type_by_code(ctx.property_id, data.room_type_code)
        affected = set()
        try:
            plan = self.rates.require_plan(ctx.property_id, plan_code)
            physical = self.inventory.physical_room_count(room_type.id)
            snapshots = self._snapshot_rates(ctx, room_type, plan, plan_code, sorted(prices))
            for day, amount in sorted(prices.items()):
                self.rates.set_manual_rate(ctx.property_id, room_type.id, day, plan_code, amount)
                if plan_code == settings.DEFAULT_RATE_PLAN_CODE:
                    self.inventory.set_price(ctx.property_id, room_type, day, amount, physical)
                affected.update(self.rates.cascade(ctx, room_type, day, plan, amount))
            self._commit("Rate update")
        except Exception as e:
            raise self._abort("Rate update", e)

        avg_rate = (sum(prices.values()) / len(prices)).quantize(_CENT, rounding=ROUND_HALF_UP)
        payload = {
            "ratePlanCode": plan_code,
            "rates": {day.isoformat(): str(amount) for day, amount in sorted(prices.items())},
            "avgRate": str(avg_rate),
            "cascadedPlans": sorted(affected),
        }
        logger.info(
            f"Rates for {room_type.code}/{plan_code} updated on {len(prices)} days, "
            f"cascaded to {sorted(affected)} ({ctx.property_id})"
        )
        self.audit.record_event_safely(ctx, AriEventType.RATE, room_type.code,
                                       days[0], days[-1], {**payload, **snapshots}, rate_plan_code=plan_code)
        self.audit.log_operation(ctx, "ari.rate_update", "room_type", room_type.id,
                                 {"roomTypeCode": room_type.code, **data.date_range.to_dict(), **payload})
        self._publish(EventType.RATE_UPDATED, ctx, room_type, days, [plan_code] + sorted(affected))

        return {
            "updated": len(prices),
            "roomTypeCode": room_type.code,
            "dateRange": data.date_range.to_dict(),
            "avgRate": float(avg_rate),
        }

    def update_restrictions(self, ctx: RequestContext, data: RestrictionUpdate) -> Dict[str, Any]:
        """批量更新限制，只改写请求中给出的字段"""
        days = each_day(data.date_range.date_from, data.date_range.date_to)
        plan_code = data.rate_plan_code or settings.DEFAULT_RATE_PLAN_CODE
        values = {
            RestrictionField(key): value
            for key, value in data.restrictions.model_dump(by_alias=True, exclude_none=True).items()
        }
        if not values:
            raise ValidationError("至少需要提供一个限制字段", code="EMPTY_RESTRICTIONS")

        room_type = self.inventory.get_room_type_by_code(ctx.property_id, data.room_type_code)
        try:
            self.rates.require_plan(ctx.property_id, plan_code)
            for day in days:
                self.restrictions.upsert(ctx.property_id, room_type.id, day, plan_code, values)
            self._commit("Restriction update")
        except Exception as e:
            raise self._abort("Restriction update", e)

        payload = {"ratePlanCode": plan_code, "restrictions": {f.value: v for f, v in values.items()}}
        logger.info(f"Restrictions {sorted(payload['restrictions'])} applied to "
                    f"{room_type.code}/{plan_code} for {len(days)} days ({ctx.property_id})")
        self.audit.record_event_safely(ctx, AriEventType.RESTRICTION, room_type.code,
                                       days[0], days[-1], payload, rate_plan_code=plan_code)
        self.audit.log_operation(ctx, "ari.restriction_update", "room_type", room_type.id,
                                 {"roomTypeCode": room_type.code, **data.date_range.to_dict(), **payload})
        self._publish(EventType.RESTRICTION_UPDATED, ctx, room_type, days, [plan_code])

        return {
            "updated": len(days),
            "roomTypeCode": room_type.code,
            "dateRange": data.date_range.to_dict(),
        }

    # ============== 单元格编辑 ==============

    def single_cell_update(self, ctx: RequestContext, data: SingleCellUpdate) -> Dict[str, Any]:
        """
        ARI 网格单元格编辑

        price 写入显式覆盖价并级联；clear_price 清除显式价格后立即重算；
        available 走超售保护；其余字段为限制
        """
        field = data.field
        if field != CellField.CLEAR_PRICE and data.value is None:
            raise ValidationError("缺少 value", code="MISSING_VALUE", details={"field": field.value})

        if field == CellField.PRICE:
            value = _parse_amount(data.value)
        elif field == CellField.AVAILABLE:
            value = _parse_count(data.value)
        else:
            value = data.value

        day = to_calendar_day(data.date)
        plan_code = data.rate_plan_code or settings.DEFAULT_RATE_PLAN_CODE
        room_type = self.inventory.get_room_type(ctx.property_id, data.room_type_id)

        rate_plan_codes = []
        snapshots = {}
        try:
            if field == CellField.AVAILABLE:
                snapshots = {
                    PREVIOUS_INVENTORIES: self.undo.snapshot_inventory(ctx.property_id, room_type.id, [day])
                }
                physical = self.inventory.physical_room_count(room_type.id)
                row, requested = self.inventory.apply_availability(
                    ctx.property_id, room_type, day, value, AvailabilityUpdateType.SET, physical
                )
                event_type, event_kind = AriEventType.AVAILABILITY, EventType.AVAILABILITY_UPDATED
                updated = {"date": day.isoformat(), "available": row.available,
                           "total": row.total, "requested": requested}
            elif field == CellField.PRICE:
                plan = self.rates.require_plan(ctx.property_id, plan_code)
                snapshots = self._snapshot_rates(ctx, room_type, plan, plan_code, [day])
                self.rates.set_manual_rate(ctx.property_id, room_type.id, day, plan_code, value)
                if plan_code == settings.DEFAULT_RATE_PLAN_CODE:
                    physical = self.inventory.physical_room_count(room_type.id)
                    self.inventory.set_price(ctx.property_id, room_type, day, value, physical)
                cascaded = self.rates.cascade(ctx, room_type, day, plan, value)
                rate_plan_codes = [plan_code] + cascaded
                event_type, event_kind = AriEventType.RATE, EventType.RATE_UPDATED
                updated = {"date": day.isoformat(), "ratePlanCode": plan_code, "price": float(value),
                           "isManualOverride": True, "cascaded": cascaded}
            elif field == CellField.CLEAR_PRICE:
                plan = self.rates.require_plan(ctx.property_id, plan_code)
                snapshots = self._snapshot_rates(ctx, room_type, plan, plan_code, [day])
                result = self.rates.clear_override(ctx, room_type, day, plan_code)
                rate_plan_codes = [plan_code] + result["affected"] + result["removed"]
                event_type, event_kind = AriEventType.RATE, EventType.RATE_UPDATED
                recomputed = result["recomputed"]
                updated = {"date": day.isoformat(), "ratePlanCode": plan_code,
                           "cleared": result["cleared"],
                           "price": float(recomputed) if recomputed is not None else None,
                           "cascaded": result["affected"], "removed": result["removed"]}
            else:
                self.rates.require_plan(ctx.property_id, plan_code)
                row = self.restrictions.upsert(ctx.property_id, room_type.id, day, plan_code,
                                               {field.restriction_field: value})
                rate_plan_codes = [plan_code]
                event_type, event_kind = AriEventType.RESTRICTION, EventType.RESTRICTION_UPDATED
                updated = restriction_to_dict(row)
            self._commit("Single cell update")
        except Exception as e:
            raise self._abort("Single cell update", e)

        payload = {"field": field.value, "value": data.value, "updated": updated, "singleCell": True}
        logger.info(f"Cell {field.value} of {room_type.code}/{plan_code} on {day} updated ({ctx.property_id})")
        self.audit.record_event_safely(ctx, event_type, room_type.code, day, day, {**payload, **snapshots},
                                       rate_plan_code=None if field == CellField.AVAILABLE else plan_code)
        self.audit.log_operation(ctx, "ari.single_cell_update", "room_type", room_type.id,
                                 {"roomTypeCode": room_type.code, "date": day.isoformat(), **payload})
        self._publish(event_kind, ctx, room_type, [day], rate_plan_codes)

        return {"success": True, "updated": updated}

    # ============== 查询 ==============

    def resolve_rate(self, ctx: RequestContext, room_type_code: str, day: date,
                     rate_plan_code: Optional[str] = None) -> Dict[str, Any]:
        """解析某天某策略的价格（显式或按价格图现算）"""
        plan_code = rate_plan_code or settings.DEFAULT_RATE_PLAN_CODE
        room_type = self.inventory.get_room_type_by_code(ctx.property_id, room_type_code)
        self.rates.require_plan(ctx.property_id, plan_code)

        row = self.rates.get_rate_row(ctx.property_id, room_type.id, day, plan_code)
        amount = self.rates.resolve_rate(ctx.property_id, room_type.id, day, plan_code)
        if row is not None:
            source = "OVERRIDE" if row.is_manual_override else "STORED"
        else:
            source = "DERIVED" if amount is not None else None

        return {
            "date": day.isoformat(),
            "roomTypeCode": room_type.code,
            "ratePlanCode": plan_code,
            "amount": float(amount) if amount is not None else None,
            "source": source,
        }

    def get_inventory(self, ctx: RequestContext, room_type_code: str,
                      date_from: date, date_to: date) -> List[Dict[str, Any]]:
        """查询库存账本"""
        days = each_day(date_from, date_to)
        room_type = self.inventory.get_room_type_by_code(ctx.property_id, room_type_code)
        rows = self.inventory.get_ledger(ctx.property_id, room_type.id, days[0], days[-1])
        return [
            {
                "date": row.date.isoformat(),
                "total": row.total,
                "available": row.available,
                "booked": row.booked,
                "price": float(row.price) if row.price is not None else None,
            }
            for row in rows
        ]

    def get_events(self, ctx: RequestContext, room_type_code: Optional[str] = None,
                   event_type: Optional[AriEventType] = None, rate_plan_code: Optional[str] = None,
                   date_from: Optional[date] = None, date_to: Optional[date] = None,
                   limit: int = 100) -> List[Dict[str, Any]]:
        """查询 ARI 审计事件"""
        events = self.audit.get_events(ctx.property_id, room_type_code=room_type_code,
                                       rate_plan_code=rate_plan_code, event_type=event_type,
                                       date_from=date_from, date_to=date_to, limit=limit)
        return [
            {
                "eventId": e.event_id,
                "roomTypeCode": e.room_type_code,
                "ratePlanCode": e.rate_plan_code,
                "eventType": e.event_type.value,
                "dateFrom": e.date_from.isoformat(),
                "dateTo": e.date_to.isoformat(),
                "payload": AuditService.event_payload(e),
                "status": e.status,
                "undoOf": e.undo_of_event_id,
                "occurredAt": e.occurred_at.isoformat(),
            }
            for e in events
        ]
