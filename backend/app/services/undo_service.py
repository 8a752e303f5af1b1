"""
撤销服务 - ARI 批量操作回滚
可用量 / 价格变更在写入前把受影响的账本行与价格行快照进事件 payload；
撤销时在一个事务内恢复快照并追加一条补偿事件，原事件保持不变
"""
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Dict, List
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.ontology import AriEvent, AriEventType, AvailabilityUpdateType, Rate
from app.models.events import EventType, AriChangedData
from app.security.context import RequestContext
from app.services.audit_service import AuditService
from app.services.errors import AriError, InternalError, NotFoundError, ValidationError
from app.services.event_bus import event_bus, Event
from app.services.inventory_service import InventoryService
from app.services.rate_cascade import RateCascadeEngine

logger = logging.getLogger(__name__)

PREVIOUS_INVENTORIES = "_previousInventories"
PREVIOUS_RATES = "_previousRates"


class UndoService:
    """
    ARI 撤销服务

    支持依赖注入以便于测试：
    - event_publisher: 事件发布器
    """

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None):
        self.db = db
        self.inventory = InventoryService(db)
        self.audit = AuditService(db)
        self.rates = RateCascadeEngine(db, self.audit)
        self._publish_event = event_publisher or event_bus.publish

    # ============== 快照 ==============

    def snapshot_inventory(self, property_id: str, room_type_id: int,
                           days: List[date]) -> List[Dict[str, Any]]:
        """变更前的账本行；不存在的行记为 exists=False"""
        if not days:
            return []
        rows = {
            row.date: row
            for row in self.inventory.get_ledger(property_id, room_type_id, min(days), max(days))
        }
        snapshot = []
        for day in sorted(set(days)):
            row = rows.get(day)
            snapshot.append({
                "date": day.isoformat(),
                "exists": row is not None,
                "available": row.available if row else None,
                "total": row.total if row else None,
                "price": str(row.price) if row is not None and row.price is not None else None,
            })
        return snapshot

    def snapshot_rates(self, property_id: str, room_type_id: int, days: List[date],
                       rate_plan_codes: List[str]) -> List[Dict[str, Any]]:
        """变更前的价格行（策略自身及其全部后代）"""
        rows = {
            (row.date, row.rate_plan_code): row
            for row in self.db.query(Rate).filter(
                Rate.property_id == property_id,
                Rate.room_type_id == room_type_id,
                Rate.date.in_(days),
                Rate.rate_plan_code.in_(rate_plan_codes)
            ).all()
        }
        snapshot = []
        for day in sorted(set(days)):
            for code in rate_plan_codes:
                row = rows.get((day, code))
                snapshot.append({
                    "date": day.isoformat(),
                    "ratePlanCode": code,
                    "exists": row is not None,
                    "amount": str(row.amount) if row else None,
                    "isManualOverride": bool(row.is_manual_override) if row else False,
                })
        return snapshot

    # ============== 撤销 ==============

    def get_event(self, property_id: str, event_id: str) -> AriEvent:
        event = self.db.query(AriEvent).filter(
            AriEvent.event_id == event_id,
            AriEvent.property_id == property_id
        ).first()
        if not event:
            raise NotFoundError("ARI 事件不存在", code="ARI_EVENT_NOT_FOUND", details={"eventId": event_id})
        return event

    def _already_undone(self, event_id: str) -> bool:
        return self.db.query(AriEvent.id).filter(AriEvent.undo_of_event_id == event_id).first() is not None

    def undo_event(self, ctx: RequestContext, event_id: str) -> Dict[str, Any]:
        """
        撤销一次可用量 / 价格变更

        可用量按快照值重新经过超售保护写入（原来不存在的行恢复为 0）；
        价格行恢复金额与覆盖标记，原来不存在的价格行被删除；
        补偿事件本身也带快照，可以再被撤销

        Raises:
            NotFoundError: 事件不存在或属于其他酒店
            ValidationError: 事件没有快照（限制变更、级联子事件）或已被撤销
        """
        event = self.get_event(ctx.property_id, event_id)
        payload = AuditService.event_payload(event)
        previous_inventories = payload.get(PREVIOUS_INVENTORIES)
        previous_rates = payload.get(PREVIOUS_RATES)
        if previous_inventories is None and previous_rates is None:
            raise ValidationError("该事件不支持撤销", code="UNDO_NOT_SUPPORTED",
                                  details={"eventId": event_id, "eventType": event.event_type.value})
        if self._already_undone(event_id):
            raise ValidationError("该事件已被撤销", code="EVENT_ALREADY_UNDONE", details={"eventId": event_id})

        room_type = self.inventory.get_room_type_by_code(ctx.property_id, event.room_type_code)
        previous_inventories = previous_inventories or []
        previous_rates = previous_rates or []
        inventory_days = [date.fromisoformat(entry["date"]) for entry in previous_inventories]
        rate_days = [date.fromisoformat(entry["date"]) for entry in previous_rates]
        rate_plan_codes = sorted({entry["ratePlanCode"] for entry in previous_rates})

        clamped = []
        try:
            compensation = {"undoOf": event_id}
            if previous_inventories:
                compensation[PREVIOUS_INVENTORIES] = self.snapshot_inventory(
                    ctx.property_id, room_type.id, inventory_days)
            if previous_rates:
                compensation[PREVIOUS_RATES] = self.snapshot_rates(
                    ctx.property_id, room_type.id, rate_days, rate_plan_codes)

            physical = self.inventory.physical_room_count(room_type.id)
            for entry in previous_inventories:
                day = date.fromisoformat(entry["date"])
                if event.event_type == AriEventType.AVAILABILITY:
                    target = entry["available"] if entry["exists"] else 0
                    row, requested = self.inventory.apply_availability(
                        ctx.property_id, room_type, day, target, AvailabilityUpdateType.SET, physical
                    )
                    if row.available != requested:
                        clamped.append(day.isoformat())
                else:
                    row = self.inventory.get_row(ctx.property_id, room_type.id, day, for_update=True)
                    if row is not None:
                        row.price = Decimal(entry["price"]) if entry["price"] is not None else None

            for entry in previous_rates:
                day = date.fromisoformat(entry["date"])
                if entry["exists"]:
                    self.rates.set_manual_rate(ctx.property_id, room_type.id, day, entry["ratePlanCode"],
                                               Decimal(entry["amount"]),
                                               is_override=entry["isManualOverride"])
                else:
                    row = self.rates.get_rate_row(ctx.property_id, room_type.id, day,
                                                  entry["ratePlanCode"], for_update=True)
                    if row is not None:
                        self.db.delete(row)

            compensation.update({
                "restoredInventories": len(previous_inventories),
                "restoredRates": len(previous_rates),
                "clampedDates": clamped,
            })
            undo_event = self.audit.record_event(
                ctx, event.event_type, room_type.code, event.date_from, event.date_to,
                compensation, rate_plan_code=event.rate_plan_code, undo_of=event_id,
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ValidationError("该事件已被撤销", code="EVENT_ALREADY_UNDONE", details={"eventId": event_id})
        except AriError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Undo of ARI event {event_id} failed: {e}", exc_info=True)
            raise InternalError("撤销失败", details={"error": str(e)})

        logger.info(f"ARI event {event_id} ({event.event_type.value} {room_type.code}) undone "
                    f"by {undo_event.event_id} ({ctx.property_id})")
        self.audit.log_operation(ctx, "ari.undo", "ari_event", event_id, {
            "roomTypeCode": room_type.code,
            "undoEventId": undo_event.event_id,
            "clampedDates": clamped,
        })

        days = sorted(set(inventory_days + rate_days))
        self._publish_event(Event(
            event_type=(EventType.AVAILABILITY_UPDATED if event.event_type == AriEventType.AVAILABILITY
                        else EventType.RATE_UPDATED),
            data=AriChangedData(
                property_id=ctx.property_id,
                request_id=ctx.request_id,
                room_type_id=room_type.id,
                room_type_code=room_type.code,
                rate_plan_codes=rate_plan_codes,
                date_from=days[0].isoformat() if days else event.date_from.isoformat(),
                date_to=days[-1].isoformat() if days else event.date_to.isoformat(),
                days_updated=len(days),
            ).to_dict(),
            source="undo_service"
        ))

        return {
            "undone": event_id,
            "eventId": undo_event.event_id,
            "eventType": event.event_type.value,
            "roomTypeCode": room_type.code,
            "restoredInventories": len(previous_inventories),
            "restoredRates": len(previous_rates),
            "clampedDates": clamped,
        }
