"""
审计服务 - ARI 审计事件与操作日志
AriEvent 只追加不修改；顶层操作日志为尽力而为，写入失败只记录日志
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional
import json
import logging
import uuid

from sqlalchemy.orm import Session

from app.models.ontology import AriEvent, AriEventType, SystemLog
from app.security.context import RequestContext

logger = logging.getLogger(__name__)


def _dumps(payload: Optional[Dict[str, Any]]) -> str:
    return json.dumps(payload or {}, default=str, ensure_ascii=False)


class AuditService:
    """审计服务"""

    def __init__(self, db: Session):
        self.db = db

    # ============== ARI 审计事件 ==============

    def record_event(
        self,
        ctx: RequestContext,
        event_type: AriEventType,
        room_type_code: str,
        date_from: date,
        date_to: date,
        payload: Dict[str, Any],
        rate_plan_code: Optional[str] = None,
        status: str = "APPLIED",
        undo_of: Optional[str] = None,
    ) -> AriEvent:
        """
        在当前事务中追加一条 ARI 事件（不提交）

        级联派生的子价格在同一事务内调用本方法，与价格写入同生共死
        """
        event = AriEvent(
            event_id=str(uuid.uuid4()),
            property_id=ctx.property_id,
            room_type_code=room_type_code,
            rate_plan_code=rate_plan_code,
            event_type=event_type,
            date_from=date_from,
            date_to=date_to,
            payload=_dumps({**payload, "_requestId": ctx.request_id}),
            status=status,
            occurred_at=datetime.utcnow(),
            undo_of_event_id=undo_of,
        )
        self.db.add(event)
        return event

    def record_event_safely(self, ctx: RequestContext, event_type: AriEventType,
                            room_type_code: str, date_from: date, date_to: date,
                            payload: Dict[str, Any], rate_plan_code: Optional[str] = None) -> bool:
        """
        在状态变更已提交之后单独追加事件

        写入失败只记录日志，不回滚已生效的 ARI 变更
        """
        try:
            self.record_event(ctx, event_type, room_type_code, date_from, date_to,
                              payload, rate_plan_code=rate_plan_code)
            self.db.commit()
            return True
        except Exception as e:
            self.db.rollback()
            logger.error(
                f"Failed to record {event_type} event for {room_type_code} "
                f"({ctx.property_id}, request {ctx.request_id}): {e}",
                exc_info=True
            )
            return False

    def get_events(
        self,
        property_id: str,
        room_type_code: Optional[str] = None,
        rate_plan_code: Optional[str] = None,
        event_type: Optional[AriEventType] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        limit: int = 100,
    ) -> List[AriEvent]:
        """查询审计事件（最新在前）；日期条件按区间重叠匹配"""
        query = self.db.query(AriEvent).filter(AriEvent.property_id == property_id)

        if room_type_code:
            query = query.filter(AriEvent.room_type_code == room_type_code)
        if rate_plan_code:
            query = query.filter(AriEvent.rate_plan_code == rate_plan_code)
        if event_type:
            query = query.filter(AriEvent.event_type == event_type)
        if date_from:
            query = query.filter(AriEvent.date_to >= date_from)
        if date_to:
            query = query.filter(AriEvent.date_from <= date_to)

        return query.order_by(AriEvent.occurred_at.desc(), AriEvent.id.desc()).limit(limit).all()

    @staticmethod
    def event_payload(event: AriEvent) -> Dict[str, Any]:
        return json.loads(event.payload) if event.payload else {}

    # ============== 操作日志 ==============

    def log_operation(self, ctx: RequestContext, action: str, entity_type: str,
                      entity_id: Any, payload: Dict[str, Any]) -> bool:
        """记录顶层操作日志（尽力而为）"""
        try:
            self.db.add(SystemLog(
                property_id=ctx.property_id,
                request_id=ctx.request_id,
                action=action,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id is not None else None,
                new_value=_dumps(payload),
            ))
            self.db.commit()
            return True
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to write audit log {action} for {entity_type}#{entity_id}: {e}",
                         exc_info=True)
            return False

    def get_logs(self, property_id: str, action: Optional[str] = None,
                 entity_id: Optional[str] = None, limit: int = 100) -> List[SystemLog]:
        """查询操作日志"""
        query = self.db.query(SystemLog).filter(SystemLog.property_id == property_id)
        if action:
            query = query.filter(SystemLog.action == action)
        if entity_id:
            query = query.filter(SystemLog.entity_id == str(entity_id))
        return query.order_by(SystemLog.created_at.desc(), SystemLog.id.desc()).limit(limit).all()
