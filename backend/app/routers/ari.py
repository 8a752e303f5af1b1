"""
ARI 管理路由
可用量 / 价格 / 限制批量更新、网格单元格编辑、撤销、价格解析与审计查询
"""
from typing import Optional
from datetime import date
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.ontology import AriEventType
from app.models.schemas import AvailabilityUpdate, RateUpdate, RestrictionUpdate, SingleCellUpdate, UndoRequest
from app.routers.errors import http_error
from app.security.context import RequestContext, get_request_context
from app.services.ari_service import AriService
from app.services.undo_service import UndoService

router = APIRouter(prefix="/ari", tags=["ARI 管理"])


@router.post("/availability")
def update_availability(
    data: AvailabilityUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """批量更新可用量（超出物理房量的部分会被裁剪）"""
    try:
        return AriService(db).update_availability(ctx, data)
    except Exception as e:
        raise http_error(e)


@router.post("/rates")
def update_rates(
    data: RateUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """批量更新价格并级联到派生价格策略"""
    try:
        return AriService(db).update_rates(ctx, data)
    except Exception as e:
        raise http_error(e)


@router.post("/restrictions")
def update_restrictions(
    data: RestrictionUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """批量更新销售限制"""
    try:
        return AriService(db).update_restrictions(ctx, data)
    except Exception as e:
        raise http_error(e)


@router.post("/single-update")
def single_cell_update(
    data: SingleCellUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """编辑 ARI 网格中的单个单元格"""
    try:
        return AriService(db).single_cell_update(ctx, data)
    except Exception as e:
        raise http_error(e)


@router.post("/undo")
def undo_event(
    data: UndoRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """撤销一次可用量 / 价格变更（追加补偿事件）"""
    try:
        return UndoService(db).undo_event(ctx, data.event_id)
    except Exception as e:
        raise http_error(e)


@router.get("/rates/resolve")
def resolve_rate(
    room_type_code: str = Query(..., alias="roomTypeCode"),
    target_date: date = Query(..., alias="date"),
    rate_plan_code: Optional[str] = Query(None, alias="ratePlanCode"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """解析某天某价格策略的价格"""
    try:
        return AriService(db).resolve_rate(ctx, room_type_code, target_date, rate_plan_code)
    except Exception as e:
        raise http_error(e)


@router.get("/inventory")
def get_inventory(
    room_type_code: str = Query(..., alias="roomTypeCode"),
    date_from: date = Query(..., alias="from"),
    date_to: date = Query(..., alias="to"),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """查询库存账本"""
    try:
        return AriService(db).get_inventory(ctx, room_type_code, date_from, date_to)
    except Exception as e:
        raise http_error(e)


@router.get("/events")
def list_events(
    room_type_code: Optional[str] = Query(None, alias="roomTypeCode"),
    rate_plan_code: Optional[str] = Query(None, alias="ratePlanCode"),
    event_type: Optional[AriEventType] = Query(None, alias="eventType"),
    date_from: Optional[date] = Query(None, alias="from"),
    date_to: Optional[date] = Query(None, alias="to"),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """查询 ARI 审计事件（最新在前）"""
    try:
        return AriService(db).get_events(ctx, room_type_code=room_type_code, event_type=event_type,
                                         rate_plan_code=rate_plan_code, date_from=date_from,
                                         date_to=date_to, limit=limit)
    except Exception as e:
        raise http_error(e)
