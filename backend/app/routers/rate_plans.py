"""
价格策略路由
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import RatePlanCreate, RatePlanUpdate, RatePlanResponse
from app.routers.errors import http_error
from app.security.context import RequestContext, get_request_context
from app.services.rate_plan_service import RatePlanService

router = APIRouter(prefix="/rate-plans", tags=["价格策略"])


@router.get("", response_model=List[RatePlanResponse])
def list_rate_plans(
    is_active: Optional[bool] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """获取价格策略列表"""
    plans = RatePlanService(db).get_rate_plans(ctx.property_id, is_active)
    return [RatePlanResponse.model_validate(p) for p in plans]


@router.get("/{rate_plan_id}", response_model=RatePlanResponse)
def get_rate_plan(
    rate_plan_id: int,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """获取价格策略详情"""
    try:
        return RatePlanResponse.model_validate(RatePlanService(db).get_rate_plan(ctx.property_id, rate_plan_id))
    except Exception as e:
        raise http_error(e)


@router.post("", response_model=RatePlanResponse, status_code=status.HTTP_201_CREATED)
def create_rate_plan(
    data: RatePlanCreate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """创建价格策略"""
    try:
        return RatePlanResponse.model_validate(RatePlanService(db).create_rate_plan(ctx.property_id, data))
    except Exception as e:
        raise http_error(e)


@router.put("/{rate_plan_id}", response_model=RatePlanResponse)
def update_rate_plan(
    rate_plan_id: int,
    data: RatePlanUpdate,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """更新价格策略（父节点、派生规则、取整规则）"""
    try:
        plan = RatePlanService(db).update_rate_plan(ctx.property_id, rate_plan_id, data)
        return RatePlanResponse.model_validate(plan)
    except Exception as e:
        raise http_error(e)
