"""
价格策略服务 - 价格图维护
管理 RatePlan 节点：父子关系、派生规则与取整规则
"""
from typing import List, Optional
import logging

from sqlalchemy.orm import Session

from app.models.ontology import RatePlan
from app.models.schemas import RatePlanCreate, RatePlanUpdate
from app.services.errors import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class RatePlanService:
    """价格策略服务"""

    def __init__(self, db: Session):
        self.db = db

    def get_rate_plans(self, property_id: str, is_active: Optional[bool] = None) -> List[RatePlan]:
        """获取价格策略列表"""
        query = self.db.query(RatePlan).filter(RatePlan.property_id == property_id)
        if is_active is not None:
            query = query.filter(RatePlan.is_active == is_active)
        return query.order_by(RatePlan.code).all()

    def get_rate_plan(self, property_id: str, rate_plan_id: int) -> RatePlan:
        """获取单个价格策略"""
        plan = self.db.query(RatePlan).filter(
            RatePlan.id == rate_plan_id,
            RatePlan.property_id == property_id
        ).first()
        if not plan:
            raise NotFoundError("价格策略不存在", code="RATE_PLAN_NOT_FOUND",
                                details={"ratePlanId": rate_plan_id})
        return plan

    def create_rate_plan(self, property_id: str, data: RatePlanCreate) -> RatePlan:
        """创建价格策略"""
        exists = self.db.query(RatePlan).filter(
            RatePlan.property_id == property_id,
            RatePlan.code == data.code
        ).first()
        if exists:
            raise ValidationError(f"价格策略代码 {data.code} 已存在", code="DUPLICATE_RATE_PLAN")

        plan = RatePlan(property_id=property_id, **data.model_dump())
        self._validate_derivation(plan)
        if plan.parent_rate_plan_id is not None:
            self._validate_parent(property_id, None, plan.parent_rate_plan_id)

        self.db.add(plan)
        self.db.commit()
        self.db.refresh(plan)
        logger.info(f"Rate plan {plan.code} created for {property_id}")
        return plan

    def update_rate_plan(self, property_id: str, rate_plan_id: int,
                         data: RatePlanUpdate) -> RatePlan:
        """更新价格策略"""
        plan = self.get_rate_plan(property_id, rate_plan_id)
        update_data = data.model_dump(exclude_unset=True)

        if "parent_rate_plan_id" in update_data and update_data["parent_rate_plan_id"] is not None:
            self._validate_parent(property_id, plan.id, update_data["parent_rate_plan_id"])

        for key, value in update_data.items():
            setattr(plan, key, value)

        try:
            self._validate_derivation(plan)
        except ValidationError:
            self.db.rollback()
            raise

        self.db.commit()
        self.db.refresh(plan)
        logger.info(f"Rate plan {plan.code} updated for {property_id}: {sorted(update_data)}")
        return plan

    def _validate_derivation(self, plan: RatePlan) -> None:
        """派生策略必须有派生类型和派生值"""
        if plan.parent_rate_plan_id is None:
            return
        if plan.derived_type is None:
            raise ValidationError("派生价格策略必须指定派生类型", code="MISSING_DERIVED_TYPE")
        if plan.derived_value is None:
            raise ValidationError("派生价格策略必须指定派生值", code="MISSING_DERIVED_VALUE")

    def _validate_parent(self, property_id: str, plan_id: Optional[int], parent_id: int) -> None:
        """父策略必须属于同一酒店且不能形成环"""
        parent = self.db.query(RatePlan).filter(RatePlan.id == parent_id).first()
        if not parent or parent.property_id != property_id:
            raise ValidationError("父价格策略不存在或不属于该酒店", code="INVALID_PARENT_RATE_PLAN",
                                  details={"parentRatePlanId": parent_id})
        if plan_id is None:
            return

        node = parent
        seen = set()
        while node is not None and node.id not in seen:
            if node.id == plan_id:
                raise ValidationError("价格策略父子关系不能形成环", code="RATE_PLAN_CYCLE",
                                      details={"ratePlanId": plan_id, "parentRatePlanId": parent_id})
            seen.add(node.id)
            node = node.parent
