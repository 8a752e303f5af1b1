"""
价格级联引擎
父策略价格变化后，按广度优先遍历整棵子树重算派生价格：
- 手工覆盖（is_manual_override）的子价格不被改写，且不再向下传播
- 每个策略在一次级联中最多访问一次
- 每一条派生写入都在同一事务内追加 RATE 审计事件
"""
from collections import deque
from datetime import date
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.models.ontology import (
    Rate, RatePlan, RoomType, DerivedType, RoundingRule, AriEventType
)
from app.security.context import RequestContext
from app.services.audit_service import AuditService
from app.services.errors import NotFoundError

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")
_ONE = Decimal("1")


def _to_decimal(value: Any) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def apply_rounding(amount: Decimal, rule: Optional[RoundingRule]) -> Decimal:
    """按取整规则处理金额，结果统一保留两位小数"""
    amount = _to_decimal(amount)
    rule = rule or RoundingRule.NONE

    if rule == RoundingRule.NEAREST_WHOLE:
        result = amount.quantize(_ONE, rounding=ROUND_HALF_UP)
    elif rule == RoundingRule.ENDING_99:
        result = amount.to_integral_value(rounding=ROUND_FLOOR) + Decimal("0.99")
    elif rule == RoundingRule.ENDING_90:
        result = amount.to_integral_value(rounding=ROUND_FLOOR) + Decimal("0.90")
    elif rule in (RoundingRule.MULTIPLE_5, RoundingRule.MULTIPLE_10):
        step = Decimal(5) if rule == RoundingRule.MULTIPLE_5 else Decimal(10)
        result = (amount / step).quantize(_ONE, rounding=ROUND_HALF_UP) * step
    else:
        result = amount

    return result.quantize(_CENT, rounding=ROUND_HALF_UP)


def derive_amount(parent_amount: Decimal, derived_type: DerivedType,
                  derived_value: Decimal, rounding_rule: Optional[RoundingRule]) -> Decimal:
    """
    派生价格计算

    PERCENTAGE: parent + parent * value / 100
    FIXED_AMOUNT: parent + value
    结果先下限为 0，再取整
    """
    parent_amount = _to_decimal(parent_amount)
    value = _to_decimal(derived_value)

    if derived_type == DerivedType.PERCENTAGE:
        raw = parent_amount + parent_amount * value / Decimal(100)
    else:
        raw = parent_amount + value

    return apply_rounding(max(raw, Decimal(0)), rounding_rule)


def compute_child_amount(parent_amount: Decimal, plan: RatePlan) -> Optional[Decimal]:
    """策略缺少派生类型或派生值时返回 None（跳过）"""
    if plan.derived_type is None or plan.derived_value is None:
        return None
    return derive_amount(parent_amount, plan.derived_type, plan.derived_value, plan.rounding_rule)


def describe_formula(plan: RatePlan) -> str:
    """派生公式的可读描述，写入审计载荷"""
    parent_code = plan.parent.code if plan.parent else "?"
    value = _to_decimal(plan.derived_value or 0)
    sign = "+" if value >= 0 else "-"
    if plan.derived_type == DerivedType.PERCENTAGE:
        return f"{parent_code} {sign} {abs(value)}%"
    return f"{parent_code} {sign} {abs(value)}"


class RateCascadeEngine:
    """价格级联引擎"""

    def __init__(self, db: Session, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or AuditService(db)

    # ============== 查询 ==============

    def get_plan(self, property_id: str, code: str) -> Optional[RatePlan]:
        return self.db.query(RatePlan).filter(
            RatePlan.property_id == property_id,
            RatePlan.code == code
        ).first()

    def require_plan(self, property_id: str, code: str) -> Optional[RatePlan]:
        """
        查找价格策略；默认策略代码允许没有策略记录（视为无子节点的根）
        """
        plan = self.get_plan(property_id, code)
        if plan is None and code != settings.DEFAULT_RATE_PLAN_CODE:
            raise NotFoundError(f"价格策略 {code} 不存在", code="RATE_PLAN_NOT_FOUND",
                                details={"ratePlanCode": code})
        return plan

    def get_rate_row(self, property_id: str, room_type_id: int, day: date,
                     rate_plan_code: str, for_update: bool = False) -> Optional[Rate]:
        query = self.db.query(Rate).filter(
            Rate.property_id == property_id,
            Rate.room_type_id == room_type_id,
            Rate.date == day,
            Rate.rate_plan_code == rate_plan_code
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def descendants(self, plan: Optional[RatePlan]) -> List[RatePlan]:
        """广度优先列出全部后代策略（不含自身）"""
        if plan is None:
            return []
        result = []
        visited = {plan.id}
        queue = deque([plan])
        while queue:
            node = queue.popleft()
            for child in node.children:
                if child.id in visited:
                    continue
                visited.add(child.id)
                result.append(child)
                queue.append(child)
        return result

    def resolve_rate(self, property_id: str, room_type_id: int, day: date,
                     rate_plan_code: str) -> Optional[Decimal]:
        """
        解析某策略某天的价格

        显式价格行优先；否则由父策略的解析价按派生规则现算；都没有则返回 None
        """
        seen = set()
        chain: List[RatePlan] = []
        code = rate_plan_code
        amount: Optional[Decimal] = None

        while code is not None and code not in seen:
            seen.add(code)
            row = self.get_rate_row(property_id, room_type_id, day, code)
            if row is not None:
                amount = _to_decimal(row.amount)
                break
            plan = self.get_plan(property_id, code)
            if plan is None or plan.parent is None:
                return None
            chain.append(plan)
            code = plan.parent.code

        if amount is None:
            return None

        for plan in reversed(chain):
            amount = compute_child_amount(amount, plan)
            if amount is None:
                return None
        return amount

    # ============== 写入 ==============

    def set_manual_rate(self, property_id: str, room_type_id: int, day: date,
                        rate_plan_code: str, amount: Decimal,
                        is_override: bool = True) -> Rate:
        """写入显式价格（不提交）"""
        row = self.get_rate_row(property_id, room_type_id, day, rate_plan_code, for_update=True)
        if row is None:
            row = Rate(
                property_id=property_id,
                room_type_id=room_type_id,
                date=day,
                rate_plan_code=rate_plan_code,
            )
            self.db.add(row)
        row.amount = _to_decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP)
        row.is_manual_override = is_override
        return row

    def _upsert_derived(self, property_id: str, room_type_id: int, day: date,
                        plan: RatePlan, amount: Decimal) -> Tuple[Optional[Rate], bool]:
        """
        读取-判断-写入：覆盖行保持原值

        Returns:
            (价格行, 是否写入)
        """
        row = self.get_rate_row(property_id, room_type_id, day, plan.code, for_update=True)
        if row is not None and row.is_manual_override:
            return row, False
        if row is None:
            row = Rate(
                property_id=property_id,
                room_type_id=room_type_id,
                date=day,
                rate_plan_code=plan.code,
            )
            self.db.add(row)
        row.amount = amount
        row.is_manual_override = False
        return row, True

    def cascade(self, ctx: RequestContext, room_type: RoomType, day: date,
                plan: Optional[RatePlan], amount: Decimal) -> List[str]:
        """
        从 plan 出发向全部后代传播价格（不提交）

        Returns:
            实际被改写的子策略代码
        """
        if plan is None:
            return []

        affected = []
        visited = {plan.id}
        queue = deque([(plan, _to_decimal(amount))])

        while queue:
            parent, parent_amount = queue.popleft()
            for child in parent.children:
                if child.id in visited:
                    continue
                visited.add(child.id)

                child_amount = compute_child_amount(parent_amount, child)
                if child_amount is None:
                    continue

                _, written = self._upsert_derived(ctx.property_id, room_type.id, day,
                                                  child, child_amount)
                if not written:
                    logger.info(
                        f"Cascade kept manual override {child.code} on {day} "
                        f"({room_type.code}, parent {parent.code})"
                    )
                    continue

                self.audit.record_event(
                    ctx, AriEventType.RATE, room_type.code, day, day,
                    {
                        "amount": str(child_amount),
                        "parentRatePlanCode": parent.code,
                        "parentAmount": str(parent_amount),
                        "formula": describe_formula(child),
                        "roundingRule": (child.rounding_rule or RoundingRule.NONE).value,
                        "cascade": True,
                    },
                    rate_plan_code=child.code,
                )
                affected.append(child.code)
                queue.append((child, child_amount))

        return affected

    def clear_override(self, ctx: RequestContext, room_type: RoomType, day: date,
                       rate_plan_code: str) -> Dict[str, Any]:
        """
        清除显式价格（不提交）

        派生策略且父价可解析：立即写回派生值并继续级联；
        否则删除该天全部非覆盖后代价格（无从派生）
        """
        plan = self.require_plan(ctx.property_id, rate_plan_code)
        row = self.get_rate_row(ctx.property_id, room_type.id, day, rate_plan_code, for_update=True)
        cleared = row is not None
        if row is not None:
            self.db.delete(row)
            self.db.flush()

        result: Dict[str, Any] = {
            "cleared": cleared,
            "recomputed": None,
            "affected": [],
            "removed": [],
        }

        if plan is not None and plan.parent is not None:
            parent_amount = self.resolve_rate(ctx.property_id, room_type.id, day, plan.parent.code)
            amount = compute_child_amount(parent_amount, plan) if parent_amount is not None else None
            if amount is not None:
                self._upsert_derived(ctx.property_id, room_type.id, day, plan, amount)
                self.audit.record_event(
                    ctx, AriEventType.RATE, room_type.code, day, day,
                    {
                        "amount": str(amount),
                        "parentRatePlanCode": plan.parent.code,
                        "parentAmount": str(parent_amount),
                        "formula": describe_formula(plan),
                        "roundingRule": (plan.rounding_rule or RoundingRule.NONE).value,
                        "overrideCleared": True,
                    },
                    rate_plan_code=plan.code,
                )
                result["recomputed"] = amount
                result["affected"] = self.cascade(ctx, room_type, day, plan, amount)
                return result

        descendant_codes = [d.code for d in self.descendants(plan)]
        if descendant_codes:
            stale = self.db.query(Rate).filter(
                Rate.property_id == ctx.property_id,
                Rate.room_type_id == room_type.id,
                Rate.date == day,
                Rate.rate_plan_code.in_(descendant_codes),
                Rate.is_manual_override == False
            ).all()
            for stale_row in stale:
                result["removed"].append(stale_row.rate_plan_code)
                self.db.delete(stale_row)
        return result
