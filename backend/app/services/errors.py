"""
ARI 错误类型
每个错误携带稳定的错误码与 HTTP 状态码，路由层据此转换响应
"""
from typing import Any, Dict, Optional


class AriError(Exception):
    """
    ARI 核心错误基类

    Attributes:
        code: 机器可读错误码
        message: 可读信息
        status_code: 对应的 HTTP 状态码
        details: 附加诊断信息
    """

    status_code = 500
    default_code = "ARI_ERROR"

    def __init__(self, message: str, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {"code": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(AriError):
    """输入格式错误或缺失，在访问存储前拒绝"""
    status_code = 400
    default_code = "VALIDATION_ERROR"


class RestrictionViolation(ValidationError):
    """入住日期违反销售限制（关房、禁止到店/离店、入住晚数）"""
    default_code = "RESTRICTION_VIOLATION"


class NotFoundError(AriError):
    """房型、价格策略或预订不存在"""
    status_code = 404
    default_code = "NOT_FOUND"


class PricingMismatch(AriError):
    """报价签名漂移或报价过期，调用方需重新报价"""
    status_code = 409
    default_code = "PRICING_MISMATCH"


class InventoryUnavailable(AriError):
    """条件扣减未覆盖全部晚数，整个事务已回滚"""
    status_code = 409
    default_code = "INVENTORY_UNAVAILABLE"


class IdempotencyConflict(AriError):
    """幂等键正在处理中或已永久失败"""
    status_code = 409
    default_code = "IDEMPOTENCY_CONFLICT"


class InternalError(AriError):
    """存储层意外失败"""
    status_code = 500
    default_code = "INTERNAL_ERROR"
