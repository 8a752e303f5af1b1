"""
请求上下文
每个核心操作都显式接收 RequestContext（酒店、请求ID、渠道），不使用全局默认酒店
"""
from typing import Dict, Any, Optional
from dataclasses import dataclass
import re
import uuid

from fastapi import Header

from app.services.errors import ValidationError

_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,64}$")


@dataclass(frozen=True)
class RequestContext:
    """
    请求上下文

    Attributes:
        property_id: 酒店ID
        request_id: 请求ID（用于审计与幂等锁归属）
        domain: 请求来源域（ADMIN / PROPERTY / DISTRIBUTION）
        channel_code: 渠道代码（分销请求必填）
        hub_id: 枢纽ID（多酒店入口，当前不支持）
    """

    property_id: str
    request_id: str
    domain: str = "ADMIN"
    channel_code: Optional[str] = None
    hub_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "property_id": self.property_id,
            "request_id": self.request_id,
            "domain": self.domain,
            "channel_code": self.channel_code,
            "hub_id": self.hub_id,
        }


def build_context(property_id: Optional[str], request_id: Optional[str] = None,
                  domain: str = "ADMIN", channel_code: Optional[str] = None) -> RequestContext:
    """校验并构造请求上下文"""
    if not property_id:
        raise ValidationError("缺少酒店ID (x-hotel-id)", code="MISSING_HOTEL_ID")
    if not _ID_PATTERN.match(property_id):
        raise ValidationError("酒店ID格式无效", code="INVALID_HOTEL_ID")
    return RequestContext(
        property_id=property_id,
        request_id=request_id or str(uuid.uuid4()),
        domain=domain,
        channel_code=channel_code,
    )


def get_request_context(
    x_hotel_id: Optional[str] = Header(default=None),
    x_request_id: Optional[str] = Header(default=None),
) -> RequestContext:
    """依赖注入：从请求头构造上下文"""
    return build_context(x_hotel_id, x_request_id)
