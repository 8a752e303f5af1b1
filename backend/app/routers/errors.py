"""
路由层错误转换
AriError 按自身状态码返回 {code, message, details}；其余异常统一为 500
"""
import logging

from fastapi import HTTPException, status

from app.services.errors import AriError

logger = logging.getLogger(__name__)


def http_error(error: Exception) -> HTTPException:
    if isinstance(error, AriError):
        return HTTPException(status_code=error.status_code, detail=error.to_dict())
    logger.error(f"Unhandled error: {error}", exc_info=error)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": "INTERNAL_ERROR", "message": "服务器内部错误", "details": {"error": str(error)}}
    )
