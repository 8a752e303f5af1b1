"""
报价路由
"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import QuoteRequest
from app.routers.errors import http_error
from app.security.context import RequestContext, get_request_context
from app.services.quote_service import QuoteService

router = APIRouter(prefix="/quotes", tags=["报价"])


@router.post("")
def create_quote(
    data: QuoteRequest,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """为入住生成报价与定价签名"""
    try:
        return QuoteService(db).create_quote(ctx, data.stay).to_dict()
    except Exception as e:
        raise http_error(e)
