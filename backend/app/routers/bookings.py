"""
预订路由
下单走 Booking Saga，返回 {success, reservationId, state, error}
"""
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from app.database import get_db
from app.models.schemas import BookRequest, CancelRequest, ReservationResponse
from app.routers.errors import http_error
from app.security.context import RequestContext, get_request_context
from app.services.book_saga import BookSaga
from app.services.reservation_service import ReservationService

router = APIRouter(prefix="/bookings", tags=["预订"])


@router.post("")
def book(data: BookRequest, db: Session = Depends(get_db)):
    """提交预订（按幂等键去重）"""
    result = BookSaga(db).execute(data)
    return JSONResponse(status_code=result.status_code, content=result.to_dict())


@router.get("/{reservation_id}", response_model=ReservationResponse)
def get_booking(
    reservation_id: str,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """获取预订详情（含账夹与入住人）"""
    service = ReservationService(db)
    try:
        return ReservationResponse(**service.get_reservation_detail(ctx.property_id, reservation_id))
    except Exception as e:
        raise http_error(e)


@router.post("/{reservation_id}/cancel", response_model=ReservationResponse)
def cancel_booking(
    reservation_id: str,
    data: Optional[CancelRequest] = None,
    db: Session = Depends(get_db),
    ctx: RequestContext = Depends(get_request_context)
):
    """取消预订并归还库存"""
    service = ReservationService(db)
    try:
        service.cancel_reservation(ctx, reservation_id, data.reason if data else None)
        return ReservationResponse(**service.get_reservation_detail(ctx.property_id, reservation_id))
    except Exception as e:
        raise http_error(e)
