"""
预订编排（Booking Saga）
INIT -> CONTEXT_VALIDATED -> IDEMPOTENCY_CHECKED -> QUOTE_VALIDATED
     -> AVAILABILITY_RECHECKED -> RESERVATION_CREATED -> CONFIRMED
任何一步异常都进入 FAILED；只有持有幂等锁时才写入 FAILED 记录，写入失败只记录日志
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from app.models.ontology import IdempotencyStatus, RoomType
from app.models.schemas import BookRequest, BookingContext, StayRequest
from app.security.context import RequestContext, build_context
from app.services.date_utils import stay_nights
from app.services.errors import (
    AriError, IdempotencyConflict, InternalError, InventoryUnavailable, ValidationError
)
from app.services.event_bus import Event
from app.services.idempotency_service import IdempotencyService
from app.services.inventory_service import InventoryService
from app.services.quote_service import QuoteService
from app.services.reservation_service import ReservationService
from app.services.restriction_service import RestrictionService

logger = logging.getLogger(__name__)


class SagaState(str, Enum):
    """预订编排状态"""
    INIT = "INIT"
    CONTEXT_VALIDATED = "CONTEXT_VALIDATED"
    IDEMPOTENCY_CHECKED = "IDEMPOTENCY_CHECKED"
    QUOTE_VALIDATED = "QUOTE_VALIDATED"
    AVAILABILITY_RECHECKED = "AVAILABILITY_RECHECKED"
    RESERVATION_CREATED = "RESERVATION_CREATED"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"


@dataclass
class BookingResult:
    """预订结果"""
    success: bool
    state: SagaState
    reservation_id: Optional[str] = None
    pnr: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    status_code: int = 200
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        result = {"success": self.success, "state": self.state.value}
        if self.reservation_id:
            result["reservationId"] = self.reservation_id
        if self.pnr:
            result["pnr"] = self.pnr
        if self.error:
            result["error"] = self.error
        if self.replayed:
            result["replayed"] = True
        return result


class BookSaga:
    """
    预订编排器

    每个实例处理一次预订请求；history 记录经过的状态
    """

    def __init__(self, db: Session, quote_service: Optional[QuoteService] = None,
                 event_publisher: Callable[[Event], None] = None):
        self.db = db
        self.idempotency = IdempotencyService(db)
        self.inventory = InventoryService(db)
        self.restrictions = RestrictionService(db)
        self.quotes = quote_service or QuoteService(db)
        self.reservations = ReservationService(db, event_publisher=event_publisher)
        self.state = SagaState.INIT
        self.history: List[SagaState] = [SagaState.INIT]

    def _transition(self, state: SagaState) -> None:
        logger.debug(f"Booking saga {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    # ============== 各步骤 ==============

    @staticmethod
    def validate_context(context: BookingContext) -> RequestContext:
        """hotelId 与 hubId 必须且只能有一个；分销请求必须带渠道代码"""
        if bool(context.hotel_id) == bool(context.hub_id):
            raise ValidationError("必须且只能指定 hotelId 或 hubId 之一", code="INVALID_CONTEXT")
        if context.hub_id:
            raise ValidationError("暂不支持按 hubId 预订", code="HUB_NOT_SUPPORTED",
                                  details={"hubId": context.hub_id})
        if context.domain == "DISTRIBUTION" and not context.channel_code:
            raise ValidationError("分销请求必须提供 channelCode", code="MISSING_CHANNEL_CODE")
        return build_context(context.hotel_id, context.request_id,
                             domain=context.domain, channel_code=context.channel_code)

    def _replay(self, key: str) -> Optional[BookingResult]:
        record = self.idempotency.get(key)
        if record is None:
            return None
        if record.status == IdempotencyStatus.SUCCESS:
            cached = IdempotencyService.result_of(record)
            logger.info(f"Idempotent replay of key {key}: reservation {cached.get('reservationId')}")
            return BookingResult(
                success=True,
                state=SagaState.CONFIRMED,
                reservation_id=cached.get("reservationId"),
                pnr=cached.get("pnr"),
                replayed=True,
            )
        if record.status == IdempotencyStatus.FAILED:
            raise IdempotencyConflict("该幂等键对应的请求已失败，请使用新的幂等键",
                                      code="IDEMPOTENCY_KEY_FAILED",
                                      details={"idempotencyKey": key,
                                               "previousError": IdempotencyService.result_of(record)})
        if not self.idempotency.is_stale(record):
            raise IdempotencyConflict("请求正在处理中，请稍后重试", code="IDEMPOTENCY_IN_PROGRESS",
                                      details={"idempotencyKey": key})
        return None

    def check_idempotency(self, key: str, ctx: RequestContext) -> Optional[BookingResult]:
        """
        已成功则返回缓存结果（不再获取锁）；否则获取 PENDING 锁后返回 None
        """
        replay = self._replay(key)
        if replay is not None:
            return replay
        try:
            self.idempotency.acquire(key, ctx.request_id)
        except IdempotencyConflict:
            replay = self._replay(key)
            if replay is not None:
                return replay
            raise
        return None

    def recheck_availability(self, ctx: RequestContext, stay: StayRequest) -> RoomType:
        """非加锁复核：入住人数、销售限制与每晚库存"""
        nights = stay_nights(stay.check_in, stay.check_out)
        room_type = self.inventory.get_room_type_by_code(ctx.property_id, stay.room_type_code)
        if room_type.max_occupancy and stay.adults + stay.children > room_type.max_occupancy:
            raise ValidationError("入住人数超过房型最大入住人数", code="OCCUPANCY_EXCEEDED",
                                  details={"maxOccupancy": room_type.max_occupancy})
        self.restrictions.validate_stay(ctx.property_id, room_type.id, stay.rate_plan_code,
                                        stay.check_in, stay.check_out, nights)
        if not self.inventory.has_availability(ctx.property_id, room_type.id, nights):
            raise InventoryUnavailable("所选日期库存不足", details={"roomTypeCode": room_type.code})
        return room_type

    # ============== 编排 ==============

    def execute(self, request: BookRequest) -> BookingResult:
        """执行预订"""
        ctx: Optional[RequestContext] = None
        lock_held = False
        key = request.idempotency_key

        try:
            ctx = self.validate_context(request.context)
            self._transition(SagaState.CONTEXT_VALIDATED)

            replay = self.check_idempotency(key, ctx)
            if replay is not None:
                self._transition(SagaState.CONFIRMED)
                return replay
            lock_held = True
            self._transition(SagaState.IDEMPOTENCY_CHECKED)

            quote = self.quotes.validate_quote(ctx, request.quote, request.stay)
            self._transition(SagaState.QUOTE_VALIDATED)

            room_type = self.recheck_availability(ctx, request.stay)
            self._transition(SagaState.AVAILABILITY_RECHECKED)

            reservation = self.reservations.commit_reservation(
                ctx,
                room_type,
                request.stay.rate_plan_code,
                request.stay.check_in,
                request.stay.check_out,
                request.guest,
                total_amount=quote.total,
                currency=quote.currency,
                adults=request.stay.adults,
                children=request.stay.children,
                occupants=request.occupants,
            )
            self._transition(SagaState.RESERVATION_CREATED)
        except AriError as e:
            return self._fail(e, ctx, key, lock_held)
        except Exception as e:
            logger.error(f"Booking saga crashed in state {self.state.value}: {e}", exc_info=True)
            return self._fail(InternalError("预订处理失败", details={"error": str(e)}), ctx, key, lock_held)

        result = {"reservationId": reservation.id, "pnr": reservation.pnr}
        try:
            owned = self.idempotency.complete(key, ctx.request_id, result)
        except Exception as e:
            self.db.rollback()
            owned = True
            logger.error(f"Failed to mark idempotency key {key} as SUCCESS for reservation "
                         f"{reservation.id}: {e}", exc_info=True)
        if not owned:
            return self._release_orphan(reservation, ctx, key)
        self._transition(SagaState.CONFIRMED)
        logger.info(f"Booking {reservation.pnr} confirmed (key {key}, request {ctx.request_id})")

        return BookingResult(
            success=True,
            state=SagaState.CONFIRMED,
            reservation_id=reservation.id,
            pnr=reservation.pnr,
            status_code=201,
        )

    def _fail(self, error: AriError, ctx: Optional[RequestContext], key: str,
              lock_held: bool) -> BookingResult:
        failed_at = self.state
        self._transition(SagaState.FAILED)
        logger.warning(f"Booking failed at {failed_at.value}: {error.code} {error.message}")

        if lock_held and ctx is not None:
            try:
                self.idempotency.fail(key, ctx.request_id, {
                    "error": error.to_dict(),
                    "failedAt": failed_at.value,
                })
            except Exception as e:
                self.db.rollback()
                logger.error(f"Failed to record failure for idempotency key {key}: {e}", exc_info=True)

        return BookingResult(
            success=False,
            state=SagaState.FAILED,
            error=error.to_dict(),
            status_code=error.status_code,
        )

    def _release_orphan(self, reservation, ctx: RequestContext, key: str) -> BookingResult:
        """
        幂等锁在提交期间被接管（本请求被视为已放弃）：
        取消本请求刚创建的预订并归还库存，该键的结果以接管者为准
        """
        logger.warning(f"Idempotency key {key} was taken over while booking {reservation.pnr}; cancelling it")
        try:
            self.reservations.cancel_reservation(ctx, reservation.id, "幂等锁已被其他请求接管")
        except Exception as e:
            logger.error(f"Failed to cancel orphaned reservation {reservation.id}: {e}", exc_info=True)
        return self._fail(
            IdempotencyConflict("幂等键已被其他请求接管", code="IDEMPOTENCY_LEASE_LOST",
                                details={"idempotencyKey": key, "reservationId": reservation.id}),
            ctx, key, lock_held=False,
        )
