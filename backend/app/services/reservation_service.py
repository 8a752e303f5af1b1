"""
预订服务 - 预订提交器
管理 Reservation 对象（预订阶段的聚合根）
扣减库存、创建客人、预订、入住人与账夹在同一个事务内完成，要么全部生效，要么全部回滚
"""
from typing import Any, Callable, Dict, List, Optional
from datetime import date
from decimal import Decimal
import logging
import random
import string
import uuid

from sqlalchemy import case
from sqlalchemy.orm import Session

from app.models.ontology import (
    Reservation, ReservationGuest, ReservationStatus, Guest, Folio, FolioStatus,
    GuestType, Inventory, RoomType
)
from app.models.schemas import GuestInfo, OccupantInfo
from app.models.events import EventType, ReservationCreatedData, ReservationCancelledData
from app.security.context import RequestContext
from app.services.audit_service import AuditService
from app.services.date_utils import stay_nights
from app.services.errors import (
    AriError, InternalError, InventoryUnavailable, NotFoundError, ValidationError
)
from app.services.event_bus import event_bus, Event

logger = logging.getLogger(__name__)

PNR_ALPHABET = string.ascii_uppercase + string.digits
PNR_LENGTH = 6


class ReservationService:
    """预订服务"""

    def __init__(self, db: Session, event_publisher: Callable[[Event], None] = None):
        self.db = db
        self.audit = AuditService(db)
        self._publish_event = event_publisher or event_bus.publish

    def _generate_pnr(self) -> str:
        """生成 6 位大写字母数字预订号，碰撞时重新生成"""
        while True:
            pnr = "".join(random.choices(PNR_ALPHABET, k=PNR_LENGTH))
            exists = self.db.query(Reservation.id).filter(Reservation.pnr == pnr).first()
            if not exists:
                return pnr

    def get_reservation(self, property_id: str, reservation_id: str) -> Reservation:
        """获取单个预订"""
        reservation = self.db.query(Reservation).filter(
            Reservation.id == reservation_id,
            Reservation.property_id == property_id
        ).first()
        if not reservation:
            raise NotFoundError("预订不存在", code="RESERVATION_NOT_FOUND",
                                details={"reservationId": reservation_id})
        return reservation

    def _find_or_create_guest(self, info: GuestInfo) -> Guest:
        guest = self.db.query(Guest).filter(Guest.email == info.email).first()
        if not guest:
            guest = Guest(name=info.primary_guest_name, email=info.email, phone=info.phone)
            self.db.add(guest)
            self.db.flush()
        else:
            guest.name = info.primary_guest_name
            if info.phone:
                guest.phone = info.phone
        return guest

    def _build_occupants(self, reservation_id: str, info: GuestInfo,
                         occupants: Optional[List[OccupantInfo]]) -> List[ReservationGuest]:
        """未提供入住人时以预订人作为唯一代表入住人"""
        if not occupants:
            return [ReservationGuest(
                reservation_id=reservation_id,
                name=info.primary_guest_name,
                guest_type=GuestType.ADULT,
                is_representative=True,
            )]

        has_representative = any(o.is_representative for o in occupants)
        rows = []
        for index, occupant in enumerate(occupants):
            rows.append(ReservationGuest(
                reservation_id=reservation_id,
                name=occupant.name,
                guest_type=occupant.type,
                age=occupant.age,
                is_representative=occupant.is_representative or (not has_representative and index == 0),
            ))
        return rows

    def commit_reservation(
        self,
        ctx: RequestContext,
        room_type: RoomType,
        rate_plan_code: str,
        check_in: date,
        check_out: date,
        guest_info: GuestInfo,
        total_amount: Decimal,
        currency: str,
        adults: int = 1,
        children: int = 0,
        occupants: Optional[List[OccupantInfo]] = None,
        quantity: int = 1,
    ) -> Reservation:
        """
        提交预订

        条件扣减 [check_in, check_out) 每一晚 available >= quantity 的账本行，
        实际更新的行数不等于晚数则整体回滚

        Raises:
            InventoryUnavailable: 任意一晚库存不足
        """
        nights = stay_nights(check_in, check_out)

        try:
            updated = self.db.query(Inventory).filter(
                Inventory.property_id == ctx.property_id,
                Inventory.room_type_id == room_type.id,
                Inventory.date >= nights[0],
                Inventory.date < check_out,
                Inventory.available >= quantity
            ).update({
                Inventory.available: Inventory.available - quantity,
                Inventory.booked: Inventory.booked + quantity,
            }, synchronize_session=False)

            if updated != len(nights):
                raise InventoryUnavailable(
                    "所选日期库存不足",
                    details={
                        "roomTypeCode": room_type.code,
                        "nightsRequested": len(nights),
                        "nightsAvailable": updated,
                    }
                )

            guest = self._find_or_create_guest(guest_info)
            reservation_id = str(uuid.uuid4())
            reservation = Reservation(
                id=reservation_id,
                pnr=self._generate_pnr(),
                property_id=ctx.property_id,
                guest_id=guest.id,
                room_type_id=room_type.id,
                rate_plan_code=rate_plan_code,
                check_in=check_in,
                check_out=check_out,
                room_count=quantity,
                adults=adults,
                children=children,
                total_amount=total_amount,
                currency=currency,
                status=ReservationStatus.CONFIRMED,
            )
            self.db.add(reservation)
            for occupant in self._build_occupants(reservation_id, guest_info, occupants):
                self.db.add(occupant)
            self.db.add(Folio(
                reservation_id=reservation_id,
                status=FolioStatus.OPEN,
                base_amount=total_amount,
                total_amount=total_amount,
                paid_amount=Decimal("0"),
                currency=currency,
            ))
            self.db.commit()
        except InventoryUnavailable:
            self.db.rollback()
            logger.warning(
                f"Inventory unavailable for {room_type.code} {check_in}..{check_out} "
                f"({ctx.property_id}, request {ctx.request_id})"
            )
            raise
        except AriError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Reservation commit failed ({ctx.property_id}, request {ctx.request_id}): {e}",
                         exc_info=True)
            raise InternalError("预订提交失败", details={"error": str(e)})

        self.db.refresh(reservation)
        logger.info(f"Reservation {reservation.pnr} committed for {room_type.code} "
                    f"{check_in}..{check_out} ({ctx.property_id})")

        self._publish_event(Event(
            event_type=EventType.RESERVATION_CREATED,
            data=ReservationCreatedData(
                property_id=ctx.property_id,
                request_id=ctx.request_id,
                reservation_id=reservation.id,
                pnr=reservation.pnr,
                room_type_id=room_type.id,
                rate_plan_code=rate_plan_code,
                check_in=check_in.isoformat(),
                check_out=check_out.isoformat(),
                total_amount=float(total_amount),
                currency=currency,
            ).to_dict(),
            source="reservation_service"
        ))
        self.audit.log_operation(ctx, "reservation.create", "reservation", reservation.id, {
            "pnr": reservation.pnr,
            "roomTypeCode": room_type.code,
            "ratePlanCode": rate_plan_code,
            "checkIn": check_in.isoformat(),
            "checkOut": check_out.isoformat(),
            "totalAmount": str(total_amount),
            "currency": currency,
        })
        return reservation

    def cancel_reservation(self, ctx: RequestContext, reservation_id: str,
                           reason: Optional[str] = None) -> Reservation:
        """
        取消预订并归还每一晚的库存

        状态切换是条件更新，并发取消只会有一个归还库存
        """
        reservation = self.get_reservation(ctx.property_id, reservation_id)
        previous_status = reservation.status
        if previous_status in (ReservationStatus.CANCELLED, ReservationStatus.CHECKED_OUT):
            raise ValidationError(f"状态为 {previous_status.value} 的预订不可取消",
                                  code="RESERVATION_NOT_CANCELLABLE",
                                  details={"status": previous_status.value})

        quantity = reservation.room_count or 1
        try:
            changed = self.db.query(Reservation).filter(
                Reservation.id == reservation.id,
                Reservation.status == previous_status
            ).update({
                Reservation.status: ReservationStatus.CANCELLED,
                Reservation.cancel_reason: reason,
            }, synchronize_session=False)
            if changed != 1:
                raise ValidationError("预订状态已被其他请求修改", code="RESERVATION_NOT_CANCELLABLE")

            self.db.query(Inventory).filter(
                Inventory.property_id == reservation.property_id,
                Inventory.room_type_id == reservation.room_type_id,
                Inventory.date >= reservation.check_in,
                Inventory.date < reservation.check_out
            ).update({
                Inventory.available: case(
                    (Inventory.available + quantity > Inventory.total, Inventory.total),
                    else_=Inventory.available + quantity
                ),
                Inventory.booked: case(
                    (Inventory.booked - quantity < 0, 0),
                    else_=Inventory.booked - quantity
                ),
            }, synchronize_session=False)
            self.db.commit()
        except AriError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Cancel of reservation {reservation_id} failed: {e}", exc_info=True)
            raise InternalError("取消预订失败", details={"error": str(e)})

        self.db.refresh(reservation)
        logger.info(f"Reservation {reservation.pnr} cancelled ({ctx.property_id})")

        self._publish_event(Event(
            event_type=EventType.RESERVATION_CANCELLED,
            data=ReservationCancelledData(
                property_id=ctx.property_id,
                request_id=ctx.request_id,
                reservation_id=reservation.id,
                pnr=reservation.pnr,
                previous_status=previous_status.value,
                cancel_reason=reason,
            ).to_dict(),
            source="reservation_service"
        ))
        self.audit.log_operation(ctx, "reservation.cancel", "reservation", reservation.id, {
            "pnr": reservation.pnr,
            "previousStatus": previous_status.value,
            "reason": reason,
        })
        return reservation

    def get_reservation_detail(self, property_id: str, reservation_id: str) -> Dict[str, Any]:
        """获取预订详情（包含账夹与入住人）"""
        reservation = self.get_reservation(property_id, reservation_id)
        folio = reservation.folio

        return {
            'id': reservation.id,
            'pnr': reservation.pnr,
            'status': reservation.status,
            'guest_id': reservation.guest_id,
            'guest_name': reservation.guest.name,
            'guest_email': reservation.guest.email,
            'room_type_id': reservation.room_type_id,
            'room_type_code': reservation.room_type.code,
            'rate_plan_code': reservation.rate_plan_code,
            'check_in': reservation.check_in,
            'check_out': reservation.check_out,
            'room_count': reservation.room_count,
            'adults': reservation.adults,
            'children': reservation.children,
            'total_amount': reservation.total_amount,
            'currency': reservation.currency,
            'cancel_reason': reservation.cancel_reason,
            'folio': {
                'status': folio.status,
                'total_amount': folio.total_amount,
                'paid_amount': folio.paid_amount,
                'balance': folio.balance,
                'currency': folio.currency,
            } if folio else None,
            'occupants': [
                {
                    'name': o.name,
                    'guest_type': o.guest_type,
                    'age': o.age,
                    'is_representative': o.is_representative,
                }
                for o in reservation.occupants
            ],
            'created_at': reservation.created_at,
        }
