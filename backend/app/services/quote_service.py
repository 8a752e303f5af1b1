"""
报价服务
报价把入住的每晚价格冻结下来并生成定价签名；
预订时重新定价，签名不一致说明价格已漂移，需要重新报价
"""
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import hashlib
import hmac
import json
import logging
import threading
import uuid

from sqlalchemy.orm import Session

from app.config import settings
from app.models.ontology import RoomType
from app.models.schemas import QuoteReference, StayRequest
from app.security.context import RequestContext
from app.services.date_utils import stay_nights
from app.services.errors import InventoryUnavailable, PricingMismatch
from app.services.inventory_service import InventoryService
from app.services.rate_cascade import RateCascadeEngine
from app.services.restriction_service import RestrictionService

logger = logging.getLogger(__name__)


def pricing_signature(components: Dict[str, Any]) -> str:
    """规范化 JSON（键排序、紧凑分隔符）的 SHA-256 十六进制摘要"""
    canonical = json.dumps(components, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class Quote:
    """报价"""
    quote_id: str
    property_id: str
    room_type_code: str
    rate_plan_code: str
    check_in: date
    check_out: date
    adults: int
    children: int
    currency: str
    nightly: List[Dict[str, str]]
    total: Decimal
    signature: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or datetime.utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quoteId": self.quote_id,
            "pricingSignature": self.signature,
            "total": float(self.total),
            "currency": self.currency,
            "breakdown": [
                {"date": night["date"], "amount": float(Decimal(night["amount"]))}
                for night in self.nightly
            ],
            "stay": {
                "checkIn": self.check_in.isoformat(),
                "checkOut": self.check_out.isoformat(),
                "adults": self.adults,
                "children": self.children,
                "roomTypeCode": self.room_type_code,
                "ratePlanCode": self.rate_plan_code,
            },
            "validUntil": self.expires_at.isoformat() if self.expires_at else None,
        }


class QuoteCache:
    """
    进程内报价缓存（线程安全，按 TTL 过期）
    """

    def __init__(self):
        self._quotes: Dict[str, Quote] = {}
        self._lock = threading.Lock()

    def put(self, quote: Quote, now: Optional[datetime] = None) -> None:
        """写入报价，同时清理已过期的报价"""
        now = now or datetime.utcnow()
        with self._lock:
            expired = [quote_id for quote_id, cached in self._quotes.items() if cached.is_expired(now)]
            for quote_id in expired:
                del self._quotes[quote_id]
            if expired:
                logger.debug(f"Swept {len(expired)} expired quotes")
            self._quotes[quote.quote_id] = quote

    def get(self, quote_id: str, now: Optional[datetime] = None) -> Optional[Quote]:
        with self._lock:
            quote = self._quotes.get(quote_id)
            if quote is not None and quote.is_expired(now):
                del self._quotes[quote_id]
                return None
            return quote

    def evict(self, property_id: str, room_type_code: Optional[str] = None) -> int:
        """淘汰某酒店（某房型）的全部报价"""
        with self._lock:
            doomed = [
                quote_id for quote_id, quote in self._quotes.items()
                if quote.property_id == property_id
                and (room_type_code is None or quote.room_type_code == room_type_code)
            ]
            for quote_id in doomed:
                del self._quotes[quote_id]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._quotes.clear()

    def __len__(self) -> int:
        return len(self._quotes)


quote_cache = QuoteCache()


class QuoteService:
    """报价服务"""

    def __init__(self, db: Session, cache: Optional[QuoteCache] = None,
                 ttl_seconds: Optional[int] = None):
        self.db = db
        self.cache = cache if cache is not None else quote_cache
        self.ttl = timedelta(seconds=ttl_seconds if ttl_seconds is not None else settings.QUOTE_TTL_SECONDS)
        self.inventory = InventoryService(db)
        self.rates = RateCascadeEngine(db)
        self.restrictions = RestrictionService(db)

    def price_nights(self, ctx: RequestContext, room_type: RoomType, rate_plan_code: str,
                     nights: List[date]) -> Tuple[List[Dict[str, str]], Decimal]:
        """每晚价格：解析价优先，否则房型基础价"""
        nightly = []
        total = Decimal("0.00")
        for night in nights:
            amount = self.rates.resolve_rate(ctx.property_id, room_type.id, night, rate_plan_code)
            if amount is None:
                amount = Decimal(str(room_type.base_price or 0)).quantize(Decimal("0.01"))
            nightly.append({"date": night.isoformat(), "amount": str(amount)})
            total += amount
        return nightly, total

    def _components(self, ctx: RequestContext, stay: StayRequest, currency: str,
                    nightly: List[Dict[str, str]], total: Decimal) -> Dict[str, Any]:
        return {
            "propertyId": ctx.property_id,
            "roomTypeCode": stay.room_type_code,
            "ratePlanCode": stay.rate_plan_code,
            "checkIn": stay.check_in.isoformat(),
            "checkOut": stay.check_out.isoformat(),
            "currency": currency,
            "nightly": nightly,
            "total": str(total),
        }

    def reprice(self, ctx: RequestContext, stay: StayRequest) -> Tuple[str, List[Dict[str, str]], Decimal]:
        """按当前价格重新定价，返回 (签名, 每晚价格, 总价)"""
        nights = stay_nights(stay.check_in, stay.check_out)
        room_type = self.inventory.get_room_type_by_code(ctx.property_id, stay.room_type_code)
        self.rates.require_plan(ctx.property_id, stay.rate_plan_code)
        currency = settings.DEFAULT_CURRENCY
        nightly, total = self.price_nights(ctx, room_type, stay.rate_plan_code, nights)
        return pricing_signature(self._components(ctx, stay, currency, nightly, total)), nightly, total

    def create_quote(self, ctx: RequestContext, stay: StayRequest) -> Quote:
        """
        生成报价

        Raises:
            RestrictionViolation: 违反销售限制
            InventoryUnavailable: 任意一晚无可售房
        """
        nights = stay_nights(stay.check_in, stay.check_out)
        room_type = self.inventory.get_room_type_by_code(ctx.property_id, stay.room_type_code)
        self.restrictions.validate_stay(ctx.property_id, room_type.id, stay.rate_plan_code,
                                        stay.check_in, stay.check_out, nights)
        if not self.inventory.has_availability(ctx.property_id, room_type.id, nights):
            raise InventoryUnavailable("所选日期无可售房", details={"roomTypeCode": room_type.code})

        signature, nightly, total = self.reprice(ctx, stay)
        now = datetime.utcnow()
        quote = Quote(
            quote_id=str(uuid.uuid4()),
            property_id=ctx.property_id,
            room_type_code=stay.room_type_code,
            rate_plan_code=stay.rate_plan_code,
            check_in=stay.check_in,
            check_out=stay.check_out,
            adults=stay.adults,
            children=stay.children,
            currency=settings.DEFAULT_CURRENCY,
            nightly=nightly,
            total=total,
            signature=signature,
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.cache.put(quote)
        logger.info(f"Quote {quote.quote_id} for {stay.room_type_code}/{stay.rate_plan_code} "
                    f"{stay.check_in}..{stay.check_out}: {total} ({ctx.property_id})")
        return quote

    def validate_quote(self, ctx: RequestContext, ref: QuoteReference, stay: StayRequest) -> Quote:
        """
        校验报价仍然有效

        Raises:
            PricingMismatch: 报价不存在/过期、与入住不符、签名不符或价格已漂移
        """
        quote = self.cache.get(ref.quote_id)
        if quote is None:
            raise PricingMismatch("报价不存在或已过期，请重新报价", code="QUOTE_EXPIRED",
                                  details={"quoteId": ref.quote_id})

        if (quote.property_id != ctx.property_id
                or quote.room_type_code != stay.room_type_code
                or quote.rate_plan_code != stay.rate_plan_code
                or quote.check_in != stay.check_in
                or quote.check_out != stay.check_out):
            raise PricingMismatch("报价与入住信息不一致", code="QUOTE_STAY_MISMATCH",
                                  details={"quoteId": ref.quote_id})

        supplied = ref.pricing_signature.encode("utf-8")
        if not hmac.compare_digest(quote.signature.encode("utf-8"), supplied):
            raise PricingMismatch("定价签名不一致，请重新报价", details={"quoteId": ref.quote_id})

        current_signature, _, current_total = self.reprice(ctx, stay)
        if current_signature != quote.signature:
            logger.warning(f"Price drift on quote {quote.quote_id}: quoted {quote.total}, now {current_total}")
            raise PricingMismatch("价格已变化，请重新报价",
                                  details={"quoteId": ref.quote_id,
                                           "quotedTotal": str(quote.total),
                                           "currentTotal": str(current_total)})
        return quote
