"""
幂等服务 - 预订请求去重
PENDING 记录本身就是锁：插入成功即持有该键；
超过租约时间仍为 PENDING 的记录视为被遗弃，可通过条件更新接管
"""
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import json
import logging

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.ontology import IdempotencyRecord, IdempotencyStatus
from app.services.errors import IdempotencyConflict

logger = logging.getLogger(__name__)


class IdempotencyService:
    """幂等服务"""

    def __init__(self, db: Session, pending_ttl_seconds: Optional[int] = None):
        self.db = db
        self.pending_ttl = timedelta(
            seconds=pending_ttl_seconds if pending_ttl_seconds is not None
            else settings.IDEMPOTENCY_PENDING_TTL_SECONDS
        )

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        return self.db.query(IdempotencyRecord).filter(IdempotencyRecord.key == key).first()

    @staticmethod
    def result_of(record: IdempotencyRecord) -> Dict[str, Any]:
        return json.loads(record.result) if record.result else {}

    def is_stale(self, record: IdempotencyRecord, now: Optional[datetime] = None) -> bool:
        """PENDING 记录是否已超过租约"""
        now = now or datetime.utcnow()
        return record.status == IdempotencyStatus.PENDING and record.locked_at + self.pending_ttl < now

    def acquire(self, key: str, request_id: str) -> IdempotencyRecord:
        """
        获取幂等锁

        Raises:
            IdempotencyConflict: 键正被其他请求持有（未过期）
        """
        now = datetime.utcnow()
        # 直接 INSERT：主键冲突即说明键已被占用
        try:
            self.db.execute(insert(IdempotencyRecord).values(
                key=key,
                request_id=request_id,
                status=IdempotencyStatus.PENDING,
                locked_at=now,
            ))
            self.db.commit()
            logger.info(f"Idempotency key {key} locked by request {request_id}")
            return self.get(key)
        except IntegrityError:
            self.db.rollback()

        existing = self.get(key)
        if existing is None or existing.status != IdempotencyStatus.PENDING or not self.is_stale(existing, now):
            raise IdempotencyConflict("请求正在处理中，请稍后重试", code="IDEMPOTENCY_IN_PROGRESS",
                                      details={"idempotencyKey": key})

        # 原持有者可能仍在运行并提交预订；它的 complete() 会因不再持有锁而失败，
        # 由调用方（BookSaga）取消它自己创建的预订
        stale_locked_at = existing.locked_at
        taken = self.db.query(IdempotencyRecord).filter(
            IdempotencyRecord.key == key,
            IdempotencyRecord.status == IdempotencyStatus.PENDING,
            IdempotencyRecord.locked_at == stale_locked_at
        ).update({
            IdempotencyRecord.request_id: request_id,
            IdempotencyRecord.locked_at: now,
        }, synchronize_session=False)
        self.db.commit()

        if taken != 1:
            raise IdempotencyConflict("请求正在处理中，请稍后重试", code="IDEMPOTENCY_IN_PROGRESS",
                                      details={"idempotencyKey": key})

        logger.warning(f"Idempotency key {key} taken over from stale request by {request_id}")
        return self.get(key)

    def _finish(self, key: str, request_id: str, status: IdempotencyStatus,
                result: Dict[str, Any]) -> bool:
        updated = self.db.query(IdempotencyRecord).filter(
            IdempotencyRecord.key == key,
            IdempotencyRecord.request_id == request_id,
            IdempotencyRecord.status == IdempotencyStatus.PENDING
        ).update({
            IdempotencyRecord.status: status,
            IdempotencyRecord.result: json.dumps(result, default=str, ensure_ascii=False),
            IdempotencyRecord.completed_at: datetime.utcnow(),
        }, synchronize_session=False)
        self.db.commit()
        if updated != 1:
            logger.warning(f"Idempotency key {key} no longer owned by request {request_id}")
        return updated == 1

    def complete(self, key: str, request_id: str, result: Dict[str, Any]) -> bool:
        """PENDING -> SUCCESS（仅锁的持有者）"""
        return self._finish(key, request_id, IdempotencyStatus.SUCCESS, result)

    def fail(self, key: str, request_id: str, error: Dict[str, Any]) -> bool:
        """PENDING -> FAILED（仅锁的持有者）"""
        return self._finish(key, request_id, IdempotencyStatus.FAILED, error)
