"""
Tests for app/services/idempotency_service.py
Covers: acquire（首次加锁、冲突、过期接管）, complete, fail, is_stale
"""
import pytest
from datetime import datetime, timedelta

from app.models.ontology import IdempotencyRecord, IdempotencyStatus
from app.services.errors import IdempotencyConflict
from app.services.idempotency_service import IdempotencyService


def _age(db, key, seconds):
    record = db.query(IdempotencyRecord).filter(IdempotencyRecord.key == key).one()
    record.locked_at = datetime.utcnow() - timedelta(seconds=seconds)
    db.commit()


class TestAcquire:

    def test_first_acquire_creates_pending(self, db_session):
        record = IdempotencyService(db_session).acquire("key-1", "req-1")
        assert record.status == IdempotencyStatus.PENDING
        assert record.request_id == "req-1"

    def test_second_acquire_conflicts(self, db_session):
        svc = IdempotencyService(db_session)
        svc.acquire("key-1", "req-1")
        with pytest.raises(IdempotencyConflict) as exc:
            svc.acquire("key-1", "req-2")
        assert exc.value.code == "IDEMPOTENCY_IN_PROGRESS"
        assert exc.value.status_code == 409
        assert svc.get("key-1").request_id == "req-1"

    def test_stale_pending_taken_over(self, db_session):
        """超过租约的 PENDING 记录可被新请求接管"""
        svc = IdempotencyService(db_session, pending_ttl_seconds=60)
        svc.acquire("key-1", "req-1")
        _age(db_session, "key-1", 120)

        record = svc.acquire("key-1", "req-2")
        assert record.request_id == "req-2"
        assert record.status == IdempotencyStatus.PENDING

    def test_finished_record_not_taken_over(self, db_session):
        svc = IdempotencyService(db_session, pending_ttl_seconds=60)
        svc.acquire("key-1", "req-1")
        svc.complete("key-1", "req-1", {"reservationId": "r-1"})
        _age(db_session, "key-1", 120)

        with pytest.raises(IdempotencyConflict):
            svc.acquire("key-1", "req-2")


class TestFinish:

    def test_complete_stores_result(self, db_session):
        svc = IdempotencyService(db_session)
        svc.acquire("key-1", "req-1")
        assert svc.complete("key-1", "req-1", {"reservationId": "r-1", "pnr": "ABC123"}) is True

        db_session.expire_all()
        record = svc.get("key-1")
        assert record.status == IdempotencyStatus.SUCCESS
        assert record.completed_at is not None
        assert IdempotencyService.result_of(record) == {"reservationId": "r-1", "pnr": "ABC123"}

    def test_fail_is_terminal(self, db_session):
        svc = IdempotencyService(db_session)
        svc.acquire("key-1", "req-1")
        assert svc.fail("key-1", "req-1", {"error": {"code": "INVENTORY_UNAVAILABLE"}}) is True
        assert svc.complete("key-1", "req-1", {"reservationId": "r-1"}) is False

        db_session.expire_all()
        assert svc.get("key-1").status == IdempotencyStatus.FAILED

    def test_only_owner_can_finish(self, db_session):
        """被接管后，原请求不能再写结果"""
        svc = IdempotencyService(db_session, pending_ttl_seconds=60)
        svc.acquire("key-1", "req-1")
        _age(db_session, "key-1", 120)
        svc.acquire("key-1", "req-2")

        assert svc.complete("key-1", "req-1", {"reservationId": "old"}) is False
        assert svc.complete("key-1", "req-2", {"reservationId": "new"}) is True
        db_session.expire_all()
        assert IdempotencyService.result_of(svc.get("key-1")) == {"reservationId": "new"}


class TestStale:

    def test_fresh_pending_not_stale(self, db_session):
        svc = IdempotencyService(db_session, pending_ttl_seconds=60)
        record = svc.acquire("key-1", "req-1")
        assert svc.is_stale(record) is False

    def test_old_pending_is_stale(self, db_session):
        svc = IdempotencyService(db_session, pending_ttl_seconds=60)
        record = svc.acquire("key-1", "req-1")
        assert svc.is_stale(record, now=datetime.utcnow() + timedelta(seconds=61)) is True
