"""
Tests for app/services/restriction_service.py
Covers: RESTRICTION_SETTERS, upsert, validate_stay（关房、CTA、CTD、最短/最长入住、BASE 回退）
"""
import pytest
from datetime import date, timedelta

from app.models.ontology import RestrictionField
from app.services.errors import RestrictionViolation, ValidationError
from app.services.restriction_service import RESTRICTION_SETTERS, RestrictionService

HOTEL = "hotel_001"
CHECK_IN = date(2030, 5, 1)


def _nights(n, start=CHECK_IN):
    return [start + timedelta(days=i) for i in range(n)]


def _restrict(db, room_type, day, values, code="BASE"):
    row = RestrictionService(db).upsert(HOTEL, room_type.id, day, code, values)
    db.commit()
    return row


def _validate(db, room_type, nights=2, code="BAR"):
    days = _nights(nights)
    RestrictionService(db).validate_stay(
        HOTEL, room_type.id, code, CHECK_IN, CHECK_IN + timedelta(days=nights), days)


class TestUpsert:

    def test_every_field_has_setter(self):
        assert set(RESTRICTION_SETTERS) == set(RestrictionField)

    def test_only_given_fields_change(self, db_session, sample_room_type):
        _restrict(db_session, sample_room_type, CHECK_IN, {RestrictionField.MIN_LOS: 2})
        row = _restrict(db_session, sample_room_type, CHECK_IN, {RestrictionField.CLOSED: True})
        assert row.min_los == 2
        assert row.closed is True
        assert row.closed_to_arrival is False

    def test_string_flags_accepted(self, db_session, sample_room_type):
        row = _restrict(db_session, sample_room_type, CHECK_IN,
                        {RestrictionField.CLOSED_TO_ARRIVAL: "true"})
        assert row.closed_to_arrival is True

    def test_invalid_los(self, db_session, sample_room_type):
        with pytest.raises(ValidationError):
            RestrictionService(db_session).upsert(HOTEL, sample_room_type.id, CHECK_IN, "BASE",
                                                  {RestrictionField.MIN_LOS: 0})

    def test_invalid_flag(self, db_session, sample_room_type):
        with pytest.raises(ValidationError):
            RestrictionService(db_session).upsert(HOTEL, sample_room_type.id, CHECK_IN, "BASE",
                                                  {RestrictionField.CLOSED: "maybe"})

    def test_min_greater_than_max(self, db_session, sample_room_type):
        with pytest.raises(ValidationError):
            RestrictionService(db_session).upsert(HOTEL, sample_room_type.id, CHECK_IN, "BASE", {
                RestrictionField.MIN_LOS: 5, RestrictionField.MAX_LOS: 2})


class TestValidateStay:

    def test_no_restrictions(self, db_session, sample_room_type):
        _validate(db_session, sample_room_type)

    def test_closed_night(self, db_session, sample_room_type):
        _restrict(db_session, sample_room_type, CHECK_IN + timedelta(days=1), {RestrictionField.CLOSED: True})
        with pytest.raises(RestrictionViolation) as exc:
            _validate(db_session, sample_room_type, nights=3)
        assert exc.value.code == "RESTRICTION_CLOSED"
        assert exc.value.status_code == 400

    def test_closed_on_checkout_day_is_fine(self, db_session, sample_room_type):
        _restrict(db_session, sample_room_type, CHECK_IN + timedelta(days=2), {RestrictionField.CLOSED: True})
        _validate(db_session, sample_room_type, nights=2)

    def test_closed_to_arrival(self, db_session, sample_room_type):
        _restrict(db_session, sample_room_type, CHECK_IN, {RestrictionField.CLOSED_TO_ARRIVAL: True})
        with pytest.raises(RestrictionViolation) as exc:
            _validate(db_session, sample_room_type)
        assert exc.value.code == "RESTRICTION_CTA"

    def test_closed_to_departure(self, db_session, sample_room_type):
        _restrict(db_session, sample_room_type, CHECK_IN + timedelta(days=2),
                  {RestrictionField.CLOSED_TO_DEPARTURE: True})
        with pytest.raises(RestrictionViolation) as exc:
            _validate(db_session, sample_room_type, nights=2)
        assert exc.value.code == "RESTRICTION_CTD"

    def test_min_los(self, db_session, sample_room_type):
        _restrict(db_session, sample_room_type, CHECK_IN, {RestrictionField.MIN_LOS: 3})
        with pytest.raises(RestrictionViolation) as exc:
            _validate(db_session, sample_room_type, nights=2)
        assert exc.value.code == "RESTRICTION_MIN_LOS"
        _validate(db_session, sample_room_type, nights=3)

    def test_max_los(self, db_session, sample_room_type):
        _restrict(db_session, sample_room_type, CHECK_IN, {RestrictionField.MAX_LOS: 2})
        with pytest.raises(RestrictionViolation) as exc:
            _validate(db_session, sample_room_type, nights=3)
        assert exc.value.code == "RESTRICTION_MAX_LOS"

    def test_plan_specific_row_takes_precedence(self, db_session, sample_room_type):
        """BAR 自己的限制行优先于 BASE 的回退行"""
        _restrict(db_session, sample_room_type, CHECK_IN, {RestrictionField.CLOSED: True}, code="BASE")
        _restrict(db_session, sample_room_type, CHECK_IN, {RestrictionField.CLOSED: False}, code="BAR")
        _validate(db_session, sample_room_type, code="BAR")
        with pytest.raises(RestrictionViolation):
            _validate(db_session, sample_room_type, code="NRF")
