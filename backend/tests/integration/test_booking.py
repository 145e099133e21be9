"""
Integration tests for appointment booking.

Covers all three booking modes and the conflict rules shared between them.
"""

import pytest
from datetime import datetime, time, timedelta
from fastapi import HTTPException

from core.constants import SLOT_MODE_BOOKED, SLOT_MODE_UNAVAILABLE
from models import Appointment
from services import appointment_service
from services.appointment_service import AppointmentService
from utils.datetime_utils import CLINIC_TZ
from utils.time_utils import format_time
from tests.conftest import (
    FUTURE_MONDAY, make_doctor, make_elastic_schedule, make_slot, make_template,
)


def _book(db, user, doctor, **kwargs):
    return AppointmentService.create_appointment(db, user, doctor.id, **kwargs)


def _status_of(call):
    with pytest.raises(HTTPException) as exc_info:
        call()
    return exc_info.value


class TestElasticBooking:
    """Test bookings against a day schedule."""

    def test_explicit_times(self, db_session, doctor, patient, patient_user):
        schedule = make_elastic_schedule(db_session, doctor)

        appointment = _book(
            db_session, patient_user, doctor,
            elastic_schedule_id=schedule.id, start_time="10:00", end_time="10:30", reason="Checkup",
        )

        assert appointment.id is not None
        assert appointment.patient_id == patient.id
        assert appointment.elastic_schedule_id == schedule.id
        assert appointment.slot_id is None
        assert appointment.date == FUTURE_MONDAY
        assert (format_time(appointment.start_time), format_time(appointment.end_time)) == ("10:00", "10:30")
        assert appointment.status == "scheduled"
        assert appointment.reason == "Checkup"

    def test_auto_pick_takes_first_free_slot(self, db_session, doctor, patient_user):
        schedule = make_elastic_schedule(db_session, doctor)

        first = _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id)
        second = _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id)

        assert format_time(first.start_time) == "09:00"
        assert format_time(second.start_time) == "09:30"

    def test_same_time_twice_conflicts(self, db_session, doctor, patient_user):
        schedule = make_elastic_schedule(db_session, doctor)
        _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id, start_time="09:00", end_time="09:30")

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor,
            elastic_schedule_id=schedule.id, start_time="09:00", end_time="09:30",
        ))

        assert error.status_code == 409

    def test_partial_overlap_conflicts(self, db_session, doctor, patient_user):
        schedule = make_elastic_schedule(db_session, doctor)
        _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id, start_time="09:00", end_time="09:30")

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor,
            elastic_schedule_id=schedule.id, start_time="09:15", end_time="09:45",
        ))

        assert error.status_code == 409
        assert "conflicts" in error.detail

    def test_back_to_back_is_allowed(self, db_session, doctor, patient_user):
        schedule = make_elastic_schedule(db_session, doctor)
        _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id, start_time="09:00", end_time="09:30")

        second = _book(
            db_session, patient_user, doctor,
            elastic_schedule_id=schedule.id, start_time="09:30", end_time="10:00",
        )

        assert format_time(second.start_time) == "09:30"

    def test_outside_window_conflicts(self, db_session, doctor, patient_user):
        schedule = make_elastic_schedule(db_session, doctor)

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor,
            elastic_schedule_id=schedule.id, start_time="11:45", end_time="12:15",
        ))

        assert error.status_code == 409
        assert "09:00 - 12:00" in error.detail

    def test_full_schedule(self, db_session, doctor, patient_user):
        schedule = make_elastic_schedule(db_session, doctor, max_appointments=1)
        _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id)

        error = _status_of(lambda: _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id))

        assert error.status_code == 409

    def test_schedule_of_another_doctor(self, db_session, doctor, patient_user):
        other = make_doctor(db_session, email="cuddy@example.com", name="Lisa Cuddy")
        schedule = make_elastic_schedule(db_session, other)

        error = _status_of(lambda: _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id))

        assert error.status_code == 404

    @pytest.mark.parametrize("start,end", [("10:00", None), ("10:30", "10:00"), ("9am", "10:00")])
    def test_invalid_window(self, db_session, doctor, patient_user, start, end):
        schedule = make_elastic_schedule(db_session, doctor)

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor, elastic_schedule_id=schedule.id, start_time=start, end_time=end,
        ))

        assert error.status_code == 400


class TestBookingPreconditions:
    """Test checks that run before any mode-specific logic."""

    def test_no_booking_reference(self, db_session, doctor, patient_user):
        error = _status_of(lambda: _book(db_session, patient_user, doctor))

        assert error.status_code == 400

    def test_unknown_doctor(self, db_session, patient_user):
        error = _status_of(lambda: AppointmentService.create_appointment(db_session, patient_user, 999))

        assert error.status_code == 404

    def test_user_without_patient_profile(self, db_session, doctor, doctor_user):
        schedule = make_elastic_schedule(db_session, doctor)

        error = _status_of(lambda: _book(db_session, doctor_user, doctor, elastic_schedule_id=schedule.id))

        assert error.status_code == 404
        assert error.detail == "Patient not found"


class TestRecurringBooking:
    """Test bookings resolved through a weekly template."""

    def test_books_on_covered_weekday(self, db_session, doctor, patient_user):
        template = make_template(db_session, doctor, days_of_week=[1])

        appointment = _book(
            db_session, patient_user, doctor,
            recurring_schedule_id=template.id, date=FUTURE_MONDAY, start_time="09:30", end_time="10:00",
        )

        assert appointment.elastic_schedule_id is None
        assert appointment.date == FUTURE_MONDAY
        assert format_time(appointment.start_time) == "09:30"

    def test_uncovered_weekday(self, db_session, doctor, patient_user):
        template = make_template(db_session, doctor, days_of_week=[1, 3])

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor, recurring_schedule_id=template.id,
            date=FUTURE_MONDAY + timedelta(days=1), start_time="09:00", end_time="09:30",
        ))

        assert error.status_code == 409
        assert "Tuesday" in error.detail
        assert "Monday, Wednesday" in error.detail

    def test_date_is_required(self, db_session, doctor, patient_user):
        template = make_template(db_session, doctor, days_of_week=[1])

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor, recurring_schedule_id=template.id,
            start_time="09:00", end_time="09:30",
        ))

        assert error.status_code == 400

    def test_inactive_template(self, db_session, doctor, patient_user):
        template = make_template(db_session, doctor, days_of_week=[1], is_active=False)

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor, recurring_schedule_id=template.id,
            date=FUTURE_MONDAY, start_time="09:00", end_time="09:30",
        ))

        assert error.status_code == 409

    def test_conflicts_with_existing_booking(self, db_session, doctor, patient_user):
        template = make_template(db_session, doctor, days_of_week=[1])
        _book(
            db_session, patient_user, doctor, recurring_schedule_id=template.id,
            date=FUTURE_MONDAY, start_time="09:00", end_time="09:30",
        )

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor, recurring_schedule_id=template.id,
            date=FUTURE_MONDAY, start_time="09:20", end_time="09:50",
        ))

        assert error.status_code == 409


class TestSlotBooking:
    """Test bookings that claim a traditional availability slot."""

    def _slot(self, db_session, doctor, mode="available"):
        start = datetime(2030, 1, 7, 9, 0, tzinfo=CLINIC_TZ)
        return make_slot(db_session, doctor, start, start + timedelta(minutes=30), mode)

    def test_claims_slot(self, db_session, doctor, patient_user):
        slot = self._slot(db_session, doctor)

        appointment = _book(db_session, patient_user, doctor, slot_id=slot.id)

        assert appointment.slot_id == slot.id
        assert appointment.date is None
        assert appointment.start_time is None
        db_session.refresh(slot)
        assert slot.mode == SLOT_MODE_BOOKED

    def test_booked_slot_conflicts(self, db_session, doctor, patient_user):
        slot = self._slot(db_session, doctor)
        _book(db_session, patient_user, doctor, slot_id=slot.id)

        error = _status_of(lambda: _book(db_session, patient_user, doctor, slot_id=slot.id))

        assert error.status_code == 409

    def test_unavailable_slot_conflicts(self, db_session, doctor, patient_user):
        slot = self._slot(db_session, doctor, SLOT_MODE_UNAVAILABLE)

        error = _status_of(lambda: _book(db_session, patient_user, doctor, slot_id=slot.id))

        assert error.status_code == 409

    def test_unknown_slot(self, db_session, doctor, patient_user):
        error = _status_of(lambda: _book(db_session, patient_user, doctor, slot_id=12345))

        assert error.status_code == 404


class TestConcurrentElasticBooking:
    """Two requests that both pass the conflict check before either commits."""

    def test_second_commit_is_a_conflict(self, db_session, other_session, doctor, patient_user, monkeypatch):
        schedule = make_elastic_schedule(db_session, doctor)
        real_check = appointment_service._ensure_bookable

        def check_then_lose_race(db, *args):
            real_check(db, *args)
            if db is db_session:
                # The other request books the same time and commits first
                _book(
                    other_session, patient_user, doctor,
                    elastic_schedule_id=schedule.id, start_time="09:00", end_time="09:30",
                )

        monkeypatch.setattr(appointment_service, "_ensure_bookable", check_then_lose_race)

        error = _status_of(lambda: _book(
            db_session, patient_user, doctor,
            elastic_schedule_id=schedule.id, start_time="09:00", end_time="09:30",
        ))

        assert error.status_code == 409
        assert error.detail == "Time slot is no longer available"
        booked = db_session.query(Appointment).filter(Appointment.elastic_schedule_id == schedule.id).all()
        assert [(format_time(a.start_time), a.status) for a in booked] == [("09:00", "scheduled")]

    def test_each_booking_bumps_schedule_version(self, db_session, doctor, patient_user):
        schedule = make_elastic_schedule(db_session, doctor)
        first_version = schedule.version

        _book(db_session, patient_user, doctor, elastic_schedule_id=schedule.id)
        db_session.refresh(schedule)

        assert schedule.version == first_version + 1
