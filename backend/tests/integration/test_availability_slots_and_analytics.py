"""
Integration tests for traditional availability slots and fill-rate statistics.
"""

import pytest
from datetime import datetime, time, timedelta
from fastapi import HTTPException

from core.constants import ROLE_DOCTOR, SLOT_MODE_BOOKED, SLOT_MODE_UNAVAILABLE
from services.appointment_service import AppointmentService
from services.availability_slot_service import AvailabilitySlotService
from services.schedule_analytics_service import ScheduleAnalyticsService, recommend_for_fill_rate
from utils.datetime_utils import CLINIC_TZ
from tests.conftest import context_for, make_appointment, make_doctor, make_elastic_schedule, make_slot

NINE = datetime(2030, 1, 7, 9, 0, tzinfo=CLINIC_TZ)
HALF_HOUR = timedelta(minutes=30)


class TestAvailabilitySlots:
    """Test AvailabilitySlotService."""

    def test_add_and_list(self, db_session, doctor, doctor_user):
        later = AvailabilitySlotService.add_slot(db_session, doctor_user, doctor.id, NINE + HALF_HOUR, NINE + 2 * HALF_HOUR)
        earlier = AvailabilitySlotService.add_slot(db_session, doctor_user, doctor.id, NINE, NINE + HALF_HOUR)
        AvailabilitySlotService.add_slot(
            db_session, doctor_user, doctor.id, NINE + 4 * HALF_HOUR, NINE + 5 * HALF_HOUR, SLOT_MODE_UNAVAILABLE
        )

        bookable = AvailabilitySlotService.list_slots(db_session, doctor.id)
        everything = AvailabilitySlotService.list_slots(db_session, doctor.id, include_unavailable=True)

        assert [s.id for s in bookable] == [earlier.id, later.id]
        assert len(everything) == 3

    def test_naive_times_are_clinic_local(self, db_session, doctor, doctor_user):
        slot = AvailabilitySlotService.add_slot(
            db_session, doctor_user, doctor.id, datetime(2030, 1, 7, 9, 0), datetime(2030, 1, 7, 9, 30)
        )

        assert slot.start_time.replace(tzinfo=None) == datetime(2030, 1, 7, 9, 0)

    @pytest.mark.parametrize("end_offset,mode", [(timedelta(0), "available"), (HALF_HOUR, SLOT_MODE_BOOKED)])
    def test_rejects_invalid_slot(self, db_session, doctor, doctor_user, end_offset, mode):
        with pytest.raises(HTTPException) as exc_info:
            AvailabilitySlotService.add_slot(db_session, doctor_user, doctor.id, NINE, NINE + end_offset, mode)

        assert exc_info.value.status_code == 400

    def test_only_owner_may_add(self, db_session, doctor):
        other = make_doctor(db_session, email="cuddy@example.com", name="Lisa Cuddy")

        with pytest.raises(HTTPException) as exc_info:
            AvailabilitySlotService.add_slot(
                db_session, context_for(other.user_id, ROLE_DOCTOR), doctor.id, NINE, NINE + HALF_HOUR
            )

        assert exc_info.value.status_code == 403

    def test_delete_free_slot(self, db_session, doctor, doctor_user):
        slot = make_slot(db_session, doctor, NINE, NINE + HALF_HOUR)

        AvailabilitySlotService.delete_slot(db_session, doctor_user, doctor.id, slot.id)

        assert AvailabilitySlotService.list_slots(db_session, doctor.id, include_unavailable=True) == []

    def test_booked_slot_cannot_be_deleted(self, db_session, doctor, doctor_user, patient_user):
        slot = make_slot(db_session, doctor, NINE, NINE + HALF_HOUR)
        AppointmentService.create_appointment(db_session, patient_user, doctor.id, slot_id=slot.id)

        with pytest.raises(HTTPException) as exc_info:
            AvailabilitySlotService.delete_slot(db_session, doctor_user, doctor.id, slot.id)

        assert exc_info.value.status_code == 409

    def test_delete_missing_slot(self, db_session, doctor, doctor_user):
        with pytest.raises(HTTPException) as exc_info:
            AvailabilitySlotService.delete_slot(db_session, doctor_user, doctor.id, 999)

        assert exc_info.value.status_code == 404


class TestScheduleAnalytics:
    """Test fill-rate statistics."""

    @pytest.mark.parametrize("rate,expected", [
        (0.0, "Consider increasing slot duration or reducing window."),
        (0.5, "Current settings are optimal."),
        (0.8, "Current settings are optimal."),
        (0.81, "Consider reducing slot duration or increasing window."),
    ])
    def test_recommendation_thresholds(self, rate, expected):
        assert recommend_for_fill_rate(rate) == expected

    def test_doctor_stats(self, db_session, doctor, patient):
        schedule = make_elastic_schedule(db_session, doctor)
        for hour in (9, 10, 11):
            make_appointment(db_session, patient, doctor, time(hour, 0), time(hour, 30), schedule=schedule)
        make_appointment(db_session, patient, doctor, time(9, 30), time(10, 0), schedule=schedule, status="cancelled")

        stats = ScheduleAnalyticsService.get_doctor_stats(db_session, doctor.id)

        assert stats == {
            "doctor_id": doctor.id,
            "doctor_name": "Gregory House",
            "schedules": 1,
            "total_slots": 6,
            "total_booked": 3,
            "fill_rate": 0.5,
            "recommendation": "Current settings are optimal.",
        }

    def test_doctor_without_schedules(self, db_session, doctor):
        stats = ScheduleAnalyticsService.get_doctor_stats(db_session, doctor.id)

        assert stats["total_slots"] == 0
        assert stats["fill_rate"] == 0.0

    def test_all_doctors(self, db_session, doctor):
        other = make_doctor(db_session, email="cuddy@example.com", name="Lisa Cuddy")
        make_elastic_schedule(db_session, other, max_appointments=2)

        stats = ScheduleAnalyticsService.get_all_doctors_stats(db_session)

        assert [(s["doctor_id"], s["total_slots"]) for s in stats] == [(doctor.id, 0), (other.id, 2)]
