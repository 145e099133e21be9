"""
Integration tests for recurring weekly templates.

The clinic clock is pinned to Sunday 2030-01-06 08:00 so expansion ranges and
same-day lead-time checks are deterministic.
"""

import pytest
from datetime import date, datetime, time, timedelta
from fastapi import HTTPException

from core.constants import ROLE_DOCTOR
from models import Appointment, ElasticSchedule
from services.recurring_schedule_service import RecurringScheduleService
from utils.datetime_utils import CLINIC_TZ
from utils.time_utils import format_time
from tests.conftest import (
    FUTURE_MONDAY, context_for, make_appointment, make_doctor, make_elastic_schedule, make_template,
)

SUNDAY = date(2030, 1, 6)
WEDNESDAY = FUTURE_MONDAY + timedelta(days=2)


def _pin_clock(monkeypatch, hour, minute=0):
    now = datetime(2030, 1, 6, hour, minute, tzinfo=CLINIC_TZ)
    monkeypatch.setattr("services.recurring_schedule_service.clinic_now", lambda: now)
    return now


@pytest.fixture(autouse=True)
def clinic_clock(monkeypatch):
    return _pin_clock(monkeypatch, 8)


def _create(db_session, doctor_user, doctor, **overrides):
    fields = {
        "name": "Mon/Wed mornings",
        "start_time": "09:00",
        "end_time": "12:00",
        "slot_duration": 30,
        "days_of_week": [1, 3],
        "weeks_ahead": 1,
    }
    fields.update(overrides)
    return RecurringScheduleService.create_template(db_session, doctor_user, doctor.id, **fields)


def _schedules_of(db_session, doctor):
    db_session.expire_all()
    return db_session.query(ElasticSchedule).filter(
        ElasticSchedule.doctor_id == doctor.id
    ).order_by(ElasticSchedule.date.asc(), ElasticSchedule.id.asc()).all()


class TestCreateTemplate:
    """Test template creation and its initial expansion."""

    def test_expands_over_weeks_ahead(self, db_session, doctor, doctor_user):
        result = _create(db_session, doctor_user, doctor)

        template = result["template"]
        generation = result["generation"]
        assert template.days_of_week == [1, 3]
        assert generation["generated"] == 2
        assert generation["skipped"] == 0
        assert [s.date for s in generation["schedules"]] == [FUTURE_MONDAY, WEDNESDAY]
        assert all(s.recurring_template_id == template.id for s in generation["schedules"])
        assert all(s.is_override is False for s in generation["schedules"])
        assert template.last_generated_date == SUNDAY + timedelta(days=7)

    def test_skips_dates_with_a_schedule(self, db_session, doctor, doctor_user):
        manual = make_elastic_schedule(db_session, doctor, start=time(14, 0), end=time(16, 0))

        generation = _create(db_session, doctor_user, doctor)["generation"]

        assert generation["generated"] == 1
        assert generation["skipped_dates"] == [FUTURE_MONDAY]
        db_session.refresh(manual)
        assert manual.recurring_template_id is None
        assert format_time(manual.start_time) == "14:00"

    def test_inactive_or_manual_templates_are_not_expanded(self, db_session, doctor, doctor_user):
        assert _create(db_session, doctor_user, doctor, is_active=False)["generation"] is None
        assert _create(db_session, doctor_user, doctor, auto_generate=False)["generation"] is None
        assert _schedules_of(db_session, doctor) == []

    def test_days_are_deduplicated_and_sorted(self, db_session, doctor, doctor_user):
        template = _create(db_session, doctor_user, doctor, days_of_week=[3, 1, 3])["template"]

        assert template.days_of_week == [1, 3]

    @pytest.mark.parametrize("overrides", [
        {"days_of_week": []},
        {"days_of_week": [7]},
        {"weeks_ahead": 0},
        {"weeks_ahead": 53},
        {"end_time": "08:00"},
        {"slot_duration": 0},
    ])
    def test_invalid_fields(self, db_session, doctor, doctor_user, overrides):
        with pytest.raises(HTTPException) as exc_info:
            _create(db_session, doctor_user, doctor, **overrides)

        assert exc_info.value.status_code == 400

    def test_only_owner_may_create(self, db_session, doctor):
        other = make_doctor(db_session, email="cuddy@example.com", name="Lisa Cuddy")

        with pytest.raises(HTTPException) as exc_info:
            _create(db_session, context_for(other.user_id, ROLE_DOCTOR), doctor)

        assert exc_info.value.status_code == 403


class TestGenerate:
    """Test explicit expansion."""

    def test_override_existing_takes_over_date(self, db_session, doctor, doctor_user):
        manual = make_elastic_schedule(db_session, doctor, start=time(14, 0), end=time(16, 0))
        template = make_template(db_session, doctor, days_of_week=[1])

        result = RecurringScheduleService.generate_schedules_from_template(
            db_session, doctor_user, doctor.id, template.id,
            start_date=FUTURE_MONDAY, end_date=FUTURE_MONDAY, override_existing=True,
        )

        assert result["generated"] == 1
        assert result["schedules"][0].id == manual.id
        db_session.refresh(manual)
        assert manual.recurring_template_id == template.id
        assert format_time(manual.start_time) == "09:00"

    def test_explicit_range(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[1])

        result = RecurringScheduleService.generate_schedules_from_template(
            db_session, doctor_user, doctor.id, template.id,
            start_date=FUTURE_MONDAY, end_date=FUTURE_MONDAY + timedelta(days=20),
        )

        assert [s.date for s in result["schedules"]] == [
            FUTURE_MONDAY, FUTURE_MONDAY + timedelta(days=7), FUTURE_MONDAY + timedelta(days=14),
        ]

    def test_second_run_skips_everything(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[1, 3], weeks_ahead=1)
        RecurringScheduleService.generate_schedules_from_template(db_session, doctor_user, doctor.id, template.id)

        again = RecurringScheduleService.generate_schedules_from_template(
            db_session, doctor_user, doctor.id, template.id
        )

        assert again["generated"] == 0
        assert again["skipped_dates"] == [FUTURE_MONDAY, WEDNESDAY]
        assert len(_schedules_of(db_session, doctor)) == 2

    def test_inactive_template(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, is_active=False)

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.generate_schedules_from_template(db_session, doctor_user, doctor.id, template.id)

        assert exc_info.value.status_code == 409

    def test_reversed_range(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor)

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.generate_schedules_from_template(
                db_session, doctor_user, doctor.id, template.id,
                start_date=WEDNESDAY, end_date=FUTURE_MONDAY,
            )

        assert exc_info.value.status_code == 400

    def test_template_of_another_doctor(self, db_session, doctor, doctor_user):
        other = make_doctor(db_session, email="cuddy@example.com", name="Lisa Cuddy")
        template = make_template(db_session, other)

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.generate_schedules_from_template(db_session, doctor_user, doctor.id, template.id)

        assert exc_info.value.status_code == 404


class TestUpdateAndRegenerate:
    """Test template updates and regeneration of future dates."""

    def test_update_without_regeneration(self, db_session, doctor, doctor_user):
        template = _create(db_session, doctor_user, doctor)["template"]

        result = RecurringScheduleService.update_template(
            db_session, doctor_user, doctor.id, template.id, {"name": "Renamed", "start_time": "10:00"}
        )

        assert result["regeneration"] is None
        assert result["template"].name == "Renamed"
        assert format_time(result["template"].start_time) == "10:00"
        assert all(format_time(s.start_time) == "09:00" for s in _schedules_of(db_session, doctor))

    def test_regenerate_rebuilds_future_dates(self, db_session, doctor, doctor_user):
        template = _create(db_session, doctor_user, doctor)["template"]

        result = RecurringScheduleService.update_template(
            db_session, doctor_user, doctor.id, template.id, {"start_time": "10:00"}, regenerate_future=True
        )

        regeneration = result["regeneration"]
        assert regeneration["deleted"] == 2
        assert regeneration["generated"] == 2
        schedules = _schedules_of(db_session, doctor)
        assert [s.date for s in schedules] == [FUTURE_MONDAY, WEDNESDAY]
        assert all(format_time(s.start_time) == "10:00" for s in schedules)

    def test_regenerate_keeps_manual_schedules(self, db_session, doctor, doctor_user):
        manual = make_elastic_schedule(db_session, doctor, start=time(14, 0), end=time(16, 0))
        template = _create(db_session, doctor_user, doctor)["template"]

        regeneration = RecurringScheduleService.regenerate_future_schedules(
            db_session, doctor_user, doctor.id, template.id
        )

        assert regeneration["deleted"] == 1
        assert regeneration["skipped_dates"] == [FUTURE_MONDAY]
        assert manual.id in {s.id for s in _schedules_of(db_session, doctor)}

    def test_regenerate_detaches_appointments(self, db_session, doctor, doctor_user, patient):
        template = _create(db_session, doctor_user, doctor)["template"]
        generated = _schedules_of(db_session, doctor)[0]
        appointment = make_appointment(db_session, patient, doctor, time(9, 0), time(9, 30), schedule=generated)

        RecurringScheduleService.regenerate_future_schedules(db_session, doctor_user, doctor.id, template.id)

        db_session.expire_all()
        refreshed = db_session.get(Appointment, appointment.id)
        assert refreshed.elastic_schedule_id is None
        assert refreshed.status == "scheduled"

    def test_lead_time_blocks_todays_regeneration(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[0])

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.regenerate_future_schedules(db_session, doctor_user, doctor.id, template.id)

        assert exc_info.value.status_code == 409
        assert "120 minutes" in exc_info.value.detail

    def test_lead_time_can_be_bypassed(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[0])

        result = RecurringScheduleService.regenerate_future_schedules(
            db_session, doctor_user, doctor.id, template.id, bypass_time_restrictions=True
        )

        assert result["generated"] >= 1

    def test_enough_notice_allows_regeneration(self, db_session, doctor, doctor_user, monkeypatch):
        _pin_clock(monkeypatch, 6)
        template = make_template(db_session, doctor, days_of_week=[0])

        result = RecurringScheduleService.regenerate_future_schedules(
            db_session, doctor_user, doctor.id, template.id
        )

        assert result["schedules"][0].date == SUNDAY

    def test_update_with_regeneration_checks_lead_time(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[0])

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.update_template(
                db_session, doctor_user, doctor.id, template.id, {"end_time": "11:00"}, regenerate_future=True
            )

        assert exc_info.value.status_code == 409

    def test_restriction_only_applies_on_template_days(self, db_session, doctor, clinic_clock):
        template = make_template(db_session, doctor, days_of_week=[1])

        RecurringScheduleService.validate_template_update_restrictions(template, clinic_clock)


class TestDeleteTemplate:
    """Test template deletion."""

    def test_generated_schedules_become_manual(self, db_session, doctor, doctor_user):
        template = _create(db_session, doctor_user, doctor)["template"]

        result = RecurringScheduleService.delete_template(db_session, doctor_user, doctor.id, template.id)

        assert result["deleted_schedules"] == 0
        schedules = _schedules_of(db_session, doctor)
        assert len(schedules) == 2
        assert all(s.recurring_template_id is None for s in schedules)

    def test_delete_future_schedules(self, db_session, doctor, doctor_user):
        template = _create(db_session, doctor_user, doctor)["template"]

        result = RecurringScheduleService.delete_template(
            db_session, doctor_user, doctor.id, template.id, delete_future_schedules=True
        )

        assert result["deleted_schedules"] == 2
        assert _schedules_of(db_session, doctor) == []

    def test_past_schedules_survive(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[1])
        past = make_elastic_schedule(db_session, doctor, day=date(2029, 12, 31), recurring_template_id=template.id)

        result = RecurringScheduleService.delete_template(
            db_session, doctor_user, doctor.id, template.id, delete_future_schedules=True
        )

        assert result["deleted_schedules"] == 0
        assert [s.id for s in _schedules_of(db_session, doctor)] == [past.id]


class TestDateOverride:
    """Test single-date overrides of a template."""

    def test_override_replaces_generated_schedule(self, db_session, doctor, doctor_user):
        template = _create(db_session, doctor_user, doctor)["template"]
        generated = _schedules_of(db_session, doctor)[0]

        result = RecurringScheduleService.create_date_override(
            db_session, doctor_user, doctor.id, template.id, FUTURE_MONDAY,
            reason="Conference", end_time="10:00",
        )

        schedule = result["schedule"]
        assert schedule.id == generated.id
        assert schedule.is_override is True
        assert schedule.override_reason == "Conference"
        assert (format_time(schedule.start_time), format_time(schedule.end_time)) == ("09:00", "10:00")
        assert schedule.recurring_template_id == template.id
        assert result["adjustment"] is None

    def test_override_creates_missing_schedule(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[1])

        result = RecurringScheduleService.create_date_override(
            db_session, doctor_user, doctor.id, template.id, FUTURE_MONDAY, slot_duration=15
        )

        assert result["schedule"].slot_duration == 15
        assert result["schedule"].date == FUTURE_MONDAY

    def test_override_can_adjust_bookings(self, db_session, doctor, doctor_user, patient):
        template = make_template(db_session, doctor, days_of_week=[1])
        generated = make_elastic_schedule(db_session, doctor, recurring_template_id=template.id)
        make_appointment(db_session, patient, doctor, time(11, 0), time(11, 30), schedule=generated)

        result = RecurringScheduleService.create_date_override(
            db_session, doctor_user, doctor.id, template.id, FUTURE_MONDAY,
            end_time="10:00", adjust_existing=True,
        )

        assert result["adjustment"]["method"] == "uniform_compaction"

    def test_overrides_disallowed(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[1], allow_overrides=False)

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.create_date_override(db_session, doctor_user, doctor.id, template.id, FUTURE_MONDAY)

        assert exc_info.value.status_code == 409

    def test_date_off_template_days(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[1])

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.create_date_override(
                db_session, doctor_user, doctor.id, template.id, FUTURE_MONDAY + timedelta(days=1)
            )

        assert exc_info.value.status_code == 409

    def test_past_date(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[1])

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.create_date_override(
                db_session, doctor_user, doctor.id, template.id, date(2029, 12, 31)
            )

        assert exc_info.value.status_code == 409
        assert "past" in exc_info.value.detail

    def test_same_day_needs_lead_time(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[0])

        with pytest.raises(HTTPException) as exc_info:
            RecurringScheduleService.create_date_override(db_session, doctor_user, doctor.id, template.id, SUNDAY)
        assert exc_info.value.status_code == 409

        later = RecurringScheduleService.create_date_override(
            db_session, doctor_user, doctor.id, template.id, SUNDAY, start_time="11:00"
        )
        assert format_time(later["schedule"].start_time) == "11:00"

    def test_bypass_allows_same_day(self, db_session, doctor, doctor_user):
        template = make_template(db_session, doctor, days_of_week=[0])

        result = RecurringScheduleService.create_date_override(
            db_session, doctor_user, doctor.id, template.id, SUNDAY, bypass_time_restrictions=True
        )

        assert result["schedule"].is_override is True


class TestQueriesAndBatch:
    """Test listing helpers and batch auto-generation."""

    def test_list_templates_newest_first(self, db_session, doctor):
        first = make_template(db_session, doctor, name="First")
        second = make_template(db_session, doctor, name="Second")

        templates = RecurringScheduleService.list_templates(db_session, doctor.id)

        assert [t.id for t in templates] == [second.id, first.id]

    def test_generated_schedules_window(self, db_session, doctor, doctor_user):
        template = _create(db_session, doctor_user, doctor, weeks_ahead=4)["template"]

        soon = RecurringScheduleService.get_generated_schedules(db_session, doctor.id, template.id, days=7)
        later = RecurringScheduleService.get_generated_schedules(db_session, doctor.id, template.id)

        assert [s.date for s in soon] == [FUTURE_MONDAY, WEDNESDAY]
        assert len(later) == 8

    def test_auto_generate_all(self, db_session, doctor):
        make_template(db_session, doctor, days_of_week=[1], weeks_ahead=1)
        make_template(db_session, doctor, days_of_week=[3], weeks_ahead=1, auto_generate=False)
        make_template(db_session, doctor, days_of_week=[5], weeks_ahead=1, is_active=False)

        result = RecurringScheduleService.auto_generate_all_schedules(db_session)

        assert result == {"processed": 1, "generated": 1, "skipped": 0, "errors": []}
        assert [s.date for s in _schedules_of(db_session, doctor)] == [FUTURE_MONDAY]

    def test_auto_generate_limited_to_one_doctor(self, db_session, doctor):
        other = make_doctor(db_session, email="cuddy@example.com", name="Lisa Cuddy")
        make_template(db_session, doctor, days_of_week=[1], weeks_ahead=1)
        make_template(db_session, other, days_of_week=[2], weeks_ahead=1)

        result = RecurringScheduleService.auto_generate_all_schedules(db_session, doctor_id=doctor.id)

        assert result == {"processed": 1, "generated": 1, "skipped": 0, "errors": []}
        assert [s.date for s in _schedules_of(db_session, doctor)] == [FUTURE_MONDAY]
        assert _schedules_of(db_session, other) == []
