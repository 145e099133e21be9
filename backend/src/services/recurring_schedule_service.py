"""
Recurring schedule service for weekly templates.

Templates expand into per-date elastic schedules. Expansion never clobbers a
date that already has a schedule unless asked to, so manual edits survive.
Same-day changes are refused when the session starts within the lead time
(SCHEDULE_CHANGE_LEAD_MINUTES) unless the caller explicitly bypasses it.
"""

import logging
from datetime import date as date_type, datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from auth.dependencies import UserContext
from core.constants import (
    DEFAULT_GENERATED_SCHEDULES_DAYS, DEFAULT_WEEKS_AHEAD, MAX_WEEKS_AHEAD, SCHEDULE_CHANGE_LEAD_MINUTES,
)
from models import Appointment, ElasticSchedule, RecurringSchedule
from services.elastic_schedule_service import validate_session_fields
from services.notification_service import NotificationSink
from services.schedule_shrink_service import ScheduleShrinkService
from utils.datetime_utils import clinic_now, minutes_until, sunday_based_weekday
from utils.ownership import get_doctor_or_404, get_owned_doctor
from utils.time_utils import format_time, parse_time_string

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = (
    "name", "start_time", "end_time", "slot_duration", "buffer_time", "max_appointments",
    "days_of_week", "weeks_ahead", "is_active", "allow_overrides", "auto_generate",
)


def _validate_days_of_week(days_of_week: List[int]) -> List[int]:
    if not days_of_week:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="days_of_week must contain at least one day"
        )
    if any(not isinstance(day, int) or day < 0 or day > 6 for day in days_of_week):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="days_of_week values must be between 0 (Sunday) and 6 (Saturday)"
        )
    return sorted(set(days_of_week))


def _validate_weeks_ahead(weeks_ahead: int) -> None:
    if weeks_ahead < 1 or weeks_ahead > MAX_WEEKS_AHEAD:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"weeks_ahead must be between 1 and {MAX_WEEKS_AHEAD}"
        )


def _detach_appointments(db: Session, schedule_ids: List[int]) -> None:
    """Clear appointment references to schedules about to be deleted."""
    if not schedule_ids:
        return
    db.query(Appointment).filter(
        Appointment.elastic_schedule_id.in_(schedule_ids)
    ).update({Appointment.elastic_schedule_id: None}, synchronize_session=False)


class RecurringScheduleService:
    """Service class for recurring weekly templates."""

    @staticmethod
    def create_template(
        db: Session,
        user: UserContext,
        doctor_id: int,
        name: str,
        start_time: str,
        end_time: str,
        slot_duration: int,
        days_of_week: List[int],
        buffer_time: int = 0,
        max_appointments: Optional[int] = None,
        weeks_ahead: int = DEFAULT_WEEKS_AHEAD,
        is_active: bool = True,
        allow_overrides: bool = True,
        auto_generate: bool = True
    ) -> Dict[str, Any]:
        """
        Create a weekly template and, when `auto_generate` is set, expand it.

        Returns:
            {"template": RecurringSchedule, "generation": expansion result or None}

        Raises:
            HTTPException: 404 unknown doctor, 403 not the owner, 400 invalid fields
        """
        doctor = get_owned_doctor(db, doctor_id, user)
        validate_session_fields(start_time, end_time, slot_duration, buffer_time, max_appointments)
        days = _validate_days_of_week(days_of_week)
        _validate_weeks_ahead(weeks_ahead)

        template = RecurringSchedule(
            doctor_id=doctor.id,
            name=name,
            start_time=parse_time_string(start_time),
            end_time=parse_time_string(end_time),
            slot_duration=slot_duration,
            buffer_time=buffer_time,
            max_appointments=max_appointments,
            days_of_week=days,
            weeks_ahead=weeks_ahead,
            is_active=is_active,
            allow_overrides=allow_overrides,
            auto_generate=auto_generate,
        )
        db.add(template)
        db.commit()
        db.refresh(template)
        logger.info(f"Created recurring schedule {template.id} '{name}' for doctor {doctor.id} on days {days}")

        generation = None
        if template.auto_generate and template.is_active:
            generation = RecurringScheduleService._generate(db, template)
        return {"template": template, "generation": generation}

    @staticmethod
    def list_templates(db: Session, doctor_id: int) -> List[RecurringSchedule]:
        """Templates of a doctor, newest first."""
        get_doctor_or_404(db, doctor_id)
        return db.query(RecurringSchedule).filter(
            RecurringSchedule.doctor_id == doctor_id
        ).order_by(RecurringSchedule.created_at.desc(), RecurringSchedule.id.desc()).all()

    @staticmethod
    def get_template(db: Session, doctor_id: int, template_id: int) -> RecurringSchedule:
        template = db.query(RecurringSchedule).filter(
            RecurringSchedule.id == template_id,
            RecurringSchedule.doctor_id == doctor_id
        ).first()
        if not template:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Recurring schedule not found"
            )
        return template

    @staticmethod
    def validate_template_update_restrictions(template: RecurringSchedule, now: Optional[datetime] = None) -> None:
        """
        Refuse template changes too close to today's session.

        Only applies when today's weekday is one of the template's days.

        Raises:
            HTTPException: 409 when today's session starts within the lead time
        """
        current = now or clinic_now()
        today = current.date()
        if not template.covers_weekday(sunday_based_weekday(today)):
            return
        if minutes_until(today, template.start_time, current) < SCHEDULE_CHANGE_LEAD_MINUTES:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=(
                    f"Cannot modify this template within {SCHEDULE_CHANGE_LEAD_MINUTES} minutes "
                    f"of today's session starting at {format_time(template.start_time)}"
                )
            )

    @staticmethod
    def update_template(
        db: Session,
        user: UserContext,
        doctor_id: int,
        template_id: int,
        updates: Dict[str, Any],
        regenerate_future: bool = False,
        bypass_time_restrictions: bool = False
    ) -> Dict[str, Any]:
        """
        Apply a partial update to a template, optionally regenerating future dates.

        Args:
            db: Database session
            user: Authenticated doctor who owns the template
            doctor_id: Doctor ID
            template_id: Template to update
            updates: Fields to change (see TEMPLATE_FIELDS)
            regenerate_future: Rebuild future template-derived schedules
            bypass_time_restrictions: Skip the same-day lead-time check

        Returns:
            {"template": RecurringSchedule, "regeneration": result or None}

        Raises:
            HTTPException: 404/403 on lookup, 400 invalid fields, 409 inside
                the lead time
        """
        get_owned_doctor(db, doctor_id, user)
        template = RecurringScheduleService.get_template(db, doctor_id, template_id)

        merged = {
            "start_time": updates.get("start_time") or format_time(template.start_time),
            "end_time": updates.get("end_time") or format_time(template.end_time),
            "slot_duration": updates.get("slot_duration") or template.slot_duration,
            "buffer_time": updates["buffer_time"] if updates.get("buffer_time") is not None else template.buffer_time,
            "max_appointments": updates["max_appointments"] if "max_appointments" in updates else template.max_appointments,
        }
        validate_session_fields(**merged)

        if regenerate_future and not bypass_time_restrictions:
            RecurringScheduleService.validate_template_update_restrictions(template)

        for name in TEMPLATE_FIELDS:
            if name not in updates or (updates[name] is None and name != "max_appointments"):
                continue
            value = updates[name]
            if name in ("start_time", "end_time"):
                value = parse_time_string(value)
            elif name == "days_of_week":
                value = _validate_days_of_week(value)
            elif name == "weeks_ahead":
                _validate_weeks_ahead(value)
            setattr(template, name, value)

        db.commit()
        db.refresh(template)
        logger.info(f"Updated recurring schedule {template.id}: {sorted(updates)}")

        regeneration = None
        if regenerate_future:
            regeneration = RecurringScheduleService._regenerate(db, template)
        return {"template": template, "regeneration": regeneration}

    @staticmethod
    def delete_template(
        db: Session,
        user: UserContext,
        doctor_id: int,
        template_id: int,
        delete_future_schedules: bool = False
    ) -> Dict[str, Any]:
        """
        Delete a template.

        Schedules generated from it become manual schedules, except future
        ones (from today on) which are removed when `delete_future_schedules`
        is set.

        Returns:
            {"message": str, "deleted_schedules": int}
        """
        get_owned_doctor(db, doctor_id, user)
        template = RecurringScheduleService.get_template(db, doctor_id, template_id)

        deleted = 0
        if delete_future_schedules:
            deleted = RecurringScheduleService._delete_future_schedules(db, template, clinic_now().date())

        db.query(ElasticSchedule).filter(
            ElasticSchedule.recurring_template_id == template.id
        ).update({ElasticSchedule.recurring_template_id: None}, synchronize_session=False)

        db.delete(template)
        db.commit()
        logger.info(f"Deleted recurring schedule {template_id} and {deleted} future schedules")
        return {"message": "Recurring schedule deleted", "deleted_schedules": deleted}

    @staticmethod
    def _delete_future_schedules(db: Session, template: RecurringSchedule, from_date: date_type) -> int:
        rows = db.query(ElasticSchedule).filter(
            ElasticSchedule.recurring_template_id == template.id,
            ElasticSchedule.date >= from_date
        ).all()
        _detach_appointments(db, [row.id for row in rows])
        for row in rows:
            db.delete(row)
        db.flush()
        return len(rows)

    @staticmethod
    def generate_schedules_from_template(
        db: Session,
        user: UserContext,
        doctor_id: int,
        template_id: int,
        start_date: Optional[date_type] = None,
        end_date: Optional[date_type] = None,
        override_existing: bool = False
    ) -> Dict[str, Any]:
        """
        Expand a template into elastic schedules over a date range.

        Args:
            db: Database session
            user: Authenticated doctor who owns the template
            doctor_id: Doctor ID
            template_id: Template to expand
            start_date: First date (default today)
            end_date: Last date, inclusive (default start + weeks_ahead weeks)
            override_existing: Overwrite dates that already have a schedule

        Returns:
            Dict with generated count, skipped count, skipped_dates, schedules

        Raises:
            HTTPException: 404/403 on lookup, 409 inactive template, 400 bad range
        """
        get_owned_doctor(db, doctor_id, user)
        template = RecurringScheduleService.get_template(db, doctor_id, template_id)
        return RecurringScheduleService._generate(db, template, start_date, end_date, override_existing)

    @staticmethod
    def _generate(
        db: Session,
        template: RecurringSchedule,
        start_date: Optional[date_type] = None,
        end_date: Optional[date_type] = None,
        override_existing: bool = False
    ) -> Dict[str, Any]:
        if not template.is_active:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot generate schedules from inactive template"
            )

        start = start_date or clinic_now().date()
        end = end_date or start + timedelta(days=template.weeks_ahead * 7)
        if end < start:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="end_date must not be before start_date"
            )

        schedules: List[ElasticSchedule] = []
        skipped_dates: List[date_type] = []

        day = start
        while day <= end:
            if template.covers_weekday(sunday_based_weekday(day)):
                existing = db.query(ElasticSchedule).filter(
                    ElasticSchedule.doctor_id == template.doctor_id,
                    ElasticSchedule.date == day
                ).order_by(ElasticSchedule.created_at.desc(), ElasticSchedule.id.desc()).first()

                if existing is not None and not override_existing:
                    skipped_dates.append(day)
                else:
                    schedule = existing if existing is not None else ElasticSchedule(
                        doctor_id=template.doctor_id, date=day
                    )
                    schedule.start_time = template.start_time
                    schedule.end_time = template.end_time
                    schedule.slot_duration = template.slot_duration
                    schedule.buffer_time = template.buffer_time
                    schedule.max_appointments = template.max_appointments
                    schedule.recurring_template_id = template.id
                    schedule.is_override = False
                    schedule.override_reason = None
                    if existing is None:
                        db.add(schedule)
                    schedules.append(schedule)
            day += timedelta(days=1)

        template.last_generated_date = end
        db.commit()

        logger.info(
            f"Expanded recurring schedule {template.id} over {start}..{end}: "
            f"{len(schedules)} generated, {len(skipped_dates)} skipped"
        )
        return {
            "template_id": template.id,
            "generated": len(schedules),
            "skipped": len(skipped_dates),
            "skipped_dates": skipped_dates,
            "schedules": schedules,
        }

    @staticmethod
    def regenerate_future_schedules(
        db: Session,
        user: UserContext,
        doctor_id: int,
        template_id: int,
        bypass_time_restrictions: bool = False
    ) -> Dict[str, Any]:
        """
        Replace every future schedule derived from a template.

        Raises:
            HTTPException: 404/403 on lookup, 409 inside the lead time or for
                an inactive template
        """
        get_owned_doctor(db, doctor_id, user)
        template = RecurringScheduleService.get_template(db, doctor_id, template_id)
        if not bypass_time_restrictions:
            RecurringScheduleService.validate_template_update_restrictions(template)
        return RecurringScheduleService._regenerate(db, template)

    @staticmethod
    def _regenerate(db: Session, template: RecurringSchedule) -> Dict[str, Any]:
        today = clinic_now().date()
        deleted = RecurringScheduleService._delete_future_schedules(db, template, today)
        # Dates still holding a schedule after the delete are manual; keep them
        result = RecurringScheduleService._generate(db, template, start_date=today)
        result["deleted"] = deleted
        return result

    @staticmethod
    def get_generated_schedules(
        db: Session,
        doctor_id: int,
        template_id: int,
        days: int = DEFAULT_GENERATED_SCHEDULES_DAYS
    ) -> List[ElasticSchedule]:
        """The doctor's schedules over the next `days` days on the template's weekdays."""
        template = RecurringScheduleService.get_template(db, doctor_id, template_id)
        today = clinic_now().date()
        schedules = db.query(ElasticSchedule).filter(
            ElasticSchedule.doctor_id == doctor_id,
            ElasticSchedule.date >= today,
            ElasticSchedule.date <= today + timedelta(days=days)
        ).order_by(ElasticSchedule.date.asc(), ElasticSchedule.id.asc()).all()
        return [s for s in schedules if template.covers_weekday(sunday_based_weekday(s.date))]

    @staticmethod
    def create_date_override(
        db: Session,
        user: UserContext,
        doctor_id: int,
        template_id: int,
        date: date_type,
        reason: Optional[str] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        slot_duration: Optional[int] = None,
        buffer_time: Optional[int] = None,
        max_appointments: Optional[int] = None,
        bypass_time_restrictions: bool = False,
        adjust_existing: bool = False,
        notifier: Optional[NotificationSink] = None
    ) -> Dict[str, Any]:
        """
        Give a single template date different session parameters.

        Args:
            db: Database session
            user: Authenticated doctor who owns the template
            doctor_id: Doctor ID
            template_id: Template being overridden
            date: Date to override; must fall on one of the template's weekdays
            reason: Why the date differs
            start_time, end_time, slot_duration, buffer_time, max_appointments:
                Values replacing the template's for this date
            bypass_time_restrictions: Skip the past-date and lead-time checks
            adjust_existing: Reconcile appointments already on the date
            notifier: Sink for rescheduling notifications

        Returns:
            {"schedule": ElasticSchedule, "adjustment": shrink summary or None}

        Raises:
            HTTPException: 404/403 on lookup, 400 invalid fields, 409 when
                overrides are disallowed, the date is past, inside the lead
                time, or not a template weekday
        """
        get_owned_doctor(db, doctor_id, user)
        template = RecurringScheduleService.get_template(db, doctor_id, template_id)

        if not template.allow_overrides:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="This template does not allow date overrides"
            )

        values = {
            "start_time": start_time or format_time(template.start_time),
            "end_time": end_time or format_time(template.end_time),
            "slot_duration": slot_duration or template.slot_duration,
            "buffer_time": buffer_time if buffer_time is not None else template.buffer_time,
            "max_appointments": max_appointments if max_appointments is not None else template.max_appointments,
        }
        validate_session_fields(**values)
        session_start = parse_time_string(values["start_time"])

        if not bypass_time_restrictions:
            now = clinic_now()
            if date < now.date():
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="Cannot override past dates"
                )
            if date == now.date() and minutes_until(date, session_start, now) < SCHEDULE_CHANGE_LEAD_MINUTES:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=(
                        f"Same-day overrides require at least {SCHEDULE_CHANGE_LEAD_MINUTES} minutes "
                        f"notice before the session starts"
                    )
                )

        if not template.covers_weekday(sunday_based_weekday(date)):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Date does not fall on one of the template's days"
            )

        schedule = db.query(ElasticSchedule).filter(
            ElasticSchedule.doctor_id == doctor_id,
            ElasticSchedule.date == date
        ).order_by(ElasticSchedule.created_at.desc(), ElasticSchedule.id.desc()).first()
        if schedule is None:
            schedule = ElasticSchedule(doctor_id=doctor_id, date=date)
            db.add(schedule)

        schedule.start_time = parse_time_string(values["start_time"])
        schedule.end_time = parse_time_string(values["end_time"])
        schedule.slot_duration = values["slot_duration"]
        schedule.buffer_time = values["buffer_time"]
        schedule.max_appointments = values["max_appointments"]
        schedule.recurring_template_id = template.id
        schedule.is_override = True
        schedule.override_reason = reason
        db.flush()
        logger.info(f"Override of recurring schedule {template.id} on {date}: schedule {schedule.id} ({reason})")

        adjustment = None
        if adjust_existing:
            adjustment = ScheduleShrinkService.handle_schedule_change(db, schedule, notifier)
        else:
            db.commit()
        db.refresh(schedule)
        return {"schedule": schedule, "adjustment": adjustment}

    @staticmethod
    def auto_generate_all_schedules(db: Session, doctor_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Expand every active auto-generating template over its default horizon.

        Meant to be invoked by an external trigger. A failing template is
        recorded and does not stop the batch.

        Args:
            db: Database session
            doctor_id: Limit the batch to one doctor's templates

        Returns:
            Dict with processed count, total generated and skipped, and errors
        """
        query = db.query(RecurringSchedule).filter(
            RecurringSchedule.is_active == True,  # noqa: E712
            RecurringSchedule.auto_generate == True  # noqa: E712
        )
        if doctor_id is not None:
            query = query.filter(RecurringSchedule.doctor_id == doctor_id)
        templates = query.order_by(RecurringSchedule.id.asc()).all()

        generated = 0
        skipped = 0
        errors: List[Dict[str, Any]] = []
        for template in templates:
            try:
                result = RecurringScheduleService._generate(db, template)
                generated += result["generated"]
                skipped += result["skipped"]
            except HTTPException as e:
                db.rollback()
                errors.append({"template_id": template.id, "error": e.detail})
            except Exception as e:
                db.rollback()
                logger.exception(f"Auto-generation failed for recurring schedule {template.id}: {e}")
                errors.append({"template_id": template.id, "error": str(e)})

        logger.info(
            f"Auto-generated schedules for {len(templates)} templates: "
            f"{generated} generated, {skipped} skipped, {len(errors)} errors"
        )
        return {
            "processed": len(templates),
            "generated": generated,
            "skipped": skipped,
            "errors": errors,
        }
