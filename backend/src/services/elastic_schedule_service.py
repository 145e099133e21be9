"""
Elastic schedule service for a doctor's per-date sessions.

Creating or updating a schedule with `adjust_existing` reconciles the day's
appointments with the new window, slot length, and capacity through the
shrink handler.
"""

import logging
from datetime import date as date_type
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from auth.dependencies import UserContext
from core.constants import ACTIVE_APPOINTMENT_STATUSES
from models import Appointment, ElasticSchedule
from services.availability_service import AvailabilityService, ResolvedSchedule
from services.notification_service import NotificationSink
from services.schedule_shrink_service import ScheduleShrinkService
from utils.ownership import get_doctor_or_404, get_owned_doctor
from utils.time_utils import normalize_time_string, parse_time_string, to_minutes, TIME_FORMAT_HINT

logger = logging.getLogger(__name__)

# Fields whose change can displace existing appointments
WINDOW_FIELDS = ("start_time", "end_time", "slot_duration", "buffer_time", "max_appointments")


def validate_session_fields(
    start_time: str,
    end_time: str,
    slot_duration: int,
    buffer_time: int,
    max_appointments: Optional[int]
) -> None:
    """
    Validate the parameters shared by elastic schedules and recurring templates.

    Raises:
        HTTPException: 400 with the first problem found
    """
    try:
        start_minutes = to_minutes(start_time)
        end_minutes = to_minutes(end_time)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"start_time and end_time must be in {TIME_FORMAT_HINT}"
        )
    if end_minutes <= start_minutes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="End time must be after start time"
        )
    if slot_duration < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="slot_duration must be at least 1 minute"
        )
    if buffer_time < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="buffer_time cannot be negative"
        )
    if max_appointments is not None and max_appointments < 1:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="max_appointments must be at least 1"
        )


class ElasticScheduleService:
    """Service class for per-date elastic schedules."""

    @staticmethod
    def create_schedule(
        db: Session,
        user: UserContext,
        doctor_id: int,
        date: date_type,
        start_time: str,
        end_time: str,
        slot_duration: int,
        buffer_time: int = 0,
        max_appointments: Optional[int] = None,
        adjust_existing: bool = False,
        notifier: Optional[NotificationSink] = None
    ) -> Dict[str, Any]:
        """
        Create a manual elastic schedule for a date.

        A manual schedule governs its date even when a template-generated one
        exists. With `adjust_existing`, appointments already on the date are
        reconciled with the new session.

        Returns:
            {"schedule": ElasticSchedule, "adjustment": shrink summary or None}

        Raises:
            HTTPException: 404 unknown doctor, 403 not the owner, 400 invalid fields
        """
        doctor = get_owned_doctor(db, doctor_id, user)
        validate_session_fields(start_time, end_time, slot_duration, buffer_time, max_appointments)

        schedule = ElasticSchedule(
            doctor_id=doctor.id,
            date=date,
            start_time=parse_time_string(start_time),
            end_time=parse_time_string(end_time),
            slot_duration=slot_duration,
            buffer_time=buffer_time,
            max_appointments=max_appointments,
            recurring_template_id=None,
            is_override=False,
        )
        db.add(schedule)
        db.flush()
        logger.info(f"Created elastic schedule {schedule.id} for doctor {doctor.id} on {date}")

        adjustment = None
        if adjust_existing:
            adjustment = ScheduleShrinkService.handle_schedule_change(db, schedule, notifier)
        else:
            db.commit()
        db.refresh(schedule)
        return {"schedule": schedule, "adjustment": adjustment}

    @staticmethod
    def list_schedules(
        db: Session,
        doctor_id: int,
        start_date: Optional[date_type] = None,
        end_date: Optional[date_type] = None
    ) -> List[ElasticSchedule]:
        """Elastic schedules of a doctor, optionally limited to a date range, by date."""
        get_doctor_or_404(db, doctor_id)
        query = db.query(ElasticSchedule).filter(ElasticSchedule.doctor_id == doctor_id)
        if start_date is not None:
            query = query.filter(ElasticSchedule.date >= start_date)
        if end_date is not None:
            query = query.filter(ElasticSchedule.date <= end_date)
        return query.order_by(ElasticSchedule.date.asc(), ElasticSchedule.start_time.asc()).all()

    @staticmethod
    def get_schedule(db: Session, schedule_id: int) -> ElasticSchedule:
        schedule = db.query(ElasticSchedule).filter(ElasticSchedule.id == schedule_id).first()
        if not schedule:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Elastic schedule not found"
            )
        return schedule

    @staticmethod
    def update_schedule(
        db: Session,
        schedule_id: int,
        user: UserContext,
        updates: Dict[str, Any],
        adjust_existing: bool = False,
        notifier: Optional[NotificationSink] = None
    ) -> Dict[str, Any]:
        """
        Apply a partial update to an elastic schedule.

        Args:
            db: Database session
            schedule_id: Schedule to update
            user: Authenticated doctor who owns the schedule
            updates: Fields to change (start_time/end_time as "HH:MM")
            adjust_existing: Reconcile existing appointments when the window,
                slot length, buffer, or capacity changed
            notifier: Sink for rescheduling notifications

        Returns:
            {"schedule": ElasticSchedule, "adjustment": shrink summary or None}

        Raises:
            HTTPException: 404 missing schedule, 403 not the owner, 400 invalid
                fields, 409 concurrent appointment changes or a date move while
                active appointments remain
        """
        schedule = ElasticScheduleService.get_schedule(db, schedule_id)
        get_owned_doctor(db, schedule.doctor_id, user)

        new_date = updates.get("date")
        if new_date is not None and new_date != schedule.date:
            active_count = ElasticScheduleService._count_active_appointments(db, schedule.id)
            if active_count:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=(
                        f"Schedule has {active_count} active appointments on {schedule.date}; "
                        f"cancel or move them before changing the date"
                    )
                )

        current = ResolvedSchedule.from_elastic(schedule)
        merged = {
            "start_time": updates.get("start_time") or current.start_time,
            "end_time": updates.get("end_time") or current.end_time,
            "slot_duration": updates.get("slot_duration") or current.slot_duration,
            "buffer_time": updates["buffer_time"] if updates.get("buffer_time") is not None else current.buffer_time,
            "max_appointments": updates["max_appointments"] if "max_appointments" in updates else current.max_appointments,
        }
        validate_session_fields(**merged)
        merged["start_time"] = normalize_time_string(merged["start_time"])
        merged["end_time"] = normalize_time_string(merged["end_time"])

        changed = [name for name in WINDOW_FIELDS if merged[name] != getattr(current, name)]

        schedule.start_time = parse_time_string(merged["start_time"])
        schedule.end_time = parse_time_string(merged["end_time"])
        schedule.slot_duration = merged["slot_duration"]
        schedule.buffer_time = merged["buffer_time"]
        schedule.max_appointments = merged["max_appointments"]
        if new_date is not None:
            schedule.date = new_date
        try:
            db.flush()
        except StaleDataError:
            db.rollback()
            logger.warning(f"Elastic schedule {schedule_id} changed while being updated")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Schedule was modified by another request, please retry"
            )

        logger.info(f"Updated elastic schedule {schedule.id}; changed fields: {changed or 'none'}")

        adjustment = None
        if adjust_existing and changed:
            adjustment = ScheduleShrinkService.handle_schedule_change(db, schedule, notifier)
        else:
            db.commit()
        db.refresh(schedule)
        return {"schedule": schedule, "adjustment": adjustment}

    @staticmethod
    def _count_active_appointments(db: Session, schedule_id: int) -> int:
        return db.query(Appointment).filter(
            Appointment.elastic_schedule_id == schedule_id,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES)
        ).count()

    @staticmethod
    def delete_schedule(db: Session, schedule_id: int, user: UserContext) -> None:
        """
        Delete an elastic schedule that no active appointment depends on.

        Raises:
            HTTPException: 404 missing, 403 not the owner, 409 while active
                appointments reference it
        """
        schedule = ElasticScheduleService.get_schedule(db, schedule_id)
        get_owned_doctor(db, schedule.doctor_id, user)

        active_count = ElasticScheduleService._count_active_appointments(db, schedule.id)
        if active_count:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Schedule has {active_count} active appointments; cancel or move them first"
            )

        db.query(Appointment).filter(
            Appointment.elastic_schedule_id == schedule.id
        ).update({Appointment.elastic_schedule_id: None}, synchronize_session=False)
        db.delete(schedule)
        db.commit()
        logger.info(f"Deleted elastic schedule {schedule_id}")

    @staticmethod
    def get_elastic_slots(db: Session, doctor_id: int, target_date: date_type) -> List[Dict[str, Any]]:
        """
        Every elastic schedule of a doctor's date with its generated slots.

        Unlike get_available_slots this lists all rows for the date, not only
        the governing one, and marks booked slots instead of dropping them.
        """
        get_doctor_or_404(db, doctor_id)
        schedules = db.query(ElasticSchedule).filter(
            ElasticSchedule.doctor_id == doctor_id,
            ElasticSchedule.date == target_date
        ).order_by(ElasticSchedule.created_at.desc(), ElasticSchedule.id.desc()).all()

        governing = AvailabilityService.select_governing_schedule(schedules)
        booked = AvailabilityService.get_booked_intervals(db, doctor_id, target_date)

        result = []
        for schedule in schedules:
            resolved = ResolvedSchedule.from_elastic(schedule)
            result.append({
                **resolved.to_dict(),
                "recurring_template_id": schedule.recurring_template_id,
                "is_override": schedule.is_override,
                "override_reason": schedule.override_reason,
                "is_governing": governing is not None and schedule.id == governing.id,
                "slots": [
                    {**slot.to_dict(), "available": AvailabilityService.is_slot_free(slot, booked)}
                    for slot in resolved.generate_slots()
                ],
            })
        return result
