"""
Availability service for resolving schedules and computing free slots.

This module decides which schedule governs a doctor's date and which of its
generated slots are still free. It is shared by booking, rescheduling, and
overflow redistribution.
"""

import logging
from dataclasses import dataclass
from datetime import date as date_type
from typing import List, Dict, Any, Optional, Sequence, Tuple

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from core.constants import ACTIVE_APPOINTMENT_STATUSES
from models import Appointment, Doctor, ElasticSchedule, RecurringSchedule
from services.slot_generator import TimeSlot, generate_slots
from utils.datetime_utils import ensure_clinic_tz, format_date, sunday_based_weekday
from utils.time_utils import format_time, overlaps, to_minutes

logger = logging.getLogger(__name__)

SCHEDULE_TYPE_ELASTIC = "elastic"
SCHEDULE_TYPE_RECURRING = "recurring"

NO_SCHEDULE_MESSAGE = "No schedule found for this date"


@dataclass
class ResolvedSchedule:
    """
    Session parameters governing one doctor's date.

    Backed either by an ElasticSchedule row or, when the date has none, by a
    recurring template covering the weekday.
    """

    schedule_type: str
    schedule_id: int
    doctor_id: int
    date: date_type
    start_time: str
    end_time: str
    slot_duration: int
    buffer_time: int
    max_appointments: Optional[int]

    @property
    def elastic_schedule_id(self) -> Optional[int]:
        """Reference stored on appointments booked against this schedule."""
        return self.schedule_id if self.schedule_type == SCHEDULE_TYPE_ELASTIC else None

    def generate_slots(self) -> List[TimeSlot]:
        return generate_slots(
            self.start_time, self.end_time, self.slot_duration, self.buffer_time, self.max_appointments
        )

    def contains(self, start_minutes: int, end_minutes: int) -> bool:
        """Whether an interval lies inside the session window."""
        return to_minutes(self.start_time) <= start_minutes and end_minutes <= to_minutes(self.end_time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.schedule_id,
            "type": self.schedule_type,
            "date": format_date(self.date),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "slot_duration": self.slot_duration,
            "buffer_time": self.buffer_time,
            "max_appointments": self.max_appointments,
        }

    @classmethod
    def from_elastic(cls, schedule: ElasticSchedule) -> "ResolvedSchedule":
        return cls(
            schedule_type=SCHEDULE_TYPE_ELASTIC,
            schedule_id=schedule.id,
            doctor_id=schedule.doctor_id,
            date=schedule.date,
            start_time=format_time(schedule.start_time),
            end_time=format_time(schedule.end_time),
            slot_duration=schedule.slot_duration,
            buffer_time=schedule.buffer_time or 0,
            max_appointments=schedule.max_appointments,
        )

    @classmethod
    def from_template(cls, template: RecurringSchedule, target_date: date_type) -> "ResolvedSchedule":
        return cls(
            schedule_type=SCHEDULE_TYPE_RECURRING,
            schedule_id=template.id,
            doctor_id=template.doctor_id,
            date=target_date,
            start_time=format_time(template.start_time),
            end_time=format_time(template.end_time),
            slot_duration=template.slot_duration,
            buffer_time=template.buffer_time or 0,
            max_appointments=template.max_appointments,
        )


class AvailabilityService:
    """
    Service class for availability operations.

    Resolves the governing schedule for a date and filters its generated
    slots against active bookings.
    """

    @staticmethod
    def select_governing_schedule(schedules: Sequence[ElasticSchedule]) -> Optional[ElasticSchedule]:
        """
        Pick the schedule that governs a date among several candidates.

        Pure function. Manual schedules take precedence over template-generated
        ones; within each group the most recently created row wins (highest id
        breaks timestamp ties).
        """
        if not schedules:
            return None
        ordered = sorted(
            schedules,
            key=lambda s: (ensure_clinic_tz(s.created_at), s.id),
            reverse=True,
        )
        for schedule in ordered:
            if schedule.recurring_template_id is None:
                return schedule
        return ordered[0]

    @staticmethod
    def find_matching_template(
        db: Session,
        doctor_id: int,
        target_date: date_type
    ) -> Optional[RecurringSchedule]:
        """
        Find the active template covering the date's weekday.

        When several templates cover the same weekday, the oldest one wins so
        the answer does not change as templates are added.
        """
        weekday = sunday_based_weekday(target_date)
        templates = db.query(RecurringSchedule).filter(
            RecurringSchedule.doctor_id == doctor_id,
            RecurringSchedule.is_active == True  # noqa: E712
        ).order_by(RecurringSchedule.created_at.asc(), RecurringSchedule.id.asc()).all()

        for template in templates:
            if template.covers_weekday(weekday):
                return template
        return None

    @staticmethod
    def resolve_schedule(
        db: Session,
        doctor_id: int,
        target_date: date_type
    ) -> Optional[ResolvedSchedule]:
        """
        Resolve the schedule governing a doctor's date.

        Args:
            db: Database session
            doctor_id: Doctor ID
            target_date: Date to resolve

        Returns:
            The governing elastic schedule, else the matching recurring
            template, else None
        """
        schedules = db.query(ElasticSchedule).filter(
            ElasticSchedule.doctor_id == doctor_id,
            ElasticSchedule.date == target_date
        ).all()

        governing = AvailabilityService.select_governing_schedule(schedules)
        if governing is not None:
            return ResolvedSchedule.from_elastic(governing)

        template = AvailabilityService.find_matching_template(db, doctor_id, target_date)
        if template is not None:
            return ResolvedSchedule.from_template(template, target_date)

        return None

    @staticmethod
    def get_active_appointments(
        db: Session,
        doctor_id: int,
        target_date: date_type,
        exclude_appointment_id: Optional[int] = None
    ) -> List[Appointment]:
        """Active appointments holding time on a doctor's date."""
        query = db.query(Appointment).filter(
            Appointment.doctor_id == doctor_id,
            Appointment.date == target_date,
            Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
            Appointment.start_time.isnot(None),
            Appointment.end_time.isnot(None)
        )
        if exclude_appointment_id is not None:
            query = query.filter(Appointment.id != exclude_appointment_id)
        return query.order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()

    @staticmethod
    def get_booked_intervals(
        db: Session,
        doctor_id: int,
        target_date: date_type,
        exclude_appointment_id: Optional[int] = None
    ) -> List[Tuple[int, int]]:
        """(start, end) minute intervals held by active appointments on the date."""
        appointments = AvailabilityService.get_active_appointments(
            db, doctor_id, target_date, exclude_appointment_id
        )
        return [(to_minutes(a.start_time), to_minutes(a.end_time)) for a in appointments]  # type: ignore[arg-type]

    @staticmethod
    def is_slot_free(slot: TimeSlot, booked: Sequence[Tuple[int, int]]) -> bool:
        """A slot is free when no booked interval overlaps it, whatever its length."""
        return not any(
            overlaps(slot.start_minutes, slot.end_minutes, start, end) for start, end in booked
        )

    @staticmethod
    def find_conflicting_appointment(
        db: Session,
        doctor_id: int,
        target_date: date_type,
        start_minutes: int,
        end_minutes: int,
        exclude_appointment_id: Optional[int] = None
    ) -> Optional[Appointment]:
        """
        First active appointment overlapping [start, end) on the date.

        Intervals overlap when start < other_end and end > other_start, so
        back-to-back appointments do not conflict.
        """
        for appointment in AvailabilityService.get_active_appointments(
            db, doctor_id, target_date, exclude_appointment_id
        ):
            assert appointment.start_time is not None and appointment.end_time is not None
            if overlaps(
                start_minutes, end_minutes,
                to_minutes(appointment.start_time), to_minutes(appointment.end_time)
            ):
                return appointment
        return None

    @staticmethod
    def get_free_slots(
        db: Session,
        resolved: ResolvedSchedule,
        exclude_appointment_id: Optional[int] = None,
        time_range: Optional[Tuple[str, str]] = None
    ) -> List[TimeSlot]:
        """
        Generated slots of a resolved schedule not overlapping an active booking.

        Args:
            db: Database session
            resolved: Governing schedule
            exclude_appointment_id: Appointment whose own booking should not count
            time_range: Optional ("HH:MM", "HH:MM") range; only slots starting
                inside [from, to) are kept

        Returns:
            Free slots in chronological order
        """
        booked = AvailabilityService.get_booked_intervals(
            db, resolved.doctor_id, resolved.date, exclude_appointment_id
        )
        slots = [
            slot for slot in resolved.generate_slots()
            if AvailabilityService.is_slot_free(slot, booked)
        ]

        if time_range is not None:
            range_start, range_end = to_minutes(time_range[0]), to_minutes(time_range[1])
            slots = [slot for slot in slots if range_start <= slot.start_minutes < range_end]

        return slots

    @staticmethod
    def get_available_slots(
        db: Session,
        doctor_id: int,
        target_date: date_type,
        exclude_appointment_id: Optional[int] = None,
        time_range: Optional[Tuple[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Get the free slots of a doctor's date along with schedule metadata.

        Args:
            db: Database session
            doctor_id: Doctor ID
            target_date: Date to query
            exclude_appointment_id: Appointment whose own booking should not count
            time_range: Optional ("HH:MM", "HH:MM") start-time filter

        Returns:
            Dict with:
            - date: str (YYYY-MM-DD)
            - available_slots: list of {start_time, end_time}
            - schedule_type: 'elastic' | 'recurring' | None
            - schedule: schedule metadata or None
            - message: present when no schedule governs the date

        Raises:
            HTTPException: If the doctor does not exist
        """
        doctor = db.query(Doctor).filter(Doctor.id == doctor_id).first()
        if not doctor:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Doctor not found"
            )

        resolved = AvailabilityService.resolve_schedule(db, doctor_id, target_date)
        if resolved is None:
            return {
                "date": format_date(target_date),
                "available_slots": [],
                "schedule_type": None,
                "schedule": None,
                "message": NO_SCHEDULE_MESSAGE,
            }

        slots = AvailabilityService.get_free_slots(db, resolved, exclude_appointment_id, time_range)
        logger.debug(
            f"Doctor {doctor_id} has {len(slots)} free slots on {target_date} "
            f"({resolved.schedule_type} schedule {resolved.schedule_id})"
        )
        return {
            "date": format_date(target_date),
            "available_slots": [slot.to_dict() for slot in slots],
            "schedule_type": resolved.schedule_type,
            "schedule": resolved.to_dict(),
        }
