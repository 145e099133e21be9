"""
Appointment service for booking, rescheduling, and cancellation.

Bookings are made in one of three modes:
- elastic: against a per-date ElasticSchedule, with explicit or
  auto-picked times
- recurring: against a weekly template for a specific date and time
- traditional: by claiming an explicit AvailabilitySlot

Each booking runs in a single transaction with the governing schedule (or
doctor, for template bookings) row locked, so two requests for the same time
serialize and the second one sees the first as a conflict.
"""

import logging
from dataclasses import replace
from datetime import date as date_type
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload
from sqlalchemy.orm.exc import StaleDataError

from auth.dependencies import UserContext
from core.constants import (
    APPOINTMENT_STATUS_SCHEDULED, APPOINTMENT_STATUS_RESCHEDULED,
    APPOINTMENT_STATUS_CANCELLED, SLOT_MODE_AVAILABLE, SLOT_MODE_BOOKED, WEEKDAY_NAMES,
)
from models import Appointment, AvailabilitySlot, Doctor, ElasticSchedule, Patient, RecurringSchedule
from services.availability_service import AvailabilityService, ResolvedSchedule
from utils.datetime_utils import clinic_now, sunday_based_weekday
from utils.ownership import get_doctor_or_404, get_patient_for_user
from utils.time_utils import parse_time_string, to_minutes, TIME_FORMAT_HINT

logger = logging.getLogger(__name__)


def _parse_requested_window(start_time: Optional[str], end_time: Optional[str]) -> Tuple[int, int]:
    """
    Validate a caller-supplied HH:MM pair.

    Raises:
        HTTPException: 400 if either value is missing or malformed, or the
            end is not after the start
    """
    if not start_time or not end_time:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Both start_time and end_time are required"
        )
    try:
        start_minutes = to_minutes(start_time)
        end_minutes = to_minutes(end_time)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Times must be in {TIME_FORMAT_HINT}"
        )
    if end_minutes <= start_minutes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="End time must be after start time"
        )
    return start_minutes, end_minutes


def _ensure_bookable(
    db: Session,
    resolved: ResolvedSchedule,
    start_minutes: int,
    end_minutes: int,
    exclude_appointment_id: Optional[int] = None
) -> None:
    """Raise 409 if the interval is outside the window or overlaps an active booking."""
    if not resolved.contains(start_minutes, end_minutes):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=(
                f"Requested time is outside doctor's available hours "
                f"({resolved.start_time} - {resolved.end_time})"
            )
        )
    conflict = AvailabilityService.find_conflicting_appointment(
        db, resolved.doctor_id, resolved.date, start_minutes, end_minutes, exclude_appointment_id
    )
    if conflict is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Time slot conflicts with an existing appointment"
        )


class AppointmentService:
    """
    Service class for appointment operations.

    Callers pass the database session and the authenticated user explicitly;
    the patient is always derived from the user, never from request data.
    """

    @staticmethod
    def create_appointment(
        db: Session,
        user: UserContext,
        doctor_id: int,
        elastic_schedule_id: Optional[int] = None,
        recurring_schedule_id: Optional[int] = None,
        slot_id: Optional[int] = None,
        date: Optional[date_type] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        reason: Optional[str] = None
    ) -> Appointment:
        """
        Book an appointment for the authenticated patient.

        The booking mode is chosen by which reference is supplied, checked in
        the order elastic schedule, recurring template, availability slot.

        Args:
            db: Database session
            user: Authenticated patient
            doctor_id: Doctor being booked
            elastic_schedule_id: Day schedule to book against
            recurring_schedule_id: Weekly template to book against
            slot_id: Traditional slot to claim
            date: Appointment date (required for template bookings)
            start_time: Requested start "HH:MM"
            end_time: Requested end "HH:MM"
            reason: Patient-provided visit reason

        Returns:
            The persisted appointment

        Raises:
            HTTPException: 404 for missing patient/doctor/schedule/slot, 400 for
                malformed or missing input, 409 for conflicts or a full schedule
        """
        try:
            patient = get_patient_for_user(db, user)
            doctor = get_doctor_or_404(db, doctor_id)

            if elastic_schedule_id is not None:
                appointment = AppointmentService._book_elastic(
                    db, patient, doctor, elastic_schedule_id, date, start_time, end_time
                )
            elif recurring_schedule_id is not None:
                appointment = AppointmentService._book_recurring(
                    db, patient, doctor, recurring_schedule_id, date, start_time, end_time
                )
            elif slot_id is not None:
                appointment = AppointmentService._book_slot(db, patient, doctor, slot_id)
            else:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="One of elastic_schedule_id, recurring_schedule_id or slot_id is required"
                )

            appointment.reason = reason
            db.add(appointment)
            db.commit()
            db.refresh(appointment)

            logger.info(
                f"Booked appointment {appointment.id} for patient {patient.id} with doctor {doctor.id} "
                f"on {appointment.date} {appointment.start_time}-{appointment.end_time} (slot={appointment.slot_id})"
            )
            return appointment

        except HTTPException:
            db.rollback()
            raise
        except StaleDataError:
            db.rollback()
            logger.warning(f"Schedule changed by a concurrent booking for doctor {doctor_id}")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Time slot is no longer available"
            )
        except IntegrityError as e:
            db.rollback()
            logger.warning(f"Booking rejected by database constraint: {e}")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Time slot is no longer available"
            )
        except Exception as e:
            db.rollback()
            logger.exception(f"Failed to create appointment: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to create appointment"
            )

    @staticmethod
    def _book_elastic(
        db: Session,
        patient: Patient,
        doctor: Doctor,
        elastic_schedule_id: int,
        date: Optional[date_type],
        start_time: Optional[str],
        end_time: Optional[str]
    ) -> Appointment:
        # Row lock serializes concurrent bookings against the same schedule
        schedule = db.query(ElasticSchedule).filter(
            ElasticSchedule.id == elastic_schedule_id
        ).with_for_update().first()
        if not schedule or schedule.doctor_id != doctor.id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Elastic schedule not found"
            )

        target_date = date or schedule.date
        resolved = replace(ResolvedSchedule.from_elastic(schedule), date=target_date)

        if start_time is not None or end_time is not None:
            start_minutes, end_minutes = _parse_requested_window(start_time, end_time)
            _ensure_bookable(db, resolved, start_minutes, end_minutes)
            assert start_time is not None and end_time is not None
            chosen_start, chosen_end = start_time, end_time
        else:
            free_slots = AvailabilityService.get_free_slots(db, resolved)
            if not free_slots:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail="No available slot in elastic schedule"
                )
            chosen_start, chosen_end = free_slots[0].start_time, free_slots[0].end_time

        # Touch the schedule so its version check rejects a booking that raced this one
        schedule.updated_at = clinic_now()

        return Appointment(
            patient_id=patient.id,
            doctor_id=doctor.id,
            elastic_schedule_id=schedule.id,
            slot_id=None,
            date=target_date,
            start_time=parse_time_string(chosen_start),
            end_time=parse_time_string(chosen_end),
            status=APPOINTMENT_STATUS_SCHEDULED,
        )

    @staticmethod
    def _book_recurring(
        db: Session,
        patient: Patient,
        doctor: Doctor,
        recurring_schedule_id: int,
        date: Optional[date_type],
        start_time: Optional[str],
        end_time: Optional[str]
    ) -> Appointment:
        # Template bookings have no per-date row to lock, so lock the doctor
        db.query(Doctor).filter(Doctor.id == doctor.id).with_for_update().first()

        template = db.query(RecurringSchedule).filter(
            RecurringSchedule.id == recurring_schedule_id
        ).first()
        if not template or template.doctor_id != doctor.id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Recurring schedule not found"
            )
        if date is None:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="date is required when booking against a recurring schedule"
            )
        start_minutes, end_minutes = _parse_requested_window(start_time, end_time)

        if not template.is_active:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Recurring schedule is not active"
            )
        if not template.covers_weekday(sunday_based_weekday(date)):
            available_days = ", ".join(WEEKDAY_NAMES[day] for day in sorted(template.days_of_week))
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=(
                    f"Doctor is not available on {WEEKDAY_NAMES[sunday_based_weekday(date)]}. "
                    f"Available days: {available_days}"
                )
            )

        _ensure_bookable(db, ResolvedSchedule.from_template(template, date), start_minutes, end_minutes)
        assert start_time is not None and end_time is not None

        return Appointment(
            patient_id=patient.id,
            doctor_id=doctor.id,
            elastic_schedule_id=None,
            slot_id=None,
            date=date,
            start_time=parse_time_string(start_time),
            end_time=parse_time_string(end_time),
            status=APPOINTMENT_STATUS_SCHEDULED,
        )

    @staticmethod
    def _book_slot(db: Session, patient: Patient, doctor: Doctor, slot_id: int) -> Appointment:
        slot = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.id == slot_id
        ).with_for_update().first()
        if not slot or slot.doctor_id != doctor.id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Availability slot not found"
            )
        if slot.mode != SLOT_MODE_AVAILABLE:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Availability slot is not available"
            )

        slot.mode = SLOT_MODE_BOOKED
        return Appointment(
            patient_id=patient.id,
            doctor_id=doctor.id,
            slot_id=slot.id,
            elastic_schedule_id=None,
            status=APPOINTMENT_STATUS_SCHEDULED,
        )

    @staticmethod
    def _get_owned_appointment(db: Session, appointment_id: int, user: UserContext) -> Appointment:
        appointment = db.query(Appointment).options(
            joinedload(Appointment.patient)
        ).filter(Appointment.id == appointment_id).first()
        if not appointment:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Appointment not found"
            )
        if appointment.patient.user_id != user.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You can only modify your own appointments"
            )
        return appointment

    @staticmethod
    def _release_slot(db: Session, slot_id: Optional[int]) -> None:
        if slot_id is None:
            return
        slot = db.query(AvailabilitySlot).filter(AvailabilitySlot.id == slot_id).first()
        if slot and slot.mode == SLOT_MODE_BOOKED:
            slot.mode = SLOT_MODE_AVAILABLE

    @staticmethod
    def _commit_change(db: Session, appointment: Appointment, action: str) -> None:
        """Commit an appointment change, mapping a lost optimistic-lock race to 409."""
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.warning(f"Concurrent modification while trying to {action} appointment {appointment.id}")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Appointment was modified by another request, please retry"
            )

    @staticmethod
    def reschedule_appointment(
        db: Session,
        appointment_id: int,
        user: UserContext,
        slot_id: Optional[int] = None,
        start_time: Optional[str] = None,
        end_time: Optional[str] = None,
        get_available_slots: bool = False
    ) -> Dict[str, Any]:
        """
        Move an appointment, or list where it could move to.

        Args:
            db: Database session
            appointment_id: Appointment to move
            user: Authenticated patient who owns the appointment
            slot_id: Traditional slot to move into (switches to slot mode)
            start_time: New start "HH:MM" within the same day schedule
            end_time: New end "HH:MM" within the same day schedule
            get_available_slots: Only return the free slots of the
                appointment's day schedule, excluding its own booking

        Returns:
            {"appointment": Appointment} after a move, or
            {"available_slots": [...], "elastic_schedule": {...}} for a listing

        Raises:
            HTTPException: 404 missing appointment/slot/schedule, 403 not the
                owner, 400 invalid input, 409 conflicts or concurrent edits
        """
        appointment = AppointmentService._get_owned_appointment(db, appointment_id, user)

        try:
            if slot_id is not None:
                AppointmentService._move_to_slot(db, appointment, slot_id)
            elif appointment.elastic_schedule_id is not None or appointment.date is not None:
                resolved = AppointmentService._resolve_for_appointment(db, appointment)
                if get_available_slots:
                    free_slots = AvailabilityService.get_free_slots(
                        db, resolved, exclude_appointment_id=appointment.id
                    )
                    return {
                        "available_slots": [slot.to_dict() for slot in free_slots],
                        "elastic_schedule": resolved.to_dict(),
                    }
                start_minutes, end_minutes = _parse_requested_window(start_time, end_time)
                _ensure_bookable(db, resolved, start_minutes, end_minutes, appointment.id)
                assert start_time is not None and end_time is not None
                appointment.start_time = parse_time_string(start_time)
                appointment.end_time = parse_time_string(end_time)
            else:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="slot_id is required to reschedule a slot-based appointment"
                )

            appointment.status = APPOINTMENT_STATUS_RESCHEDULED
            appointment.status_reason = None
            AppointmentService._commit_change(db, appointment, "reschedule")
            db.refresh(appointment)

            logger.info(
                f"Rescheduled appointment {appointment.id} to "
                f"{appointment.date} {appointment.start_time}-{appointment.end_time} (slot={appointment.slot_id})"
            )
            return {"appointment": appointment}

        except HTTPException:
            db.rollback()
            raise

    @staticmethod
    def _resolve_for_appointment(db: Session, appointment: Appointment) -> ResolvedSchedule:
        """Schedule an appointment in derived-time mode is held against."""
        if appointment.elastic_schedule_id is not None:
            schedule = db.query(ElasticSchedule).filter(
                ElasticSchedule.id == appointment.elastic_schedule_id
            ).with_for_update().first()
            if not schedule:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail="Elastic schedule not found"
                )
            return replace(ResolvedSchedule.from_elastic(schedule), date=appointment.date or schedule.date)

        assert appointment.date is not None
        resolved = AvailabilityService.resolve_schedule(db, appointment.doctor_id, appointment.date)
        if resolved is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="No schedule found for this date"
            )
        return resolved

    @staticmethod
    def _move_to_slot(db: Session, appointment: Appointment, slot_id: int) -> None:
        new_slot = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.id == slot_id
        ).with_for_update().first()
        if not new_slot or new_slot.doctor_id != appointment.doctor_id:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Availability slot not found"
            )
        if new_slot.id != appointment.slot_id and new_slot.mode != SLOT_MODE_AVAILABLE:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Availability slot is not available"
            )

        if appointment.slot_id != new_slot.id:
            AppointmentService._release_slot(db, appointment.slot_id)

        # Slot mode carries no derived date/time
        appointment.slot_id = new_slot.id
        appointment.elastic_schedule_id = None
        appointment.date = None
        appointment.start_time = None
        appointment.end_time = None
        new_slot.mode = SLOT_MODE_BOOKED

    @staticmethod
    def cancel_appointment(db: Session, appointment_id: int, user: UserContext) -> Dict[str, Any]:
        """
        Cancel an appointment owned by the caller.

        The record is kept with status 'cancelled'; a traditional slot it held
        becomes available again.

        Raises:
            HTTPException: 404 if missing, 403 if not the owner, 409 on a
                concurrent modification
        """
        appointment = AppointmentService._get_owned_appointment(db, appointment_id, user)

        AppointmentService._release_slot(db, appointment.slot_id)
        appointment.status = APPOINTMENT_STATUS_CANCELLED
        appointment.status_reason = None
        AppointmentService._commit_change(db, appointment, "cancel")

        logger.info(f"Cancelled appointment {appointment.id} for patient {appointment.patient_id}")
        return {"message": "Appointment cancelled", "appointment_id": appointment.id}

    @staticmethod
    def get_patient_appointments(db: Session, patient_id: int, user: UserContext) -> List[Appointment]:
        """
        All appointments of a patient, newest booking first.

        Raises:
            HTTPException: 404 if the patient does not exist, 403 if the caller
                is not that patient
        """
        patient = db.query(Patient).filter(Patient.id == patient_id).first()
        if not patient:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Patient not found"
            )
        if patient.user_id != user.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You can only view your own appointments"
            )

        return db.query(Appointment).options(
            joinedload(Appointment.doctor),
            joinedload(Appointment.elastic_schedule),
            joinedload(Appointment.slot)
        ).filter(
            Appointment.patient_id == patient_id
        ).order_by(Appointment.created_at.desc(), Appointment.id.desc()).all()

    @staticmethod
    def get_doctor_appointments(db: Session, doctor_id: int, user: UserContext) -> List[Appointment]:
        """
        All appointments of a doctor, ordered by date and start time.

        Raises:
            HTTPException: 404 if the doctor does not exist, 403 if the caller
                is not that doctor
        """
        doctor = get_doctor_or_404(db, doctor_id)
        if doctor.user_id != user.user_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You can only view your own appointments"
            )

        return db.query(Appointment).options(
            joinedload(Appointment.patient),
            joinedload(Appointment.elastic_schedule),
            joinedload(Appointment.slot)
        ).filter(
            Appointment.doctor_id == doctor_id
        ).order_by(
            Appointment.date.asc(), Appointment.start_time.asc(), Appointment.id.asc()
        ).all()
