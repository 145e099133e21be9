# pyright: reportMissingTypeStubs=false
"""
Appointment API endpoints: booking, rescheduling, cancellation, listings.
"""

import logging
from datetime import date as date_type
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from core.constants import MAX_REASON_LENGTH
from core.database import get_db
from auth.dependencies import get_current_user, require_patient, UserContext
from services.appointment_service import AppointmentService
from utils.time_utils import time_string_validator
from api.responses import (
    AppointmentResponse, AppointmentListResponse, CancelAppointmentResponse, RescheduleResponse,
    ScheduleSummary, TimeSlotResponse
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ===== Request Models =====

class AppointmentCreateRequest(BaseModel):
    """
    Request model for booking an appointment.

    Exactly which booking mode runs depends on the reference given:
    elastic_schedule_id, then recurring_schedule_id, then slot_id.
    """
    doctor_id: int
    elastic_schedule_id: Optional[int] = None
    recurring_schedule_id: Optional[int] = None
    slot_id: Optional[int] = None
    date: Optional[date_type] = None
    start_time: Optional[str] = None  # Format: "HH:MM"
    end_time: Optional[str] = None    # Format: "HH:MM"
    reason: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, v: Optional[str]) -> Optional[str]:
        return time_string_validator(v)


class RescheduleRequest(BaseModel):
    """Request model for moving an appointment."""
    slot_id: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    get_available_slots: bool = False

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, v: Optional[str]) -> Optional[str]:
        return time_string_validator(v)


# ===== Endpoints =====

@router.post("/appointments", summary="Book an appointment", status_code=status.HTTP_201_CREATED)
async def create_appointment(
    request: AppointmentCreateRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_patient)
) -> AppointmentResponse:
    """Book an appointment for the authenticated patient."""
    appointment = AppointmentService.create_appointment(
        db,
        current_user,
        doctor_id=request.doctor_id,
        elastic_schedule_id=request.elastic_schedule_id,
        recurring_schedule_id=request.recurring_schedule_id,
        slot_id=request.slot_id,
        date=request.date,
        start_time=request.start_time,
        end_time=request.end_time,
        reason=request.reason,
    )
    return AppointmentResponse.from_model(appointment)


@router.put("/appointments/{appointment_id}/reschedule", summary="Reschedule an appointment")
async def reschedule_appointment(
    appointment_id: int,
    request: RescheduleRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_patient)
) -> RescheduleResponse:
    """
    Move an appointment to a new time or slot.

    With `get_available_slots` set, nothing changes and the free slots of the
    appointment's day schedule are returned instead.
    """
    try:
        result = AppointmentService.reschedule_appointment(
            db,
            appointment_id,
            current_user,
            slot_id=request.slot_id,
            start_time=request.start_time,
            end_time=request.end_time,
            get_available_slots=request.get_available_slots,
        )
        if "appointment" in result:
            return RescheduleResponse(appointment=AppointmentResponse.from_model(result["appointment"]))
        return RescheduleResponse(
            available_slots=[TimeSlotResponse(**slot) for slot in result["available_slots"]],
            elastic_schedule=ScheduleSummary(**result["elastic_schedule"]),
        )

    except HTTPException:
        raise
    except Exception as e:
        logger.exception(f"Failed to reschedule appointment {appointment_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reschedule appointment"
        )


@router.put("/appointments/{appointment_id}/cancel", summary="Cancel an appointment")
async def cancel_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_patient)
) -> CancelAppointmentResponse:
    result = AppointmentService.cancel_appointment(db, appointment_id, current_user)
    return CancelAppointmentResponse(**result)


@router.get("/patients/{patient_id}/appointments", summary="List a patient's appointments")
async def list_patient_appointments(
    patient_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> AppointmentListResponse:
    appointments = AppointmentService.get_patient_appointments(db, patient_id, current_user)
    return AppointmentListResponse(appointments=[AppointmentResponse.from_model(a) for a in appointments])


@router.get("/doctors/{doctor_id}/appointments", summary="List a doctor's appointments")
async def list_doctor_appointments(
    doctor_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> AppointmentListResponse:
    appointments = AppointmentService.get_doctor_appointments(db, doctor_id, current_user)
    return AppointmentListResponse(appointments=[AppointmentResponse.from_model(a) for a in appointments])
