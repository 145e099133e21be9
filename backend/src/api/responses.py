"""
Shared response models for API endpoints.

ORM rows are converted here so every endpoint reports times as "HH:MM" and
dates as YYYY-MM-DD.
"""

from datetime import datetime, date as date_type
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from models import Appointment, AvailabilitySlot, ElasticSchedule, RecurringSchedule
from utils.time_utils import format_time


class AppointmentResponse(BaseModel):
    """Response model for an appointment."""
    id: int
    patient_id: int
    doctor_id: int
    slot_id: Optional[int] = None
    elastic_schedule_id: Optional[int] = None
    date: Optional[date_type] = None
    start_time: Optional[str] = None  # Format: "HH:MM"
    end_time: Optional[str] = None    # Format: "HH:MM"
    status: str
    status_reason: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, appointment: Appointment) -> "AppointmentResponse":
        return cls(
            id=appointment.id,
            patient_id=appointment.patient_id,
            doctor_id=appointment.doctor_id,
            slot_id=appointment.slot_id,
            elastic_schedule_id=appointment.elastic_schedule_id,
            date=appointment.date,
            start_time=format_time(appointment.start_time) if appointment.start_time else None,
            end_time=format_time(appointment.end_time) if appointment.end_time else None,
            status=appointment.status,
            status_reason=appointment.status_reason,
            reason=appointment.reason,
            created_at=appointment.created_at,
        )


class AppointmentListResponse(BaseModel):
    """Response model for listing appointments."""
    appointments: List[AppointmentResponse]


class CancelAppointmentResponse(BaseModel):
    message: str
    appointment_id: int


class TimeSlotResponse(BaseModel):
    """A bookable interval."""
    start_time: str
    end_time: str


class ScheduleSummary(BaseModel):
    """Session parameters of the schedule governing a date."""
    id: Optional[int] = None
    type: str  # "elastic" or "recurring"
    date: str
    start_time: str
    end_time: str
    slot_duration: int
    buffer_time: int
    max_appointments: Optional[int] = None


class AvailableSlotsResponse(BaseModel):
    """Response model for a doctor's free slots on a date."""
    date: str
    available_slots: List[TimeSlotResponse]
    schedule_type: Optional[str] = None
    schedule: Optional[ScheduleSummary] = None
    message: Optional[str] = None


class RescheduleResponse(BaseModel):
    """Either the moved appointment or the slots it could move to."""
    appointment: Optional[AppointmentResponse] = None
    available_slots: Optional[List[TimeSlotResponse]] = None
    elastic_schedule: Optional[ScheduleSummary] = None


class ElasticScheduleResponse(BaseModel):
    """Response model for a per-date elastic schedule."""
    id: int
    doctor_id: int
    date: date_type
    start_time: str
    end_time: str
    slot_duration: int
    buffer_time: int
    max_appointments: Optional[int] = None
    recurring_template_id: Optional[int] = None
    is_override: bool
    override_reason: Optional[str] = None

    @classmethod
    def from_model(cls, schedule: ElasticSchedule) -> "ElasticScheduleResponse":
        return cls(
            id=schedule.id,
            doctor_id=schedule.doctor_id,
            date=schedule.date,
            start_time=format_time(schedule.start_time),
            end_time=format_time(schedule.end_time),
            slot_duration=schedule.slot_duration,
            buffer_time=schedule.buffer_time,
            max_appointments=schedule.max_appointments,
            recurring_template_id=schedule.recurring_template_id,
            is_override=schedule.is_override,
            override_reason=schedule.override_reason,
        )


class ElasticScheduleChangeResponse(BaseModel):
    """A created or updated schedule plus the reconciliation summary, if one ran."""
    schedule: ElasticScheduleResponse
    adjustment: Optional[Dict[str, Any]] = None


class RecurringScheduleResponse(BaseModel):
    """Response model for a weekly template."""
    id: int
    doctor_id: int
    name: str
    start_time: str
    end_time: str
    slot_duration: int
    buffer_time: int
    max_appointments: Optional[int] = None
    days_of_week: List[int]
    weeks_ahead: int
    is_active: bool
    allow_overrides: bool
    auto_generate: bool
    last_generated_date: Optional[date_type] = None

    @classmethod
    def from_model(cls, template: RecurringSchedule) -> "RecurringScheduleResponse":
        return cls(
            id=template.id,
            doctor_id=template.doctor_id,
            name=template.name,
            start_time=format_time(template.start_time),
            end_time=format_time(template.end_time),
            slot_duration=template.slot_duration,
            buffer_time=template.buffer_time,
            max_appointments=template.max_appointments,
            days_of_week=list(template.days_of_week or []),
            weeks_ahead=template.weeks_ahead,
            is_active=template.is_active,
            allow_overrides=template.allow_overrides,
            auto_generate=template.auto_generate,
            last_generated_date=template.last_generated_date,
        )


class GenerationResultResponse(BaseModel):
    """Outcome of expanding a template over a date range."""
    template_id: int
    generated: int
    skipped: int
    skipped_dates: List[date_type]
    schedules: List[ElasticScheduleResponse]
    deleted: Optional[int] = None

    @classmethod
    def from_result(cls, result: Dict[str, Any]) -> "GenerationResultResponse":
        return cls(
            template_id=result["template_id"],
            generated=result["generated"],
            skipped=result["skipped"],
            skipped_dates=result["skipped_dates"],
            schedules=[ElasticScheduleResponse.from_model(s) for s in result["schedules"]],
            deleted=result.get("deleted"),
        )


class RecurringScheduleChangeResponse(BaseModel):
    template: RecurringScheduleResponse
    generation: Optional[GenerationResultResponse] = None


class AvailabilitySlotResponse(BaseModel):
    """Response model for a traditional availability slot."""
    id: int
    doctor_id: int
    start_time: datetime
    end_time: datetime
    mode: str

    @classmethod
    def from_model(cls, slot: AvailabilitySlot) -> "AvailabilitySlotResponse":
        return cls(
            id=slot.id,
            doctor_id=slot.doctor_id,
            start_time=slot.start_time,
            end_time=slot.end_time,
            mode=slot.mode,
        )


class SearchPriorityEntry(BaseModel):
    label: str  # same_day_afternoon, same_day_evening or next_day
    date: str
    bucket: Optional[str] = None


class OverflowItemResponse(BaseModel):
    """An appointment displaced from a schedule, with its search priority."""
    appointment_id: int
    patient_id: int
    patient_name: Optional[str] = None
    date: Optional[str] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    status: str
    created_at: datetime
    overflow_reason: str
    session_bucket: str
    search_priority: List[SearchPriorityEntry]
    needs_reschedule: bool


class DoctorStatsResponse(BaseModel):
    """Fill-rate statistics for a doctor's elastic schedules."""
    doctor_id: int
    doctor_name: str
    schedules: int
    total_slots: int
    total_booked: int
    fill_rate: float
    recommendation: str
