# pyright: reportMissingTypeStubs=false
"""
Recurring weekly template API endpoints.
"""

import logging
from datetime import date as date_type
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from core.constants import (
    DEFAULT_GENERATED_SCHEDULES_DAYS, DEFAULT_WEEKS_AHEAD, MAX_REASON_LENGTH, MAX_STRING_LENGTH, MAX_WEEKS_AHEAD
)
from core.database import get_db
from auth.dependencies import get_current_user, require_doctor, UserContext
from services.notification_service import NotificationSink, get_notification_sink
from services.recurring_schedule_service import RecurringScheduleService
from utils.ownership import get_owned_doctor
from utils.time_utils import time_string_validator
from api.responses import (
    ElasticScheduleChangeResponse, ElasticScheduleResponse, GenerationResultResponse,
    RecurringScheduleChangeResponse, RecurringScheduleResponse
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ===== Request Models =====

class RecurringScheduleCreateRequest(BaseModel):
    """Request model for creating a weekly template."""
    name: str = Field(min_length=1, max_length=MAX_STRING_LENGTH)
    start_time: str  # Format: "HH:MM"
    end_time: str    # Format: "HH:MM"
    slot_duration: int = Field(ge=1)
    buffer_time: int = Field(default=0, ge=0)
    max_appointments: Optional[int] = Field(default=None, ge=1)
    days_of_week: List[int]  # 0=Sunday .. 6=Saturday
    weeks_ahead: int = Field(default=DEFAULT_WEEKS_AHEAD, ge=1, le=MAX_WEEKS_AHEAD)
    is_active: bool = True
    allow_overrides: bool = True
    auto_generate: bool = True

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, v: str) -> str:
        return time_string_validator(v)  # type: ignore[return-value]


class RecurringScheduleUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their value."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=MAX_STRING_LENGTH)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    slot_duration: Optional[int] = Field(default=None, ge=1)
    buffer_time: Optional[int] = Field(default=None, ge=0)
    max_appointments: Optional[int] = Field(default=None, ge=1)
    days_of_week: Optional[List[int]] = None
    weeks_ahead: Optional[int] = Field(default=None, ge=1, le=MAX_WEEKS_AHEAD)
    is_active: Optional[bool] = None
    allow_overrides: Optional[bool] = None
    auto_generate: Optional[bool] = None
    regenerate_future: bool = False
    bypass_time_restrictions: bool = False

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, v: Optional[str]) -> Optional[str]:
        return time_string_validator(v)


class GenerateSchedulesRequest(BaseModel):
    start_date: Optional[date_type] = None
    end_date: Optional[date_type] = None
    override_existing: bool = False


class DateOverrideRequest(BaseModel):
    """Different session parameters for a single template date."""
    date: date_type
    reason: Optional[str] = Field(default=None, max_length=MAX_REASON_LENGTH)
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    slot_duration: Optional[int] = Field(default=None, ge=1)
    buffer_time: Optional[int] = Field(default=None, ge=0)
    max_appointments: Optional[int] = Field(default=None, ge=1)
    bypass_time_restrictions: bool = False
    adjust_existing: bool = False

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, v: Optional[str]) -> Optional[str]:
        return time_string_validator(v)


# ===== Endpoints =====

@router.post("/doctors/{doctor_id}/recurring-schedules", summary="Create a weekly template",
             status_code=status.HTTP_201_CREATED)
async def create_recurring_schedule(
    doctor_id: int,
    request: RecurringScheduleCreateRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> RecurringScheduleChangeResponse:
    """Create a template; with `auto_generate` it is expanded over `weeks_ahead` right away."""
    try:
        result = RecurringScheduleService.create_template(db, current_user, doctor_id, **request.model_dump())
        generation = result["generation"]
        return RecurringScheduleChangeResponse(
            template=RecurringScheduleResponse.from_model(result["template"]),
            generation=GenerationResultResponse.from_result(generation) if generation else None,
        )

    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.exception(f"Failed to create recurring schedule for doctor {doctor_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create recurring schedule"
        )


@router.get("/doctors/{doctor_id}/recurring-schedules", summary="List a doctor's weekly templates")
async def list_recurring_schedules(
    doctor_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> List[RecurringScheduleResponse]:
    templates = RecurringScheduleService.list_templates(db, doctor_id)
    return [RecurringScheduleResponse.from_model(t) for t in templates]


@router.get("/doctors/{doctor_id}/recurring-schedules/{template_id}", summary="Get a weekly template")
async def get_recurring_schedule(
    doctor_id: int,
    template_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> RecurringScheduleResponse:
    return RecurringScheduleResponse.from_model(RecurringScheduleService.get_template(db, doctor_id, template_id))


@router.put("/doctors/{doctor_id}/recurring-schedules/{template_id}", summary="Update a weekly template")
async def update_recurring_schedule(
    doctor_id: int,
    template_id: int,
    request: RecurringScheduleUpdateRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> RecurringScheduleChangeResponse:
    updates = request.model_dump(exclude_unset=True, exclude={'regenerate_future', 'bypass_time_restrictions'})
    result = RecurringScheduleService.update_template(
        db, current_user, doctor_id, template_id, updates,
        regenerate_future=request.regenerate_future,
        bypass_time_restrictions=request.bypass_time_restrictions,
    )
    regeneration = result["regeneration"]
    return RecurringScheduleChangeResponse(
        template=RecurringScheduleResponse.from_model(result["template"]),
        generation=GenerationResultResponse.from_result(regeneration) if regeneration else None,
    )


@router.delete("/doctors/{doctor_id}/recurring-schedules/{template_id}", summary="Delete a weekly template")
async def delete_recurring_schedule(
    doctor_id: int,
    template_id: int,
    delete_future_schedules: bool = Query(False, description="Also remove generated schedules from today on"),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> Dict[str, Any]:
    return RecurringScheduleService.delete_template(
        db, current_user, doctor_id, template_id, delete_future_schedules=delete_future_schedules
    )


@router.post("/doctors/{doctor_id}/recurring-schedules/{template_id}/generate",
             summary="Expand a template over a date range")
async def generate_schedules(
    doctor_id: int,
    template_id: int,
    request: GenerateSchedulesRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> GenerationResultResponse:
    result = RecurringScheduleService.generate_schedules_from_template(
        db, current_user, doctor_id, template_id,
        start_date=request.start_date,
        end_date=request.end_date,
        override_existing=request.override_existing,
    )
    return GenerationResultResponse.from_result(result)


@router.post("/doctors/{doctor_id}/recurring-schedules/{template_id}/regenerate",
             summary="Replace a template's future schedules")
async def regenerate_schedules(
    doctor_id: int,
    template_id: int,
    bypass_time_restrictions: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> GenerationResultResponse:
    result = RecurringScheduleService.regenerate_future_schedules(
        db, current_user, doctor_id, template_id, bypass_time_restrictions=bypass_time_restrictions
    )
    return GenerationResultResponse.from_result(result)


@router.get("/doctors/{doctor_id}/recurring-schedules/{template_id}/generated",
            summary="Upcoming schedules on a template's weekdays")
async def get_generated_schedules(
    doctor_id: int,
    template_id: int,
    days: int = Query(DEFAULT_GENERATED_SCHEDULES_DAYS, ge=1, le=366),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> List[ElasticScheduleResponse]:
    schedules = RecurringScheduleService.get_generated_schedules(db, doctor_id, template_id, days)
    return [ElasticScheduleResponse.from_model(s) for s in schedules]


@router.post("/doctors/{doctor_id}/recurring-schedules/{template_id}/overrides",
             summary="Override a single template date")
async def create_date_override(
    doctor_id: int,
    template_id: int,
    request: DateOverrideRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor),
    notifier: NotificationSink = Depends(get_notification_sink)
) -> ElasticScheduleChangeResponse:
    result = RecurringScheduleService.create_date_override(
        db, current_user, doctor_id, template_id,
        notifier=notifier,
        **request.model_dump(),
    )
    return ElasticScheduleChangeResponse(
        schedule=ElasticScheduleResponse.from_model(result["schedule"]),
        adjustment=result["adjustment"],
    )


@router.post("/doctors/{doctor_id}/recurring-schedules/auto-generate",
             summary="Expand the caller's auto-generating templates")
async def auto_generate_all(
    doctor_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> Dict[str, Any]:
    """
    Expand every active auto-generating template of one doctor.

    The clinic-wide batch runs outside HTTP through get_db_context.
    """
    get_owned_doctor(db, doctor_id, current_user)
    return RecurringScheduleService.auto_generate_all_schedules(db, doctor_id=doctor_id)
