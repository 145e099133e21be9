# pyright: reportMissingTypeStubs=false
"""
Doctor day-schedule API endpoints.

Covers per-date elastic schedules, slot queries, overflow handling after a
schedule shrinks, and fill-rate analytics.
"""

import logging
from datetime import date as date_type
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.orm import Session

from core.database import get_db
from auth.dependencies import get_current_user, require_doctor, UserContext
from services.availability_service import AvailabilityService
from services.elastic_schedule_service import ElasticScheduleService
from services.notification_service import NotificationSink, get_notification_sink
from services.redistribution_service import RedistributionService
from services.schedule_analytics_service import ScheduleAnalyticsService
from utils.time_utils import time_string_validator
from api.responses import (
    AvailableSlotsResponse, DoctorStatsResponse, ElasticScheduleChangeResponse, ElasticScheduleResponse,
    OverflowItemResponse
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ===== Request Models =====

class ElasticScheduleCreateRequest(BaseModel):
    """Request model for creating a per-date session."""
    date: date_type
    start_time: str  # Format: "HH:MM"
    end_time: str    # Format: "HH:MM"
    slot_duration: int = Field(ge=1)
    buffer_time: int = Field(default=0, ge=0)
    max_appointments: Optional[int] = Field(default=None, ge=1)
    adjust_existing: bool = False

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, v: str) -> str:
        return time_string_validator(v)  # type: ignore[return-value]


class ElasticScheduleUpdateRequest(BaseModel):
    """Partial update; omitted fields keep their value."""
    date: Optional[date_type] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    slot_duration: Optional[int] = Field(default=None, ge=1)
    buffer_time: Optional[int] = Field(default=None, ge=0)
    max_appointments: Optional[int] = Field(default=None, ge=1)
    adjust_existing: bool = False

    @field_validator('start_time', 'end_time')
    @classmethod
    def validate_times(cls, v: Optional[str]) -> Optional[str]:
        return time_string_validator(v)


class TimeRangeQuery(BaseModel):
    start: Optional[str] = None
    end: Optional[str] = None

    @field_validator('start', 'end')
    @classmethod
    def validate_times(cls, v: Optional[str]) -> Optional[str]:
        return time_string_validator(v)

    @model_validator(mode='after')
    def validate_pair(self) -> 'TimeRangeQuery':
        if (self.start is None) != (self.end is None):
            raise ValueError('time_range_start and time_range_end must be given together')
        return self


# ===== Elastic schedule CRUD =====

@router.post("/doctors/{doctor_id}/elastic-schedules", summary="Create a per-date schedule",
             status_code=status.HTTP_201_CREATED)
async def create_elastic_schedule(
    doctor_id: int,
    request: ElasticScheduleCreateRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor),
    notifier: NotificationSink = Depends(get_notification_sink)
) -> ElasticScheduleChangeResponse:
    result = ElasticScheduleService.create_schedule(
        db,
        current_user,
        doctor_id,
        date=request.date,
        start_time=request.start_time,
        end_time=request.end_time,
        slot_duration=request.slot_duration,
        buffer_time=request.buffer_time,
        max_appointments=request.max_appointments,
        adjust_existing=request.adjust_existing,
        notifier=notifier,
    )
    return ElasticScheduleChangeResponse(
        schedule=ElasticScheduleResponse.from_model(result["schedule"]),
        adjustment=result["adjustment"],
    )


@router.get("/doctors/{doctor_id}/elastic-schedules", summary="List a doctor's per-date schedules")
async def list_elastic_schedules(
    doctor_id: int,
    start_date: Optional[date_type] = Query(None, description="First date, inclusive"),
    end_date: Optional[date_type] = Query(None, description="Last date, inclusive"),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> List[ElasticScheduleResponse]:
    schedules = ElasticScheduleService.list_schedules(db, doctor_id, start_date, end_date)
    return [ElasticScheduleResponse.from_model(s) for s in schedules]


@router.get("/elastic-schedules/{schedule_id}", summary="Get a per-date schedule")
async def get_elastic_schedule(
    schedule_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> ElasticScheduleResponse:
    return ElasticScheduleResponse.from_model(ElasticScheduleService.get_schedule(db, schedule_id))


@router.put("/elastic-schedules/{schedule_id}", summary="Update a per-date schedule")
async def update_elastic_schedule(
    schedule_id: int,
    request: ElasticScheduleUpdateRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor),
    notifier: NotificationSink = Depends(get_notification_sink)
) -> ElasticScheduleChangeResponse:
    """
    Update a schedule's window, slot length, buffer, capacity or date.

    With `adjust_existing`, appointments on the date are re-packed and the ones
    that no longer fit are redistributed to following days.
    """
    updates = request.model_dump(exclude_unset=True, exclude={'adjust_existing'})
    try:
        result = ElasticScheduleService.update_schedule(
            db, schedule_id, current_user, updates,
            adjust_existing=request.adjust_existing,
            notifier=notifier,
        )
        return ElasticScheduleChangeResponse(
            schedule=ElasticScheduleResponse.from_model(result["schedule"]),
            adjustment=result["adjustment"],
        )

    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.exception(f"Failed to update elastic schedule {schedule_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update schedule"
        )


@router.delete("/elastic-schedules/{schedule_id}", summary="Delete a per-date schedule",
               status_code=status.HTTP_204_NO_CONTENT)
async def delete_elastic_schedule(
    schedule_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> Response:
    ElasticScheduleService.delete_schedule(db, schedule_id, current_user)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ===== Slot queries =====

@router.get("/doctors/{doctor_id}/available-slots", summary="Free slots of a doctor on a date")
async def get_available_slots(
    doctor_id: int,
    date: date_type = Query(..., description="Date in YYYY-MM-DD format"),
    time_range_start: Optional[str] = Query(None, description="Earliest slot start, HH:MM"),
    time_range_end: Optional[str] = Query(None, description="Latest slot start, HH:MM"),
    exclude_appointment_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> AvailableSlotsResponse:
    try:
        time_range = TimeRangeQuery(start=time_range_start, end=time_range_end)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    result = AvailabilityService.get_available_slots(
        db,
        doctor_id,
        date,
        exclude_appointment_id=exclude_appointment_id,
        time_range=(time_range.start, time_range.end) if time_range.start and time_range.end else None,
    )
    return AvailableSlotsResponse(**result)


@router.get("/doctors/{doctor_id}/elastic-slots", summary="All schedules of a date with their slots")
async def get_elastic_slots(
    doctor_id: int,
    date: date_type = Query(..., description="Date in YYYY-MM-DD format"),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> List[Dict[str, Any]]:
    return ElasticScheduleService.get_elastic_slots(db, doctor_id, date)


# ===== Overflow =====

@router.get("/elastic-schedules/{schedule_id}/overflow", summary="Preview a schedule's overflow")
async def get_overflow(
    schedule_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> List[OverflowItemResponse]:
    items = RedistributionService.get_overflow_with_priority(db, schedule_id, current_user)
    return [OverflowItemResponse(**item) for item in items]


@router.post("/elastic-schedules/{schedule_id}/overflow/reschedule",
             summary="Move a schedule's overflow to nearby sessions")
async def reschedule_overflow(
    schedule_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor),
    notifier: NotificationSink = Depends(get_notification_sink)
) -> Dict[str, Any]:
    try:
        return RedistributionService.reschedule_overflow_with_priority(db, schedule_id, current_user, notifier)

    except HTTPException:
        raise
    except Exception as e:
        db.rollback()
        logger.exception(f"Failed to reschedule overflow of schedule {schedule_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reschedule overflow"
        )


# ===== Analytics =====

@router.get("/doctors/{doctor_id}/schedule-stats", summary="Fill rate of a doctor's schedules")
async def get_doctor_stats(
    doctor_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> DoctorStatsResponse:
    return DoctorStatsResponse(**ScheduleAnalyticsService.get_doctor_stats(db, doctor_id))


@router.get("/schedule-stats", summary="Fill rate of every doctor's schedules")
async def get_all_doctor_stats(
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> List[DoctorStatsResponse]:
    return [DoctorStatsResponse(**stats) for stats in ScheduleAnalyticsService.get_all_doctors_stats(db)]
