# pyright: reportMissingTypeStubs=false
"""
Traditional availability slot API endpoints.
"""

import logging
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.constants import SLOT_MODE_AVAILABLE
from core.database import get_db
from auth.dependencies import get_current_user, require_doctor, UserContext
from services.availability_slot_service import AvailabilitySlotService
from api.responses import AvailabilitySlotResponse

logger = logging.getLogger(__name__)

router = APIRouter()


class AvailabilitySlotCreateRequest(BaseModel):
    """Naive datetimes are taken as clinic wall-clock time."""
    start_time: datetime
    end_time: datetime
    mode: str = SLOT_MODE_AVAILABLE


@router.post("/doctors/{doctor_id}/availability-slots", summary="Publish an availability slot",
             status_code=status.HTTP_201_CREATED)
async def add_availability_slot(
    doctor_id: int,
    request: AvailabilitySlotCreateRequest,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> AvailabilitySlotResponse:
    slot = AvailabilitySlotService.add_slot(
        db, current_user, doctor_id, request.start_time, request.end_time, request.mode
    )
    return AvailabilitySlotResponse.from_model(slot)


@router.get("/doctors/{doctor_id}/availability-slots", summary="List a doctor's availability slots")
async def list_availability_slots(
    doctor_id: int,
    include_unavailable: bool = Query(False, description="Also list booked and blocked slots"),
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(get_current_user)
) -> List[AvailabilitySlotResponse]:
    slots = AvailabilitySlotService.list_slots(db, doctor_id, include_unavailable)
    return [AvailabilitySlotResponse.from_model(s) for s in slots]


@router.delete("/doctors/{doctor_id}/availability-slots/{slot_id}", summary="Delete an availability slot",
               status_code=status.HTTP_204_NO_CONTENT)
async def delete_availability_slot(
    doctor_id: int,
    slot_id: int,
    db: Session = Depends(get_db),
    current_user: UserContext = Depends(require_doctor)
) -> Response:
    AvailabilitySlotService.delete_slot(db, current_user, doctor_id, slot_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
