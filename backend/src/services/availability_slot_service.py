"""
Availability slot service for doctors using traditional fixed slots.
"""

import logging
from datetime import datetime
from typing import List

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from auth.dependencies import UserContext
from core.constants import SLOT_MODE_AVAILABLE, SLOT_MODE_BOOKED, SLOT_MODE_UNAVAILABLE
from models import AvailabilitySlot
from utils.datetime_utils import ensure_clinic_tz
from utils.ownership import get_doctor_or_404, get_owned_doctor

logger = logging.getLogger(__name__)

SETTABLE_MODES = (SLOT_MODE_AVAILABLE, SLOT_MODE_UNAVAILABLE)


class AvailabilitySlotService:
    """Service class for traditional availability slots."""

    @staticmethod
    def list_slots(db: Session, doctor_id: int, include_unavailable: bool = False) -> List[AvailabilitySlot]:
        """Slots of a doctor in chronological order; bookable ones only unless asked otherwise."""
        get_doctor_or_404(db, doctor_id)
        query = db.query(AvailabilitySlot).filter(AvailabilitySlot.doctor_id == doctor_id)
        if not include_unavailable:
            query = query.filter(AvailabilitySlot.mode == SLOT_MODE_AVAILABLE)
        return query.order_by(AvailabilitySlot.start_time.asc(), AvailabilitySlot.id.asc()).all()

    @staticmethod
    def add_slot(
        db: Session,
        user: UserContext,
        doctor_id: int,
        start_time: datetime,
        end_time: datetime,
        mode: str = SLOT_MODE_AVAILABLE
    ) -> AvailabilitySlot:
        """
        Publish a slot for a doctor the caller owns.

        Raises:
            HTTPException: 404 unknown doctor, 403 not the owner, 400 invalid
                interval or mode
        """
        doctor = get_owned_doctor(db, doctor_id, user)
        start = ensure_clinic_tz(start_time)
        end = ensure_clinic_tz(end_time)
        assert start is not None and end is not None
        if end <= start:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="End time must be after start time"
            )
        if mode not in SETTABLE_MODES:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"mode must be one of {', '.join(SETTABLE_MODES)}"
            )

        slot = AvailabilitySlot(doctor_id=doctor.id, start_time=start, end_time=end, mode=mode)
        db.add(slot)
        db.commit()
        db.refresh(slot)
        logger.info(f"Doctor {doctor.id} added availability slot {slot.id} ({start} - {end})")
        return slot

    @staticmethod
    def delete_slot(db: Session, user: UserContext, doctor_id: int, slot_id: int) -> None:
        """
        Remove a slot the caller owns.

        Raises:
            HTTPException: 404 unknown doctor or slot, 403 not the owner, 409
                if the slot is booked
        """
        get_owned_doctor(db, doctor_id, user)
        slot = db.query(AvailabilitySlot).filter(
            AvailabilitySlot.id == slot_id,
            AvailabilitySlot.doctor_id == doctor_id
        ).first()
        if not slot:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Availability slot not found"
            )
        if slot.mode == SLOT_MODE_BOOKED:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot delete a booked slot; cancel the appointment first"
            )

        db.delete(slot)
        db.commit()
        logger.info(f"Doctor {doctor_id} deleted availability slot {slot_id}")
