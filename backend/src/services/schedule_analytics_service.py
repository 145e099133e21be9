"""
Fill-rate statistics for elastic schedules.

Compares how many slots doctors publish with how many get booked and
suggests whether their session settings could be tuned.
"""

import logging
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from core.constants import ACTIVE_APPOINTMENT_STATUSES, HIGH_FILL_RATE_THRESHOLD, LOW_FILL_RATE_THRESHOLD
from models import Appointment, Doctor, ElasticSchedule
from services.availability_service import ResolvedSchedule
from utils.ownership import get_doctor_or_404

logger = logging.getLogger(__name__)


def recommend_for_fill_rate(fill_rate: float) -> str:
    if fill_rate < LOW_FILL_RATE_THRESHOLD:
        return "Consider increasing slot duration or reducing window."
    if fill_rate > HIGH_FILL_RATE_THRESHOLD:
        return "Consider reducing slot duration or increasing window."
    return "Current settings are optimal."


class ScheduleAnalyticsService:
    """Service class for schedule utilization statistics."""

    @staticmethod
    def get_doctor_stats(db: Session, doctor_id: int) -> Dict[str, Any]:
        """
        Slot and booking totals across all of a doctor's elastic schedules.

        Returns:
            Dict with doctor_id, doctor_name, schedules, total_slots,
            total_booked, fill_rate (0..1), and a recommendation
        """
        doctor = get_doctor_or_404(db, doctor_id)
        schedules = db.query(ElasticSchedule).filter(ElasticSchedule.doctor_id == doctor_id).all()

        total_slots = sum(len(ResolvedSchedule.from_elastic(s).generate_slots()) for s in schedules)
        schedule_ids = [s.id for s in schedules]
        total_booked = 0
        if schedule_ids:
            total_booked = db.query(Appointment).filter(
                Appointment.elastic_schedule_id.in_(schedule_ids),
                Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES)
            ).count()

        fill_rate = total_booked / total_slots if total_slots else 0.0
        return {
            "doctor_id": doctor.id,
            "doctor_name": doctor.name,
            "schedules": len(schedules),
            "total_slots": total_slots,
            "total_booked": total_booked,
            "fill_rate": round(fill_rate, 4),
            "recommendation": recommend_for_fill_rate(fill_rate),
        }

    @staticmethod
    def get_all_doctors_stats(db: Session) -> List[Dict[str, Any]]:
        doctors = db.query(Doctor).order_by(Doctor.id.asc()).all()
        return [ScheduleAnalyticsService.get_doctor_stats(db, doctor.id) for doctor in doctors]
