"""
Schedule shrink handling.

When a doctor narrows a day schedule's window, shortens its slots, or lowers
its capacity after appointments exist, the day's appointments are
reclassified and, if any no longer fit, the whole day is re-packed:

1. Uniform compaction: try progressively shorter slot lengths until every
   appointment fits back-to-back inside the new window.
2. Partial compaction: otherwise keep as many appointments as possible (the
   earliest ones), using the slot length that fits the most.
3. Whatever does not fit is displaced and handed to overflow redistribution.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from fastapi import HTTPException, status
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.constants import (
    ACTIVE_APPOINTMENT_STATUSES, APPOINTMENT_STATUS_CANCELLED, APPOINTMENT_STATUS_SCHEDULED,
    MIN_COMPACTED_SLOT_MINUTES, PROGRESSIVE_SLOT_DURATIONS, STATUS_REASON_SCHEDULE_SHRINK,
)
from models import Appointment, ElasticSchedule
from services.notification_service import NotificationSink
from services.redistribution_service import RedistributionService
from services.slot_generator import pack_back_to_back
from utils.datetime_utils import format_date
from utils.time_utils import format_time, parse_time_string, to_minutes

logger = logging.getLogger(__name__)

METHOD_NO_CHANGE = "no_change"
METHOD_UNIFORM = "uniform_compaction"
METHOD_PARTIAL = "partial_compaction"
METHOD_NO_FIT = "no_fit"


@dataclass
class CompactionPlan:
    """Outcome of choosing a slot length for a shrunk window."""

    method: str
    duration: Optional[int]
    fitted_count: int


@dataclass
class ShrinkClassification:
    """Appointments of a day partitioned against the new window and capacity."""

    fits: List[Appointment] = field(default_factory=list)
    outside_time_range: List[Appointment] = field(default_factory=list)
    capacity_overflow: List[Appointment] = field(default_factory=list)
    definite_overflow: List[Appointment] = field(default_factory=list)

    @property
    def overflow(self) -> List[Appointment]:
        """Union of all overflow categories, de-duplicated by id."""
        seen = set()
        result = []
        for appointment in self.outside_time_range + self.capacity_overflow + self.definite_overflow:
            if appointment.id not in seen:
                seen.add(appointment.id)
                result.append(appointment)
        return result

    @property
    def participants(self) -> List[Appointment]:
        """Every appointment taking part in compaction, in original start order."""
        combined = self.fits + self.outside_time_range + self.capacity_overflow + self.definite_overflow
        return sorted(combined, key=_start_order_key)


def _start_order_key(appointment: Appointment):
    return (to_minutes(appointment.start_time), appointment.id)


def _is_displaced_by_shrink(appointment: Appointment) -> bool:
    return (
        appointment.status == APPOINTMENT_STATUS_CANCELLED
        and appointment.status_reason == STATUS_REASON_SCHEDULE_SHRINK
    )


def candidate_durations(slot_duration: int) -> List[int]:
    """
    Slot lengths to try when compacting, longest first.

    Compaction never lengthens appointments beyond the schedule's own slot
    duration and never goes below the minimum compacted length.
    """
    ceiling = max(slot_duration, MIN_COMPACTED_SLOT_MINUTES)
    durations = [d for d in PROGRESSIVE_SLOT_DURATIONS if MIN_COMPACTED_SLOT_MINUTES <= d <= ceiling]
    return durations or [MIN_COMPACTED_SLOT_MINUTES]


def plan_compaction(
    count: int,
    window_minutes: int,
    buffer_time: int,
    max_appointments: Optional[int],
    durations: Sequence[int] = PROGRESSIVE_SLOT_DURATIONS
) -> CompactionPlan:
    """
    Choose a slot length for packing `count` appointments into a window.

    Uniform fit: the first duration D (in the given order) for which
    count * D + (count - 1) * buffer fits the window and count respects the
    capacity. Partial fit: otherwise the D maximizing
    min(window // (D + buffer), capacity, count); on ties the earlier
    (longer) D is kept.

    Args:
        count: Number of appointments to place
        window_minutes: Length of the new window
        buffer_time: Gap between consecutive appointments
        max_appointments: Capacity; falsy means uncapped
        durations: Candidate slot lengths, longest first

    Returns:
        CompactionPlan with the method, chosen duration, and fitted count
    """
    if count <= 0:
        return CompactionPlan(method=METHOD_NO_CHANGE, duration=None, fitted_count=0)

    within_capacity = not max_appointments or count <= max_appointments
    for duration in durations:
        needed = count * duration + (count - 1) * buffer_time
        if needed <= window_minutes and within_capacity:
            return CompactionPlan(method=METHOD_UNIFORM, duration=duration, fitted_count=count)

    best_duration: Optional[int] = None
    best_fit = 0
    for duration in durations:
        fit = max(window_minutes, 0) // (duration + buffer_time)
        if max_appointments:
            fit = min(fit, max_appointments)
        fit = min(fit, count)
        if fit > best_fit:
            best_duration, best_fit = duration, fit

    if best_fit == 0:
        return CompactionPlan(method=METHOD_NO_FIT, duration=None, fitted_count=0)
    return CompactionPlan(method=METHOD_PARTIAL, duration=best_duration, fitted_count=best_fit)


def classify_appointments(
    appointments: Sequence[Appointment],
    window_start: int,
    window_end: int,
    max_appointments: Optional[int]
) -> ShrinkClassification:
    """
    Partition a day's appointments against a window and capacity.

    Pure function. Active appointments lying inside [window_start,
    window_end) fit unless they exceed the capacity (the earliest are kept);
    active appointments outside the window overflow; appointments already
    displaced by an earlier shrink are definite overflow.
    """
    classification = ShrinkClassification()
    for appointment in sorted(appointments, key=_start_order_key):
        if _is_displaced_by_shrink(appointment):
            classification.definite_overflow.append(appointment)
            continue
        if appointment.status not in ACTIVE_APPOINTMENT_STATUSES:
            continue
        start = to_minutes(appointment.start_time)
        end = to_minutes(appointment.end_time)
        if window_start <= start and end <= window_end:
            classification.fits.append(appointment)
        else:
            classification.outside_time_range.append(appointment)

    if max_appointments and len(classification.fits) > max_appointments:
        classification.capacity_overflow = classification.fits[max_appointments:]
        classification.fits = classification.fits[:max_appointments]

    return classification


class ScheduleShrinkService:
    """Reconciles a day's appointments with a changed elastic schedule."""

    @staticmethod
    def get_day_appointments(db: Session, schedule: ElasticSchedule) -> List[Appointment]:
        """Active and shrink-displaced appointments on the schedule's doctor and date."""
        return db.query(Appointment).filter(
            Appointment.doctor_id == schedule.doctor_id,
            Appointment.date == schedule.date,
            Appointment.start_time.isnot(None),
            Appointment.end_time.isnot(None),
            or_(
                Appointment.status.in_(ACTIVE_APPOINTMENT_STATUSES),
                and_(
                    Appointment.status == APPOINTMENT_STATUS_CANCELLED,
                    Appointment.status_reason == STATUS_REASON_SCHEDULE_SHRINK
                )
            )
        ).order_by(Appointment.start_time.asc(), Appointment.id.asc()).all()

    @staticmethod
    def classify(db: Session, schedule: ElasticSchedule) -> ShrinkClassification:
        return classify_appointments(
            ScheduleShrinkService.get_day_appointments(db, schedule),
            to_minutes(schedule.start_time),
            to_minutes(schedule.end_time),
            schedule.max_appointments,
        )

    @staticmethod
    def handle_schedule_change(
        db: Session,
        schedule: ElasticSchedule,
        notifier: Optional[NotificationSink] = None
    ) -> Dict[str, Any]:
        """
        Re-pack a day after its schedule changed and redistribute what no longer fits.

        Nothing is touched when every appointment still fits, so re-running
        with an unchanged schedule is a no-op.

        Args:
            db: Database session
            schedule: The changed (already flushed) elastic schedule
            notifier: Sink for rescheduling notifications

        Returns:
            Summary dict with the method, chosen duration, counts,
            classification ids, per-appointment changes, and the
            redistribution result

        Raises:
            HTTPException: 409 if an appointment was modified concurrently
                while re-packing
        """
        classification = ScheduleShrinkService.classify(db, schedule)
        overflow_ids = [a.id for a in classification.overflow]

        summary: Dict[str, Any] = {
            "schedule_id": schedule.id,
            "date": format_date(schedule.date),
            "classification": {
                "fits": [a.id for a in classification.fits],
                "outside_time_range": [a.id for a in classification.outside_time_range],
                "capacity_overflow": [a.id for a in classification.capacity_overflow],
                "definite_overflow": [a.id for a in classification.definite_overflow],
            },
        }

        if not overflow_ids:
            db.commit()
            logger.info(f"Schedule {schedule.id} change leaves all {len(classification.fits)} appointments in place")
            summary.update({
                "method": METHOD_NO_CHANGE,
                "slot_duration": None,
                "counts": ScheduleShrinkService._counts(len(classification.fits), METHOD_NO_CHANGE, 0, 0, 0, 0),
                "changes": [],
                "redistribution": None,
            })
            return summary

        participants = classification.participants
        plan = plan_compaction(
            len(participants),
            schedule.window_minutes,
            schedule.buffer_time or 0,
            schedule.max_appointments,
            candidate_durations(schedule.slot_duration),
        )
        logger.info(
            f"Schedule {schedule.id} shrink: {len(participants)} appointments, {len(overflow_ids)} overflowing, "
            f"plan={plan.method} duration={plan.duration} fitted={plan.fitted_count}"
        )

        before = {a.id: (format_time(a.start_time), format_time(a.end_time)) for a in participants}
        fitted = participants[:plan.fitted_count]
        displaced = participants[plan.fitted_count:]

        if fitted:
            assert plan.duration is not None
            packed = pack_back_to_back(format_time(schedule.start_time), len(fitted), plan.duration, schedule.buffer_time or 0)
            for appointment, slot in zip(fitted, packed):
                appointment.start_time = parse_time_string(slot.start_time)
                appointment.end_time = parse_time_string(slot.end_time)
                appointment.elastic_schedule_id = schedule.id
                appointment.status = APPOINTMENT_STATUS_SCHEDULED
                appointment.status_reason = None

        for appointment in displaced:
            appointment.status = APPOINTMENT_STATUS_CANCELLED
            appointment.status_reason = STATUS_REASON_SCHEDULE_SHRINK

        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            logger.warning(f"Appointments of schedule {schedule.id} changed while re-packing")
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Appointments changed while adjusting the schedule, please retry"
            )

        changes = [
            {
                "appointment_id": appointment.id,
                "before": {"start_time": before[appointment.id][0], "end_time": before[appointment.id][1]},
                "after": {"start_time": format_time(appointment.start_time), "end_time": format_time(appointment.end_time)},
                "status": appointment.status,
            }
            for appointment in fitted
        ] + [
            {
                "appointment_id": appointment.id,
                "before": {"start_time": before[appointment.id][0], "end_time": before[appointment.id][1]},
                "after": None,
                "status": appointment.status,
            }
            for appointment in displaced
        ]

        redistribution = RedistributionService.redistribute_overflow(
            db, displaced, schedule.date, schedule.buffer_time or 0, notifier
        )

        summary.update({
            "method": plan.method,
            "slot_duration": plan.duration,
            "counts": ScheduleShrinkService._counts(
                len(participants), plan.method, len(fitted), len(displaced),
                len(redistribution["rescheduled"]), len(redistribution["pending"]),
            ),
            "changes": changes,
            "redistribution": redistribution,
        })
        return summary

    @staticmethod
    def _counts(total: int, method: str, fitted: int, overflow: int, rescheduled: int, pending: int) -> Dict[str, int]:
        return {
            "total": total,
            "fitted_uniformly": fitted if method == METHOD_UNIFORM else 0,
            "fitted_partially": fitted if method == METHOD_PARTIAL else 0,
            "overflow": overflow,
            "auto_rescheduled": rescheduled,
            "pending_manual": pending,
        }
