"""
Overflow redistribution across future days and time-of-day buckets.

Appointments displaced by a schedule shrink are served first-come
first-served (by booking time). Each one takes the first free slot found
while walking the next days bucket by bucket; slots taken earlier in the
same run are tracked in a ClaimedSlots set so two displaced patients never
land on the same slot. Appointments that find nothing become
'pending-reschedule' and their patients get a list of sessions to consider.
"""

import logging
from dataclasses import dataclass
from datetime import date as date_type, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from fastapi import HTTPException, status
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from auth.dependencies import UserContext
from core.config import (
    MORNING_BUCKET_START, AFTERNOON_BUCKET_START, EVENING_BUCKET_START, EVENING_BUCKET_END,
    REDISTRIBUTION_SEARCH_DAYS,
)
from core.constants import (
    APPOINTMENT_STATUS_PENDING_RESCHEDULE, APPOINTMENT_STATUS_RESCHEDULED,
    MAX_ALTERNATIVE_SUGGESTIONS, STATUS_REASON_SCHEDULE_SHRINK,
)
from models import Appointment, ElasticSchedule
from services.availability_service import AvailabilityService, ResolvedSchedule
from services.notification_service import (
    AlternativeSlot, LoggingNotificationSink, NotificationService, NotificationSink, NotificationType,
)
from services.slot_generator import TimeSlot
from utils.datetime_utils import ensure_clinic_tz, format_date
from utils.ownership import get_owned_doctor
from utils.time_utils import format_time, parse_time_string, to_minutes

logger = logging.getLogger(__name__)

BUCKET_MORNING = "morning"
BUCKET_AFTERNOON = "afternoon"
BUCKET_EVENING = "evening"

OVERFLOW_REASON_CANCELLED_BY_SHRINK = "cancelled_by_shrink"
OVERFLOW_REASON_EXCEEDS_CAPACITY = "exceeds_capacity"
OVERFLOW_REASON_OUTSIDE_TIME_RANGE = "outside_time_range"


@dataclass(frozen=True)
class TimeBucket:
    """
    Named part of the day; a slot belongs to the bucket its start falls in.

    start and end are the nominal clinic hours of the bucket. Membership
    follows classify_time_bucket, so the morning bucket also takes anything
    before its start and the evening bucket anything after its end.
    """

    name: str
    start: str
    end: str

    def contains(self, slot: TimeSlot) -> bool:
        return classify_time_bucket(slot.start_time) == self.name


def get_time_buckets() -> List[TimeBucket]:
    """Morning, afternoon, and evening buckets in search order."""
    return [
        TimeBucket(BUCKET_MORNING, MORNING_BUCKET_START, AFTERNOON_BUCKET_START),
        TimeBucket(BUCKET_AFTERNOON, AFTERNOON_BUCKET_START, EVENING_BUCKET_START),
        TimeBucket(BUCKET_EVENING, EVENING_BUCKET_START, EVENING_BUCKET_END),
    ]


def classify_time_bucket(start_time: str) -> str:
    """Bucket name for a start time; anything from the evening start on is evening."""
    minutes = to_minutes(start_time)
    if minutes < to_minutes(AFTERNOON_BUCKET_START):
        return BUCKET_MORNING
    if minutes < to_minutes(EVENING_BUCKET_START):
        return BUCKET_AFTERNOON
    return BUCKET_EVENING


class ClaimedSlots:
    """Slots handed out during one redistribution run, keyed by date and times."""

    def __init__(self) -> None:
        self._claimed: Set[Tuple[date_type, str, str]] = set()

    def claim(self, day: date_type, slot: TimeSlot) -> None:
        self._claimed.add((day, slot.start_time, slot.end_time))

    def release(self, day: date_type, slot: TimeSlot) -> None:
        self._claimed.discard((day, slot.start_time, slot.end_time))

    def is_claimed(self, day: date_type, slot: TimeSlot) -> bool:
        return (day, slot.start_time, slot.end_time) in self._claimed

    def __len__(self) -> int:
        return len(self._claimed)


@dataclass
class SearchTarget:
    """One (date, bucket) cell of a redistribution search. No bucket means the whole day."""

    date: date_type
    bucket: Optional[TimeBucket]
    day_offset: int
    label: Optional[str] = None


def build_search_targets(original_date: date_type, search_days: int) -> List[SearchTarget]:
    """Days +1..+search_days, each walked morning, afternoon, then evening."""
    buckets = get_time_buckets()
    return [
        SearchTarget(date=original_date + timedelta(days=offset), bucket=bucket, day_offset=offset)
        for offset in range(1, search_days + 1)
        for bucket in buckets
    ]


def build_priority_targets(original_date: date_type, session_bucket: str) -> List[SearchTarget]:
    """
    Narrow search order for the priority preview.

    Morning sessions look at the same day's afternoon and evening before the
    next day; afternoon sessions at the same evening; evening sessions go
    straight to the next day.
    """
    buckets = {bucket.name: bucket for bucket in get_time_buckets()}
    next_day = SearchTarget(
        date=original_date + timedelta(days=1), bucket=None, day_offset=1, label="next_day"
    )
    same_day_afternoon = SearchTarget(
        date=original_date, bucket=buckets[BUCKET_AFTERNOON], day_offset=0, label="same_day_afternoon"
    )
    same_day_evening = SearchTarget(
        date=original_date, bucket=buckets[BUCKET_EVENING], day_offset=0, label="same_day_evening"
    )
    if session_bucket == BUCKET_MORNING:
        return [same_day_afternoon, same_day_evening, next_day]
    if session_bucket == BUCKET_AFTERNOON:
        return [same_day_evening, next_day]
    return [next_day]


class RedistributionService:
    """Moves displaced appointments to free slots on following days."""

    @staticmethod
    def fifo_order(appointments: Sequence[Appointment]) -> List[Appointment]:
        """Booking order: earliest created first, id breaking ties."""
        return sorted(appointments, key=lambda a: (ensure_clinic_tz(a.created_at), a.id))

    @staticmethod
    def redistribute_overflow(
        db: Session,
        appointments: Sequence[Appointment],
        original_date: date_type,
        buffer_time: int = 0,
        notifier: Optional[NotificationSink] = None,
        claimed: Optional[ClaimedSlots] = None,
        search_days: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Redistribute displaced appointments across the following days.

        Args:
            db: Database session
            appointments: Displaced appointments, in any order
            original_date: Date they were displaced from
            buffer_time: Buffer of the shrunk schedule; target days use their own
            notifier: Sink receiving one notification per outcome
            claimed: Slots already handed out in this batch
            search_days: How many days ahead to search

        Returns:
            Dict with 'rescheduled' and 'pending' outcome lists and 'stats'
        """
        days = search_days if search_days is not None else REDISTRIBUTION_SEARCH_DAYS
        targets = build_search_targets(original_date, days)
        logger.info(
            f"Redistributing {len(appointments)} appointments from {original_date} over {days} days "
            f"(buffer {buffer_time}m)"
        )
        return RedistributionService._redistribute(db, appointments, lambda _: targets, notifier, claimed)

    @staticmethod
    def _redistribute(
        db: Session,
        appointments: Sequence[Appointment],
        targets_for: Callable[[Appointment], List[SearchTarget]],
        notifier: Optional[NotificationSink],
        claimed: Optional[ClaimedSlots]
    ) -> Dict[str, Any]:
        sink = notifier if notifier is not None else LoggingNotificationSink()
        claimed_slots = claimed if claimed is not None else ClaimedSlots()

        rescheduled: List[Dict[str, Any]] = []
        pending: List[Dict[str, Any]] = []

        for appointment in RedistributionService.fifo_order(appointments):
            assert appointment.date is not None
            old_date = appointment.date
            old_start, old_end = format_time(appointment.start_time), format_time(appointment.end_time)
            base = {
                "appointment_id": appointment.id,
                "patient_id": appointment.patient_id,
                "old_date": format_date(old_date),
                "old_start_time": old_start,
                "old_end_time": old_end,
            }

            placement, alternatives = RedistributionService._place(
                db, appointment, targets_for(appointment), claimed_slots
            )

            if placement is not None:
                target, slot = placement
                notification = NotificationService.build_rescheduling_notification(
                    appointment, old_date, old_start, NotificationType.RESCHEDULED
                )
                rescheduled.append({
                    **base,
                    "new_date": format_date(target.date),
                    "new_start_time": slot.start_time,
                    "new_end_time": slot.end_time,
                    "bucket": target.bucket.name if target.bucket else classify_time_bucket(slot.start_time),
                    "day_offset": target.day_offset,
                    "elastic_schedule_id": appointment.elastic_schedule_id,
                    "notified": NotificationService.dispatch(sink, notification),
                })
                continue

            appointment.status = APPOINTMENT_STATUS_PENDING_RESCHEDULE
            appointment.status_reason = STATUS_REASON_SCHEDULE_SHRINK
            try:
                db.commit()
            except StaleDataError:
                db.rollback()
                logger.warning(f"Appointment {appointment.id} changed concurrently; leaving it untouched")
                continue

            logger.info(f"No slot found for appointment {appointment.id}; marked pending-reschedule")
            notification = NotificationService.build_rescheduling_notification(
                appointment, old_date, old_start, NotificationType.PENDING, alternatives
            )
            pending.append({
                **base,
                "alternatives": [alt.model_dump() for alt in alternatives],
                "notified": NotificationService.dispatch(sink, notification),
            })

        return {
            "rescheduled": rescheduled,
            "pending": pending,
            "stats": {
                "total": len(rescheduled) + len(pending),
                "auto_rescheduled": len(rescheduled),
                "pending_manual": len(pending),
                "days_used": sorted({item["new_date"] for item in rescheduled}),
                "buckets_used": sorted({item["bucket"] for item in rescheduled}),
            },
        }

    @staticmethod
    def _place(
        db: Session,
        appointment: Appointment,
        targets: List[SearchTarget],
        claimed: ClaimedSlots
    ) -> Tuple[Optional[Tuple[SearchTarget, TimeSlot]], List[AlternativeSlot]]:
        """
        Find, claim, and commit the first usable slot for one appointment.

        Returns:
            ((target, slot) or None, alternatives gathered along the way)
        """
        alternatives: List[AlternativeSlot] = []
        resolved_by_date: Dict[date_type, Optional[ResolvedSchedule]] = {}

        for target in targets:
            if target.date not in resolved_by_date:
                resolved_by_date[target.date] = AvailabilityService.resolve_schedule(
                    db, appointment.doctor_id, target.date
                )
            resolved = resolved_by_date[target.date]
            if resolved is None:
                continue

            bucket = target.bucket
            session_slots = [s for s in resolved.generate_slots() if bucket is None or bucket.contains(s)]
            if session_slots and len(alternatives) < MAX_ALTERNATIVE_SUGGESTIONS:
                alternatives.append(AlternativeSlot(
                    date=format_date(target.date),
                    time=session_slots[0].start_time,
                    time_bucket=target.bucket.name if target.bucket else classify_time_bucket(session_slots[0].start_time),
                ))

            free_slots = AvailabilityService.get_free_slots(db, resolved, exclude_appointment_id=appointment.id)
            for slot in free_slots:
                if bucket is not None and not bucket.contains(slot):
                    continue
                if claimed.is_claimed(target.date, slot):
                    continue
                if RedistributionService._try_commit(db, appointment, resolved, target, slot, claimed):
                    return (target, slot), alternatives

        return None, alternatives

    @staticmethod
    def _try_commit(
        db: Session,
        appointment: Appointment,
        resolved: ResolvedSchedule,
        target: SearchTarget,
        slot: TimeSlot,
        claimed: ClaimedSlots
    ) -> bool:
        """Re-validate a slot against persisted bookings, then move the appointment into it."""
        conflict = AvailabilityService.find_conflicting_appointment(
            db, appointment.doctor_id, target.date, slot.start_minutes, slot.end_minutes,
            exclude_appointment_id=appointment.id
        )
        if conflict is not None:
            logger.info(f"Slot {slot.key} on {target.date} was taken by appointment {conflict.id}; trying next")
            return False

        claimed.claim(target.date, slot)
        appointment.date = target.date
        appointment.start_time = parse_time_string(slot.start_time)
        appointment.end_time = parse_time_string(slot.end_time)
        appointment.elastic_schedule_id = resolved.elastic_schedule_id
        appointment.slot_id = None
        appointment.status = APPOINTMENT_STATUS_RESCHEDULED
        appointment.status_reason = STATUS_REASON_SCHEDULE_SHRINK
        try:
            db.commit()
        except StaleDataError:
            db.rollback()
            claimed.release(target.date, slot)
            logger.warning(f"Appointment {appointment.id} changed while being moved to {target.date} {slot.key}")
            return False

        logger.info(
            f"Moved appointment {appointment.id} to {target.date} {slot.start_time}-{slot.end_time}"
        )
        return True

    @staticmethod
    def _overflow_reason(appointment: Appointment, capacity_ids: Set[int]) -> str:
        if appointment.id in capacity_ids:
            return OVERFLOW_REASON_EXCEEDS_CAPACITY
        if appointment.is_active:
            return OVERFLOW_REASON_OUTSIDE_TIME_RANGE
        return OVERFLOW_REASON_CANCELLED_BY_SHRINK

    @staticmethod
    def _load_owned_schedule(db: Session, schedule_id: int, user: UserContext) -> ElasticSchedule:
        schedule = db.query(ElasticSchedule).filter(ElasticSchedule.id == schedule_id).first()
        if not schedule:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Elastic schedule not found"
            )
        get_owned_doctor(db, schedule.doctor_id, user)
        return schedule

    @staticmethod
    def _overflow_for_schedule(db: Session, schedule: ElasticSchedule) -> Tuple[List[Appointment], Set[int]]:
        # Imported here to avoid a circular import with the shrink service
        from services.schedule_shrink_service import ScheduleShrinkService
        classification = ScheduleShrinkService.classify(db, schedule)
        capacity_ids = {a.id for a in classification.capacity_overflow}
        return RedistributionService.fifo_order(classification.overflow), capacity_ids

    @staticmethod
    def get_overflow_with_priority(db: Session, schedule_id: int, user: UserContext) -> List[Dict[str, Any]]:
        """
        Preview a schedule's overflow with the narrow search each item would get.

        Args:
            db: Database session
            schedule_id: Elastic schedule to inspect
            user: Authenticated doctor who owns the schedule

        Returns:
            Overflow items in FIFO order, each with its session bucket, search
            priority, overflow reason, and whether it still needs a new time

        Raises:
            HTTPException: 404 if the schedule does not exist, 403 if the caller
                does not own it
        """
        schedule = RedistributionService._load_owned_schedule(db, schedule_id, user)
        overflow, capacity_ids = RedistributionService._overflow_for_schedule(db, schedule)

        items = []
        for appointment in overflow:
            start = format_time(appointment.start_time)
            session_bucket = classify_time_bucket(start)
            items.append({
                "appointment_id": appointment.id,
                "patient_id": appointment.patient_id,
                "patient_name": appointment.patient.name,
                "date": format_date(schedule.date),
                "start_time": start,
                "end_time": format_time(appointment.end_time),
                "status": appointment.status,
                "created_at": ensure_clinic_tz(appointment.created_at),
                "overflow_reason": RedistributionService._overflow_reason(appointment, capacity_ids),
                "session_bucket": session_bucket,
                "search_priority": [
                    {
                        "label": target.label,
                        "date": format_date(target.date),
                        "bucket": target.bucket.name if target.bucket else None,
                    }
                    for target in build_priority_targets(schedule.date, session_bucket)
                ],
                # Displaced appointments are waiting; active ones still hold their time
                "needs_reschedule": not appointment.is_active,
            })
        return items

    @staticmethod
    def reschedule_overflow_with_priority(
        db: Session,
        schedule_id: int,
        user: UserContext,
        notifier: Optional[NotificationSink] = None
    ) -> Dict[str, Any]:
        """
        Move a schedule's overflow using the narrow priority search.

        Same claiming, re-validation, notification, and pending semantics as
        redistribute_overflow, but each appointment only tries the targets
        listed by get_overflow_with_priority.
        """
        schedule = RedistributionService._load_owned_schedule(db, schedule_id, user)
        overflow, _ = RedistributionService._overflow_for_schedule(db, schedule)

        def targets_for(appointment: Appointment) -> List[SearchTarget]:
            return build_priority_targets(schedule.date, classify_time_bucket(format_time(appointment.start_time)))

        logger.info(f"Priority rescheduling {len(overflow)} overflow appointments of schedule {schedule.id}")
        return RedistributionService._redistribute(db, overflow, targets_for, notifier, None)
