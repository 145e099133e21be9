"""
Slot generation for elastic and recurring schedules.

Slots are never stored. They are derived from a session window, a slot
duration, an optional buffer between slots, and an optional cap on the
number of slots.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from utils.time_utils import from_minutes, to_minutes


@dataclass(frozen=True)
class TimeSlot:
    """Half-open wall-clock interval [start_time, end_time)."""

    start_time: str
    end_time: str

    @property
    def key(self) -> Tuple[str, str]:
        return self.start_time, self.end_time

    @property
    def start_minutes(self) -> int:
        return to_minutes(self.start_time)

    @property
    def end_minutes(self) -> int:
        return to_minutes(self.end_time)

    def to_dict(self) -> Dict[str, str]:
        return {"start_time": self.start_time, "end_time": self.end_time}


def generate_slots(
    start: str,
    end: str,
    duration: int,
    buffer: int = 0,
    max_count: Optional[int] = None,
) -> List[TimeSlot]:
    """
    Generate consecutive slots inside a window.

    Starting at `start`, emits [t, t + duration) while it ends no later than
    `end`, advancing t by duration + buffer each time. Generation stops once
    `max_count` slots are emitted; a missing or zero `max_count` is uncapped.

    Args:
        start: Window start as "HH:MM"
        end: Window end as "HH:MM"
        duration: Slot length in minutes
        buffer: Gap in minutes between consecutive slots
        max_count: Maximum number of slots to emit

    Returns:
        Slots in chronological order. Empty when the window is shorter than
        one slot.

    Raises:
        ValueError: If duration is not positive, buffer is negative, or a
            time string is malformed
    """
    if duration <= 0:
        raise ValueError(f"Slot duration must be positive, got {duration}")
    if buffer < 0:
        raise ValueError(f"Buffer time cannot be negative, got {buffer}")

    window_start = to_minutes(start)
    window_end = to_minutes(end)

    slots: List[TimeSlot] = []
    current = window_start
    while current + duration <= window_end:
        if max_count and len(slots) >= max_count:
            break
        slots.append(TimeSlot(from_minutes(current), from_minutes(current + duration)))
        current += duration + buffer
    return slots


def count_slots(start: str, end: str, duration: int, buffer: int = 0, max_count: Optional[int] = None) -> int:
    """Number of slots generate_slots would emit for the same arguments."""
    return len(generate_slots(start, end, duration, buffer, max_count))


def pack_back_to_back(window_start: str, count: int, duration: int, buffer: int = 0) -> List[TimeSlot]:
    """
    Lay out `count` consecutive slots from `window_start`.

    Used when compacting a shrunk schedule; the caller has already checked
    that the slots fit.
    """
    start = to_minutes(window_start)
    return [
        TimeSlot(
            from_minutes(start + index * (duration + buffer)),
            from_minutes(start + index * (duration + buffer) + duration),
        )
        for index in range(count)
    ]
