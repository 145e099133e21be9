"""
Recurring schedule model for weekly schedule templates.

A template describes a doctor's session (window, slot length, buffer, and
capacity) on selected weekdays. Expanding a template materializes one
ElasticSchedule per matching date, tagged with the template id.
"""

from datetime import date, datetime, time
from typing import List, Optional
from sqlalchemy import String, Boolean, Date, Time, TIMESTAMP, ForeignKey, Index, CheckConstraint, JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from utils.time_utils import to_minutes


class RecurringSchedule(Base):
    """
    Weekly template that expands into per-date elastic schedules.

    Dates already holding a schedule are skipped during expansion unless the
    caller explicitly asks to override them, so manual per-date edits survive
    regeneration.
    """

    __tablename__ = "recurring_schedules"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    doctor_id: Mapped[int] = mapped_column(ForeignKey("doctors.id"))
    """Doctor who owns this template."""

    name: Mapped[str] = mapped_column(String(255))
    """Human-readable label, e.g. 'Weekday mornings'."""

    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)

    slot_duration: Mapped[int] = mapped_column()
    """Length of each bookable slot in minutes."""

    buffer_time: Mapped[int] = mapped_column(default=0)
    """Gap in minutes between consecutive slots."""

    max_appointments: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Cap on slots per session. NULL means uncapped."""

    days_of_week: Mapped[List[int]] = mapped_column(JSON)
    """Weekdays this template covers, 0=Sunday through 6=Saturday."""

    weeks_ahead: Mapped[int] = mapped_column(default=4)
    """Default expansion horizon in weeks."""

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    """Inactive templates are ignored by slot resolution and cannot be expanded."""

    allow_overrides: Mapped[bool] = mapped_column(Boolean, default=True)
    """Whether single dates may be overridden with different hours."""

    auto_generate: Mapped[bool] = mapped_column(Boolean, default=True)
    """Whether the template takes part in batch auto-generation."""

    last_generated_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    """End date of the most recent expansion."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    doctor = relationship("Doctor", back_populates="recurring_schedules")
    generated_schedules = relationship("ElasticSchedule", back_populates="recurring_template")

    __table_args__ = (
        CheckConstraint("start_time < end_time", name='check_recurring_time_range'),
        CheckConstraint("slot_duration > 0", name='check_recurring_slot_duration'),
        Index('idx_recurring_schedules_doctor_active', 'doctor_id', 'is_active'),
    )

    def covers_weekday(self, weekday: int) -> bool:
        """Check whether a Sunday-based weekday number belongs to this template."""
        return weekday in (self.days_of_week or [])

    @property
    def window_minutes(self) -> int:
        return to_minutes(self.end_time) - to_minutes(self.start_time)

    def __repr__(self) -> str:
        return (
            f"<RecurringSchedule(id={self.id}, doctor_id={self.doctor_id}, "
            f"days={self.days_of_week}, time={self.start_time}-{self.end_time})>"
        )
