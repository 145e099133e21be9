"""
Elastic schedule model representing a doctor's bookable session on one date.

Elastic schedules are either entered manually for a specific date or
generated from a recurring template. When several exist for the same doctor
and date, manual rows govern over template rows, and among equals the most
recently created row wins.
"""

from datetime import date as date_type, datetime, time
from typing import Optional
from sqlalchemy import String, Boolean, Date, Time, TIMESTAMP, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base
from utils.time_utils import to_minutes


class ElasticSchedule(Base):
    """
    Day schedule from which bookable slots are generated.

    Slots are not stored; they are computed on demand from the window, slot
    duration, buffer, and capacity. Appointments booked against this schedule
    keep a reference to it.

    Every elastic booking touches the row, so `version` changes with each
    booking and two bookings that read the same version cannot both commit.
    """

    __tablename__ = "elastic_schedules"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    doctor_id: Mapped[int] = mapped_column(ForeignKey("doctors.id"))
    """Doctor whose session this is."""

    date: Mapped[date_type] = mapped_column(Date)
    """Calendar date of the session."""

    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)

    slot_duration: Mapped[int] = mapped_column()
    """Length of each bookable slot in minutes."""

    buffer_time: Mapped[int] = mapped_column(default=0)
    """Gap in minutes between consecutive slots."""

    max_appointments: Mapped[Optional[int]] = mapped_column(nullable=True)
    """Cap on slots for the session. NULL means uncapped."""

    recurring_template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_schedules.id", ondelete="SET NULL"), nullable=True
    )
    """Template this row was generated from. NULL for manually created schedules."""

    is_override: Mapped[bool] = mapped_column(Boolean, default=False)
    """True when a template date was overridden with different hours."""

    override_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    version: Mapped[int] = mapped_column(nullable=False)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    doctor = relationship("Doctor", back_populates="elastic_schedules")
    recurring_template = relationship("RecurringSchedule", back_populates="generated_schedules")
    appointments = relationship("Appointment", back_populates="elastic_schedule")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("start_time < end_time", name='check_elastic_time_range'),
        CheckConstraint("slot_duration > 0", name='check_elastic_slot_duration'),
        Index('idx_elastic_schedules_doctor_date', 'doctor_id', 'date'),
        Index('idx_elastic_schedules_template', 'recurring_template_id'),
    )

    @property
    def is_manual(self) -> bool:
        return self.recurring_template_id is None

    @property
    def window_minutes(self) -> int:
        """Length of the session window in minutes."""
        return to_minutes(self.end_time) - to_minutes(self.start_time)

    def __repr__(self) -> str:
        return (
            f"<ElasticSchedule(id={self.id}, doctor_id={self.doctor_id}, date={self.date}, "
            f"time={self.start_time}-{self.end_time}, slot={self.slot_duration}m)>"
        )
