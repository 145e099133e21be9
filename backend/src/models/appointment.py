"""
Appointment model representing bookings between patients and doctors.

An appointment is held either against a traditional availability slot
(slot_id set, no explicit times) or against derived wall-clock times on a
date (elastic schedule or recurring template). Switching between the two
modes clears the other mode's fields. Appointments are never deleted;
cancellation and displacement are status transitions.
"""

from datetime import date as date_type, datetime, time
from typing import Optional, Tuple
from sqlalchemy import String, Date, Time, TIMESTAMP, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.constants import ACTIVE_APPOINTMENT_STATUSES
from core.database import Base
from utils.time_utils import format_time


class Appointment(Base):
    """
    Appointment entity for a patient's session with a doctor.

    The `version` column is SQLAlchemy's version counter: every UPDATE checks
    the version it read, so two writers racing on the same appointment cannot
    both succeed (the loser raises StaleDataError).
    """

    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    patient_id: Mapped[int] = mapped_column(ForeignKey("patients.id"))
    """Reference to the patient who booked this appointment."""

    doctor_id: Mapped[int] = mapped_column(ForeignKey("doctors.id"))

    slot_id: Mapped[Optional[int]] = mapped_column(ForeignKey("availability_slots.id"), nullable=True)
    """Traditional slot held by this appointment. NULL in elastic/recurring mode."""

    elastic_schedule_id: Mapped[Optional[int]] = mapped_column(ForeignKey("elastic_schedules.id"), nullable=True)
    """Day schedule the appointment was booked against. NULL for slot mode and template-resolved days."""

    date: Mapped[Optional[date_type]] = mapped_column(Date, nullable=True)
    """Calendar date of the appointment in elastic/recurring mode."""

    start_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)
    end_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)

    status: Mapped[str] = mapped_column(String(30), default='scheduled')
    """Valid values: 'scheduled', 'rescheduled', 'cancelled', 'pending-reschedule'."""

    status_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    """
    Why the system last changed the status. 'schedule_shrink' marks
    appointments displaced by a schedule shrink.
    """

    reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    """Patient-provided reason for the visit."""

    version: Mapped[int] = mapped_column(nullable=False)

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    """Booking time. Overflow redistribution serves appointments in this order."""

    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    patient = relationship("Patient", back_populates="appointments")
    doctor = relationship("Doctor", back_populates="appointments")
    slot = relationship("AvailabilitySlot", back_populates="appointments")
    elastic_schedule = relationship("ElasticSchedule", back_populates="appointments")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "status IN ('scheduled', 'rescheduled', 'cancelled', 'pending-reschedule')",
            name='check_appointment_status'
        ),
        Index('idx_appointments_patient', 'patient_id'),
        Index('idx_appointments_doctor_date', 'doctor_id', 'date'),
        Index('idx_appointments_doctor_date_status', 'doctor_id', 'date', 'status'),
        Index('idx_appointments_elastic_schedule', 'elastic_schedule_id'),
    )

    @property
    def is_active(self) -> bool:
        """Whether this appointment holds its time on the doctor's calendar."""
        return self.status in ACTIVE_APPOINTMENT_STATUSES

    @property
    def is_slot_mode(self) -> bool:
        return self.slot_id is not None

    @property
    def time_key(self) -> Optional[Tuple[str, str]]:
        """("HH:MM", "HH:MM") pair used to match generated slots."""
        if self.start_time is None or self.end_time is None:
            return None
        return format_time(self.start_time), format_time(self.end_time)

    def __repr__(self) -> str:
        return (
            f"<Appointment(id={self.id}, doctor_id={self.doctor_id}, date={self.date}, "
            f"time={self.start_time}-{self.end_time}, status='{self.status}')>"
        )
