"""
Availability slot model for traditional fixed-slot scheduling.

Doctors using the standard scheduling type publish explicit slots. A booked
slot is held by exactly one active appointment.
"""

from datetime import datetime
from sqlalchemy import String, TIMESTAMP, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


class AvailabilitySlot(Base):
    """Explicit bookable interval published by a doctor."""

    __tablename__ = "availability_slots"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    doctor_id: Mapped[int] = mapped_column(ForeignKey("doctors.id"))

    start_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))
    end_time: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True))

    mode: Mapped[str] = mapped_column(String(20), default='available')
    """Valid values: 'available', 'booked', 'unavailable'."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    doctor = relationship("Doctor", back_populates="availability_slots")
    appointments = relationship("Appointment", back_populates="slot")

    __table_args__ = (
        CheckConstraint("mode IN ('available', 'booked', 'unavailable')", name='check_slot_mode'),
        Index('idx_availability_slots_doctor_start', 'doctor_id', 'start_time'),
    )

    def __repr__(self) -> str:
        return f"<AvailabilitySlot(id={self.id}, doctor_id={self.doctor_id}, mode='{self.mode}')>"
