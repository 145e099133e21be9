"""
Patient model representing individuals who book appointments.

Contact details are read by the notification sink when an appointment is
moved or left pending after a schedule change.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import String, TIMESTAMP, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


class Patient(Base):
    """Patient profile owned by a user account."""

    __tablename__ = "patients"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the patient."""

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    """Account that owns this profile. Only this user may reschedule or cancel the patient's appointments."""

    name: Mapped[str] = mapped_column(String(255))

    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    """Contact email used for rescheduling notices."""

    phone_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    """Contact phone number used for SMS rescheduling notices."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    user = relationship("User", back_populates="patient")
    appointments = relationship("Appointment", back_populates="patient")

    __table_args__ = (
        Index('idx_patients_user', 'user_id'),
    )

    def __repr__(self) -> str:
        return f"<Patient(id={self.id}, name='{self.name}')>"
