"""
Doctor model representing practitioners who hold schedules.

A doctor publishes availability through any of three mechanisms: traditional
availability slots, per-date elastic schedules, or recurring weekly templates
that expand into elastic schedules.
"""

from datetime import datetime
from typing import Optional
from sqlalchemy import String, TIMESTAMP, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


class Doctor(Base):
    """Doctor profile owned by a user account."""

    __tablename__ = "doctors"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    """Unique identifier for the doctor."""

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"))
    """Account that owns this profile. Schedule mutations are restricted to this user."""

    name: Mapped[str] = mapped_column(String(255))
    """Display name used in patient notifications."""

    specialization: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    scheduling_type: Mapped[str] = mapped_column(String(20), default='standard')
    """Preferred scheduling mechanism. Valid values: 'standard', 'elastic'."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    # Relationships
    user = relationship("User", back_populates="doctor")
    appointments = relationship("Appointment", back_populates="doctor")
    elastic_schedules = relationship("ElasticSchedule", back_populates="doctor")
    recurring_schedules = relationship("RecurringSchedule", back_populates="doctor")
    availability_slots = relationship("AvailabilitySlot", back_populates="doctor")

    __table_args__ = (
        Index('idx_doctors_user', 'user_id'),
    )

    def __repr__(self) -> str:
        return f"<Doctor(id={self.id}, name='{self.name}')>"
