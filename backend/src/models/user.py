"""
User model for authenticated accounts.

A user is the identity behind a doctor or patient profile. Credentials and
token issuance live with the identity provider; this table only carries what
scheduling needs for ownership checks.
"""

from datetime import datetime
from sqlalchemy import String, TIMESTAMP, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.database import Base


class User(Base):
    """Account that owns exactly one doctor or patient profile."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)

    email: Mapped[str] = mapped_column(String(255), unique=True)

    role: Mapped[str] = mapped_column(String(20))
    """Account role. Valid values: 'doctor', 'patient'."""

    created_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(TIMESTAMP(timezone=True), nullable=False)

    doctor = relationship("Doctor", back_populates="user", uselist=False)
    patient = relationship("Patient", back_populates="user", uselist=False)

    __table_args__ = (
        CheckConstraint("role IN ('doctor', 'patient')", name='check_user_role'),
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
