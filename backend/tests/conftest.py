"""
Test configuration and shared fixtures for the Schedula test suite.

Runs against an in-memory SQLite database by default; set TEST_DATABASE_URL
to run against PostgreSQL. Each test gets a freshly created schema.
"""

import os

# Must be set before core.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from datetime import date, datetime, time
from typing import Generator, List

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.database import Base
from core.constants import ROLE_DOCTOR, ROLE_PATIENT

# Import all models to ensure they're registered with SQLAlchemy before any relationships are resolved
from models import Appointment, AvailabilitySlot, Doctor, ElasticSchedule, Patient, RecurringSchedule, User
from auth.dependencies import UserContext
from services.notification_service import ReschedulingNotification


# Test database URL
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")

# A Monday far enough ahead that lead-time rules never interfere
FUTURE_MONDAY = date(2030, 1, 7)


@pytest.fixture(scope="session")
def db_engine():
    """
    Create a database engine for the test session.

    In-memory SQLite needs a single shared connection so every session sees
    the same database.
    """
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL, echo=False)

    yield engine

    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Provide a session on a freshly created schema, dropped after the test."""
    Base.metadata.create_all(bind=db_engine)
    TestSession = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    session = TestSession()

    yield session

    session.close()
    Base.metadata.drop_all(bind=db_engine)


@pytest.fixture(scope="function")
def other_session(db_engine, db_session) -> Generator[Session, None, None]:
    """A second session on the same schema, standing in for a concurrent request."""
    OtherSession = sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)
    session = OtherSession()

    yield session

    session.close()


class RecordingSink:
    """Notification sink that keeps every event it receives."""

    def __init__(self) -> None:
        self.notifications: List[ReschedulingNotification] = []

    def send_rescheduling_notification(self, notification: ReschedulingNotification) -> None:
        self.notifications.append(notification)


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


# ===== Model factories =====

def make_doctor(db: Session, email: str = "dr.house@example.com", name: str = "Gregory House") -> Doctor:
    user = User(email=email, role=ROLE_DOCTOR)
    db.add(user)
    db.flush()
    doctor = Doctor(user_id=user.id, name=name, specialization="General")
    db.add(doctor)
    db.commit()
    return doctor


def make_patient(db: Session, email: str = "pat@example.com", name: str = "Pat Smith") -> Patient:
    user = User(email=email, role=ROLE_PATIENT)
    db.add(user)
    db.flush()
    patient = Patient(user_id=user.id, name=name, email=email, phone_number="+15550100")
    db.add(patient)
    db.commit()
    return patient


def make_elastic_schedule(
    db: Session,
    doctor: Doctor,
    day: date = FUTURE_MONDAY,
    start: time = time(9, 0),
    end: time = time(12, 0),
    slot_duration: int = 30,
    buffer_time: int = 0,
    max_appointments=None,
    recurring_template_id=None,
) -> ElasticSchedule:
    schedule = ElasticSchedule(
        doctor_id=doctor.id,
        date=day,
        start_time=start,
        end_time=end,
        slot_duration=slot_duration,
        buffer_time=buffer_time,
        max_appointments=max_appointments,
        recurring_template_id=recurring_template_id,
        is_override=False,
    )
    db.add(schedule)
    db.commit()
    return schedule


def make_template(
    db: Session,
    doctor: Doctor,
    days_of_week=(1, 2, 3, 4, 5),
    start: time = time(9, 0),
    end: time = time(12, 0),
    slot_duration: int = 30,
    **kwargs,
) -> RecurringSchedule:
    template = RecurringSchedule(
        doctor_id=doctor.id,
        name=kwargs.pop("name", "Weekday mornings"),
        start_time=start,
        end_time=end,
        slot_duration=slot_duration,
        buffer_time=kwargs.pop("buffer_time", 0),
        max_appointments=kwargs.pop("max_appointments", None),
        days_of_week=list(days_of_week),
        weeks_ahead=kwargs.pop("weeks_ahead", 4),
        is_active=kwargs.pop("is_active", True),
        allow_overrides=kwargs.pop("allow_overrides", True),
        auto_generate=kwargs.pop("auto_generate", True),
    )
    db.add(template)
    db.commit()
    return template


def make_appointment(
    db: Session,
    patient: Patient,
    doctor: Doctor,
    start: time,
    end: time,
    day: date = FUTURE_MONDAY,
    schedule: ElasticSchedule = None,
    status: str = "scheduled",
    created_at: datetime = None,
) -> Appointment:
    appointment = Appointment(
        patient_id=patient.id,
        doctor_id=doctor.id,
        elastic_schedule_id=schedule.id if schedule else None,
        date=day,
        start_time=start,
        end_time=end,
        status=status,
        created_at=created_at,
    )
    db.add(appointment)
    db.commit()
    return appointment


def make_slot(db: Session, doctor: Doctor, start, end, mode: str = "available") -> AvailabilitySlot:
    slot = AvailabilitySlot(doctor_id=doctor.id, start_time=start, end_time=end, mode=mode)
    db.add(slot)
    db.commit()
    return slot


def context_for(user_id: int, role: str) -> UserContext:
    return UserContext(user_id=user_id, role=role)


# ===== Common fixtures =====

@pytest.fixture
def doctor(db_session) -> Doctor:
    return make_doctor(db_session)


@pytest.fixture
def patient(db_session) -> Patient:
    return make_patient(db_session)


@pytest.fixture
def doctor_user(doctor) -> UserContext:
    return context_for(doctor.user_id, ROLE_DOCTOR)


@pytest.fixture
def patient_user(patient) -> UserContext:
    return context_for(patient.user_id, ROLE_PATIENT)
