# pyright: reportMissingTypeStubs=false
"""
Database configuration and session management.

Sets up the SQLAlchemy engine and session factory, stamps audit timestamps
with the clinic wall clock, and provides session helpers for FastAPI routes
and standalone jobs.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator

from fastapi import HTTPException
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from core.config import DATABASE_URL
from core.constants import DB_POOL_RECYCLE_SECONDS

logger = logging.getLogger(__name__)


def build_engine(url: str) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections are shared across threads by the FastAPI test client,
    so same-thread checking is disabled for that backend.
    """
    kwargs: Dict[str, Any] = {
        "pool_pre_ping": True,
        "echo": False,
        "future": True,
    }
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs["pool_recycle"] = DB_POOL_RECYCLE_SECONDS
    return create_engine(url, **kwargs)


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Don't expire objects after commit
)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def _has_column(mapper: Any, name: str) -> bool:
    return hasattr(mapper, "columns") and name in mapper.columns


@event.listens_for(Base, "before_insert", propagate=True)  # type: ignore
def receive_before_insert(mapper, connection, target):  # type: ignore
    """Fill created_at and updated_at on insert when not already set."""
    # Import here to avoid circular import
    from utils.datetime_utils import clinic_now
    now = clinic_now()
    for column in ("created_at", "updated_at"):
        if _has_column(mapper, column) and getattr(target, column, None) is None:
            setattr(target, column, now)


@event.listens_for(Base, "before_update", propagate=True)  # type: ignore
def receive_before_update(mapper, connection, target):  # type: ignore
    """Refresh updated_at on every update."""
    from utils.datetime_utils import clinic_now
    if _has_column(mapper, "updated_at"):
        setattr(target, "updated_at", clinic_now())


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency to provide database sessions.

    Yields a session that is closed after the request, rolling back on any
    error raised while the request was being handled.

    Yields:
        Session: SQLAlchemy database session
    """
    db = SessionLocal()
    try:
        yield db
    except SQLAlchemyError as e:
        logger.exception(f"Database error: {e}")
        db.rollback()
        raise
    except HTTPException:
        # Expected business errors, not logged
        db.rollback()
        raise
    except Exception as e:
        logger.exception(f"Unexpected error in database session: {e}")
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Session context manager for code running outside a request.

    Used by batch jobs such as template auto-generation. Commits on success
    and rolls back on failure.

    Example:
        ```python
        with get_db_context() as db:
            RecurringScheduleService.auto_generate_all_schedules(db)
        ```
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except HTTPException:
        db.rollback()
        raise
    except Exception as e:
        db.rollback()
        logger.exception(f"Database transaction failed: {e}")
        raise
    finally:
        db.close()


def create_tables() -> None:
    """
    Create all tables defined by the models.

    Safe to call repeatedly; existing tables are left alone.
    """
    # Register every model on Base.metadata
    import models  # noqa: F401
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.exception(f"Failed to create database tables: {e}")
        raise
