"""
Application configuration using python-dotenv.

This module loads environment variables from .env file into os.environ
for use throughout the application.
"""

import os
import pathlib
from dotenv import load_dotenv


# Don't load .env file during testing to ensure predictable test behavior
is_testing = os.getenv("PYTEST_VERSION") is not None or any("pytest" in str(frame) for frame in __import__('inspect').stack(0))

if not is_testing:
    possible_paths = [
        pathlib.Path(__file__).parent.parent.parent / ".env",  # backend/.env (when run from backend/src)
        pathlib.Path(__file__).parent.parent.parent.parent / ".env",  # .env at repository root
        pathlib.Path.cwd() / ".env",
    ]

    for env_path in possible_paths:
        if env_path.exists():
            load_dotenv(env_path)
            break


def get_database_url():
    """Get the database URL from environment."""
    return os.getenv(
        "DATABASE_URL",
        "postgresql://localhost/schedula_dev"
    )


def _get_clock(name: str, default: str) -> str:
    """Read an HH:MM wall-clock value from the environment."""
    return os.getenv(name, default).strip()


DATABASE_URL = get_database_url()
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")

# Authentication
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Clinic wall clock. All business rules ("today", advance notice) use this offset.
CLINIC_UTC_OFFSET_MINUTES = int(os.getenv("CLINIC_UTC_OFFSET_MINUTES", "330"))

# Time-of-day buckets used when redistributing overflow appointments
MORNING_BUCKET_START = _get_clock("MORNING_BUCKET_START", "09:00")
AFTERNOON_BUCKET_START = _get_clock("AFTERNOON_BUCKET_START", "12:00")
EVENING_BUCKET_START = _get_clock("EVENING_BUCKET_START", "17:00")
EVENING_BUCKET_END = _get_clock("EVENING_BUCKET_END", "20:00")

REDISTRIBUTION_SEARCH_DAYS = int(os.getenv("REDISTRIBUTION_SEARCH_DAYS", "7"))
