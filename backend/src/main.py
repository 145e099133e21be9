# pyright: reportMissingTypeStubs=false
"""
Schedula Backend API

A FastAPI application for clinic appointment scheduling.

Features:
- Per-date elastic schedules and recurring weekly templates
- Slot generation and conflict-checked booking
- Schedule shrink handling with compaction and overflow redistribution
- PostgreSQL database with SQLAlchemy ORM
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import appointments, availability_slots, elastic_schedules, recurring_schedules
from core.constants import CORS_ORIGINS
from core.database import create_tables

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()],
)

logger = logging.getLogger(__name__)
logger.info("🏥 Schedula API starting...")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    logger.info("🚀 Starting Schedula Backend API")

    try:
        create_tables()
        logger.info("✅ Database tables ready")
    except Exception as e:
        logger.exception(f"❌ Failed to create database tables: {e}")

    yield

    logger.info("🛑 Shutting down Schedula Backend API")


# Create FastAPI application
app = FastAPI(
    title="Schedula Backend",
    description="Clinic appointment scheduling with elastic and recurring schedules",
    version="1.0.0",
    docs_url="/docs",  # Swagger UI
    redoc_url="/redoc",  # ReDoc
    lifespan=lifespan,
)

# CORS middleware for frontend integration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

_COMMON_RESPONSES = {
    401: {"description": "Unauthorized"},
    403: {"description": "Forbidden"},
    404: {"description": "Resource not found"},
    409: {"description": "Conflict"},
    500: {"description": "Internal server error"},
}

# Include API routers
app.include_router(
    appointments.router,
    prefix="/api",
    tags=["appointments"],
    responses=_COMMON_RESPONSES,
)
app.include_router(
    elastic_schedules.router,
    prefix="/api",
    tags=["elastic-schedules"],
    responses=_COMMON_RESPONSES,
)
app.include_router(
    recurring_schedules.router,
    prefix="/api",
    tags=["recurring-schedules"],
    responses=_COMMON_RESPONSES,
)
app.include_router(
    availability_slots.router,
    prefix="/api",
    tags=["availability-slots"],
    responses=_COMMON_RESPONSES,
)


@app.get(
    "/",
    summary="Root endpoint",
    description="Returns basic API information",
)
async def root() -> dict[str, str]:
    """Get API information."""
    return {
        "message": "Schedula Backend API",
        "version": "1.0.0",
        "status": "running"
    }


@app.get(
    "/health",
    summary="Health check",
    description="Returns the health status of the API",
)
async def health_check() -> dict[str, str]:
    """Check if the API is healthy and responding."""
    return {"status": "healthy"}


# Global exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions globally."""
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": "internal_error"},
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    """Handle ValueError exceptions."""
    logger.warning(f"ValueError: {exc}")
    return JSONResponse(
        status_code=400,
        content={"detail": str(exc), "type": "validation_error"},
    )
