"""Application constants and configuration values."""

from core.config import FRONTEND_URL

# Database field lengths
MAX_STRING_LENGTH = 255
MAX_REASON_LENGTH = 500

# Database connection settings
DB_POOL_RECYCLE_SECONDS = 300  # 5 minutes

_CORS_ORIGINS_RAW = [
    "http://localhost:5173",      # React dev server (Vite)
    FRONTEND_URL,
]

# Filter out None values and empty strings to avoid CORS errors
CORS_ORIGINS = [origin for origin in _CORS_ORIGINS_RAW if origin and origin.strip()]

# User roles
ROLE_DOCTOR = "doctor"
ROLE_PATIENT = "patient"

# Doctor scheduling types
SCHEDULING_TYPE_STANDARD = "standard"
SCHEDULING_TYPE_ELASTIC = "elastic"

# Appointment statuses
APPOINTMENT_STATUS_SCHEDULED = "scheduled"
APPOINTMENT_STATUS_RESCHEDULED = "rescheduled"
APPOINTMENT_STATUS_CANCELLED = "cancelled"
APPOINTMENT_STATUS_PENDING_RESCHEDULE = "pending-reschedule"

APPOINTMENT_STATUSES = (
    APPOINTMENT_STATUS_SCHEDULED,
    APPOINTMENT_STATUS_RESCHEDULED,
    APPOINTMENT_STATUS_CANCELLED,
    APPOINTMENT_STATUS_PENDING_RESCHEDULE,
)

# Statuses that hold a slot on the doctor's calendar
ACTIVE_APPOINTMENT_STATUSES = (
    APPOINTMENT_STATUS_SCHEDULED,
    APPOINTMENT_STATUS_RESCHEDULED,
)

# status_reason recorded when the shrink handler displaces an appointment
STATUS_REASON_SCHEDULE_SHRINK = "schedule_shrink"

# Traditional availability slot modes
SLOT_MODE_AVAILABLE = "available"
SLOT_MODE_BOOKED = "booked"
SLOT_MODE_UNAVAILABLE = "unavailable"

# Schedule compaction
PROGRESSIVE_SLOT_DURATIONS = (25, 20, 15, 10)  # Minutes, tried in order
MIN_COMPACTED_SLOT_MINUTES = 10

# Overflow redistribution
MAX_ALTERNATIVE_SUGGESTIONS = 5

# Recurring templates
DEFAULT_WEEKS_AHEAD = 4
MAX_WEEKS_AHEAD = 52
SCHEDULE_CHANGE_LEAD_MINUTES = 120  # Minimum notice before a same-day session changes
DEFAULT_GENERATED_SCHEDULES_DAYS = 30

# Weekday names indexed Sunday-first (0=Sunday)
WEEKDAY_NAMES = ['Sunday', 'Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday']

# Schedule analytics fill-rate thresholds
LOW_FILL_RATE_THRESHOLD = 0.5
HIGH_FILL_RATE_THRESHOLD = 0.8
