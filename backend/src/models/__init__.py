# Package initialization
# Import all models to ensure relationships are properly established
from .user import User
from .doctor import Doctor
from .patient import Patient
from .recurring_schedule import RecurringSchedule
from .elastic_schedule import ElasticSchedule
from .availability_slot import AvailabilitySlot
from .appointment import Appointment

__all__ = [
    "User",
    "Doctor",
    "Patient",
    "RecurringSchedule",
    "ElasticSchedule",
    "AvailabilitySlot",
    "Appointment",
]
