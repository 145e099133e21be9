"""
Services package for scheduling business logic.

Service classes take the database session (and, where ownership matters, the
authenticated user) explicitly on every call. Import them from their modules,
e.g. ``from services.appointment_service import AppointmentService``.
"""
