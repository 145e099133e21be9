"""
Rescheduling notifications for patients displaced by schedule changes.

The scheduling core emits one ReschedulingNotification per redistribution
outcome through a NotificationSink. Delivery (email, SMS) belongs to the sink;
the default sink renders both messages to the log.
"""

import logging
from datetime import date
from enum import Enum
from typing import List, Optional, Protocol

from pydantic import BaseModel, Field

from models import Appointment
from utils.datetime_utils import format_date

logger = logging.getLogger(__name__)

SIGN_OFF = "Schedula Team"


class NotificationType(str, Enum):
    RESCHEDULED = "rescheduled"
    PENDING = "pending"


class AlternativeSlot(BaseModel):
    """Session suggested to a patient whose appointment could not be moved."""

    date: str
    time: str
    time_bucket: str


class ReschedulingNotification(BaseModel):
    """Event describing how a displaced appointment was handled."""

    appointment_id: int
    patient_name: str
    patient_email: Optional[str] = None
    patient_phone: Optional[str] = None
    doctor_name: str
    old_date: str
    old_time: str
    new_date: Optional[str] = None
    new_time: Optional[str] = None
    type: NotificationType
    alternative_slots: List[AlternativeSlot] = Field(default_factory=list)


class NotificationSink(Protocol):
    """Receiver of rescheduling events."""

    def send_rescheduling_notification(self, notification: ReschedulingNotification) -> None:
        ...


class LoggingNotificationSink:
    """Sink that renders email and SMS previews to the application log."""

    def send_rescheduling_notification(self, notification: ReschedulingNotification) -> None:
        email_body = NotificationService.render_email(notification)
        sms_body = NotificationService.render_sms(notification)
        logger.info(
            f"Rescheduling notice for appointment {notification.appointment_id} "
            f"({notification.type.value})\n"
            f"--- email to {notification.patient_email or '<none>'} ---\n{email_body}\n"
            f"--- sms to {notification.patient_phone or '<none>'} ---\n{sms_body}"
        )


class NotificationService:
    """Builds, renders, and dispatches rescheduling notifications."""

    @staticmethod
    def build_rescheduling_notification(
        appointment: Appointment,
        old_date: date,
        old_time: str,
        notification_type: NotificationType,
        alternatives: Optional[List[AlternativeSlot]] = None
    ) -> ReschedulingNotification:
        """
        Build the event for an appointment after redistribution.

        Args:
            appointment: Appointment in its post-redistribution state
            old_date: Date before the move
            old_time: Start time ("HH:MM") before the move
            notification_type: Whether the appointment was moved or left pending
            alternatives: Suggested sessions for pending appointments

        Returns:
            Notification event ready to be dispatched
        """
        patient = appointment.patient
        doctor = appointment.doctor
        new_date = None
        new_time = None
        if notification_type == NotificationType.RESCHEDULED and appointment.date is not None:
            new_date = format_date(appointment.date)
            key = appointment.time_key
            new_time = key[0] if key else None

        return ReschedulingNotification(
            appointment_id=appointment.id,
            patient_name=patient.name,
            patient_email=patient.email,
            patient_phone=patient.phone_number,
            doctor_name=doctor.name,
            old_date=format_date(old_date),
            old_time=old_time,
            new_date=new_date,
            new_time=new_time,
            type=notification_type,
            alternative_slots=alternatives or [],
        )

    @staticmethod
    def dispatch(sink: NotificationSink, notification: ReschedulingNotification) -> bool:
        """
        Hand a notification to the sink.

        Delivery failures never undo the scheduling change that triggered
        them; they are logged and reported through the return value.

        Returns:
            True if the sink accepted the notification, False otherwise
        """
        try:
            sink.send_rescheduling_notification(notification)
            return True
        except Exception as e:
            logger.exception(
                f"Failed to send rescheduling notification for appointment "
                f"{notification.appointment_id}: {e}"
            )
            return False

    @staticmethod
    def render_email(notification: ReschedulingNotification) -> str:
        """Plain-text email body for a notification."""
        lines = [f"Dear {notification.patient_name},", ""]
        if notification.type == NotificationType.RESCHEDULED:
            lines += [
                f"Dr. {notification.doctor_name} has updated their schedule. Your appointment "
                f"on {notification.old_date} at {notification.old_time} has been moved to "
                f"{notification.new_date} at {notification.new_time}.",
                "",
                "If the new time does not work for you, please reschedule from your appointments page.",
            ]
        else:
            lines += [
                f"Dr. {notification.doctor_name} has updated their schedule and your appointment "
                f"on {notification.old_date} at {notification.old_time} could not be moved automatically.",
                "",
                "Please choose a new time for your visit.",
            ]
            if notification.alternative_slots:
                lines.append("Sessions you may want to consider:")
                lines += [
                    f"  - {alt.date} {alt.time} ({alt.time_bucket})"
                    for alt in notification.alternative_slots
                ]
        lines += ["", "Regards,", SIGN_OFF]
        return "\n".join(lines)

    @staticmethod
    def render_sms(notification: ReschedulingNotification) -> str:
        """Short SMS text for a notification."""
        if notification.type == NotificationType.RESCHEDULED:
            return (
                f"Your appointment with Dr. {notification.doctor_name} moved from "
                f"{notification.old_date} {notification.old_time} to "
                f"{notification.new_date} {notification.new_time}. - {SIGN_OFF}"
            )
        return (
            f"Your appointment with Dr. {notification.doctor_name} on "
            f"{notification.old_date} {notification.old_time} needs a new time. "
            f"Please rebook. - {SIGN_OFF}"
        )


_default_sink = LoggingNotificationSink()


def get_notification_sink() -> NotificationSink:
    """FastAPI dependency returning the process-wide notification sink."""
    return _default_sink
