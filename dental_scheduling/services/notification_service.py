"""
Notifier collaborator
Announces appointment state changes to whoever delivers SMS/WhatsApp/email.

Request handlers hand announcements to a background task after the commit, so
the response never waits on delivery. A failed announcement never rolls back a
transition. The jobs announce inline. The outcome of the last announcement is
recorded on the appointment (notification_status / notification_error / notified_at).
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import NOTIFIER_TIMEOUT_SECONDS, NOTIFIER_URL
from ..models import Appointment

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    REMINDER = "reminder"


class Notifier(Protocol):
    def announce(self, kind: str, recipient_code: str, payload: dict) -> None:
        """Deliver or enqueue an announcement; raise on failure"""
        ...


class NotificationError(Exception):
    """Raised by notifier adapters when an announcement was not accepted"""


class LoggingNotifier:
    """Default adapter - writes announcements to the log"""

    def announce(self, kind: str, recipient_code: str, payload: dict) -> None:
        logger.info(
            f"📣 {kind} → {recipient_code}: {payload.get('appointmentCode')} at {payload.get('appointmentAt')}"
        )


class WebhookNotifier:
    """POSTs every announcement as JSON to the messaging service"""

    def __init__(
        self,
        url: str,
        timeout: float = NOTIFIER_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        self.url = url
        self.client = client or httpx.Client(timeout=timeout)

    def announce(self, kind: str, recipient_code: str, payload: dict) -> None:
        body = {"kind": kind, "recipientCode": recipient_code, "payload": payload}
        try:
            response = self.client.post(self.url, json=body)
        except httpx.HTTPError as e:
            raise NotificationError(f"Webhook unreachable: {e}") from e

        if response.status_code not in (200, 201, 202, 204):
            raise NotificationError(
                f"Webhook returned {response.status_code}: {response.text[:200]}"
            )
        logger.info(f"✅ {kind} announcement accepted for {recipient_code}")


def appointment_payload(appointment: Appointment) -> dict:
    payload = {
        "appointmentCode": appointment.appointment_code,
        "dentistCode": appointment.dentist_code,
        "appointmentAt": appointment.appointment_at.isoformat(),
        "durationMinutes": appointment.duration_minutes,
        "status": appointment.status,
        "patientKind": appointment.patient_kind,
    }
    if appointment.patient_snapshot:
        payload["patient"] = appointment.patient_snapshot
    if appointment.cancellation_reason:
        payload["cancellationReason"] = appointment.cancellation_reason
    return payload


def notify_appointment(
    db: Session,
    notifier: Notifier,
    appointment: Appointment,
    kind: NotificationKind,
    now: datetime,
    extra: Optional[dict] = None,
) -> bool:
    """
    Announce a committed transition and record the outcome.

    Must be called after the transition has been committed. Returns True when
    the notifier accepted the announcement.
    """
    payload = appointment_payload(appointment)
    if extra:
        payload.update(extra)

    error = None
    try:
        notifier.announce(kind.value, appointment.patient_code, payload)
    except Exception as e:
        error = str(e)[:500]
        logger.error(
            f"❌ Failed to send {kind.value} notification for {appointment.appointment_code}: {e}"
        )

    try:
        appointment.notification_status = "failed" if error else "sent"
        appointment.notification_error = error
        appointment.notified_at = now
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            f"❌ Could not record notification outcome for {appointment.appointment_code}: {e}"
        )

    return error is None


def deliver_notification(
    session_factory: Callable[[], Session],
    notifier: Notifier,
    appointment_code: str,
    kind: NotificationKind,
    now: datetime,
    extra: Optional[dict] = None,
) -> bool:
    """Background task: reload the appointment in a fresh session and announce it"""
    db = session_factory()
    try:
        appointment = db.query(Appointment).filter(Appointment.appointment_code == appointment_code).first()
        if appointment is None:
            logger.warning(f"⚠️ Appointment {appointment_code} gone before its {kind.value} notification")
            return False
        return notify_appointment(db, notifier, appointment, kind, now, extra)
    finally:
        db.close()


_notifier: Optional[Notifier] = None


def build_notifier() -> Notifier:
    if NOTIFIER_URL:
        logger.info(f"📣 Using webhook notifier at {NOTIFIER_URL}")
        return WebhookNotifier(NOTIFIER_URL)
    return LoggingNotifier()


def get_notifier() -> Notifier:
    """FastAPI dependency"""
    global _notifier
    if _notifier is None:
        _notifier = build_notifier()
    return _notifier
