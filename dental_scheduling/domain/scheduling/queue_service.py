"""Queue assigner - same-day treatment queue per dentist

Positions are max + 1 within (dentist, date), assigned under the dentist-day
lock. Positions are never renumbered; gaps left by removals stay.
"""

import logging
from datetime import date, datetime
from typing import TYPE_CHECKING, Optional

from ...models import (
    OPEN_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    QueueEntry,
    QueueStatus,
)
from ...services.notification_service import NotificationKind
from .exceptions import DuplicateBooking, InvalidTransition, NotFound, ValidationError
from .repository import QUEUE_SCOPE, atomic
from .time_calculator import normalize_instant, parse_clock_time

if TYPE_CHECKING:
    from .appointment_service import AppointmentLifecycle

logger = logging.getLogger(__name__)


class QueueAssigner:
    """Daily queue operations; shares the lifecycle's session and collaborators"""

    def __init__(self, lifecycle: "AppointmentLifecycle"):
        self.lifecycle = lifecycle
        self.db = lifecycle.db
        self.clock = lifecycle.clock
        self.repo = lifecycle.repo

    # ========================================================================
    # POSITIONS (no commit)
    # ========================================================================

    def assign_position(self, dentist_code: str, day: date) -> int:
        self.repo.lock_dentist_day(self.db, dentist_code, day)
        return self.repo.get_max_position(self.db, dentist_code, day) + 1

    def enqueue(self, appointment: Appointment) -> QueueEntry:
        """Queue a confirmed same-day appointment; returns the existing entry if already queued"""
        existing = self.repo.get_queue_entry_for_appointment(self.db, appointment.appointment_code)
        if existing:
            return existing

        day = appointment.appointment_at.date()
        position = self.assign_position(appointment.dentist_code, day)
        entry = QueueEntry(
            queue_code=self.repo.next_code(self.db, QUEUE_SCOPE),
            appointment_code=appointment.appointment_code,
            patient_code=appointment.patient_code,
            dentist_code=appointment.dentist_code,
            date=day,
            scheduled_at=appointment.appointment_at,
            position=position,
            status=QueueStatus.WAITING.value,
        )
        self.db.add(entry)
        self.db.flush()
        logger.info(
            f"🪑 {appointment.appointment_code} queued as {entry.queue_code} "
            f"#{position} for {appointment.dentist_code} on {day}"
        )
        return entry

    def remove_for_appointment(self, appointment_code: str) -> int:
        removed = self.repo.delete_queue_for_appointment(self.db, appointment_code)
        if removed:
            logger.info(f"🗑️ Removed queue entry of {appointment_code}")
        return removed

    def complete_for_appointment(self, appointment_code: str) -> None:
        entry = self.repo.get_queue_entry_for_appointment(self.db, appointment_code)
        if entry and entry.status != QueueStatus.COMPLETED.value:
            entry.status = QueueStatus.COMPLETED.value
            entry.completed_at = self.clock.now()

    def place_for_reschedule(self, appointment: Appointment) -> QueueEntry:
        """Keep the position when the appointment stays on the same queue, re-enqueue otherwise"""
        entry = self.repo.get_queue_entry_for_appointment(self.db, appointment.appointment_code)
        new_day = appointment.appointment_at.date()
        if entry and entry.dentist_code == appointment.dentist_code and entry.date == new_day:
            entry.previous_time = entry.scheduled_at
            entry.scheduled_at = appointment.appointment_at
            return entry
        if entry:
            self.db.delete(entry)
            self.db.flush()
        return self.enqueue(appointment)

    # ========================================================================
    # READS
    # ========================================================================

    def list_queue(self, dentist_code: str, day: date) -> list[QueueEntry]:
        return self.repo.get_queue(self.db, dentist_code, day)

    def next_in_queue(self, dentist_code: str, day: date) -> Optional[QueueEntry]:
        return self.repo.get_next_waiting(self.db, dentist_code, day)

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def update_status(self, queue_code: str, status: str, actor: Optional[str] = None) -> QueueEntry:
        """Move an entry through waiting/called/in_treatment/completed; completed is final"""
        with atomic(self.db):
            entry, appointment = self._lock_entry(queue_code)
            if entry.status == status:
                return entry
            if entry.status == QueueStatus.COMPLETED.value:
                raise InvalidTransition(queue_code, entry.status, status)

            now = self.clock.now()
            entry.status = status
            if status == QueueStatus.CALLED.value:
                entry.called_at = now
            elif status == QueueStatus.IN_TREATMENT.value:
                entry.started_at = now
                entry.called_at = entry.called_at or now
            elif status == QueueStatus.COMPLETED.value:
                entry.completed_at = now
                if appointment and appointment.status == AppointmentStatus.CONFIRMED.value:
                    self.lifecycle._complete(appointment, actor)

        logger.info(f"🪑 Queue entry {queue_code} → {status} by {actor}")
        return entry

    def switch_time(self, queue_code: str, new_instant: datetime, actor: Optional[str] = None) -> QueueEntry:
        """Move an entry to another time on the same day, keeping its position"""
        new_instant = normalize_instant(new_instant)

        with atomic(self.db):
            entry, appointment = self._lock_entry(queue_code)
            if entry.status == QueueStatus.COMPLETED.value:
                raise InvalidTransition(queue_code, entry.status, "switched")
            if new_instant.date() != entry.date:
                raise ValidationError(
                    "Switch time stays on the same day; rebook to move to another date",
                    queueCode=queue_code,
                    date=str(entry.date),
                )
            if new_instant == entry.scheduled_at:
                raise ValidationError("Entry is already at this time", queueCode=queue_code)

            if not appointment or appointment.status not in OPEN_APPOINTMENT_STATUSES:
                raise NotFound(
                    f"No open appointment behind queue entry {queue_code}",
                    queueCode=queue_code,
                    appointmentCode=entry.appointment_code,
                )

            code = appointment.appointment_code
            self.repo.lock_dentist_day(self.db, entry.dentist_code, entry.date)
            if self.repo.get_active_appointment_at(self.db, entry.dentist_code, new_instant, exclude_code=code):
                raise DuplicateBooking(
                    "Another appointment already holds this dentist and time",
                    dentistCode=entry.dentist_code,
                    appointmentAt=new_instant.isoformat(),
                )
            self.lifecycle.resolver.ensure_bookable(
                entry.dentist_code, new_instant, appointment.duration_minutes, exclude_appointment=code
            )

            self.lifecycle.ledger.free_slots(code, actor)
            appointment.appointment_at = new_instant
            self.db.flush()
            self.lifecycle.ledger.book_slots(
                entry.dentist_code,
                new_instant,
                appointment.duration_minutes,
                code,
                appointment.patient_code,
                appointment.reason,
                actor,
            )

            previous = entry.scheduled_at
            entry.previous_time = previous
            entry.scheduled_at = new_instant

        logger.info(f"⏰ Queue entry {queue_code} switched from {previous} to {new_instant}")
        self.lifecycle._notify(
            appointment, NotificationKind.CONFIRMED, {"previousTime": previous.isoformat()}
        )
        return entry

    def delete_and_rebook(
        self,
        queue_code: str,
        dentist_code: str,
        day: date,
        time_of_day: str,
        actor: Optional[str] = None,
        duration_minutes: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Appointment:
        """
        Take an entry out of today's queue and book its patient at another
        dentist/date/time. The old entry, the old appointment and its slot are
        released only if the new booking succeeds.
        """
        start = parse_clock_time(time_of_day)
        if start is None:
            raise ValidationError(f"Invalid time: {time_of_day!r}", time=time_of_day)
        new_instant = datetime.combine(day, start)

        with atomic(self.db):
            entry, old = self._lock_entry(queue_code)
            if entry.status == QueueStatus.COMPLETED.value:
                raise InvalidTransition(queue_code, entry.status, "rebooked")
            if old is None:
                raise NotFound(
                    f"No appointment behind queue entry {queue_code}",
                    queueCode=queue_code,
                    appointmentCode=entry.appointment_code,
                )

            self.db.delete(entry)
            self.db.flush()
            if old.status in OPEN_APPOINTMENT_STATUSES:
                self.lifecycle._cancel(old, actor, f"Rebooked to {dentist_code} at {new_instant}")
            else:
                self.lifecycle.ledger.free_slots(old.appointment_code, actor)

            appointment = self.lifecycle._book(
                dentist_code=dentist_code,
                instant=new_instant,
                duration_minutes=duration_minutes or old.duration_minutes,
                patient_kind=old.patient_kind,
                patient_code=old.patient_code,
                snapshot=old.patient_snapshot,
                reason=reason or old.reason,
                notes=old.notes,
                origin="queue-rebook",
                actor=actor,
                confirm_now=True,
            )

        logger.info(
            f"🔁 Queue entry {queue_code} rebooked as {appointment.appointment_code} "
            f"with {dentist_code} at {new_instant}"
        )
        self.lifecycle._notify(appointment, NotificationKind.CONFIRMED)
        return appointment

    def cancel_queue_entry(
        self, queue_code: str, actor: Optional[str] = None, reason: Optional[str] = None
    ) -> Optional[Appointment]:
        """Remove an entry; its appointment is cancelled and its slot freed"""
        with atomic(self.db):
            entry, appointment = self._lock_entry(queue_code)
            if entry.status == QueueStatus.COMPLETED.value:
                raise InvalidTransition(queue_code, entry.status, "cancelled")

            self.db.delete(entry)
            self.db.flush()

            cancelled = False
            if appointment and appointment.status in OPEN_APPOINTMENT_STATUSES:
                self.lifecycle._cancel(appointment, actor, reason or "Removed from queue")
                cancelled = True
            else:
                self.lifecycle.ledger.free_slots(entry.appointment_code, actor)

        logger.info(f"🗑️ Queue entry {queue_code} cancelled by {actor}")
        if cancelled:
            self.lifecycle._notify(appointment, NotificationKind.CANCELLED)
        return appointment

    def _lock_entry(self, queue_code: str) -> tuple[QueueEntry, Optional[Appointment]]:
        """Lock the entry's appointment first, then the entry"""
        entry = self.repo.get_queue_entry(self.db, queue_code)
        if not entry:
            raise NotFound(f"Queue entry {queue_code} not found", queueCode=queue_code)

        appointment = self.repo.get_appointment_for_update(self.db, entry.appointment_code)
        entry = self.repo.get_queue_entry_for_update(self.db, queue_code)
        if not entry:
            raise NotFound(f"Queue entry {queue_code} not found", queueCode=queue_code)
        return entry, appointment

