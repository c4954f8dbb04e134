"""Appointment lifecycle - Business logic for booking requests

    pending ──confirm──▶ confirmed ──complete──▶ completed
       │                     │
       └──────cancel─────────┴──────▶ cancelled

Every public operation is one transaction. Notifications go out only after
the transaction committed and never undo it.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Callable, Optional, Union

from fastapi import BackgroundTasks
from sqlalchemy.orm import Session

from ...config import DAILY_CAP, PENDING_WINDOW_HOURS
from ...models import (
    OPEN_APPOINTMENT_STATUSES,
    TERMINAL_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    PatientKind,
)
from ...services.directory_service import Directory
from ...services.notification_service import (
    NotificationKind,
    Notifier,
    deliver_notification,
    notify_appointment,
)
from .availability_service import AvailabilityResolver
from .clock import Clock, is_today
from .exceptions import (
    ConcurrencyConflict,
    DailyCapReached,
    DuplicateBooking,
    InvalidTransition,
    NotFound,
    ValidationError,
)
from .queue_service import QueueAssigner
from .repository import APPOINTMENT_SCOPE, GUEST_SCOPE, SchedulingRepository, atomic
from .schemas import AppointmentCreate, BookedForOther, GuestPatient, RegisteredPatient
from .slot_ledger import SlotLedger
from .time_calculator import normalize_instant

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "SYSTEM"

PatientPayload = Union[RegisteredPatient, GuestPatient, BookedForOther]


class AppointmentLifecycle:
    """State machine for a booking request"""

    def __init__(
        self,
        db: Session,
        directory: Directory,
        notifier: Notifier,
        clock: Clock,
        daily_cap: int = DAILY_CAP,
        pending_window: timedelta = timedelta(hours=PENDING_WINDOW_HOURS),
        background_tasks: Optional[BackgroundTasks] = None,
        session_factory: Optional[Callable[[], Session]] = None,
    ):
        self.db = db
        self.directory = directory
        self.notifier = notifier
        self.clock = clock
        self.daily_cap = daily_cap
        self.pending_window = pending_window
        # With both set, announcements run after the response instead of inline
        self.background_tasks = background_tasks
        self.session_factory = session_factory
        self.repo = SchedulingRepository()
        self.resolver = AvailabilityResolver(db, directory, clock)
        self.ledger = SlotLedger(db, directory)
        self.queue = QueueAssigner(self)

    # ========================================================================
    # READS
    # ========================================================================

    def get(self, appointment_code: str) -> Appointment:
        appointment = self.repo.get_appointment(self.db, appointment_code)
        if not appointment:
            raise NotFound(f"Appointment {appointment_code} not found", appointmentCode=appointment_code)
        return appointment

    def list_appointments(
        self,
        dentist_code: Optional[str] = None,
        day: Optional[date] = None,
        status: Optional[str] = None,
    ) -> list[Appointment]:
        return self.repo.list_appointments(self.db, dentist_code, day, status)

    # ========================================================================
    # COMMANDS
    # ========================================================================

    def create(self, data: AppointmentCreate, actor: Optional[str] = None, origin: str = "patient") -> Appointment:
        """Book a new appointment: confirmed and queued when same-day, pending otherwise"""
        logger.info(f"📥 Booking request for {data.dentistCode} at {data.appointmentAt}")

        with atomic(self.db):
            patient_kind, patient_code, snapshot = self._resolve_patient(data.patient)
            appointment = self._book(
                dentist_code=data.dentistCode,
                instant=data.appointmentAt,
                duration_minutes=data.durationMinutes,
                patient_kind=patient_kind,
                patient_code=patient_code,
                snapshot=snapshot,
                reason=data.reason,
                notes=data.notes,
                origin=origin,
                actor=actor or patient_code,
                confirm_now=data.confirmNow,
            )

        kind = (
            NotificationKind.CONFIRMED
            if appointment.status == AppointmentStatus.CONFIRMED.value
            else NotificationKind.PENDING
        )
        self._notify(appointment, kind)
        return appointment

    def confirm(self, appointment_code: str, actor: Optional[str] = None, auto: bool = False) -> Appointment:
        """pending → confirmed, subject to the daily cap"""
        actor = actor or SYSTEM_ACTOR

        with atomic(self.db):
            appointment = self.repo.get_appointment_for_update(self.db, appointment_code)
            if not appointment:
                raise NotFound(f"Appointment {appointment_code} not found", appointmentCode=appointment_code)
            self.repo.lock_dentist_day(self.db, appointment.dentist_code, appointment.appointment_at.date())
            self._confirm(appointment, actor, auto)

        self._notify(appointment, NotificationKind.CONFIRMED)
        return appointment

    def cancel(
        self, appointment_code: str, actor: Optional[str] = None, reason: Optional[str] = None
    ) -> Appointment:
        """Any non-terminal status → cancelled; frees the slot and drops the queue entry"""
        with atomic(self.db):
            appointment = self.repo.get_appointment_for_update(self.db, appointment_code)
            if not appointment:
                raise NotFound(f"Appointment {appointment_code} not found", appointmentCode=appointment_code)
            self._cancel(appointment, actor, reason)

        self._notify(appointment, NotificationKind.CANCELLED)
        return appointment

    def complete(self, appointment_code: str, actor: Optional[str] = None) -> Appointment:
        """confirmed → completed (terminal)"""
        with atomic(self.db):
            appointment = self.repo.get_appointment_for_update(self.db, appointment_code)
            if not appointment:
                raise NotFound(f"Appointment {appointment_code} not found", appointmentCode=appointment_code)
            self._complete(appointment, actor)
            self.queue.complete_for_appointment(appointment_code)

        logger.info(f"✅ Appointment {appointment_code} completed")
        return appointment

    def reschedule(
        self,
        appointment_code: str,
        new_instant: datetime,
        actor: Optional[str] = None,
        dentist_code: Optional[str] = None,
        duration_minutes: Optional[int] = None,
    ) -> Appointment:
        """
        Move an open appointment to a new instant (and optionally dentist).

        Validation at the new instant and the move happen in one transaction:
        on any failure the appointment keeps its old time and slot.
        """
        new_instant = normalize_instant(new_instant)

        with atomic(self.db):
            appointment = self.repo.get_appointment_for_update(self.db, appointment_code)
            if not appointment:
                raise NotFound(f"Appointment {appointment_code} not found", appointmentCode=appointment_code)
            if appointment.status in TERMINAL_APPOINTMENT_STATUSES:
                raise InvalidTransition(appointment_code, appointment.status, "rescheduled")
            if appointment.migrated_at is not None:
                raise InvalidTransition(
                    appointment_code,
                    appointment.status,
                    "rescheduled",
                    message="Appointment is already in today's queue; switch its time or rebook instead",
                )

            old_dentist = appointment.dentist_code
            old_instant = appointment.appointment_at
            new_dentist = dentist_code or old_dentist
            duration = duration_minutes or appointment.duration_minutes

            if new_dentist == old_dentist and new_instant == old_instant and duration == appointment.duration_minutes:
                raise ValidationError("Appointment is already at this time", appointmentCode=appointment_code)

            self.repo.lock_dentist_days(
                self.db, [(old_dentist, old_instant.date()), (new_dentist, new_instant.date())]
            )

            if self.repo.get_active_appointment_at(self.db, new_dentist, new_instant, exclude_code=appointment_code):
                raise DuplicateBooking(
                    "Another appointment already holds this dentist and time",
                    dentistCode=new_dentist,
                    appointmentAt=new_instant.isoformat(),
                )
            self.resolver.ensure_bookable(new_dentist, new_instant, duration, exclude_appointment=appointment_code)

            now = self.clock.now()
            same_day = is_today(self.clock, new_instant, now)
            if appointment.status == AppointmentStatus.CONFIRMED.value or same_day:
                self._check_cap(new_dentist, new_instant, exclude_code=appointment_code)

            self.ledger.free_slots(appointment_code, actor)

            appointment.dentist_code = new_dentist
            appointment.appointment_at = new_instant
            appointment.duration_minutes = duration

            if appointment.status == AppointmentStatus.PENDING.value:
                if same_day:
                    appointment.status = AppointmentStatus.CONFIRMED.value
                    appointment.accepted_at = now
                    appointment.accepted_by = actor or SYSTEM_ACTOR
                    appointment.pending_expires_at = None
                else:
                    appointment.pending_expires_at = now + self.pending_window

            self.db.flush()
            self.ledger.book_slots(
                new_dentist,
                new_instant,
                duration,
                appointment_code,
                appointment.patient_code,
                appointment.reason,
                actor,
            )

            if appointment.status == AppointmentStatus.CONFIRMED.value and same_day:
                self.queue.place_for_reschedule(appointment)
            else:
                self.queue.remove_for_appointment(appointment_code)

        logger.info(
            f"🔁 Appointment {appointment_code} moved from {old_dentist}@{old_instant} to {new_dentist}@{new_instant}"
        )
        kind = (
            NotificationKind.CONFIRMED
            if appointment.status == AppointmentStatus.CONFIRMED.value
            else NotificationKind.PENDING
        )
        self._notify(appointment, kind, {"previousAppointmentAt": old_instant.isoformat()})
        return appointment

    # ========================================================================
    # INTERNAL STEPS (no commit)
    # ========================================================================

    def _book(
        self,
        dentist_code: str,
        instant: datetime,
        duration_minutes: int,
        patient_kind: str,
        patient_code: str,
        snapshot: Optional[dict],
        reason: Optional[str],
        notes: Optional[str],
        origin: str,
        actor: Optional[str],
        confirm_now: bool = False,
    ) -> Appointment:
        instant = normalize_instant(instant)
        now = self.clock.now()

        self.repo.lock_dentist_day(self.db, dentist_code, instant.date())

        if self.repo.get_active_appointment_at(self.db, dentist_code, instant):
            logger.warning(f"⚠️ Duplicate booking attempt for {dentist_code} at {instant}")
            raise DuplicateBooking(
                "Another appointment already holds this dentist and time",
                dentistCode=dentist_code,
                appointmentAt=instant.isoformat(),
            )
        self.resolver.ensure_bookable(dentist_code, instant, duration_minutes)

        same_day = is_today(self.clock, instant, now)
        confirmed = same_day or confirm_now
        # Pending requests are capped when they get confirmed
        if confirmed:
            self._check_cap(dentist_code, instant)

        appointment = Appointment(
            appointment_code=self.repo.next_code(self.db, APPOINTMENT_SCOPE),
            patient_kind=patient_kind,
            patient_code=patient_code,
            patient_snapshot=snapshot,
            dentist_code=dentist_code,
            appointment_at=instant,
            duration_minutes=duration_minutes,
            reason=reason,
            notes=notes,
            origin=origin,
            status=AppointmentStatus.CONFIRMED.value if confirmed else AppointmentStatus.PENDING.value,
            created_at=now,
            created_by=actor,
            pending_expires_at=None if confirmed else now + self.pending_window,
            accepted_at=now if confirmed else None,
            accepted_by=(actor or SYSTEM_ACTOR) if confirmed else None,
        )
        self.db.add(appointment)
        self.db.flush()

        self.ledger.book_slots(
            dentist_code, instant, duration_minutes, appointment.appointment_code, patient_code, reason, actor
        )

        if confirmed and same_day:
            self.queue.enqueue(appointment)

        logger.info(
            f"✅ Appointment {appointment.appointment_code} {appointment.status} for {dentist_code} at {instant}"
        )
        return appointment

    def _confirm(self, appointment: Appointment, actor: str, auto: bool = False) -> None:
        if appointment.status != AppointmentStatus.PENDING.value:
            raise InvalidTransition(
                appointment.appointment_code, appointment.status, AppointmentStatus.CONFIRMED.value
            )

        # The pending appointment itself is part of the count
        self._check_cap(appointment.dentist_code, appointment.appointment_at)

        now = self.clock.now()
        values = {
            "status": AppointmentStatus.CONFIRMED.value,
            "accepted_at": now,
            "accepted_by": actor,
            "pending_expires_at": None,
        }
        if auto:
            values["auto_confirmed_at"] = now

        if not self.repo.transition_appointment(self.db, appointment, [AppointmentStatus.PENDING.value], values):
            raise ConcurrencyConflict(
                f"Appointment {appointment.appointment_code} changed concurrently",
                appointmentCode=appointment.appointment_code,
            )

        if is_today(self.clock, appointment.appointment_at, now):
            self.queue.enqueue(appointment)

        logger.info(
            f"✅ Appointment {appointment.appointment_code} confirmed by {actor}{' (auto)' if auto else ''}"
        )

    def _cancel(self, appointment: Appointment, actor: Optional[str], reason: Optional[str]) -> None:
        if appointment.status in TERMINAL_APPOINTMENT_STATUSES:
            raise InvalidTransition(
                appointment.appointment_code, appointment.status, AppointmentStatus.CANCELLED.value
            )

        values = {
            "status": AppointmentStatus.CANCELLED.value,
            "cancelled_at": self.clock.now(),
            "cancelled_by": actor,
            "cancellation_reason": reason,
            "pending_expires_at": None,
        }
        if not self.repo.transition_appointment(self.db, appointment, OPEN_APPOINTMENT_STATUSES, values):
            raise ConcurrencyConflict(
                f"Appointment {appointment.appointment_code} changed concurrently",
                appointmentCode=appointment.appointment_code,
            )

        self.ledger.free_slots(appointment.appointment_code, actor)
        self.queue.remove_for_appointment(appointment.appointment_code)
        logger.info(f"🗑️ Appointment {appointment.appointment_code} cancelled by {actor}: {reason}")

    def _complete(self, appointment: Appointment, actor: Optional[str]) -> None:
        if appointment.status != AppointmentStatus.CONFIRMED.value:
            raise InvalidTransition(
                appointment.appointment_code, appointment.status, AppointmentStatus.COMPLETED.value
            )
        values = {"status": AppointmentStatus.COMPLETED.value, "completed_at": self.clock.now()}
        if not self.repo.transition_appointment(
            self.db, appointment, [AppointmentStatus.CONFIRMED.value], values
        ):
            raise ConcurrencyConflict(
                f"Appointment {appointment.appointment_code} changed concurrently",
                appointmentCode=appointment.appointment_code,
            )

    def _check_cap(self, dentist_code: str, instant: datetime, exclude_code: Optional[str] = None) -> None:
        count = self.repo.count_open_appointments(self.db, dentist_code, instant.date(), exclude_code)
        if count >= self.daily_cap:
            logger.warning(f"⚠️ Daily cap {self.daily_cap} reached for {dentist_code} on {instant.date()}")
            raise DailyCapReached(dentist_code, instant.date(), self.daily_cap)

    def _resolve_patient(self, patient: PatientPayload) -> tuple[str, str, Optional[dict]]:
        """(patient_kind, patient_code, snapshot) for the stored tagged variant"""
        if isinstance(patient, RegisteredPatient):
            return PatientKind.REGISTERED.value, patient.patientCode, None
        if isinstance(patient, GuestPatient):
            guest_code = self.repo.next_code(self.db, GUEST_SCOPE)
            snapshot = {"name": patient.name, "phone": patient.phone, "email": patient.email}
            return PatientKind.GUEST.value, guest_code, snapshot
        snapshot = {"name": patient.name, "contact": patient.contact, "relation": patient.relation}
        return PatientKind.BOOKED_FOR_OTHER.value, patient.bookerCode, snapshot

    def _notify(self, appointment: Appointment, kind: NotificationKind, extra: Optional[dict] = None) -> None:
        if self.background_tasks is not None and self.session_factory is not None:
            self.background_tasks.add_task(
                deliver_notification,
                self.session_factory,
                self.notifier,
                appointment.appointment_code,
                kind,
                self.clock.now(),
                extra,
            )
            return
        notify_appointment(self.db, self.notifier, appointment, kind, self.clock.now(), extra)
