"""Scheduling repository - Database operations for slots, appointments and queue entries"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ...models import (
    BLOCKING_SLOT_STATUSES,
    OPEN_APPOINTMENT_STATUSES,
    Appointment,
    AppointmentStatus,
    DentistDay,
    QueueEntry,
    QueueStatus,
    SchedulingCounter,
    Slot,
    SlotStatus,
)
from .exceptions import ConcurrencyConflict, DuplicateBooking, SchedulingError, SlotUnavailable
from .time_calculator import day_bounds

logger = logging.getLogger(__name__)

# Counter scopes and their code prefixes
APPOINTMENT_SCOPE = ("appointment", "AP")
QUEUE_SCOPE = ("queue", "Q")
GUEST_SCOPE = ("guest", "GUEST")


def translate_integrity_error(error: IntegrityError) -> SchedulingError:
    """Map a unique-constraint violation to the business error it stands for"""
    detail = str(error.orig)
    if "uq_appointments_dentist_instant_active" in detail or (
        "appointments.dentist_code" in detail and "appointments.appointment_at" in detail
    ):
        return DuplicateBooking("Another appointment already holds this dentist and time")
    if "uq_slots_dentist_date_time" in detail or "slots." in detail:
        return SlotUnavailable("Slot was taken by a concurrent request")
    if "uq_queue_dentist_date_position" in detail or "queue_entries.position" in detail:
        return ConcurrencyConflict("Queue position was taken by a concurrent request, please retry")
    if "uq_queue_appointment_code" in detail or "queue_entries.appointment_code" in detail:
        return ConcurrencyConflict("Appointment was queued by a concurrent request")
    logger.warning(f"⚠️ Unmapped integrity error: {detail[:200]}")
    return ConcurrencyConflict("Concurrent update detected, please retry")


@contextmanager
def atomic(db: Session):
    """
    One transaction per logical operation.

    Commits on success. Any failure rolls back; store-level errors are
    translated into scheduling errors so they never leak raw.
    """
    try:
        yield
        db.commit()
    except SchedulingError:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        raise translate_integrity_error(e) from e
    except OperationalError as e:
        db.rollback()
        logger.error(f"❌ Store timeout or lock failure: {e}")
        raise ConcurrencyConflict("The store is busy, please retry") from e
    except Exception:
        db.rollback()
        raise


class SchedulingRepository:
    """
    Repository for scheduling database operations (no commits)

    Row locks are always taken in this order within a transaction:
    appointment, then queue entry, then dentist-day anchors (sorted),
    then slots.
    """

    # ========================================================================
    # Counters and locks
    # ========================================================================

    @staticmethod
    def next_sequence(db: Session, scope: str) -> int:
        """Atomically increment the counter for scope and return the new value"""
        stmt = (
            update(SchedulingCounter)
            .where(SchedulingCounter.scope == scope)
            .values(seq=SchedulingCounter.seq + 1)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount == 0:
            db.flush()
            try:
                with db.begin_nested():
                    db.add(SchedulingCounter(scope=scope, seq=0))
            except IntegrityError:
                # Another writer created the row first
                pass
            db.execute(stmt)

        return (
            db.query(SchedulingCounter.seq)
            .filter(SchedulingCounter.scope == scope)
            .scalar()
        )

    @staticmethod
    def next_code(db: Session, scope: tuple[str, str]) -> str:
        name, prefix = scope
        return f"{prefix}-{SchedulingRepository.next_sequence(db, name):04d}"

    @staticmethod
    def lock_dentist_day(db: Session, dentist_code: str, day: date) -> DentistDay:
        """
        Row-lock the (dentist, day) anchor for the rest of the transaction.
        Serializes daily cap counting and queue position assignment.
        """
        query = db.query(DentistDay).filter(
            DentistDay.dentist_code == dentist_code, DentistDay.date == day
        )
        anchor = query.with_for_update().first()
        if anchor is None:
            db.flush()
            try:
                with db.begin_nested():
                    db.add(DentistDay(dentist_code=dentist_code, date=day))
            except IntegrityError:
                pass
            anchor = query.with_for_update().one()
        return anchor

    @staticmethod
    def lock_dentist_days(db: Session, keys: Iterable[tuple[str, date]]) -> None:
        """Lock several anchors in sorted order"""
        for dentist_code, day in sorted(set(keys)):
            SchedulingRepository.lock_dentist_day(db, dentist_code, day)

    # ========================================================================
    # Slots
    # ========================================================================

    @staticmethod
    def get_slots(db: Session, dentist_code: str, day: date) -> list[Slot]:
        return (
            db.query(Slot)
            .filter(Slot.dentist_code == dentist_code, Slot.date == day)
            .order_by(Slot.time_slot)
            .all()
        )

    @staticmethod
    def get_slots_in_range(db: Session, dentist_code: str, from_date: date, to_date: date) -> list[Slot]:
        return (
            db.query(Slot)
            .filter(Slot.dentist_code == dentist_code, Slot.date >= from_date, Slot.date <= to_date)
            .order_by(Slot.date, Slot.time_slot)
            .all()
        )

    @staticmethod
    def get_blocking_slots(
        db: Session, dentist_code: str, day: date, exclude_appointment: Optional[str] = None
    ) -> list[Slot]:
        query = db.query(Slot).filter(
            Slot.dentist_code == dentist_code,
            Slot.date == day,
            Slot.status.in_(BLOCKING_SLOT_STATUSES),
        )
        if exclude_appointment:
            query = query.filter(
                (Slot.appointment_code.is_(None)) | (Slot.appointment_code != exclude_appointment)
            )
        return query.all()

    @staticmethod
    def claim_slot(db: Session, slot_id: int, values: dict) -> bool:
        """Flip one slot from available to booked; False when someone else got it"""
        updated = (
            db.query(Slot)
            .filter(Slot.id == slot_id, Slot.status == SlotStatus.AVAILABLE.value)
            .update(values, synchronize_session="fetch")
        )
        return updated == 1

    @staticmethod
    def release_slots(db: Session, appointment_code: str, actor: Optional[str]) -> int:
        """Booked slots linked to an appointment → available"""
        return (
            db.query(Slot)
            .filter(
                Slot.appointment_code == appointment_code,
                Slot.status == SlotStatus.BOOKED.value,
            )
            .update(
                {
                    "status": SlotStatus.AVAILABLE.value,
                    "appointment_code": None,
                    "patient_code": None,
                    "reason": None,
                    "last_modified_by": actor,
                },
                synchronize_session="fetch",
            )
        )

    # ========================================================================
    # Appointments
    # ========================================================================

    @staticmethod
    def get_appointment(db: Session, appointment_code: str) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.appointment_code == appointment_code)
            .first()
        )

    @staticmethod
    def get_appointment_for_update(db: Session, appointment_code: str) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.appointment_code == appointment_code)
            .populate_existing()
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_active_appointment_at(
        db: Session, dentist_code: str, instant: datetime, exclude_code: Optional[str] = None
    ) -> Optional[Appointment]:
        query = db.query(Appointment).filter(
            Appointment.dentist_code == dentist_code,
            Appointment.appointment_at == instant,
            Appointment.status != AppointmentStatus.CANCELLED.value,
        )
        if exclude_code:
            query = query.filter(Appointment.appointment_code != exclude_code)
        return query.first()

    @staticmethod
    def get_active_starts(
        db: Session, dentist_code: str, day: date, exclude_code: Optional[str] = None
    ) -> set[datetime]:
        """Start instants of non-cancelled appointments on a dentist-day"""
        start, end = day_bounds(day)
        query = db.query(Appointment.appointment_at).filter(
            Appointment.dentist_code == dentist_code,
            Appointment.appointment_at >= start,
            Appointment.appointment_at < end,
            Appointment.status != AppointmentStatus.CANCELLED.value,
        )
        if exclude_code:
            query = query.filter(Appointment.appointment_code != exclude_code)
        return {row[0] for row in query.all()}

    @staticmethod
    def count_open_appointments(
        db: Session, dentist_code: str, day: date, exclude_code: Optional[str] = None
    ) -> int:
        """Pending + confirmed appointments counted against the daily cap"""
        start, end = day_bounds(day)
        query = db.query(func.count(Appointment.id)).filter(
            Appointment.dentist_code == dentist_code,
            Appointment.appointment_at >= start,
            Appointment.appointment_at < end,
            Appointment.status.in_(OPEN_APPOINTMENT_STATUSES),
        )
        if exclude_code:
            query = query.filter(Appointment.appointment_code != exclude_code)
        return query.scalar() or 0

    @staticmethod
    def list_appointments(
        db: Session,
        dentist_code: Optional[str] = None,
        day: Optional[date] = None,
        status: Optional[str] = None,
        limit: int = 500,
    ) -> list[Appointment]:
        query = db.query(Appointment)
        if dentist_code:
            query = query.filter(Appointment.dentist_code == dentist_code)
        if day:
            start, end = day_bounds(day)
            query = query.filter(Appointment.appointment_at >= start, Appointment.appointment_at < end)
        if status:
            query = query.filter(Appointment.status == status)
        return query.order_by(Appointment.appointment_at, Appointment.id).limit(limit).all()

    @staticmethod
    def transition_appointment(
        db: Session, appointment: Appointment, expected: Iterable[str], values: dict
    ) -> bool:
        """Conditional status update; False when the row moved on concurrently"""
        updated = (
            db.query(Appointment)
            .filter(Appointment.id == appointment.id, Appointment.status.in_(tuple(expected)))
            .update(values, synchronize_session="fetch")
        )
        return updated == 1

    @staticmethod
    def get_expired_pending_codes(
        db: Session, now: datetime, created_cutoff: datetime, limit: int, deferred_cutoff: Optional[datetime] = None
    ) -> list[str]:
        """
        Pending past their expiry stamp, or unstamped and created before the
        cutoff, oldest expiry first. Rows held back by the daily cap after
        deferred_cutoff are left out until their back-off has passed.
        """
        expires_at = func.coalesce(Appointment.pending_expires_at, Appointment.created_at)
        query = db.query(Appointment.appointment_code).filter(
            Appointment.status == AppointmentStatus.PENDING.value,
            (Appointment.pending_expires_at <= now)
            | (
                Appointment.pending_expires_at.is_(None)
                & (Appointment.created_at <= created_cutoff)
            ),
        )
        if deferred_cutoff is not None:
            query = query.filter(
                Appointment.cap_deferred_at.is_(None) | (Appointment.cap_deferred_at <= deferred_cutoff)
            )
        rows = query.order_by(expires_at, Appointment.id).limit(limit).all()
        return [row[0] for row in rows]

    @staticmethod
    def mark_cap_deferred(db: Session, appointment_code: str, now: datetime) -> int:
        """Stamp a pending appointment the expiry job could not confirm because of the cap"""
        return (
            db.query(Appointment)
            .filter(
                Appointment.appointment_code == appointment_code,
                Appointment.status == AppointmentStatus.PENDING.value,
            )
            .update({"cap_deferred_at": now}, synchronize_session="fetch")
        )

    @staticmethod
    def get_migration_candidates(db: Session, day: date) -> list[str]:
        """Open appointments of day not yet migrated and not already queued"""
        start, end = day_bounds(day)
        queued = select(QueueEntry.appointment_code)
        rows = (
            db.query(Appointment.appointment_code)
            .filter(
                Appointment.appointment_at >= start,
                Appointment.appointment_at < end,
                Appointment.status.in_(OPEN_APPOINTMENT_STATUSES),
                Appointment.migrated_at.is_(None),
                Appointment.appointment_code.not_in(queued),
            )
            .order_by(Appointment.appointment_at, Appointment.id)
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def get_cancelled_codes_before(db: Session, cutoff: datetime) -> list[str]:
        cancelled_at = func.coalesce(Appointment.cancelled_at, Appointment.updated_at)
        rows = (
            db.query(Appointment.appointment_code)
            .filter(
                Appointment.status == AppointmentStatus.CANCELLED.value,
                cancelled_at < cutoff,
            )
            .all()
        )
        return [row[0] for row in rows]

    @staticmethod
    def get_unreminded_confirmed(db: Session, day: date) -> list[Appointment]:
        start, end = day_bounds(day)
        return (
            db.query(Appointment)
            .filter(
                Appointment.appointment_at >= start,
                Appointment.appointment_at < end,
                Appointment.status == AppointmentStatus.CONFIRMED.value,
                Appointment.reminder_sent_at.is_(None),
            )
            .order_by(Appointment.appointment_at)
            .all()
        )

    # ========================================================================
    # Queue
    # ========================================================================

    @staticmethod
    def get_max_position(db: Session, dentist_code: str, day: date) -> int:
        return (
            db.query(func.max(QueueEntry.position))
            .filter(QueueEntry.dentist_code == dentist_code, QueueEntry.date == day)
            .scalar()
            or 0
        )

    @staticmethod
    def get_queue_entry(db: Session, queue_code: str) -> Optional[QueueEntry]:
        return db.query(QueueEntry).filter(QueueEntry.queue_code == queue_code).first()

    @staticmethod
    def get_queue_entry_for_update(db: Session, queue_code: str) -> Optional[QueueEntry]:
        return (
            db.query(QueueEntry)
            .filter(QueueEntry.queue_code == queue_code)
            .populate_existing()
            .with_for_update()
            .first()
        )

    @staticmethod
    def get_queue_entry_for_appointment(db: Session, appointment_code: str) -> Optional[QueueEntry]:
        return (
            db.query(QueueEntry)
            .filter(QueueEntry.appointment_code == appointment_code)
            .first()
        )

    @staticmethod
    def get_queue(db: Session, dentist_code: str, day: date) -> list[QueueEntry]:
        return (
            db.query(QueueEntry)
            .filter(QueueEntry.dentist_code == dentist_code, QueueEntry.date == day)
            .order_by(QueueEntry.position)
            .all()
        )

    @staticmethod
    def get_next_waiting(db: Session, dentist_code: str, day: date) -> Optional[QueueEntry]:
        return (
            db.query(QueueEntry)
            .filter(
                QueueEntry.dentist_code == dentist_code,
                QueueEntry.date == day,
                QueueEntry.status == QueueStatus.WAITING.value,
            )
            .order_by(QueueEntry.position)
            .first()
        )

    @staticmethod
    def get_queue_starts(
        db: Session, dentist_code: str, day: date, exclude_appointment: Optional[str] = None
    ) -> set[datetime]:
        query = db.query(QueueEntry.scheduled_at).filter(
            QueueEntry.dentist_code == dentist_code, QueueEntry.date == day
        )
        if exclude_appointment:
            query = query.filter(QueueEntry.appointment_code != exclude_appointment)
        return {row[0] for row in query.all()}

    @staticmethod
    def delete_queue_for_appointment(db: Session, appointment_code: str) -> int:
        return (
            db.query(QueueEntry)
            .filter(QueueEntry.appointment_code == appointment_code)
            .delete(synchronize_session="fetch")
        )

    @staticmethod
    def delete_queue_before(db: Session, day: date) -> int:
        return (
            db.query(QueueEntry)
            .filter(QueueEntry.date < day)
            .delete(synchronize_session=False)
        )
