"""
Reconciliation jobs for the scheduling engine
Expire pending → confirmed, migrate today's appointments into the queue,
purge old cancellations and send tomorrow's reminders.

Every job takes the current time from the injected clock, commits per item
and returns a summary dict. A failing item is logged and skipped; it never
aborts the batch. Jobs are safe to run concurrently with requests and with
each other: each mutation is condition-checked.
"""

import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import CANCELLED_RETENTION_HOURS, CAP_RETRY_MINUTES, EXPIRE_BATCH_LIMIT
from ...models import AppointmentStatus
from ...services.directory_service import Directory
from ...services.notification_service import NotificationKind, Notifier, notify_appointment
from .appointment_service import SYSTEM_ACTOR, AppointmentLifecycle
from .clock import Clock
from .exceptions import (
    ConcurrencyConflict,
    DailyCapReached,
    InvalidTransition,
    NotFound,
    SchedulingError,
)
from .repository import SchedulingRepository, atomic

logger = logging.getLogger(__name__)


def expire_pending(
    db: Session,
    directory: Directory,
    notifier: Notifier,
    clock: Clock,
    limit: int = EXPIRE_BATCH_LIMIT,
    cap_retry: timedelta = timedelta(minutes=CAP_RETRY_MINUTES),
) -> dict:
    """
    Auto-confirm pending appointments whose window has passed.

    Goes through the normal confirm transition, so the daily cap and queue
    placement apply. Appointments over the cap stay pending, are stamped,
    and are retried once cap_retry has passed. Oldest expiry goes first.
    """
    summary = {"checked": 0, "confirmed": 0, "skipped": 0, "capped": 0, "failed": 0}

    lifecycle = AppointmentLifecycle(db, directory, notifier, clock)
    now = clock.now()
    codes = SchedulingRepository.get_expired_pending_codes(
        db, now, now - lifecycle.pending_window, limit, deferred_cutoff=now - cap_retry
    )
    summary["checked"] = len(codes)

    for code in codes:
        try:
            lifecycle.confirm(code, actor=SYSTEM_ACTOR, auto=True)
            summary["confirmed"] += 1
        except DailyCapReached:
            summary["capped"] += 1
            try:
                with atomic(db):
                    SchedulingRepository.mark_cap_deferred(db, code, now)
            except (SchedulingError, SQLAlchemyError) as e:
                logger.error(f"❌ Could not defer capped appointment {code}: {e}")
            continue
        except (InvalidTransition, ConcurrencyConflict, NotFound) as e:
            # Confirmed, cancelled or removed by someone else in the meantime
            logger.info(f"ℹ️ Skipping {code}: {e}")
            summary["skipped"] += 1
            continue
        except (SchedulingError, SQLAlchemyError) as e:
            db.rollback()
            logger.error(f"❌ Failed to auto-confirm {code}: {e}")
            summary["failed"] += 1
            continue

    if summary["checked"]:
        logger.info(f"📊 Pending expiry summary: {summary}")
    return summary


def migrate_day(db: Session, directory: Directory, notifier: Notifier, clock: Clock) -> dict:
    """
    Day-boundary migration into the live queue.

    Purges queue entries of earlier days, then gives every open appointment
    of today a queue position and stamps it as migrated. Pending ones are
    confirmed on the way. Re-running is a no-op.
    """
    summary = {"purged": 0, "migrated": 0, "confirmed": 0, "skipped": 0, "failed": 0}

    lifecycle = AppointmentLifecycle(db, directory, notifier, clock)
    repo = lifecycle.repo
    today = clock.now().date()

    try:
        with atomic(db):
            summary["purged"] = repo.delete_queue_before(db, today)
    except (SchedulingError, SQLAlchemyError) as e:
        logger.error(f"❌ Failed to purge old queue entries: {e}")

    for code in repo.get_migration_candidates(db, today):
        confirmed = False
        try:
            with atomic(db):
                appointment = repo.get_appointment_for_update(db, code)
                if (
                    appointment is None
                    or appointment.migrated_at is not None
                    or appointment.status not in (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)
                    or repo.get_queue_entry_for_appointment(db, code) is not None
                ):
                    summary["skipped"] += 1
                    continue

                now = clock.now()
                if appointment.status == AppointmentStatus.PENDING.value:
                    appointment.status = AppointmentStatus.CONFIRMED.value
                    appointment.accepted_at = now
                    appointment.accepted_by = SYSTEM_ACTOR
                    appointment.pending_expires_at = None
                    confirmed = True

                lifecycle.queue.enqueue(appointment)
                appointment.migrated_at = now
        except (SchedulingError, SQLAlchemyError) as e:
            logger.error(f"❌ Failed to migrate {code}: {e}")
            summary["failed"] += 1
            continue

        summary["migrated"] += 1
        if confirmed:
            summary["confirmed"] += 1
            notify_appointment(db, notifier, appointment, NotificationKind.CONFIRMED, clock.now())

    logger.info(f"📊 Daily migration summary for {today}: {summary}")
    return summary


def cleanup_cancelled(
    db: Session,
    clock: Clock,
    retention_hours: float = CANCELLED_RETENTION_HOURS,
) -> dict:
    """Delete cancelled appointments older than the retention, freeing any slot still linked"""
    summary = {"deleted": 0, "slots_freed": 0, "failed": 0}

    repo = SchedulingRepository()
    cutoff = clock.now() - timedelta(hours=retention_hours)

    for code in repo.get_cancelled_codes_before(db, cutoff):
        try:
            with atomic(db):
                appointment = repo.get_appointment_for_update(db, code)
                if appointment is None or appointment.status != AppointmentStatus.CANCELLED.value:
                    continue
                summary["slots_freed"] += repo.release_slots(db, code, SYSTEM_ACTOR)
                repo.delete_queue_for_appointment(db, code)
                db.delete(appointment)
        except (SchedulingError, SQLAlchemyError) as e:
            logger.error(f"❌ Failed to purge cancelled appointment {code}: {e}")
            summary["failed"] += 1
            continue
        summary["deleted"] += 1

    if summary["deleted"] or summary["failed"]:
        logger.info(f"🧹 Cancelled cleanup summary: {summary}")
    return summary


def send_tomorrow_reminders(db: Session, notifier: Notifier, clock: Clock) -> dict:
    """Remind every confirmed appointment of tomorrow once"""
    summary = {"sent": 0, "failed": 0}

    tomorrow = clock.now().date() + timedelta(days=1)
    for appointment in SchedulingRepository.get_unreminded_confirmed(db, tomorrow):
        code = appointment.appointment_code
        if not notify_appointment(db, notifier, appointment, NotificationKind.REMINDER, clock.now()):
            summary["failed"] += 1
            continue
        try:
            appointment.reminder_sent_at = clock.now()
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Could not stamp reminder for {code}: {e}")
            summary["failed"] += 1
            continue
        summary["sent"] += 1

    logger.info(f"⏰ Reminder summary for {tomorrow}: {summary}")
    return summary
