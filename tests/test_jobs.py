"""Tests for the reconciliation jobs run by the worker"""

from datetime import date, datetime
from functools import partial

import pytest

from dental_scheduling.domain.scheduling import jobs
from dental_scheduling.domain.scheduling.appointment_service import AppointmentLifecycle
from dental_scheduling.domain.scheduling.exceptions import InvalidTransition, NotFound
from dental_scheduling.models import Appointment, QueueEntry, Slot, SlotStatus

from .conftest import FailingNotifier

TUESDAY_9 = datetime(2026, 3, 3, 9, 0)
TUESDAY_930 = datetime(2026, 3, 3, 9, 30)
TUESDAY_10 = datetime(2026, 3, 3, 10, 0)


class TestExpirePending:
    def test_confirms_after_window(self, lifecycle, booking, db, directory, notifier, clock):
        appointment = lifecycle.create(booking(at=TUESDAY_9))
        clock.set(datetime(2026, 3, 2, 11, 1))

        summary = jobs.expire_pending(db, directory, notifier, clock)

        assert summary["checked"] == 1
        assert summary["confirmed"] == 1
        stored = lifecycle.get(appointment.appointment_code)
        assert stored.status == "confirmed"
        assert stored.accepted_by == "SYSTEM"
        assert stored.auto_confirmed_at == datetime(2026, 3, 2, 11, 1)
        assert notifier.kinds() == ["pending", "confirmed"]

    def test_rerun_is_a_no_op(self, lifecycle, booking, db, directory, notifier, clock):
        lifecycle.create(booking(at=TUESDAY_9))
        clock.set(datetime(2026, 3, 2, 11, 1))
        jobs.expire_pending(db, directory, notifier, clock)

        summary = jobs.expire_pending(db, directory, notifier, clock)
        assert summary == {"checked": 0, "confirmed": 0, "skipped": 0, "capped": 0, "failed": 0}

    def test_not_yet_expired_is_left_alone(self, lifecycle, booking, db, directory, notifier, clock):
        appointment = lifecycle.create(booking(at=TUESDAY_9))
        clock.set(datetime(2026, 3, 2, 10, 59))

        assert jobs.expire_pending(db, directory, notifier, clock)["checked"] == 0
        assert lifecycle.get(appointment.appointment_code).status == "pending"

    def test_same_day_expiry_joins_the_queue(self, lifecycle, booking, db, directory, notifier, clock):
        appointment = lifecycle.create(booking(at=TUESDAY_9))
        clock.set(datetime(2026, 3, 3, 8, 0))

        jobs.expire_pending(db, directory, notifier, clock)

        entry = lifecycle.repo.get_queue_entry_for_appointment(db, appointment.appointment_code)
        assert entry is not None
        assert entry.date == date(2026, 3, 3)

    def test_over_cap_stays_pending(self, lifecycle, booking, db, directory, notifier, clock, monkeypatch):
        for at, patient in ((TUESDAY_9, "PAT-1"), (TUESDAY_930, "PAT-2"), (TUESDAY_10, "PAT-3")):
            lifecycle.create(booking(at=at, patient_code=patient))
        monkeypatch.setattr(jobs, "AppointmentLifecycle", partial(AppointmentLifecycle, daily_cap=2))
        clock.set(datetime(2026, 3, 2, 11, 1))

        summary = jobs.expire_pending(db, directory, notifier, clock)

        assert summary["capped"] == 3
        assert summary["confirmed"] == 0
        assert {a.status for a in db.query(Appointment)} == {"pending"}

    def test_capped_appointments_back_off(self, lifecycle, booking, db, directory, notifier, clock, monkeypatch):
        for at, patient in ((TUESDAY_9, "PAT-1"), (TUESDAY_930, "PAT-2"), (TUESDAY_10, "PAT-3")):
            lifecycle.create(booking(at=at, patient_code=patient))
        other = lifecycle.create(booking(dentist_code="DEN-2", at=datetime(2026, 3, 3, 14, 0), patient_code="PAT-4"))
        monkeypatch.setattr(jobs, "AppointmentLifecycle", partial(AppointmentLifecycle, daily_cap=2))

        clock.set(datetime(2026, 3, 2, 11, 1))
        summary = jobs.expire_pending(db, directory, notifier, clock, limit=3)
        assert summary["capped"] == 3
        assert lifecycle.get("AP-0001").cap_deferred_at == datetime(2026, 3, 2, 11, 1)

        # The capped rows no longer crowd the batch
        clock.set(datetime(2026, 3, 2, 11, 2))
        summary = jobs.expire_pending(db, directory, notifier, clock, limit=3)
        assert summary["checked"] == 1
        assert summary["confirmed"] == 1
        assert lifecycle.get(other.appointment_code).status == "confirmed"

        clock.set(datetime(2026, 3, 2, 11, 17))
        summary = jobs.expire_pending(db, directory, notifier, clock, limit=3)
        assert summary["capped"] == 3


class TestMigrateDay:
    @pytest.fixture
    def scheduled(self, lifecycle, booking):
        """Monday same-day booking plus three Tuesday bookings (pending, confirmed, cancelled)"""
        lifecycle.create(booking(at=datetime(2026, 3, 2, 9, 0), patient_code="PAT-0"))
        pending = lifecycle.create(booking(at=TUESDAY_930, patient_code="PAT-1"))
        confirmed = lifecycle.create(booking(at=TUESDAY_9, patient_code="PAT-2", confirmNow=True))
        cancelled = lifecycle.create(booking(at=TUESDAY_10, patient_code="PAT-3"))
        lifecycle.cancel(cancelled.appointment_code, "PAT-3")
        return pending.appointment_code, confirmed.appointment_code, cancelled.appointment_code

    def test_moves_open_appointments_into_queue(self, lifecycle, scheduled, db, directory, notifier, clock):
        pending_code, confirmed_code, cancelled_code = scheduled
        clock.set(datetime(2026, 3, 3, 0, 0, 30))

        summary = jobs.migrate_day(db, directory, notifier, clock)

        assert summary["purged"] == 1
        assert summary["migrated"] == 2
        assert summary["confirmed"] == 1

        queue = lifecycle.queue.list_queue("DEN-1", date(2026, 3, 3))
        assert [e.appointment_code for e in queue] == [confirmed_code, pending_code]
        assert [e.position for e in queue] == [1, 2]
        assert lifecycle.get(pending_code).status == "confirmed"
        assert lifecycle.get(pending_code).migrated_at == datetime(2026, 3, 3, 0, 0, 30)
        assert lifecycle.repo.get_queue_entry_for_appointment(db, cancelled_code) is None
        assert db.query(QueueEntry).filter(QueueEntry.date < date(2026, 3, 3)).count() == 0
        assert notifier.kinds()[-1] == "confirmed"

    def test_rerun_is_idempotent(self, lifecycle, scheduled, db, directory, notifier, clock):
        clock.set(datetime(2026, 3, 3, 0, 0, 30))
        jobs.migrate_day(db, directory, notifier, clock)
        sent = len(notifier.sent)

        summary = jobs.migrate_day(db, directory, notifier, clock)

        assert summary["purged"] == 0
        assert summary["migrated"] == 0
        assert db.query(QueueEntry).count() == 2
        assert len(notifier.sent) == sent

    def test_migrated_appointment_cannot_be_rescheduled(self, lifecycle, scheduled, db, directory, notifier, clock):
        pending_code = scheduled[0]
        clock.set(datetime(2026, 3, 3, 0, 0, 30))
        jobs.migrate_day(db, directory, notifier, clock)

        with pytest.raises(InvalidTransition):
            lifecycle.reschedule(pending_code, datetime(2026, 3, 3, 11, 0), "STAFF-1")


class TestCleanupCancelled:
    def test_respects_retention(self, lifecycle, booking, db, clock):
        appointment = lifecycle.create(booking(at=TUESDAY_9))
        lifecycle.cancel(appointment.appointment_code, "PAT-1")
        code = appointment.appointment_code

        clock.set(datetime(2026, 3, 2, 10, 0))
        assert jobs.cleanup_cancelled(db, clock)["deleted"] == 0

        clock.set(datetime(2026, 3, 2, 10, 1))
        summary = jobs.cleanup_cancelled(db, clock)

        assert summary["deleted"] == 1
        with pytest.raises(NotFound):
            lifecycle.get(code)

    def test_frees_dangling_slot(self, lifecycle, booking, db, clock):
        appointment = lifecycle.create(booking(at=TUESDAY_9))
        code = appointment.appointment_code
        db.query(Appointment).filter(Appointment.appointment_code == code).update(
            {"status": "cancelled", "cancelled_at": datetime(2026, 3, 2, 7, 0)}, synchronize_session=False
        )
        db.commit()

        clock.set(datetime(2026, 3, 2, 10, 1))
        summary = jobs.cleanup_cancelled(db, clock)

        assert summary == {"deleted": 1, "slots_freed": 1, "failed": 0}
        slot = db.query(Slot).filter(Slot.time_slot == "09:00-09:30", Slot.date == date(2026, 3, 3)).one()
        assert slot.status == SlotStatus.AVAILABLE.value
        assert slot.appointment_code is None

    def test_open_appointments_untouched(self, lifecycle, booking, db, clock):
        lifecycle.create(booking(at=TUESDAY_9))
        clock.set(datetime(2026, 3, 5, 12, 0))

        assert jobs.cleanup_cancelled(db, clock)["deleted"] == 0
        assert db.query(Appointment).count() == 1


class TestReminders:
    def test_reminds_confirmed_tomorrow_once(self, lifecycle, booking, db, notifier, clock):
        confirmed = lifecycle.create(booking(at=TUESDAY_9, confirmNow=True))
        lifecycle.create(booking(at=TUESDAY_10, patient_code="PAT-2"))
        clock.set(datetime(2026, 3, 2, 9, 0))

        assert jobs.send_tomorrow_reminders(db, notifier, clock) == {"sent": 1, "failed": 0}
        assert lifecycle.get(confirmed.appointment_code).reminder_sent_at == datetime(2026, 3, 2, 9, 0)
        assert notifier.kinds().count("reminder") == 1

        assert jobs.send_tomorrow_reminders(db, notifier, clock) == {"sent": 0, "failed": 0}

    def test_failed_reminder_is_retried_later(self, lifecycle, booking, db, clock):
        confirmed = lifecycle.create(booking(at=TUESDAY_9, confirmNow=True))
        clock.set(datetime(2026, 3, 2, 9, 0))

        assert jobs.send_tomorrow_reminders(db, FailingNotifier(), clock) == {"sent": 0, "failed": 1}
        stored = lifecycle.get(confirmed.appointment_code)
        assert stored.reminder_sent_at is None
        assert stored.notification_status == "failed"
