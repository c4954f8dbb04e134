"""Tests for the arq task wrappers"""

import asyncio
from datetime import datetime

import pytest

from dental_scheduling import worker


@pytest.fixture
def wired(monkeypatch, session_factory, directory, notifier, clock):
    """Point the worker at the test database, directory, notifier and clock"""
    monkeypatch.setattr(worker, "SessionLocal", session_factory)
    monkeypatch.setattr(worker, "get_directory", lambda: directory)
    monkeypatch.setattr(worker, "get_notifier", lambda: notifier)
    monkeypatch.setattr(worker, "SystemClock", lambda: clock)
    return clock


def test_expire_pending_task(wired, lifecycle, booking, db):
    code = lifecycle.create(booking(at=datetime(2026, 3, 3, 9, 0))).appointment_code
    db.close()
    wired.set(datetime(2026, 3, 2, 11, 5))

    summary = asyncio.run(worker.expire_pending_task({}))

    assert summary["confirmed"] == 1
    assert lifecycle.get(code).status == "confirmed"


def test_migrate_day_task(wired, lifecycle, booking, db):
    lifecycle.create(booking(at=datetime(2026, 3, 3, 9, 0)))
    db.close()
    wired.set(datetime(2026, 3, 3, 0, 0, 5))

    summary = asyncio.run(worker.migrate_day_task({}))

    assert summary["migrated"] == 1


def test_cleanup_and_reminders_tasks(wired, lifecycle, booking, db):
    kept = lifecycle.create(booking(at=datetime(2026, 3, 3, 9, 0), confirmNow=True)).appointment_code
    dropped = lifecycle.create(booking(at=datetime(2026, 3, 3, 10, 0), patient_code="PAT-2")).appointment_code
    lifecycle.cancel(dropped, "PAT-2")
    db.close()
    wired.set(datetime(2026, 3, 2, 11, 0))

    assert asyncio.run(worker.cleanup_cancelled_task({}))["deleted"] == 1
    assert asyncio.run(worker.send_reminders_task({}))["sent"] == 1
    assert lifecycle.get(kept).reminder_sent_at == datetime(2026, 3, 2, 11, 0)


def test_startup_catches_up_on_missed_migration(wired, monkeypatch, engine, lifecycle, booking, db):
    code = lifecycle.create(booking(at=datetime(2026, 3, 3, 9, 0), confirmNow=True)).appointment_code
    db.close()
    monkeypatch.setattr(worker, "engine", engine)
    # Worker was down at midnight
    wired.set(datetime(2026, 3, 3, 8, 0))

    asyncio.run(worker.startup({}))

    entry = lifecycle.repo.get_queue_entry_for_appointment(db, code)
    assert entry is not None
    assert entry.position == 1
    assert lifecycle.get(code).migrated_at == datetime(2026, 3, 3, 8, 0)


def test_task_errors_propagate(monkeypatch):
    def broken():
        raise RuntimeError("no database")

    monkeypatch.setattr(worker, "SessionLocal", broken)

    with pytest.raises(RuntimeError):
        asyncio.run(worker.expire_pending_task({}))


def test_cron_schedule():
    jobs = {job.name: job for job in worker.WorkerSettings.cron_jobs}

    assert set(jobs) == {
        "cron:expire_pending_task",
        "cron:migrate_day_task",
        "cron:cleanup_cancelled_task",
        "cron:send_reminders_task",
    }
    assert jobs["cron:migrate_day_task"].hour == 0
    assert jobs["cron:send_reminders_task"].hour == 9
    assert all(job.unique for job in jobs.values())
