"""Tests for the persisted slot ledger"""

from datetime import date, datetime

import pytest

from dental_scheduling.domain.scheduling.exceptions import ValidationError
from dental_scheduling.models import Slot, SlotStatus

TUESDAY = date(2026, 3, 3)


def test_ensure_slots_exist_is_idempotent(lifecycle, db):
    ledger = lifecycle.ledger

    assert ledger.ensure_slots_exist("DEN-1", TUESDAY) == 6
    db.commit()
    assert ledger.ensure_slots_exist("DEN-1", TUESDAY) == 0
    db.commit()

    slots = ledger.list_slots("DEN-1", TUESDAY)
    assert [s.time_slot for s in slots][:2] == ["09:00-09:30", "09:30-10:00"]
    assert all(s.status == SlotStatus.AVAILABLE.value for s in slots)


def test_non_working_day_materializes_nothing(lifecycle, db):
    assert lifecycle.ledger.ensure_slots_exist("DEN-1", date(2026, 3, 4)) == 0
    assert db.query(Slot).count() == 0


def test_booking_links_slot_to_appointment(lifecycle, booking, db):
    appointment = lifecycle.create(booking(at=datetime(2026, 3, 3, 10, 0)))

    booked = db.query(Slot).filter(Slot.status == SlotStatus.BOOKED.value).all()
    assert len(booked) == 1
    assert booked[0].time_slot == "10:00-10:30"
    assert booked[0].appointment_code == appointment.appointment_code
    assert booked[0].patient_code == "PAT-1"


def test_long_appointment_books_every_overlapping_slot(lifecycle, booking, db):
    lifecycle.create(booking(at=datetime(2026, 3, 3, 10, 0), durationMinutes=60))

    booked = sorted(
        s.time_slot for s in db.query(Slot).filter(Slot.status == SlotStatus.BOOKED.value)
    )
    assert booked == ["10:00-10:30", "10:30-11:00"]


class TestBlocking:
    def test_block_reports_booked_conflicts(self, lifecycle, booking, db):
        appointment = lifecycle.create(booking(at=datetime(2026, 3, 3, 9, 0)))

        blocked, conflicts = lifecycle.ledger.block_slots(
            "DEN-1", TUESDAY, TUESDAY, "leave", "Annual leave", "STAFF-1"
        )
        db.commit()

        assert blocked == 5
        assert conflicts == [appointment.appointment_code]
        statuses = {s.time_slot: s.status for s in lifecycle.ledger.list_slots("DEN-1", TUESDAY)}
        assert statuses["09:00-09:30"] == SlotStatus.BOOKED.value
        assert statuses["09:30-10:00"] == SlotStatus.BLOCKED_LEAVE.value

    def test_unblock_restores_available(self, lifecycle, db):
        lifecycle.ledger.block_slots("DEN-1", TUESDAY, TUESDAY, "event", "Conference")
        db.commit()

        assert lifecycle.ledger.unblock_slots("DEN-1", TUESDAY, TUESDAY, "STAFF-1") == 6
        db.commit()

        slots = lifecycle.ledger.list_slots("DEN-1", TUESDAY)
        assert all(s.status == SlotStatus.AVAILABLE.value for s in slots)
        assert all(s.blocked_by is None for s in slots)

    def test_multi_day_range_skips_non_working_days(self, lifecycle, db):
        blocked, conflicts = lifecycle.ledger.block_slots(
            "DEN-1", date(2026, 3, 2), date(2026, 3, 4), "maintenance"
        )
        db.commit()

        assert blocked == 12
        assert conflicts == []

    def test_reversed_range_rejected(self, lifecycle):
        with pytest.raises(ValidationError):
            lifecycle.ledger.block_slots("DEN-1", date(2026, 3, 5), date(2026, 3, 3), "leave")

    def test_unknown_kind_rejected(self, lifecycle):
        with pytest.raises(ValidationError):
            lifecycle.ledger.block_slots("DEN-1", TUESDAY, TUESDAY, "holiday")

    def test_overlong_range_rejected(self, lifecycle):
        with pytest.raises(ValidationError):
            lifecycle.ledger.unblock_slots("DEN-1", date(2026, 1, 1), date(2027, 6, 1))
