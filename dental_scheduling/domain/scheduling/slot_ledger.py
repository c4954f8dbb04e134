"""
Slot ledger - persisted per-slot state, the source of truth for conflicts.

Slots are materialized lazily from the dentist's working hours at
DEFAULT_SLOT_MINUTES granularity and freed back to available rather than
deleted. Nothing in here commits; callers own the transaction.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...config import DEFAULT_SLOT_MINUTES
from ...models import Slot, SlotStatus
from ...services.directory_service import Directory
from .availability_service import resolve_working_hours
from .exceptions import SlotUnavailable, ValidationError
from .repository import SchedulingRepository
from .time_calculator import generate_time_slots, intervals_overlap, iter_days, parse_time_slot

logger = logging.getLogger(__name__)

BLOCK_STATUS_BY_KIND = {
    "leave": SlotStatus.BLOCKED_LEAVE.value,
    "event": SlotStatus.BLOCKED_EVENT.value,
    "maintenance": SlotStatus.BLOCKED_MAINTENANCE.value,
}

# Longest range a single block/unblock request may cover
MAX_BLOCK_DAYS = 366


class SlotLedger:
    def __init__(self, db: Session, directory: Directory, slot_minutes: int = DEFAULT_SLOT_MINUTES):
        self.db = db
        self.directory = directory
        self.slot_minutes = slot_minutes
        self.repo = SchedulingRepository()

    def ensure_slots_exist(self, dentist_code: str, day: date) -> int:
        """Create missing slots for the day; returns how many were created"""
        hours = resolve_working_hours(self.directory, dentist_code, day)
        if hours is None:
            return 0

        existing = {slot.time_slot for slot in self.repo.get_slots(self.db, dentist_code, day)}
        self.db.flush()

        created = 0
        for time_slot in generate_time_slots(hours[0], hours[1], self.slot_minutes):
            if time_slot in existing:
                continue
            try:
                with self.db.begin_nested():
                    self.db.add(
                        Slot(
                            dentist_code=dentist_code,
                            date=day,
                            time_slot=time_slot,
                            slot_duration=self.slot_minutes,
                            status=SlotStatus.AVAILABLE.value,
                        )
                    )
                created += 1
            except IntegrityError:
                # Materialized concurrently
                continue

        if created:
            logger.info(f"📅 Materialized {created} slots for {dentist_code} on {day}")
        return created

    def book_slots(
        self,
        dentist_code: str,
        instant: datetime,
        duration_minutes: int,
        appointment_code: str,
        patient_code: Optional[str],
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> list[Slot]:
        """Mark every slot overlapping [instant, instant + duration) as booked for the appointment"""
        day = instant.date()
        self.ensure_slots_exist(dentist_code, day)

        slots = self._slots_overlapping(dentist_code, instant, instant + timedelta(minutes=duration_minutes))
        if not slots:
            raise SlotUnavailable(
                "No slot exists for the selected time",
                dentistCode=dentist_code,
                appointmentAt=instant.isoformat(),
            )

        values = {
            "status": SlotStatus.BOOKED.value,
            "appointment_code": appointment_code,
            "patient_code": patient_code,
            "reason": reason,
            "last_modified_by": actor,
        }
        for slot in slots:
            if not self.repo.claim_slot(self.db, slot.id, values):
                logger.warning(f"⚠️ Slot {slot.time_slot} on {day} for {dentist_code} is already taken")
                raise SlotUnavailable(
                    "Selected time slot is not available",
                    dentistCode=dentist_code,
                    appointmentAt=instant.isoformat(),
                )
        return slots

    def free_slots(self, appointment_code: str, actor: Optional[str] = None) -> int:
        freed = self.repo.release_slots(self.db, appointment_code, actor)
        if freed:
            logger.info(f"🔓 Freed {freed} slot(s) held by {appointment_code}")
        return freed

    def block_slots(
        self,
        dentist_code: str,
        from_date: date,
        to_date: date,
        blocked_by: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> tuple[int, list[str]]:
        """
        Block available slots in [from_date, to_date].

        Booked slots are left alone; their appointment codes are returned so
        staff can reschedule them.
        """
        status = BLOCK_STATUS_BY_KIND.get(blocked_by)
        if status is None:
            raise ValidationError(f"Unknown block kind: {blocked_by}", blockedBy=blocked_by)
        self._check_range(from_date, to_date)

        blocked = 0
        conflicts = []
        for day in iter_days(from_date, to_date):
            self.ensure_slots_exist(dentist_code, day)

        for slot in self.repo.get_slots_in_range(self.db, dentist_code, from_date, to_date):
            if slot.status == SlotStatus.AVAILABLE.value:
                slot.status = status
                slot.blocked_by = blocked_by
                slot.blocking_reason = reason
                slot.last_modified_by = actor
                blocked += 1
            elif slot.status == SlotStatus.BOOKED.value and slot.appointment_code:
                conflicts.append(slot.appointment_code)

        logger.info(
            f"⛔ Blocked {blocked} slots for {dentist_code} {from_date}..{to_date} ({blocked_by}), "
            f"{len(conflicts)} booked conflicts"
        )
        return blocked, sorted(set(conflicts))

    def unblock_slots(
        self, dentist_code: str, from_date: date, to_date: date, actor: Optional[str] = None
    ) -> int:
        self._check_range(from_date, to_date)

        unblocked = 0
        for slot in self.repo.get_slots_in_range(self.db, dentist_code, from_date, to_date):
            if slot.status in BLOCK_STATUS_BY_KIND.values():
                slot.status = SlotStatus.AVAILABLE.value
                slot.blocked_by = None
                slot.blocking_reason = None
                slot.last_modified_by = actor
                unblocked += 1

        logger.info(f"✅ Unblocked {unblocked} slots for {dentist_code} {from_date}..{to_date}")
        return unblocked

    def list_slots(self, dentist_code: str, day: date) -> list[Slot]:
        return self.repo.get_slots(self.db, dentist_code, day)

    def _slots_overlapping(self, dentist_code: str, start: datetime, end: datetime) -> list[Slot]:
        day = start.date()
        overlapping = []
        for slot in self.repo.get_slots(self.db, dentist_code, day):
            slot_start, slot_end = parse_time_slot(slot.time_slot)
            if intervals_overlap(
                start, end, datetime.combine(day, slot_start), datetime.combine(day, slot_end)
            ):
                overlapping.append(slot)
        return overlapping

    @staticmethod
    def _check_range(from_date: date, to_date: date) -> None:
        if to_date < from_date:
            raise ValidationError("toDate must not be before fromDate")
        if to_date - from_date > timedelta(days=MAX_BLOCK_DAYS):
            raise ValidationError(f"Range may cover at most {MAX_BLOCK_DAYS} days")
