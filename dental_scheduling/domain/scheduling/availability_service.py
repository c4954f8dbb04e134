"""
Availability resolver - bookable intervals for a dentist on a date.

Read-only: never materializes slots and never writes. Listing the same
dentist-day twice with no intervening writes yields the same result.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from ...config import DEFAULT_SLOT_MINUTES
from ...services.directory_service import Directory, DirectoryUnavailable
from .clock import Clock
from .exceptions import SlotUnavailable, ValidationError
from .repository import SchedulingRepository
from .time_calculator import (
    intervals_overlap,
    parse_time_slot,
    parse_working_hours,
    partition_day,
    weekday_name,
)

logger = logging.getLogger(__name__)


def resolve_working_hours(directory: Directory, dentist_code: str, day: date) -> Optional[tuple[time, time]]:
    """Working interval for the dentist on day; None when not working, inactive or unknown"""
    try:
        if not directory.is_active(dentist_code):
            return None
        raw = directory.get_working_hours(dentist_code, weekday_name(day))
    except DirectoryUnavailable as e:
        logger.error(f"❌ Directory unavailable for {dentist_code}, treating {day} as closed: {e}")
        return None
    return parse_working_hours(raw)


class AvailabilityResolver:
    """Computes open intervals from working hours, the slot ledger and bookings"""

    def __init__(self, db: Session, directory: Directory, clock: Clock):
        self.db = db
        self.directory = directory
        self.clock = clock
        self.repo = SchedulingRepository()

    def list_available_slots(
        self,
        dentist_code: str,
        day: date,
        slot_minutes: int = DEFAULT_SLOT_MINUTES,
        exclude_appointment: Optional[str] = None,
    ) -> list[tuple[datetime, datetime]]:
        """
        Ordered (start, end) intervals still open for booking.

        exclude_appointment ignores one appointment's own booking, so a
        reschedule can see the time it is moving away from.
        """
        if slot_minutes <= 0:
            raise ValidationError("Slot duration must be positive", durationMinutes=slot_minutes)

        hours = resolve_working_hours(self.directory, dentist_code, day)
        if hours is None:
            return []

        chunks = partition_day(day, hours[0], hours[1], slot_minutes)
        if not chunks:
            return []

        blocked = []
        for slot in self.repo.get_blocking_slots(self.db, dentist_code, day, exclude_appointment):
            start, end = parse_time_slot(slot.time_slot)
            blocked.append((datetime.combine(day, start), datetime.combine(day, end)))

        taken = self.repo.get_active_starts(self.db, dentist_code, day, exclude_appointment)
        taken |= self.repo.get_queue_starts(self.db, dentist_code, day, exclude_appointment)

        now = self.clock.now()
        available = []
        for start, end in chunks:
            if start <= now:
                continue
            if start in taken:
                continue
            if any(intervals_overlap(start, end, b_start, b_end) for b_start, b_end in blocked):
                continue
            available.append((start, end))
        return available

    def ensure_bookable(
        self,
        dentist_code: str,
        instant: datetime,
        duration_minutes: int,
        exclude_appointment: Optional[str] = None,
    ) -> None:
        """Raise SlotUnavailable unless [instant, instant + duration) is an open interval"""
        if duration_minutes <= 0:
            raise ValidationError("Duration must be positive", durationMinutes=duration_minutes)

        if instant <= self.clock.now():
            raise SlotUnavailable(
                "Appointment time is in the past", dentistCode=dentist_code, appointmentAt=instant.isoformat()
            )

        hours = resolve_working_hours(self.directory, dentist_code, instant.date())
        if hours is None:
            raise SlotUnavailable(
                f"Dentist {dentist_code} is not available on {instant.date()}",
                dentistCode=dentist_code,
                appointmentAt=instant.isoformat(),
            )

        open_intervals = self.list_available_slots(
            dentist_code, instant.date(), duration_minutes, exclude_appointment
        )
        wanted = (instant, instant + timedelta(minutes=duration_minutes))
        if wanted not in open_intervals:
            logger.warning(f"⚠️ Slot {instant} for {dentist_code} is not open")
            raise SlotUnavailable(
                "Selected time slot is not available",
                dentistCode=dentist_code,
                appointmentAt=instant.isoformat(),
            )
