"""
Time parsing and calculations for the scheduling domain.

Working hours come from the directory in two shapes:
    "09:00-17:00"                                          (string)
    {"startTime": "09:00", "endTime": "17:00", "isWorking": true}   (object)
Anything else ("Not Available", "-", empty, zero-length, garbage) means the
dentist does not work that day. Parsing fails closed.
"""

import re
from datetime import date, datetime, time, timedelta
from typing import Any, Optional
from zoneinfo import ZoneInfo

from ...config import CLINIC_TIMEZONE

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")

_CLOCK_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


def weekday_name(day: date) -> str:
    return WEEKDAY_NAMES[day.weekday()]


def parse_clock_time(value: Any) -> Optional[time]:
    """Parse HH:MM (24h); None when malformed"""
    if not isinstance(value, str):
        return None
    match = _CLOCK_TIME_RE.match(value.strip())
    if not match:
        return None
    return time(int(match.group(1)), int(match.group(2)))


def parse_working_hours(raw: Any) -> Optional[tuple[time, time]]:
    """
    Normalize a directory working-hours value into (start, end).

    Returns None for non-working days and for anything that cannot be parsed
    or describes an empty interval.
    """
    if raw is None:
        return None

    if isinstance(raw, dict):
        working = raw.get("isWorking", raw.get("available", True))
        if not working:
            return None
        start = parse_clock_time(raw.get("startTime", raw.get("start")))
        end = parse_clock_time(raw.get("endTime", raw.get("end")))
    elif isinstance(raw, str):
        if "-" not in raw or raw.strip() == "-":
            return None
        start_raw, _, end_raw = raw.partition("-")
        start = parse_clock_time(start_raw)
        end = parse_clock_time(end_raw)
    else:
        return None

    if start is None or end is None or start >= end:
        return None
    return start, end


def format_time_slot(start: time, end: time) -> str:
    return f"{start.strftime('%H:%M')}-{end.strftime('%H:%M')}"


def parse_time_slot(value: str) -> tuple[time, time]:
    """Parse a ledger key such as 09:00-09:30"""
    start_raw, _, end_raw = value.partition("-")
    start = parse_clock_time(start_raw)
    end = parse_clock_time(end_raw)
    if start is None or end is None:
        raise ValueError(f"Invalid time slot: {value!r}")
    return start, end


def partition_day(
    day: date, start: time, end: time, slot_minutes: int
) -> list[tuple[datetime, datetime]]:
    """Split [start, end) on day into slot_minutes chunks, dropping a short tail"""
    if slot_minutes <= 0:
        raise ValueError("slot_minutes must be positive")

    chunks = []
    step = timedelta(minutes=slot_minutes)
    cursor = datetime.combine(day, start)
    limit = datetime.combine(day, end)
    while cursor + step <= limit:
        chunks.append((cursor, cursor + step))
        cursor += step
    return chunks


def generate_time_slots(start: time, end: time, slot_minutes: int) -> list[str]:
    """Ledger keys for a working interval"""
    anchor = date(2000, 1, 1)
    return [
        format_time_slot(s.time(), e.time())
        for s, e in partition_day(anchor, start, end, slot_minutes)
    ]


def day_bounds(day: date) -> tuple[datetime, datetime]:
    """[00:00 of day, 00:00 of next day)"""
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def normalize_instant(value: datetime, timezone: str = CLINIC_TIMEZONE) -> datetime:
    """
    Convert to naive clinic-local time at minute precision.

    Aware datetimes are shifted into the clinic timezone first; naive ones are
    taken as already local.
    """
    if value.tzinfo is not None:
        value = value.astimezone(ZoneInfo(timezone)).replace(tzinfo=None)
    return value.replace(second=0, microsecond=0)


def iter_days(start: date, end: date):
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
