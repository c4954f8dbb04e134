"""Clock abstraction - every "now" and "today" in the engine comes from here"""

from datetime import date, datetime, timedelta
from typing import Optional, Protocol
from zoneinfo import ZoneInfo

from ...config import CLINIC_TIMEZONE


class Clock(Protocol):
    def now(self) -> datetime:
        """Current clinic-local wall time (naive)"""
        ...


class SystemClock:
    """Wall clock in the clinic timezone"""

    def __init__(self, timezone: str = CLINIC_TIMEZONE):
        self.tz = ZoneInfo(timezone)

    def now(self) -> datetime:
        return datetime.now(self.tz).replace(tzinfo=None)


class FixedClock:
    """Clock pinned to an instant; used by tests and manual job runs"""

    def __init__(self, current: datetime):
        self.current = current

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, current: datetime) -> None:
        self.current = current


def today(clock: Clock) -> date:
    return clock.now().date()


def is_today(clock: Clock, instant: datetime, reference: Optional[datetime] = None) -> bool:
    """True when instant falls on the clock's current calendar day"""
    reference = reference or clock.now()
    return instant.date() == reference.date()


_system_clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency; overridden in tests"""
    return _system_clock
