"""Scheduling error taxonomy - surfaced synchronously to callers, never retried"""

from typing import Any, Optional


class SchedulingError(Exception):
    """Base class for business-rule failures"""

    status_code = 400

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    @property
    def error(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, **self.details}


class ValidationError(SchedulingError):
    """Malformed input"""

    status_code = 400


class NotFound(SchedulingError):
    status_code = 404


class SlotUnavailable(SchedulingError):
    """Slot already booked, blocked, outside working hours or in the past"""

    status_code = 409


class DuplicateBooking(SchedulingError):
    """Another active appointment holds the same dentist and instant"""

    status_code = 409


class DailyCapReached(SchedulingError):
    status_code = 409

    def __init__(self, dentist_code: str, day, cap: int):
        super().__init__(
            f"Daily cap {cap} reached for {dentist_code}",
            dentistCode=dentist_code,
            date=str(day),
            cap=cap,
        )


class InvalidTransition(SchedulingError):
    """Requested status change is not allowed from the current status"""

    status_code = 409

    def __init__(self, code: str, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move {code} from {current} to {target}",
            code=code,
            current=current,
            target=target,
        )


class ConcurrencyConflict(SchedulingError):
    """A concurrent writer won the race; retry with fresh data"""

    status_code = 409
