from enum import Enum

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.sql import func

from .database import Base


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    BOOKED = "booked"
    BLOCKED_LEAVE = "blocked_leave"
    BLOCKED_EVENT = "blocked_event"
    BLOCKED_MAINTENANCE = "blocked_maintenance"


BLOCKING_SLOT_STATUSES = (
    SlotStatus.BOOKED.value,
    SlotStatus.BLOCKED_LEAVE.value,
    SlotStatus.BLOCKED_EVENT.value,
    SlotStatus.BLOCKED_MAINTENANCE.value,
)


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Statuses counted against the daily cap
OPEN_APPOINTMENT_STATUSES = (AppointmentStatus.PENDING.value, AppointmentStatus.CONFIRMED.value)
TERMINAL_APPOINTMENT_STATUSES = (
    AppointmentStatus.COMPLETED.value,
    AppointmentStatus.CANCELLED.value,
)


class QueueStatus(str, Enum):
    WAITING = "waiting"
    CALLED = "called"
    IN_TREATMENT = "in_treatment"
    COMPLETED = "completed"


class PatientKind(str, Enum):
    REGISTERED = "registered"
    GUEST = "guest"
    BOOKED_FOR_OTHER = "booked_for_other"


class SchedulingCounter(Base):
    """Monotonic sequence per code scope (appointment, queue, guest)"""

    __tablename__ = "scheduling_counters"

    scope = Column(String(50), primary_key=True)
    seq = Column(Integer, nullable=False, default=0)


class DentistDay(Base):
    """Anchor row locked to serialize writers on one dentist-day"""

    __tablename__ = "dentist_days"
    __table_args__ = (UniqueConstraint("dentist_code", "date", name="uq_dentist_days_dentist_date"),)

    id = Column(Integer, primary_key=True, index=True)
    dentist_code = Column(String(50), nullable=False)
    date = Column(Date, nullable=False)
    created_at = Column(DateTime, server_default=func.now())


class Slot(Base):
    __tablename__ = "slots"
    __table_args__ = (
        UniqueConstraint("dentist_code", "date", "time_slot", name="uq_slots_dentist_date_time"),
        Index("ix_slots_dentist_date_status", "dentist_code", "date", "status"),
    )

    id = Column(Integer, primary_key=True, index=True)
    dentist_code = Column(String(50), nullable=False)
    date = Column(Date, nullable=False)
    time_slot = Column(String(11), nullable=False)  # HH:MM-HH:MM
    slot_duration = Column(Integer, nullable=False, default=30)  # minutes
    status = Column(String(30), nullable=False, default=SlotStatus.AVAILABLE.value)

    # Booking link (when booked)
    appointment_code = Column(String(30), nullable=True, index=True)
    patient_code = Column(String(50), nullable=True)
    reason = Column(String(500), nullable=True)

    # Blocking information
    blocked_by = Column(String(20), nullable=True)  # leave, event, maintenance
    blocking_reason = Column(String(500), nullable=True)

    last_modified_by = Column(String(50), nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # At most one non-cancelled appointment per dentist and instant
        Index(
            "uq_appointments_dentist_instant_active",
            "dentist_code",
            "appointment_at",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
        Index("ix_appointments_status_at", "status", "appointment_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    appointment_code = Column(String(30), unique=True, nullable=False)

    # Patient (tagged variant: registered / guest / booked_for_other)
    patient_kind = Column(String(30), nullable=False, default=PatientKind.REGISTERED.value)
    patient_code = Column(String(50), nullable=False, index=True)  # patient, guest or booker code
    patient_snapshot = Column(JSON, nullable=True)  # name/phone/email/relation for non-registered

    dentist_code = Column(String(50), nullable=False, index=True)
    appointment_at = Column(DateTime, nullable=False)  # clinic local time, minute precision
    duration_minutes = Column(Integer, nullable=False, default=30)
    reason = Column(String(500), nullable=True)
    notes = Column(String(1000), nullable=True)
    origin = Column(String(30), nullable=True)  # patient, staff, queue-rebook

    status = Column(String(20), nullable=False, default=AppointmentStatus.PENDING.value)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    created_by = Column(String(50), nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    pending_expires_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    accepted_by = Column(String(50), nullable=True)
    auto_confirmed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancelled_by = Column(String(50), nullable=True)
    cancellation_reason = Column(String(500), nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Set when the daily migration moved this appointment into the queue
    migrated_at = Column(DateTime, nullable=True)
    reminder_sent_at = Column(DateTime, nullable=True)
    cap_deferred_at = Column(DateTime, nullable=True)  # last auto-confirm refused by the daily cap

    # Last notifier outcome - never affects the appointment state
    notification_status = Column(String(20), nullable=True)  # sent, failed
    notification_error = Column(String(500), nullable=True)
    notified_at = Column(DateTime, nullable=True)


class QueueEntry(Base):
    __tablename__ = "queue_entries"
    __table_args__ = (
        UniqueConstraint("dentist_code", "date", "position", name="uq_queue_dentist_date_position"),
        UniqueConstraint("appointment_code", name="uq_queue_appointment_code"),
    )

    id = Column(Integer, primary_key=True, index=True)
    queue_code = Column(String(30), unique=True, nullable=False)
    appointment_code = Column(String(30), nullable=False)
    patient_code = Column(String(50), nullable=False, index=True)
    dentist_code = Column(String(50), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)  # day bucket
    scheduled_at = Column(DateTime, nullable=False)
    position = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=QueueStatus.WAITING.value)
    previous_time = Column(DateTime, nullable=True)  # set by switch-time
    called_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
