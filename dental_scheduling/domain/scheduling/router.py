"""Scheduling router - FastAPI endpoints for availability, appointments, queue and slots"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query
from sqlalchemy.orm import Session

from ...config import BOOKING_RATE_LIMIT, BOOKING_RATE_WINDOW_SECONDS, DEFAULT_SLOT_MINUTES
from ...database import get_db, get_session_factory
from ...models import Appointment, QueueEntry, Slot
from ...rate_limiter import create_rate_limiter
from ...services.directory_service import Directory, get_directory
from ...services.notification_service import Notifier, get_notifier
from .appointment_service import AppointmentLifecycle
from .clock import Clock, get_clock, today
from .repository import atomic
from .schemas import (
    AppointmentCreate,
    AppointmentResponse,
    AvailableSlotResponse,
    CancelRequest,
    QueueEntryResponse,
    QueueStatusUpdate,
    RebookRequest,
    RescheduleRequest,
    SlotBlockRequest,
    SlotBlockResponse,
    SlotResponse,
    SlotUnblockRequest,
    SlotUnblockResponse,
    SwitchTimeRequest,
)
from .time_calculator import format_time_slot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/scheduling", tags=["Scheduling"])

rate_limit_bookings = create_rate_limiter(
    limit=BOOKING_RATE_LIMIT, window_seconds=BOOKING_RATE_WINDOW_SECONDS, key_prefix="booking"
)


def get_lifecycle(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    directory: Directory = Depends(get_directory),
    notifier: Notifier = Depends(get_notifier),
    clock: Clock = Depends(get_clock),
    session_factory=Depends(get_session_factory),
) -> AppointmentLifecycle:
    """Dependency injection for AppointmentLifecycle; announcements go out as background tasks"""
    return AppointmentLifecycle(
        db,
        directory,
        notifier,
        clock,
        background_tasks=background_tasks,
        session_factory=session_factory,
    )


def get_actor(x_actor_code: Optional[str] = Header(None)) -> Optional[str]:
    """Caller identity as forwarded by the gateway (authentication happens upstream)"""
    return x_actor_code


def queue_entry_response(entry: QueueEntry) -> QueueEntryResponse:
    return QueueEntryResponse(
        queueCode=entry.queue_code,
        appointmentCode=entry.appointment_code,
        patientCode=entry.patient_code,
        dentistCode=entry.dentist_code,
        date=entry.date,
        scheduledAt=entry.scheduled_at,
        position=entry.position,
        status=entry.status,
        previousTime=entry.previous_time,
        calledAt=entry.called_at,
        startedAt=entry.started_at,
        completedAt=entry.completed_at,
    )


def appointment_response(
    appointment: Appointment, entry: Optional[QueueEntry] = None
) -> AppointmentResponse:
    return AppointmentResponse(
        appointmentCode=appointment.appointment_code,
        patientKind=appointment.patient_kind,
        patientCode=appointment.patient_code,
        patient=appointment.patient_snapshot,
        dentistCode=appointment.dentist_code,
        appointmentAt=appointment.appointment_at,
        durationMinutes=appointment.duration_minutes,
        status=appointment.status,
        reason=appointment.reason,
        notes=appointment.notes,
        origin=appointment.origin,
        createdAt=appointment.created_at,
        pendingExpiresAt=appointment.pending_expires_at,
        acceptedAt=appointment.accepted_at,
        acceptedBy=appointment.accepted_by,
        autoConfirmedAt=appointment.auto_confirmed_at,
        cancelledAt=appointment.cancelled_at,
        cancelledBy=appointment.cancelled_by,
        cancellationReason=appointment.cancellation_reason,
        completedAt=appointment.completed_at,
        migratedAt=appointment.migrated_at,
        notificationStatus=appointment.notification_status,
        queueEntry=queue_entry_response(entry) if entry else None,
    )


def slot_response(slot: Slot) -> SlotResponse:
    return SlotResponse(
        dentistCode=slot.dentist_code,
        date=slot.date,
        timeSlot=slot.time_slot,
        slotDuration=slot.slot_duration,
        status=slot.status,
        appointmentCode=slot.appointment_code,
        patientCode=slot.patient_code,
        blockedBy=slot.blocked_by,
        blockingReason=slot.blocking_reason,
    )


def booking_owner(data: AppointmentCreate) -> Optional[str]:
    """Code of the patient account making the booking, if any"""
    if data.patient.kind == "registered":
        return data.patient.patientCode
    if data.patient.kind == "booked_for_other":
        return data.patient.bookerCode
    return None


def with_queue(lifecycle: AppointmentLifecycle, appointment: Appointment) -> AppointmentResponse:
    entry = lifecycle.repo.get_queue_entry_for_appointment(lifecycle.db, appointment.appointment_code)
    return appointment_response(appointment, entry)


def released(lifecycle: AppointmentLifecycle, response):
    """End the request's session once the response is built, before background announcements run"""
    lifecycle.db.close()
    return response


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.get("/dentists/{dentist_code}/available-slots", response_model=list[AvailableSlotResponse])
async def list_available_slots(
    dentist_code: str,
    day: date = Query(..., alias="date"),
    duration: int = Query(DEFAULT_SLOT_MINUTES, gt=0, le=240),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    """Open intervals for a dentist on a date, in chronological order"""
    intervals = lifecycle.resolver.list_available_slots(dentist_code, day, duration)
    return [
        AvailableSlotResponse(start=start, end=end, timeSlot=format_time_slot(start.time(), end.time()))
        for start, end in intervals
    ]


# ============================================================================
# APPOINTMENTS
# ============================================================================


@router.post("/appointments", response_model=AppointmentResponse, status_code=201)
async def create_appointment(
    data: AppointmentCreate,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
    _: None = Depends(rate_limit_bookings),
):
    """Book an appointment (same-day bookings are confirmed and queued immediately)"""
    origin = "patient"
    if data.confirmNow or (actor and actor != booking_owner(data)):
        origin = "staff"
    appointment = lifecycle.create(data, actor=actor, origin=origin)
    return released(lifecycle, with_queue(lifecycle, appointment))


@router.get("/appointments", response_model=list[AppointmentResponse])
async def list_appointments(
    dentist_code: Optional[str] = Query(None, alias="dentistCode"),
    day: Optional[date] = Query(None, alias="date"),
    status: Optional[str] = Query(None),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    appointments = lifecycle.list_appointments(dentist_code, day, status)
    return [appointment_response(a) for a in appointments]


@router.get("/appointments/{appointment_code}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_code: str,
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return with_queue(lifecycle, lifecycle.get(appointment_code))


@router.post("/appointments/{appointment_code}/confirm", response_model=AppointmentResponse)
async def confirm_appointment(
    appointment_code: str,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    appointment = lifecycle.confirm(appointment_code, actor=actor)
    return released(lifecycle, with_queue(lifecycle, appointment))


@router.post("/appointments/{appointment_code}/cancel", response_model=AppointmentResponse)
async def cancel_appointment(
    appointment_code: str,
    data: Optional[CancelRequest] = None,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    reason = data.reason if data else None
    appointment = lifecycle.cancel(appointment_code, actor=actor, reason=reason)
    return released(lifecycle, appointment_response(appointment))


@router.patch("/appointments/{appointment_code}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_code: str,
    data: RescheduleRequest,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    appointment = lifecycle.reschedule(
        appointment_code,
        data.appointmentAt,
        actor=actor,
        dentist_code=data.dentistCode,
        duration_minutes=data.durationMinutes,
    )
    return released(lifecycle, with_queue(lifecycle, appointment))


@router.post("/appointments/{appointment_code}/complete", response_model=AppointmentResponse)
async def complete_appointment(
    appointment_code: str,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    appointment = lifecycle.complete(appointment_code, actor=actor)
    return with_queue(lifecycle, appointment)


# ============================================================================
# QUEUE
# ============================================================================


@router.get("/queue", response_model=list[QueueEntryResponse])
async def get_queue(
    dentist_code: str = Query(..., alias="dentistCode"),
    day: Optional[date] = Query(None, alias="date"),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    """Queue of a dentist for a day (defaults to today), ordered by position"""
    entries = lifecycle.queue.list_queue(dentist_code, day or today(lifecycle.clock))
    return [queue_entry_response(e) for e in entries]


@router.get("/queue/next", response_model=Optional[QueueEntryResponse])
async def get_next_in_queue(
    dentist_code: str = Query(..., alias="dentistCode"),
    day: Optional[date] = Query(None, alias="date"),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    entry = lifecycle.queue.next_in_queue(dentist_code, day or today(lifecycle.clock))
    return queue_entry_response(entry) if entry else None


@router.patch("/queue/{queue_code}/status", response_model=QueueEntryResponse)
async def update_queue_status(
    queue_code: str,
    data: QueueStatusUpdate,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    entry = lifecycle.queue.update_status(queue_code, data.status, actor=actor)
    return queue_entry_response(entry)


@router.patch("/queue/{queue_code}/switch-time", response_model=QueueEntryResponse)
async def switch_queue_time(
    queue_code: str,
    data: SwitchTimeRequest,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    entry = lifecycle.queue.switch_time(queue_code, data.scheduledAt, actor=actor)
    return released(lifecycle, queue_entry_response(entry))


@router.post("/queue/{queue_code}/rebook", response_model=AppointmentResponse, status_code=201)
async def delete_and_rebook(
    queue_code: str,
    data: RebookRequest,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    """Remove a patient from the queue and book them with another dentist/date/time"""
    appointment = lifecycle.queue.delete_and_rebook(
        queue_code,
        data.dentistCode,
        data.date,
        data.time,
        actor=actor,
        duration_minutes=data.durationMinutes,
        reason=data.reason,
    )
    return released(lifecycle, with_queue(lifecycle, appointment))


@router.post("/queue/{queue_code}/cancel")
async def cancel_queue_entry(
    queue_code: str,
    data: Optional[CancelRequest] = None,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    reason = data.reason if data else None
    appointment = lifecycle.queue.cancel_queue_entry(queue_code, actor=actor, reason=reason)
    return released(
        lifecycle,
        {
            "queueCode": queue_code,
            "cancelled": True,
            "appointment": appointment_response(appointment).model_dump(mode="json") if appointment else None,
        },
    )


# ============================================================================
# SLOT LEDGER
# ============================================================================


@router.get("/slots", response_model=list[SlotResponse])
async def list_slots(
    dentist_code: str = Query(..., alias="dentistCode"),
    day: date = Query(..., alias="date"),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    """Ledger view of a dentist-day; only materialized slots are listed"""
    return [slot_response(s) for s in lifecycle.ledger.list_slots(dentist_code, day)]


@router.post("/slots/block", response_model=SlotBlockResponse)
async def block_slots(
    data: SlotBlockRequest,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    """Block available slots for leave, events or maintenance; booked slots are reported back"""
    with atomic(lifecycle.db):
        blocked, conflicts = lifecycle.ledger.block_slots(
            data.dentistCode, data.fromDate, data.toDate, data.blockedBy, data.reason, actor
        )
    return SlotBlockResponse(blocked=blocked, conflicts=conflicts)


@router.post("/slots/unblock", response_model=SlotUnblockResponse)
async def unblock_slots(
    data: SlotUnblockRequest,
    actor: Optional[str] = Depends(get_actor),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    with atomic(lifecycle.db):
        unblocked = lifecycle.ledger.unblock_slots(data.dentistCode, data.fromDate, data.toDate, actor)
    return SlotUnblockResponse(unblocked=unblocked)
