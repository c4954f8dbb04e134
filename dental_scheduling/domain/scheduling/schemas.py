"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

from ...shared.validators import sanitize_text, validate_code, validate_email, validate_phone

RELATIONS = ("Self", "Spouse", "Child", "Parent", "Sibling", "Friend", "Other")


# ============================================================================
# Patient payload (tagged variant)
# ============================================================================


class RegisteredPatient(BaseModel):
    kind: Literal["registered"] = "registered"
    patientCode: str

    @field_validator("patientCode")
    @classmethod
    def check_code(cls, v):
        return validate_code(v, "patientCode")


class GuestPatient(BaseModel):
    """Walk-in or phone booking without a patient account"""

    kind: Literal["guest"] = "guest"
    name: str = Field(min_length=1, max_length=200)
    phone: str
    email: Optional[str] = None

    @field_validator("name")
    @classmethod
    def check_name(cls, v):
        v = sanitize_text(v, 200)
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        return validate_phone(v)

    @field_validator("email")
    @classmethod
    def check_email(cls, v):
        return validate_email(v)


class BookedForOther(BaseModel):
    """A registered patient booking on behalf of someone else"""

    kind: Literal["booked_for_other"] = "booked_for_other"
    bookerCode: str
    name: str = Field(min_length=1, max_length=200)
    contact: str
    relation: str = "Other"

    @field_validator("bookerCode")
    @classmethod
    def check_booker(cls, v):
        return validate_code(v, "bookerCode")

    @field_validator("name")
    @classmethod
    def check_name(cls, v):
        v = sanitize_text(v, 200)
        if not v:
            raise ValueError("Name is required")
        return v

    @field_validator("contact")
    @classmethod
    def check_contact(cls, v):
        return validate_phone(v)

    @field_validator("relation")
    @classmethod
    def check_relation(cls, v):
        if v not in RELATIONS:
            raise ValueError(f"Relation must be one of {', '.join(RELATIONS)}")
        return v


PatientPayload = Annotated[
    Union[RegisteredPatient, GuestPatient, BookedForOther],
    Field(discriminator="kind"),
]


# ============================================================================
# Requests
# ============================================================================


class AppointmentCreate(BaseModel):
    dentistCode: str
    appointmentAt: datetime
    patient: PatientPayload
    durationMinutes: int = Field(default=30, gt=0, le=240)
    reason: Optional[str] = None
    notes: Optional[str] = None
    confirmNow: bool = False

    @field_validator("dentistCode")
    @classmethod
    def check_dentist(cls, v):
        return validate_code(v, "dentistCode")

    @field_validator("reason", "notes")
    @classmethod
    def clean_text(cls, v):
        return sanitize_text(v)


class RescheduleRequest(BaseModel):
    appointmentAt: datetime
    dentistCode: Optional[str] = None
    durationMinutes: Optional[int] = Field(default=None, gt=0, le=240)

    @field_validator("dentistCode")
    @classmethod
    def check_dentist(cls, v):
        return validate_code(v, "dentistCode")


class CancelRequest(BaseModel):
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def clean_reason(cls, v):
        return sanitize_text(v)


class QueueStatusUpdate(BaseModel):
    status: Literal["waiting", "called", "in_treatment", "completed"]


class SwitchTimeRequest(BaseModel):
    scheduledAt: datetime


class RebookRequest(BaseModel):
    dentistCode: str
    date: date
    time: str = Field(pattern=r"^([01]?\d|2[0-3]):[0-5]\d$")
    durationMinutes: int = Field(default=30, gt=0, le=240)
    reason: Optional[str] = None

    @field_validator("dentistCode")
    @classmethod
    def check_dentist(cls, v):
        return validate_code(v, "dentistCode")


class SlotBlockRequest(BaseModel):
    dentistCode: str
    fromDate: date
    toDate: date
    blockedBy: Literal["leave", "event", "maintenance"]
    reason: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def clean_reason(cls, v):
        return sanitize_text(v)


class SlotUnblockRequest(BaseModel):
    dentistCode: str
    fromDate: date
    toDate: date


# ============================================================================
# Responses
# ============================================================================


class AvailableSlotResponse(BaseModel):
    start: datetime
    end: datetime
    timeSlot: str


class AppointmentResponse(BaseModel):
    appointmentCode: str
    patientKind: str
    patientCode: str
    patient: Optional[dict] = None
    dentistCode: str
    appointmentAt: datetime
    durationMinutes: int
    status: str
    reason: Optional[str] = None
    notes: Optional[str] = None
    origin: Optional[str] = None
    createdAt: Optional[datetime] = None
    pendingExpiresAt: Optional[datetime] = None
    acceptedAt: Optional[datetime] = None
    acceptedBy: Optional[str] = None
    autoConfirmedAt: Optional[datetime] = None
    cancelledAt: Optional[datetime] = None
    cancelledBy: Optional[str] = None
    cancellationReason: Optional[str] = None
    completedAt: Optional[datetime] = None
    migratedAt: Optional[datetime] = None
    notificationStatus: Optional[str] = None
    queueEntry: Optional["QueueEntryResponse"] = None


class QueueEntryResponse(BaseModel):
    queueCode: str
    appointmentCode: str
    patientCode: str
    dentistCode: str
    date: date
    scheduledAt: datetime
    position: int
    status: str
    previousTime: Optional[datetime] = None
    calledAt: Optional[datetime] = None
    startedAt: Optional[datetime] = None
    completedAt: Optional[datetime] = None


class SlotResponse(BaseModel):
    dentistCode: str
    date: date
    timeSlot: str
    slotDuration: int
    status: str
    appointmentCode: Optional[str] = None
    patientCode: Optional[str] = None
    blockedBy: Optional[str] = None
    blockingReason: Optional[str] = None


class SlotBlockResponse(BaseModel):
    blocked: int
    conflicts: list[str] = []


class SlotUnblockResponse(BaseModel):
    unblocked: int


AppointmentResponse.model_rebuild()
