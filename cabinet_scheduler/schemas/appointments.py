"""Appointment schemas for request/response validation."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


# Statuses that can still be moved in time or reminded about
RESCHEDULABLE_STATUSES = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})


class ServiceType(str, Enum):
    """Service type enumeration."""

    CONSULTATION = "consultation"
    CLEANING = "cleaning"
    FILLING = "filling"
    ROOT_CANAL = "root_canal"
    EXTRACTION = "extraction"
    CROWN = "crown"
    IMPLANT = "implant"
    ORTHODONTICS = "orthodontics"
    EMERGENCY = "emergency"


def as_utc(value: datetime) -> datetime:
    """Normalize a datetime to aware UTC. Naive values are read as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class AppointmentCreate(BaseModel):
    """Schema for creating a new appointment."""

    model_config = ConfigDict(extra="forbid")

    cabinet_id: str | None = Field(
        None, description="Target cabinet, optional when the actor has a single cabinet"
    )
    patient_id: UUID
    practitioner_id: str | None = Field(None, min_length=1, max_length=64)
    service_type: ServiceType = ServiceType.CONSULTATION
    title: str = Field(..., min_length=1, max_length=200)
    description: str | None = Field(None, max_length=1000)
    scheduled_at: datetime
    duration_minutes: int | None = Field(None, gt=0)
    notes: str | None = Field(None, max_length=1000)
    price: Decimal | None = Field(None, ge=0, max_digits=10, decimal_places=2)

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, v: datetime) -> datetime:
        """Store all instants as UTC."""
        return as_utc(v)


class AppointmentUpdate(BaseModel):
    """Schema for updating descriptive fields. Status and slot have dedicated endpoints."""

    model_config = ConfigDict(extra="forbid")

    patient_id: UUID | None = None
    service_type: ServiceType | None = None
    title: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, max_length=1000)
    notes: str | None = Field(None, max_length=1000)
    price: Decimal | None = Field(None, ge=0, max_digits=10, decimal_places=2)


class AppointmentReschedule(BaseModel):
    """
    Schema for moving an appointment.

    Sending `practitioner_id: null` explicitly unassigns the practitioner;
    omitting it keeps the current one.
    """

    model_config = ConfigDict(extra="forbid")

    scheduled_at: datetime | None = None
    duration_minutes: int | None = Field(None, gt=0)
    practitioner_id: str | None = Field(None, min_length=1, max_length=64)

    @field_validator("scheduled_at")
    @classmethod
    def normalize_scheduled_at(cls, v: datetime | None) -> datetime | None:
        """Store all instants as UTC."""
        return as_utc(v) if v is not None else None

    @model_validator(mode="after")
    def require_change(self) -> "AppointmentReschedule":
        """Validate that at least one slot field is provided."""
        if not self.model_fields_set:
            raise ValueError("Provide scheduled_at, duration_minutes or practitioner_id")
        return self


class AppointmentStatusUpdate(BaseModel):
    """Schema for a manual status transition."""

    model_config = ConfigDict(extra="forbid")

    status: AppointmentStatus
    confirm: bool = Field(
        default=False,
        description="Explicit confirmation, required to complete an appointment",
    )
    notes: str | None = Field(None, max_length=1000)


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    cabinet_id: str
    patient_id: UUID
    practitioner_id: str | None
    service_type: ServiceType
    title: str
    description: str | None = None
    notes: str | None = None
    price: Decimal | None = None
    scheduled_at: datetime
    end_at: datetime
    duration_minutes: int
    schedule_revision: int = 0
    status: AppointmentStatus
    created_at: datetime
    updated_at: datetime
    cancelled_at: datetime | None = None
    deleted_at: datetime | None = None

    model_config = {"from_attributes": True}

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """Half-open interval overlap: back-to-back windows do not overlap."""
        return self.scheduled_at < end and start < self.end_at


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilter(BaseModel):
    """Filter requested by a caller, before tenant scoping."""

    model_config = ConfigDict(frozen=True)

    cabinet_id: str | None = None
    patient_id: UUID | None = None
    practitioner_id: str | None = None
    statuses: frozenset[AppointmentStatus] | None = None
    service_type: ServiceType | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)

    @field_validator("from_date", "to_date")
    @classmethod
    def normalize_bounds(cls, v: datetime | None) -> datetime | None:
        """Compare against stored UTC instants."""
        return as_utc(v) if v is not None else None


class ScopedAppointmentFilter(BaseModel):
    """
    Filter after tenant resolution.

    `cabinet_ids` is the exact set of cabinets the query may touch; `None`
    means unrestricted and is only produced for admin actors.
    """

    model_config = ConfigDict(frozen=True)

    cabinet_ids: frozenset[str] | None
    patient_id: UUID | None = None
    practitioner_id: str | None = None
    statuses: frozenset[AppointmentStatus] | None = None
    service_type: ServiceType | None = None
    from_date: datetime | None = None
    to_date: datetime | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class AvailabilityReason(str, Enum):
    """Why a slot is or is not available."""

    AVAILABLE = "available"
    CONFLICT = "conflict"
    CHECK_FAILED = "check_failed"


class SlotAvailability(BaseModel):
    """Result of a slot conflict check."""

    model_config = ConfigDict(frozen=True)

    available: bool
    reason: AvailabilityReason
    start: datetime
    end: datetime
    conflicting_appointment_id: UUID | None = None

    @classmethod
    def free(cls, start: datetime, end: datetime) -> "SlotAvailability":
        """Build an available result."""
        return cls(available=True, reason=AvailabilityReason.AVAILABLE, start=start, end=end)

    @classmethod
    def conflict(cls, start: datetime, end: datetime, appointment_id: UUID) -> "SlotAvailability":
        """Build an unavailable result pointing at the blocking appointment."""
        return cls(
            available=False,
            reason=AvailabilityReason.CONFLICT,
            start=start,
            end=end,
            conflicting_appointment_id=appointment_id,
        )

    @classmethod
    def failed(cls, start: datetime, end: datetime) -> "SlotAvailability":
        """Build a fail-closed result for a check that could not complete."""
        return cls(
            available=False, reason=AvailabilityReason.CHECK_FAILED, start=start, end=end
        )


class TimeSlot(BaseModel):
    """One candidate slot in a day view."""

    start: datetime
    end: datetime
    available: bool
    conflicting_appointment_id: UUID | None = None


class CalendarEvent(BaseModel):
    """Appointment rendered for a calendar view."""

    id: UUID
    title: str
    start: datetime
    end: datetime
    status: AppointmentStatus
    patient_name: str
    service_type: ServiceType
    practitioner_id: str | None
    background_color: str
    border_color: str


def window_end(start: datetime, duration_minutes: int) -> datetime:
    """End instant of a slot."""
    return start + timedelta(minutes=duration_minutes)
