"""Patient schemas for request/response validation."""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContactChannel(str, Enum):
    """Preferred communication channel."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class PatientBase(BaseModel):
    """Base patient schema with common fields."""

    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: str | None = Field(None, max_length=255)
    phone: str | None = Field(None, min_length=7, max_length=20)
    date_of_birth: date | None = None
    preferred_channel: ContactChannel = ContactChannel.EMAIL
    reminder_enabled: bool = True

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str | None) -> str | None:
        """Validate phone number format."""
        if v is None:
            return v
        # Remove common separators
        cleaned = (
            v.replace("-", "").replace(" ", "").replace("(", "").replace(")", "").replace("+", "")
        )
        if not cleaned.isdigit():
            raise ValueError("Phone number must contain only digits and separators")
        if len(cleaned) < 7:
            raise ValueError("Phone number must have at least 7 digits")
        return v


class PatientCreate(PatientBase):
    """Schema for creating a patient."""

    model_config = ConfigDict(extra="forbid")

    cabinet_id: str | None = Field(
        None, description="Owning cabinet, optional when the actor has a single cabinet"
    )


class PatientUpdate(BaseModel):
    """Schema for updating a patient. The owning cabinet never changes."""

    model_config = ConfigDict(extra="forbid")

    first_name: str | None = Field(None, min_length=1, max_length=100)
    last_name: str | None = Field(None, min_length=1, max_length=100)
    email: str | None = Field(None, max_length=255)
    phone: str | None = Field(None, min_length=7, max_length=20)
    date_of_birth: date | None = None
    preferred_channel: ContactChannel | None = None
    reminder_enabled: bool | None = None
    is_active: bool | None = None


class PatientResponse(PatientBase):
    """Schema for patient response."""

    id: UUID
    cabinet_id: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None

    model_config = {"from_attributes": True}


class PatientListResponse(BaseModel):
    """Schema for paginated patient list response."""

    total: int
    page: int
    page_size: int
    items: list[PatientResponse]
