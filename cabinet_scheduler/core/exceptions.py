"""Custom application exceptions."""

from datetime import datetime
from typing import Any
from uuid import UUID


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
    ):
        """Initialize exception with message, status code and client-safe details."""
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found", resource_id: Any = None):
        """Initialize with 404 status code."""
        details = {"id": str(resource_id)} if resource_id is not None else None
        super().__init__(message, status_code=404, details=details)
        self.resource_id = resource_id


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden", details: dict[str, Any] | None = None):
        """Initialize with 403 status code."""
        super().__init__(message, status_code=403, details=details)


class AccessDeniedException(ForbiddenException):
    """Tenant or permission check failed. Always audit logged before being raised."""

    def __init__(self, reason: str, cabinet_id: str | None = None):
        """Initialize with the denial reason and the cabinet that was requested."""
        super().__init__(reason, details={"cabinet_id": cabinet_id})
        self.reason = reason
        self.cabinet_id = cabinet_id


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        """Initialize with 400 status code."""
        super().__init__(message, status_code=400, details=details)


class ConfirmationRequiredException(BadRequestException):
    """A transition that needs an explicit confirmation flag was requested without it."""

    def __init__(self, from_status: str, to_status: str):
        """Initialize with the requested edge."""
        super().__init__(
            f"Transition {from_status} -> {to_status} requires explicit confirmation",
            details={"from": from_status, "to": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class ConflictException(AppException):
    """Conflict exception."""

    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        """Initialize with 409 status code."""
        super().__init__(message, status_code=409, details=details)


class SlotConflictException(ConflictException):
    """The requested window overlaps another appointment of the same practitioner."""

    def __init__(
        self,
        conflicting_appointment_id: UUID | None,
        cabinet_id: str,
        start: datetime,
        end: datetime,
    ):
        """Initialize with the slot that was refused."""
        super().__init__(
            "Time slot not available",
            details={
                "conflicting_appointment_id": (
                    str(conflicting_appointment_id) if conflicting_appointment_id else None
                ),
                "cabinet_id": cabinet_id,
                "start": start.isoformat(),
                "end": end.isoformat(),
            },
        )
        self.conflicting_appointment_id = conflicting_appointment_id
        self.cabinet_id = cabinet_id
        self.start = start
        self.end = end


class InvalidTransitionException(ConflictException):
    """Status change outside of the lifecycle transition table."""

    def __init__(self, from_status: str, to_status: str):
        """Initialize with the rejected edge."""
        super().__init__(
            f"Invalid status transition {from_status} -> {to_status}",
            details={"from": from_status, "to": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str = "Validation error", details: dict[str, Any] | None = None):
        """Initialize with 422 status code."""
        super().__init__(message, status_code=422, details=details)


class TenantMismatchException(ValidationException):
    """An appointment would reference a patient of another cabinet."""

    def __init__(self, cabinet_id: str, patient_cabinet_id: str):
        """Initialize with both cabinets."""
        super().__init__(
            "Appointment cabinet must match patient cabinet",
            details={"cabinet_id": cabinet_id},
        )
        self.cabinet_id = cabinet_id
        self.patient_cabinet_id = patient_cabinet_id


class PersistenceUnavailableException(AppException):
    """Transient storage failure. The only error class eligible for caller-side retry."""

    def __init__(self, message: str = "Service temporarily unavailable, please retry"):
        """Initialize with 503 status code. The message never carries driver details."""
        super().__init__(message, status_code=503)
