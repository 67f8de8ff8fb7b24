"""Database models."""

from cabinet_scheduler.models.access_audit import access_audit_log
from cabinet_scheduler.models.appointments import appointments
from cabinet_scheduler.models.base import metadata
from cabinet_scheduler.models.cabinets import cabinets
from cabinet_scheduler.models.notifications import appointment_notifications
from cabinet_scheduler.models.patients import patients

__all__ = [
    "access_audit_log",
    "appointment_notifications",
    "appointments",
    "cabinets",
    "metadata",
    "patients",
]
