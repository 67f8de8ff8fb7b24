"""Practitioner slot availability."""

from collections.abc import Collection, Iterable
from datetime import date, datetime, time, timedelta
from uuid import UUID
from zoneinfo import ZoneInfo

import structlog

from cabinet_scheduler.config import settings
from cabinet_scheduler.repositories.appointments import AppointmentRepository
from cabinet_scheduler.schemas.appointments import (
    AppointmentResponse,
    AppointmentStatus,
    SlotAvailability,
    TimeSlot,
    as_utc,
    window_end,
)

logger = structlog.get_logger(__name__)

# Cancelled appointments free their slot; completed and no-show ones keep it
DEFAULT_BLOCKING_STATUSES = frozenset(AppointmentStatus) - {AppointmentStatus.CANCELLED}


def find_conflict(
    candidates: Iterable[AppointmentResponse],
    start: datetime,
    end: datetime,
    practitioner_id: str,
    exclude_appointment_id: UUID | None = None,
    blocking_statuses: Collection[AppointmentStatus] = DEFAULT_BLOCKING_STATUSES,
) -> AppointmentResponse | None:
    """First appointment of the practitioner overlapping `[start, end)`."""
    for appointment in candidates:
        if appointment.id == exclude_appointment_id:
            continue
        if appointment.practitioner_id != practitioner_id:
            continue
        if appointment.status not in blocking_statuses:
            continue
        if appointment.overlaps(start, end):
            return appointment
    return None


class SlotConflictDetector:
    """
    Decides whether a practitioner is free for a window.

    The check fails closed: if it cannot complete, the slot is reported as
    unavailable with a `check_failed` reason, never as available.
    """

    def __init__(self, appointments: AppointmentRepository, lookup_days: int | None = None):
        """Initialize detector with the appointment repository."""
        self.appointments = appointments
        # Must exceed the longest appointment so an overlapping one always starts inside it
        self.lookup = timedelta(days=lookup_days or settings.slot_lookup_days)

    async def check_availability(
        self,
        cabinet_id: str,
        start: datetime,
        duration_minutes: int,
        practitioner_id: str | None = None,
        exclude_appointment_id: UUID | None = None,
        blocking_statuses: Collection[AppointmentStatus] | None = None,
    ) -> SlotAvailability:
        """
        Check a proposed window.

        Args:
            cabinet_id: Tenant of the appointment
            start: Proposed start instant
            duration_minutes: Proposed duration
            practitioner_id: Practitioner to check; without one there is nothing to conflict with
            exclude_appointment_id: Appointment being moved, ignored in the comparison
            blocking_statuses: Statuses that hold their slot, all but cancelled by default

        Returns:
            Availability with the conflicting appointment when there is one
        """
        start = as_utc(start)
        end = window_end(start, max(duration_minutes, 0))

        if practitioner_id is None:
            return SlotAvailability.free(start, end)

        try:
            if duration_minutes <= 0:
                raise ValueError(f"Invalid duration: {duration_minutes}")

            candidates = await self.appointments.load_appointments_in_window(
                cabinet_id,
                start - self.lookup,
                end + self.lookup,
                practitioner_id=practitioner_id,
            )
            conflict = find_conflict(
                candidates,
                start,
                end,
                practitioner_id,
                exclude_appointment_id,
                blocking_statuses if blocking_statuses is not None else DEFAULT_BLOCKING_STATUSES,
            )
        except Exception as e:
            logger.error(
                "slot_check_failed",
                cabinet_id=cabinet_id,
                practitioner_id=practitioner_id,
                start=start.isoformat(),
                error=str(e),
            )
            return SlotAvailability.failed(start, end)

        if conflict is not None:
            logger.info(
                "slot_conflict_detected",
                cabinet_id=cabinet_id,
                practitioner_id=practitioner_id,
                start=start.isoformat(),
                end=end.isoformat(),
                conflicting_appointment_id=str(conflict.id),
            )
            return SlotAvailability.conflict(start, end, conflict.id)

        return SlotAvailability.free(start, end)

    async def list_day_slots(
        self,
        cabinet_id: str,
        practitioner_id: str,
        day: date,
        duration_minutes: int,
        timezone: str = "UTC",
        day_start: time | None = None,
        day_end: time | None = None,
        step_minutes: int | None = None,
    ) -> list[TimeSlot]:
        """
        Candidate slots of a working day, each marked available or not.

        Opening hours are read in the cabinet's local timezone; returned
        instants are UTC.
        """
        tz = ZoneInfo(timezone)
        opening = datetime.combine(day, day_start or settings.slot_day_start, tzinfo=tz)
        closing = datetime.combine(day, day_end or settings.slot_day_end, tzinfo=tz)
        step = timedelta(minutes=step_minutes or settings.slot_step_minutes)
        duration = timedelta(minutes=duration_minutes)

        candidates = await self.appointments.load_appointments_in_window(
            cabinet_id,
            as_utc(opening) - self.lookup,
            as_utc(closing),
            practitioner_id=practitioner_id,
        )

        slots = []
        cursor = opening
        while cursor + duration <= closing:
            start = as_utc(cursor)
            end = start + duration
            conflict = find_conflict(candidates, start, end, practitioner_id)
            slots.append(
                TimeSlot(
                    start=start,
                    end=end,
                    available=conflict is None,
                    conflicting_appointment_id=conflict.id if conflict else None,
                )
            )
            cursor += step

        return slots
