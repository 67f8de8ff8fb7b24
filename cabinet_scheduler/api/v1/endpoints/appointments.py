"""Appointment endpoints."""

from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Query, status

from cabinet_scheduler.dependencies import Appointments, CurrentActor
from cabinet_scheduler.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilter,
    AppointmentListResponse,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentStatusUpdate,
    AppointmentUpdate,
    CalendarEvent,
    ServiceType,
    SlotAvailability,
    TimeSlot,
)

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    actor: CurrentActor,
    service: Appointments,
) -> AppointmentResponse:
    """
    Book an appointment in one of the actor's cabinets.

    The practitioner's slot must be free; a conflict answers 409 with the
    blocking appointment in `details`.
    """
    return await service.create_appointment(actor, data)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    summary="List appointments",
)
async def list_appointments(
    actor: CurrentActor,
    service: Appointments,
    cabinet_id: str | None = Query(None),
    patient_id: UUID | None = Query(None),
    practitioner_id: str | None = Query(None),
    status_filter: list[AppointmentStatus] | None = Query(None, alias="status"),
    service_type: ServiceType | None = Query(None),
    from_date: datetime | None = Query(None),
    to_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments visible to the actor.

    Without `cabinet_id` the list covers every assigned cabinet. Naming a
    cabinet outside the assignment is refused, never narrowed.
    """
    filters = AppointmentFilter(
        cabinet_id=cabinet_id,
        patient_id=patient_id,
        practitioner_id=practitioner_id,
        statuses=frozenset(status_filter) if status_filter else None,
        service_type=service_type,
        from_date=from_date,
        to_date=to_date,
        page=page,
        page_size=page_size,
    )
    return await service.list_appointments(actor, filters)


@router.get(
    "/availability",
    response_model=SlotAvailability,
    status_code=status.HTTP_200_OK,
    summary="Check a practitioner slot",
)
async def check_availability(
    actor: CurrentActor,
    service: Appointments,
    scheduled_at: datetime = Query(...),
    duration_minutes: int = Query(..., gt=0),
    practitioner_id: str | None = Query(None),
    cabinet_id: str | None = Query(None),
    exclude_appointment_id: UUID | None = Query(None),
) -> SlotAvailability:
    """Report whether a window is free. A check that cannot complete reports `check_failed`."""
    return await service.check_availability(
        actor,
        scheduled_at,
        duration_minutes,
        practitioner_id=practitioner_id,
        cabinet_id=cabinet_id,
        exclude_appointment_id=exclude_appointment_id,
    )


@router.get(
    "/slots",
    response_model=list[TimeSlot],
    status_code=status.HTTP_200_OK,
    summary="List a practitioner's slots for a day",
)
async def list_slots(
    actor: CurrentActor,
    service: Appointments,
    practitioner_id: str = Query(...),
    day: date = Query(..., alias="date"),
    duration_minutes: int | None = Query(None, gt=0),
    cabinet_id: str | None = Query(None),
) -> list[TimeSlot]:
    """Candidate slots within the cabinet's opening hours, each marked available or not."""
    return await service.list_day_slots(
        actor, practitioner_id, day, duration_minutes=duration_minutes, cabinet_id=cabinet_id
    )


@router.get(
    "/calendar",
    response_model=list[CalendarEvent],
    status_code=status.HTTP_200_OK,
    summary="Calendar events",
)
async def calendar_events(
    actor: CurrentActor,
    service: Appointments,
    start: datetime = Query(...),
    end: datetime = Query(...),
    cabinet_id: str | None = Query(None),
    practitioner_id: str | None = Query(None),
) -> list[CalendarEvent]:
    """Appointments of one cabinet between `start` and `end`, with status colors."""
    return await service.get_calendar_events(
        actor, start, end, cabinet_id=cabinet_id, practitioner_id=practitioner_id
    )


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    service: Appointments,
) -> AppointmentResponse:
    """Get a specific appointment by ID."""
    return await service.get_appointment(actor, appointment_id)


@router.put(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Update appointment details",
)
async def update_appointment(
    appointment_id: UUID,
    data: AppointmentUpdate,
    actor: CurrentActor,
    service: Appointments,
) -> AppointmentResponse:
    """
    Update descriptive fields.

    Time, practitioner and status have dedicated endpoints and are rejected here.
    """
    return await service.update_appointment(actor, appointment_id, data)


@router.post(
    "/{appointment_id}/reschedule",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Reschedule appointment",
)
async def reschedule_appointment(
    appointment_id: UUID,
    data: AppointmentReschedule,
    actor: CurrentActor,
    service: Appointments,
) -> AppointmentResponse:
    """Move a scheduled or confirmed appointment to a new slot."""
    return await service.reschedule_appointment(actor, appointment_id, data)


@router.patch(
    "/{appointment_id}/status",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    summary="Update appointment status",
)
async def update_appointment_status(
    appointment_id: UUID,
    data: AppointmentStatusUpdate,
    actor: CurrentActor,
    service: Appointments,
) -> AppointmentResponse:
    """
    Apply a manual status transition (confirm, cancel, complete).

    Completing requires `confirm: true`.
    """
    return await service.change_status(actor, appointment_id, data)


@router.delete(
    "/{appointment_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete appointment",
)
async def delete_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    service: Appointments,
) -> None:
    """Soft delete an appointment."""
    await service.delete_appointment(actor, appointment_id)
