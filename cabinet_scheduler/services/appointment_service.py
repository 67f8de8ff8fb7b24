"""Appointment service for business logic."""

from datetime import date, datetime
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.config import settings
from cabinet_scheduler.core.exceptions import (
    ConflictException,
    NotFoundException,
    PersistenceUnavailableException,
    SlotConflictException,
    TenantMismatchException,
    ValidationException,
)
from cabinet_scheduler.repositories.appointments import SqlAppointmentRepository
from cabinet_scheduler.repositories.cabinets import SqlCabinetRepository
from cabinet_scheduler.repositories.errors import is_slot_overlap
from cabinet_scheduler.repositories.locks import SlotLockManager
from cabinet_scheduler.repositories.patients import SqlPatientRepository
from cabinet_scheduler.schemas.access import Operation, Resource, TenantActor
from cabinet_scheduler.schemas.appointments import (
    RESCHEDULABLE_STATUSES,
    AppointmentCreate,
    AppointmentFilter,
    AppointmentListResponse,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentStatusUpdate,
    AppointmentUpdate,
    AvailabilityReason,
    CalendarEvent,
    SlotAvailability,
    TimeSlot,
    as_utc,
)
from cabinet_scheduler.schemas.patients import PatientResponse
from cabinet_scheduler.services.access_guard import AccessGuard
from cabinet_scheduler.services.appointment_lifecycle import AppointmentLifecycle
from cabinet_scheduler.services.notification_service import (
    NotificationDispatcher,
    NotificationService,
)
from cabinet_scheduler.services.slot_conflict_detector import SlotConflictDetector

logger = structlog.get_logger(__name__)

# (background, border) per status for calendar views
STATUS_COLORS = {
    AppointmentStatus.SCHEDULED: ("#DBEAFE", "#3B82F6"),
    AppointmentStatus.CONFIRMED: ("#D1FAE5", "#10B981"),
    AppointmentStatus.IN_PROGRESS: ("#FEF3C7", "#D97706"),
    AppointmentStatus.COMPLETED: ("#F3F4F6", "#6B7280"),
    AppointmentStatus.CANCELLED: ("#FEE2E2", "#EF4444"),
    AppointmentStatus.NO_SHOW: ("#FECACA", "#DC2626"),
}


class AppointmentService:
    """
    Service for managing appointments.

    Every operation authorizes the actor against the appointment's cabinet
    before touching data. Bookings and reschedules run their conflict check
    and write under the practitioner's slot lock, in one transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        guard: AccessGuard,
        locks: SlotLockManager,
        dispatcher: NotificationDispatcher,
    ):
        """Initialize service with database session and collaborators."""
        self.db = db
        self.guard = guard
        self.appointments = SqlAppointmentRepository(db, locks)
        self.patients = SqlPatientRepository(db)
        self.cabinets = SqlCabinetRepository(db)
        self.detector = SlotConflictDetector(self.appointments)
        self.notifications = NotificationService(db, dispatcher)
        self.lifecycle = AppointmentLifecycle(db, self.appointments, guard, self.notifications)

    async def _require_cabinet(
        self, actor: TenantActor, requested_cabinet_id: str | None, operation: Operation
    ) -> str:
        cabinet_id = await self.guard.resolve_effective_cabinet(
            actor, requested_cabinet_id, operation
        )
        if cabinet_id is None:
            raise ValidationException(
                "cabinet_id is required when the user is assigned to several cabinets"
            )
        return cabinet_id

    async def _get_authorized(
        self, actor: TenantActor, appointment_id: UUID, operation: Operation
    ) -> AppointmentResponse:
        missing = NotFoundException("Appointment not found", appointment_id)
        appointment = await self.appointments.get(appointment_id)
        if appointment is None:
            raise missing
        await self.guard.require_record(
            actor, appointment.cabinet_id, operation, Resource.APPOINTMENTS, missing
        )
        return appointment

    async def _patient_of_cabinet(
        self, actor: TenantActor, patient_id: UUID, cabinet_id: str
    ) -> PatientResponse:
        missing = NotFoundException("Patient not found", patient_id)
        patient = await self.patients.get(patient_id)
        if patient is None:
            raise missing
        if not self.guard.can_access_cabinet(actor, patient.cabinet_id).allowed:
            raise missing
        if patient.cabinet_id != cabinet_id:
            raise TenantMismatchException(cabinet_id, patient.cabinet_id)
        return patient

    @staticmethod
    def _validate_duration(duration_minutes: int) -> None:
        if duration_minutes > settings.max_appointment_duration_minutes:
            raise ValidationException(
                f"Duration must not exceed {settings.max_appointment_duration_minutes} minutes",
                details={"duration_minutes": duration_minutes},
            )

    async def _refuse_slot(
        self,
        availability: SlotAvailability,
        cabinet_id: str,
        practitioner_id: str,
    ) -> None:
        if availability.reason == AvailabilityReason.CHECK_FAILED:
            raise PersistenceUnavailableException()

        await self.notifications.notify_now(
            self.notifications.builder.conflict(
                cabinet_id,
                practitioner_id,
                availability.start,
                availability.end,
                availability.conflicting_appointment_id,
            )
        )
        raise SlotConflictException(
            availability.conflicting_appointment_id,
            cabinet_id,
            availability.start,
            availability.end,
        )

    async def create_appointment(
        self,
        actor: TenantActor,
        data: AppointmentCreate,
    ) -> AppointmentResponse:
        """
        Book a new appointment.

        Args:
            actor: Requesting user
            data: Appointment creation data

        Returns:
            Created appointment

        Raises:
            AccessDeniedException: If the actor may not create in the cabinet
            NotFoundException: If the patient does not exist or is owned by another tenant
            TenantMismatchException: If the patient belongs to another cabinet
            SlotConflictException: If the practitioner is already booked
            PersistenceUnavailableException: If storage is unreachable
        """
        cabinet_id = await self._require_cabinet(actor, data.cabinet_id, Operation.CREATE)
        await self.guard.require(actor, cabinet_id, Operation.CREATE)
        await self._patient_of_cabinet(actor, data.patient_id, cabinet_id)

        duration = data.duration_minutes or settings.default_appointment_duration_minutes
        self._validate_duration(duration)
        start = as_utc(data.scheduled_at)

        async with self.appointments.slot_lock(cabinet_id, data.practitioner_id):
            try:
                availability = await self.detector.check_availability(
                    cabinet_id, start, duration, data.practitioner_id
                )
                if not availability.available:
                    await self.db.rollback()
                    await self._refuse_slot(availability, cabinet_id, data.practitioner_id or "")

                created = await self.appointments.insert(
                    {
                        "cabinet_id": cabinet_id,
                        "patient_id": data.patient_id,
                        "practitioner_id": data.practitioner_id,
                        "title": data.title,
                        "service_type": data.service_type.value,
                        "description": data.description,
                        "notes": data.notes,
                        "price": data.price,
                        "scheduled_at": start,
                        "end_at": availability.end,
                        "duration_minutes": duration,
                        "status": AppointmentStatus.SCHEDULED.value,
                    }
                )
                message = self.notifications.builder.appointment_created(created)
                await self.notifications.emit(message)
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                if not is_slot_overlap(e):
                    raise
                logger.warning("slot_constraint_violation", cabinet_id=cabinet_id, error=str(e))
                raise SlotConflictException(
                    None, cabinet_id, start, availability.end
                ) from e
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "appointment_created",
            appointment_id=str(created.id),
            cabinet_id=cabinet_id,
            practitioner_id=created.practitioner_id,
            scheduled_at=created.scheduled_at.isoformat(),
            actor_id=actor.user_id,
        )

        await self.notifications.deliver([message])
        return created

    async def get_appointment(self, actor: TenantActor, appointment_id: UUID) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found or owned by another tenant
            AccessDeniedException: If the actor lacks the read permission
        """
        appointment = await self._get_authorized(actor, appointment_id, Operation.READ)
        return appointment

    async def list_appointments(
        self,
        actor: TenantActor,
        filters: AppointmentFilter,
    ) -> AppointmentListResponse:
        """
        List appointments with filtering and pagination.

        Raises:
            AccessDeniedException: If the filter names an inaccessible cabinet
        """
        scope = await self.guard.sanitize_filter(actor, filters)
        total, items = await self.appointments.list(scope)

        return AppointmentListResponse(
            total=total,
            page=scope.page,
            page_size=scope.page_size,
            items=self.guard.filter_by_cabinet(actor, items),
        )

    async def update_appointment(
        self,
        actor: TenantActor,
        appointment_id: UUID,
        data: AppointmentUpdate,
    ) -> AppointmentResponse:
        """
        Update descriptive fields of an appointment.

        Raises:
            NotFoundException: If the appointment or the new patient does not exist
            AccessDeniedException: If the actor may not update it
            TenantMismatchException: If the new patient belongs to another cabinet
        """
        appointment = await self._get_authorized(actor, appointment_id, Operation.UPDATE)

        update_data: dict[str, Any] = data.model_dump(exclude_unset=True)
        if not update_data:
            return appointment

        if update_data.get("patient_id") is not None:
            await self._patient_of_cabinet(
                actor, update_data["patient_id"], appointment.cabinet_id
            )
        else:
            update_data.pop("patient_id", None)
        if update_data.get("service_type") is not None:
            update_data["service_type"] = update_data["service_type"].value
        else:
            update_data.pop("service_type", None)
        if "title" in update_data and update_data["title"] is None:
            update_data.pop("title")

        try:
            updated = await self.appointments.update_fields(appointment_id, update_data)
            if updated is None:
                raise NotFoundException("Appointment not found", appointment_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "appointment_updated",
            appointment_id=str(appointment_id),
            cabinet_id=appointment.cabinet_id,
            fields=sorted(update_data),
            actor_id=actor.user_id,
        )
        return updated

    async def reschedule_appointment(
        self,
        actor: TenantActor,
        appointment_id: UUID,
        data: AppointmentReschedule,
    ) -> AppointmentResponse:
        """
        Move an appointment to a new time, duration or practitioner.

        The conflict check runs against the new window, ignoring the
        appointment itself, under the slot lock of the target practitioner.

        Raises:
            NotFoundException: If the appointment does not exist or is owned by another tenant
            AccessDeniedException: If the actor may not update it
            ValidationException: If the appointment can no longer be moved
            SlotConflictException: If the target slot is taken
            ConflictException: If the appointment changed concurrently
        """
        current = await self._get_authorized(actor, appointment_id, Operation.UPDATE)

        if current.status not in RESCHEDULABLE_STATUSES:
            raise ValidationException(
                f"Cannot reschedule an appointment with status {current.status.value}",
                details={"status": current.status.value},
            )

        start = data.scheduled_at or current.scheduled_at
        duration = data.duration_minutes or current.duration_minutes
        practitioner_id = (
            data.practitioner_id
            if "practitioner_id" in data.model_fields_set
            else current.practitioner_id
        )
        self._validate_duration(duration)

        if (start, duration, practitioner_id) == (
            current.scheduled_at,
            current.duration_minutes,
            current.practitioner_id,
        ):
            return current

        cabinet_id = current.cabinet_id
        async with self.appointments.slot_lock(cabinet_id, practitioner_id):
            try:
                availability = await self.detector.check_availability(
                    cabinet_id,
                    start,
                    duration,
                    practitioner_id,
                    exclude_appointment_id=appointment_id,
                )
                if not availability.available:
                    await self.db.rollback()
                    await self._refuse_slot(availability, cabinet_id, practitioner_id or "")

                updated = await self.appointments.reschedule(
                    appointment_id,
                    current.schedule_revision,
                    RESCHEDULABLE_STATUSES,
                    {
                        "scheduled_at": availability.start,
                        "end_at": availability.end,
                        "duration_minutes": duration,
                        "practitioner_id": practitioner_id,
                    },
                )
                if updated is None:
                    raise ConflictException(
                        "Appointment was modified concurrently, reload and retry",
                        details={"appointment_id": str(appointment_id)},
                    )

                message = self.notifications.builder.rescheduled(updated, current)
                await self.notifications.emit(message)
                await self.db.commit()
            except IntegrityError as e:
                await self.db.rollback()
                if not is_slot_overlap(e):
                    raise
                logger.warning("slot_constraint_violation", cabinet_id=cabinet_id, error=str(e))
                raise SlotConflictException(None, cabinet_id, start, availability.end) from e
            except Exception:
                await self.db.rollback()
                raise

        logger.info(
            "appointment_rescheduled",
            appointment_id=str(appointment_id),
            cabinet_id=cabinet_id,
            old_scheduled_at=current.scheduled_at.isoformat(),
            new_scheduled_at=updated.scheduled_at.isoformat(),
            practitioner_id=practitioner_id,
            schedule_revision=updated.schedule_revision,
            actor_id=actor.user_id,
        )

        await self.notifications.deliver([message])
        return updated

    async def change_status(
        self,
        actor: TenantActor,
        appointment_id: UUID,
        data: AppointmentStatusUpdate,
    ) -> AppointmentResponse:
        """Apply a manual lifecycle transition."""
        return await self.lifecycle.apply_manual(
            actor, appointment_id, data.status, confirm=data.confirm, notes=data.notes
        )

    async def delete_appointment(self, actor: TenantActor, appointment_id: UUID) -> None:
        """
        Soft delete an appointment.

        Raises:
            NotFoundException: If appointment not found or owned by another tenant
            AccessDeniedException: If the actor lacks the delete permission
        """
        appointment = await self._get_authorized(actor, appointment_id, Operation.DELETE)

        try:
            if not await self.appointments.soft_delete(appointment_id):
                raise NotFoundException("Appointment not found", appointment_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "appointment_deleted",
            appointment_id=str(appointment_id),
            cabinet_id=appointment.cabinet_id,
            actor_id=actor.user_id,
        )

    async def check_availability(
        self,
        actor: TenantActor,
        start: datetime,
        duration_minutes: int,
        practitioner_id: str | None = None,
        cabinet_id: str | None = None,
        exclude_appointment_id: UUID | None = None,
    ) -> SlotAvailability:
        """Read-only availability check for a proposed slot."""
        cabinet_id = await self._require_cabinet(actor, cabinet_id, Operation.READ)
        await self.guard.require(actor, cabinet_id, Operation.READ)
        self._validate_duration(duration_minutes)

        return await self.detector.check_availability(
            cabinet_id,
            start,
            duration_minutes,
            practitioner_id,
            exclude_appointment_id=exclude_appointment_id,
        )

    async def list_day_slots(
        self,
        actor: TenantActor,
        practitioner_id: str,
        day: date,
        duration_minutes: int | None = None,
        cabinet_id: str | None = None,
    ) -> list[TimeSlot]:
        """Candidate slots of a practitioner for one day, in the cabinet's timezone."""
        cabinet_id = await self._require_cabinet(actor, cabinet_id, Operation.READ)
        await self.guard.require(actor, cabinet_id, Operation.READ)

        duration = duration_minutes or settings.default_appointment_duration_minutes
        self._validate_duration(duration)

        cabinet = await self.cabinets.get(cabinet_id)
        if cabinet is None:
            raise NotFoundException("Cabinet not found", cabinet_id)

        return await self.detector.list_day_slots(
            cabinet_id, practitioner_id, day, duration, timezone=cabinet["timezone"]
        )

    async def get_calendar_events(
        self,
        actor: TenantActor,
        start: datetime,
        end: datetime,
        cabinet_id: str | None = None,
        practitioner_id: str | None = None,
    ) -> list[CalendarEvent]:
        """Appointments of one cabinet between two instants, rendered for a calendar."""
        cabinet_id = await self._require_cabinet(actor, cabinet_id, Operation.READ)
        await self.guard.require(actor, cabinet_id, Operation.READ)

        if as_utc(end) <= as_utc(start):
            raise ValidationException("Calendar end must be after start")

        items = await self.appointments.load_appointments_overlapping(
            cabinet_id, as_utc(start), as_utc(end), practitioner_id=practitioner_id
        )
        names = await self.patients.names_by_id({item.patient_id for item in items})

        events = []
        for item in items:
            background, border = STATUS_COLORS[item.status]
            events.append(
                CalendarEvent(
                    id=item.id,
                    title=item.title,
                    start=item.scheduled_at,
                    end=item.end_at,
                    status=item.status,
                    patient_name=names.get(item.patient_id, "Unknown patient"),
                    service_type=item.service_type,
                    practitioner_id=item.practitioner_id,
                    background_color=background,
                    border_color=border,
                )
            )
        return events
