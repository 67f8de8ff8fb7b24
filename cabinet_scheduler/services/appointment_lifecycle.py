"""Appointment status state machine."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.config import settings
from cabinet_scheduler.core.exceptions import (
    ConfirmationRequiredException,
    InvalidTransitionException,
    NotFoundException,
)
from cabinet_scheduler.models.base import utcnow
from cabinet_scheduler.repositories.appointments import SqlAppointmentRepository
from cabinet_scheduler.schemas.access import Operation, Resource, TenantActor
from cabinet_scheduler.schemas.appointments import AppointmentResponse, AppointmentStatus
from cabinet_scheduler.services.access_guard import AccessGuard
from cabinet_scheduler.services.notification_service import NotificationService

logger = structlog.get_logger(__name__)


class Trigger(str, Enum):
    """Who may fire a transition."""

    MANUAL = "manual"
    TIME_BASED = "time_based"


S = AppointmentStatus

TRANSITIONS: dict[tuple[AppointmentStatus, AppointmentStatus], Trigger] = {
    (S.SCHEDULED, S.CONFIRMED): Trigger.MANUAL,
    (S.CONFIRMED, S.IN_PROGRESS): Trigger.TIME_BASED,
    (S.IN_PROGRESS, S.COMPLETED): Trigger.MANUAL,
    (S.SCHEDULED, S.NO_SHOW): Trigger.TIME_BASED,
    (S.SCHEDULED, S.CANCELLED): Trigger.MANUAL,
    (S.CONFIRMED, S.CANCELLED): Trigger.MANUAL,
}

CONFIRMATION_REQUIRED = frozenset({(S.IN_PROGRESS, S.COMPLETED)})


def validate_manual_transition(
    current: AppointmentStatus, target: AppointmentStatus, confirm: bool = False
) -> None:
    """
    Check a user-requested transition against the table.

    Raises:
        InvalidTransitionException: If the edge is missing or only time-based
        ConfirmationRequiredException: If the edge needs `confirm=True`
    """
    if TRANSITIONS.get((current, target)) != Trigger.MANUAL:
        raise InvalidTransitionException(current.value, target.value)
    if (current, target) in CONFIRMATION_REQUIRED and not confirm:
        raise ConfirmationRequiredException(current.value, target.value)


def due_transition(
    appointment: AppointmentResponse, now: datetime, grace: timedelta
) -> AppointmentStatus | None:
    """Time-based target status of an appointment at `now`, if any."""
    if appointment.status == S.CONFIRMED and now >= appointment.scheduled_at:
        return S.IN_PROGRESS
    if appointment.status == S.SCHEDULED and now >= appointment.scheduled_at + grace:
        return S.NO_SHOW
    return None


@dataclass
class TransitionBatch:
    """Outcome of applying the due time-based transitions of one cabinet."""

    applied: list[AppointmentResponse]
    errors: int = 0


class AppointmentLifecycle:
    """
    Applies status transitions.

    Status writes are compare-and-set on the expected current status. Each
    applied change and its `status_change` notification commit together.
    """

    def __init__(
        self,
        db: AsyncSession,
        appointments: SqlAppointmentRepository,
        guard: AccessGuard,
        notifications: NotificationService,
        grace_minutes: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize lifecycle with its collaborators."""
        self.db = db
        self.appointments = appointments
        self.guard = guard
        self.notifications = notifications
        self.grace = timedelta(
            minutes=grace_minutes if grace_minutes is not None else settings.no_show_grace_minutes
        )
        self.clock = clock

    async def apply_manual(
        self,
        actor: TenantActor,
        appointment_id: UUID,
        target: AppointmentStatus,
        confirm: bool = False,
        notes: str | None = None,
    ) -> AppointmentResponse:
        """
        Apply a user-requested transition.

        Raises:
            NotFoundException: If the appointment does not exist or is owned by another tenant
            AccessDeniedException: If the actor lacks the update permission
            InvalidTransitionException: If the edge is not allowed from the current status
            ConfirmationRequiredException: If completion is requested without confirmation
        """
        missing = NotFoundException("Appointment not found", appointment_id)
        appointment = await self.appointments.get(appointment_id)
        if appointment is None:
            raise missing

        await self.guard.require_record(
            actor, appointment.cabinet_id, Operation.UPDATE, Resource.APPOINTMENTS, missing
        )
        validate_manual_transition(appointment.status, target, confirm)

        extra: dict = {}
        if target == S.CANCELLED:
            extra["cancelled_at"] = self.clock()
        if notes is not None:
            extra["notes"] = notes

        try:
            updated = await self.appointments.compare_and_set_status(
                appointment_id, appointment.status, target, extra
            )
            if updated is None:
                current = await self.appointments.get(appointment_id)
                raise InvalidTransitionException(
                    current.status.value if current else appointment.status.value, target.value
                )

            message = self.notifications.builder.status_changed(updated, appointment.status, target)
            await self.notifications.emit(message)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "status_transition_applied",
            appointment_id=str(appointment_id),
            cabinet_id=appointment.cabinet_id,
            from_status=appointment.status.value,
            to_status=target.value,
            trigger=Trigger.MANUAL.value,
            actor_id=actor.user_id,
        )

        await self.notifications.deliver([message])
        return updated

    async def apply_due_transitions(self, cabinet_id: str, now: datetime) -> TransitionBatch:
        """
        Apply every time-based transition due at `now` in one cabinet.

        Each transition commits on its own, so a failure leaves the others in place.
        """
        batch = TransitionBatch(applied=[])

        started = await self.appointments.list_by_status_due(cabinet_id, S.CONFIRMED, now)
        missed = await self.appointments.list_by_status_due(cabinet_id, S.SCHEDULED, now - self.grace)

        for appointment in [*started, *missed]:
            target = due_transition(appointment, now, self.grace)
            if target is None:
                continue
            try:
                updated = await self._apply_time_based(appointment, target)
            except Exception as e:
                batch.errors += 1
                logger.error(
                    "status_transition_failed",
                    appointment_id=str(appointment.id),
                    cabinet_id=cabinet_id,
                    to_status=target.value,
                    error=str(e),
                )
                continue
            if updated is not None:
                batch.applied.append(updated)

        return batch

    async def _apply_time_based(
        self, appointment: AppointmentResponse, target: AppointmentStatus
    ) -> AppointmentResponse | None:
        if TRANSITIONS.get((appointment.status, target)) != Trigger.TIME_BASED:
            raise InvalidTransitionException(appointment.status.value, target.value)

        try:
            updated = await self.appointments.compare_and_set_status(
                appointment.id, appointment.status, target
            )
            if updated is None:
                # Another writer moved it first
                await self.db.rollback()
                return None

            message = self.notifications.builder.status_changed(
                updated, appointment.status, target, automatic=True
            )
            await self.notifications.emit(message)
            await self.guard.record_system_action(
                self.db,
                appointment.cabinet_id,
                Operation.UPDATE,
                reason=f"{appointment.status.value} -> {target.value}",
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "status_transition_applied",
            appointment_id=str(appointment.id),
            cabinet_id=appointment.cabinet_id,
            from_status=appointment.status.value,
            to_status=target.value,
            trigger=Trigger.TIME_BASED.value,
        )

        await self.notifications.deliver([message])
        return updated
