"""Appointment notifications: building, outbox persistence and delivery."""

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

import structlog
from firebase_admin import messaging
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.config import settings
from cabinet_scheduler.models.base import utcnow
from cabinet_scheduler.repositories.notifications import SqlNotificationRepository
from cabinet_scheduler.schemas.appointments import AppointmentResponse, AppointmentStatus
from cabinet_scheduler.schemas.notifications import (
    NotificationCategory,
    NotificationKind,
    NotificationMessage,
    NotificationPriority,
    NotificationType,
)
from cabinet_scheduler.services.realtime_service import CabinetEventChannel

logger = structlog.get_logger(__name__)

STATUS_LABELS = {
    AppointmentStatus.SCHEDULED: "scheduled",
    AppointmentStatus.CONFIRMED: "confirmed",
    AppointmentStatus.IN_PROGRESS: "in progress",
    AppointmentStatus.COMPLETED: "completed",
    AppointmentStatus.CANCELLED: "cancelled",
    AppointmentStatus.NO_SHOW: "no-show",
}


def push_topic(cabinet_id: str) -> str:
    """FCM topic of a cabinet's staff devices."""
    return f"cabinet-{cabinet_id}"


class NotificationBuilder:
    """Builds the immutable notification for each appointment event."""

    def __init__(
        self,
        channels: Iterable[str] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize builder with the transport channels to request and a clock."""
        self.channels = list(channels) if channels is not None else settings.enabled_delivery_channels
        self.clock = clock

    def _build(
        self,
        idempotency_key: str,
        kind: NotificationKind,
        type_: NotificationType,
        category: NotificationCategory,
        title: str,
        message: str,
        priority: NotificationPriority,
        cabinet_id: str,
        appointment: AppointmentResponse | None = None,
        data: dict[str, Any] | None = None,
    ) -> NotificationMessage:
        return NotificationMessage(
            idempotency_key=idempotency_key,
            kind=kind,
            type=type_,
            category=category,
            title=title,
            message=message,
            priority=priority,
            cabinet_id=cabinet_id,
            appointment_id=appointment.id if appointment else None,
            patient_id=appointment.patient_id if appointment else None,
            data=data or {},
            channels=self.channels,
            # Success notices clear themselves from the inbox
            auto_remove=type_ == NotificationType.SUCCESS,
            timestamp=self.clock(),
        )

    def appointment_created(self, appointment: AppointmentResponse) -> NotificationMessage:
        """Notice for a new booking."""
        return self._build(
            f"created:{appointment.id}",
            NotificationKind.APPOINTMENT_CREATED,
            NotificationType.SUCCESS,
            NotificationCategory.APPOINTMENT,
            "Appointment booked",
            f"{appointment.title} booked for {appointment.scheduled_at.isoformat()}",
            NotificationPriority.LOW,
            appointment.cabinet_id,
            appointment,
            {"scheduled_at": appointment.scheduled_at.isoformat()},
        )

    def status_changed(
        self,
        appointment: AppointmentResponse,
        old_status: AppointmentStatus,
        new_status: AppointmentStatus,
        automatic: bool = False,
    ) -> NotificationMessage:
        """Notice for one applied lifecycle transition."""
        if new_status == AppointmentStatus.NO_SHOW:
            type_, priority = NotificationType.WARNING, NotificationPriority.HIGH
        elif new_status == AppointmentStatus.CONFIRMED:
            type_, priority = NotificationType.SUCCESS, NotificationPriority.LOW
        elif new_status == AppointmentStatus.CANCELLED:
            type_, priority = NotificationType.WARNING, NotificationPriority.MEDIUM
        else:
            type_, priority = NotificationType.INFO, NotificationPriority.MEDIUM

        return self._build(
            f"status:{appointment.id}:{old_status.value}:{new_status.value}",
            NotificationKind.STATUS_CHANGE,
            type_,
            NotificationCategory.APPOINTMENT,
            "Appointment status changed",
            f'Appointment moved from "{STATUS_LABELS[old_status]}" to "{STATUS_LABELS[new_status]}"',
            priority,
            appointment.cabinet_id,
            appointment,
            {
                "old_status": old_status.value,
                "new_status": new_status.value,
                "automatic": automatic,
            },
        )

    def rescheduled(
        self,
        appointment: AppointmentResponse,
        previous: AppointmentResponse,
    ) -> NotificationMessage:
        """Notice for a moved appointment, one per schedule revision."""
        return self._build(
            f"reschedule:{appointment.id}:r{appointment.schedule_revision}",
            NotificationKind.RESCHEDULE,
            NotificationType.INFO,
            NotificationCategory.APPOINTMENT,
            "Appointment rescheduled",
            (
                f"Appointment moved from {previous.scheduled_at.isoformat()} "
                f"to {appointment.scheduled_at.isoformat()}"
            ),
            NotificationPriority.MEDIUM,
            appointment.cabinet_id,
            appointment,
            {
                "old_scheduled_at": previous.scheduled_at.isoformat(),
                "new_scheduled_at": appointment.scheduled_at.isoformat(),
                "old_practitioner_id": previous.practitioner_id,
                "new_practitioner_id": appointment.practitioner_id,
                "duration_minutes": appointment.duration_minutes,
            },
        )

    def reminder(self, appointment: AppointmentResponse, threshold_minutes: int) -> NotificationMessage:
        """Reminder for one crossed threshold of one schedule revision."""
        return self._build(
            reminder_key(appointment, threshold_minutes),
            NotificationKind.REMINDER,
            NotificationType.INFO,
            NotificationCategory.REMINDER,
            "Appointment reminder",
            f"Appointment in {threshold_minutes} minutes",
            NotificationPriority.HIGH,
            appointment.cabinet_id,
            appointment,
            {
                "threshold_minutes": threshold_minutes,
                "scheduled_at": appointment.scheduled_at.isoformat(),
                "actions": ["confirm", "reschedule"],
            },
        )

    def conflict(
        self,
        cabinet_id: str,
        practitioner_id: str,
        start: datetime,
        end: datetime,
        conflicting_appointment_id: Any,
    ) -> NotificationMessage:
        """Alert for a refused booking. Urgent, never auto removed."""
        return self._build(
            f"conflict:{cabinet_id}:{practitioner_id}:{start.isoformat()}",
            NotificationKind.CONFLICT,
            NotificationType.WARNING,
            NotificationCategory.CONFLICT,
            "Conflict detected",
            f"Practitioner {practitioner_id} is already booked between "
            f"{start.isoformat()} and {end.isoformat()}",
            NotificationPriority.URGENT,
            cabinet_id,
            data={
                "practitioner_id": practitioner_id,
                "start": start.isoformat(),
                "end": end.isoformat(),
                "conflicting_appointment_id": str(conflicting_appointment_id),
            },
        )


def reminder_key(appointment: AppointmentResponse, threshold_minutes: int) -> str:
    """Idempotency key of a reminder."""
    return f"reminder:{appointment.id}:r{appointment.schedule_revision}:{threshold_minutes}"


class NotificationDispatcher:
    """
    Hands notifications to the enabled delivery channels.

    Every notification is logged. Realtime subscribers get it over Redis and
    staff devices through the cabinet's FCM topic when those channels are
    enabled. Any channel failure is raised so the outbox keeps the message.
    """

    def __init__(
        self,
        realtime: CabinetEventChannel | None = None,
        push_enabled: bool = False,
    ):
        """Initialize dispatcher with its optional channels."""
        self.realtime = realtime
        self.push_enabled = push_enabled

    async def deliver(self, message: NotificationMessage) -> None:
        """Deliver one notification on every enabled channel."""
        logger.info(
            "notification_emitted",
            notification_id=str(message.id),
            kind=message.kind.value,
            priority=message.priority.value,
            cabinet_id=message.cabinet_id,
            appointment_id=str(message.appointment_id) if message.appointment_id else None,
            channels=message.channels,
        )

        if self.realtime is not None:
            await asyncio.to_thread(self.realtime.publish, message)

        if self.push_enabled:
            await asyncio.to_thread(messaging.send, self._push_message(message))

    @staticmethod
    def _push_message(message: NotificationMessage) -> messaging.Message:
        urgent = message.priority in (NotificationPriority.HIGH, NotificationPriority.URGENT)
        return messaging.Message(
            notification=messaging.Notification(
                title=message.title,
                body=message.message,
            ),
            data=message.to_payload(),
            topic=push_topic(message.cabinet_id),
            android=messaging.AndroidConfig(
                priority="high" if urgent else "normal",
                notification=messaging.AndroidNotification(sound="default"),
            ),
            apns=messaging.APNSConfig(
                payload=messaging.APNSPayload(aps=messaging.Aps(sound="default")),
            ),
        )


class NotificationService:
    """
    Outbox writer and post-commit delivery.

    `emit` writes in the caller's transaction; `deliver` runs after commit and
    records the outcome. A message whose delivery fails stays pending for the
    next sweep until the attempt limit is reached.
    """

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        builder: NotificationBuilder | None = None,
        max_attempts: int | None = None,
    ):
        """Initialize service with database session and dispatcher."""
        self.db = db
        self.outbox = SqlNotificationRepository(db)
        self.dispatcher = dispatcher
        self.builder = builder or NotificationBuilder()
        self.max_attempts = max_attempts or settings.notification_max_delivery_attempts

    async def emit(self, message: NotificationMessage) -> NotificationMessage:
        """Append a notification to the outbox of the current transaction."""
        await self.outbox.add(message)
        return message

    async def deliver(self, messages: Iterable[NotificationMessage]) -> int:
        """
        Deliver committed notifications and record the outcome.

        Never raises: the change they describe is already committed.

        Returns:
            Number of notifications delivered
        """
        delivered = 0
        for message in messages:
            try:
                await self.dispatcher.deliver(message)
            except Exception as e:
                logger.warning(
                    "notification_delivery_failed",
                    notification_id=str(message.id),
                    cabinet_id=message.cabinet_id,
                    error=str(e),
                )
                await self._record_failure(message, str(e))
                continue

            delivered += 1
            await self._record_delivered(message)

        return delivered

    async def deliver_pending(self, cabinet_id: str, limit: int = 100) -> int:
        """Redeliver pending notifications of a cabinet."""
        pending = await self.outbox.list_pending(cabinet_id, limit=limit)
        if not pending:
            return 0
        return await self.deliver(pending)

    async def notify_now(self, message: NotificationMessage) -> None:
        """Best-effort delivery of a notification that is never persisted."""
        try:
            await self.dispatcher.deliver(message)
        except Exception as e:
            logger.warning(
                "notification_delivery_failed",
                notification_id=str(message.id),
                cabinet_id=message.cabinet_id,
                error=str(e),
            )

    async def _record_delivered(self, message: NotificationMessage) -> None:
        try:
            await self.outbox.mark_delivered(message.id)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "notification_outcome_not_recorded", notification_id=str(message.id), error=str(e)
            )

    async def _record_failure(self, message: NotificationMessage, reason: str) -> None:
        try:
            failed = await self.outbox.record_failure(message.id, reason, self.max_attempts)
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.warning(
                "notification_outcome_not_recorded", notification_id=str(message.id), error=str(e)
            )
            return

        if failed:
            logger.error(
                "notification_delivery_abandoned",
                notification_id=str(message.id),
                cabinet_id=message.cabinet_id,
                attempts=self.max_attempts,
            )
