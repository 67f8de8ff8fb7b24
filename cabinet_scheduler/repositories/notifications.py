"""Notification outbox persistence."""

from typing import Any
from uuid import UUID

from sqlalchemy import and_, case, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.models.base import utcnow
from cabinet_scheduler.models.notifications import appointment_notifications
from cabinet_scheduler.repositories.errors import persistence_errors
from cabinet_scheduler.schemas.notifications import DeliveryStatus, NotificationMessage


# Delivery bookkeeping stays out of the emitted message
_message_columns = [
    c
    for c in appointment_notifications.c
    if c.name not in ("delivery_status", "delivery_attempts", "failure_reason", "delivered_at")
]


def _to_message(row: Any) -> NotificationMessage:
    values = dict(row._mapping)
    values["timestamp"] = values.pop("created_at")
    values["data"] = values.get("data") or {}
    values["channels"] = values.get("channels") or []
    return NotificationMessage.model_validate(values)


class SqlNotificationRepository:
    """
    Outbox of emitted notifications.

    Rows are written in the transaction of the change they describe and
    delivered after commit. The unique idempotency key makes each emission
    happen at most once.
    """

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db

    async def add(self, message: NotificationMessage) -> None:
        """
        Append a pending notification.

        Raises:
            IntegrityError: If a notification with the same idempotency key exists
        """
        values = {
            "id": message.id,
            "idempotency_key": message.idempotency_key,
            "cabinet_id": message.cabinet_id,
            "appointment_id": message.appointment_id,
            "patient_id": message.patient_id,
            "kind": message.kind.value,
            "type": message.type.value,
            "category": message.category.value,
            "title": message.title,
            "message": message.message,
            "priority": message.priority.value,
            "data": message.data,
            "channels": message.channels,
            "auto_remove": message.auto_remove,
            "delivery_status": DeliveryStatus.PENDING.value,
            "created_at": message.timestamp,
        }

        async with persistence_errors("add_notification"):
            await self.db.execute(insert(appointment_notifications).values(**values))

    async def list_pending(self, cabinet_id: str, limit: int = 100) -> list[NotificationMessage]:
        """Oldest pending notifications of a cabinet."""
        stmt = (
            select(*_message_columns)
            .where(
                and_(
                    appointment_notifications.c.cabinet_id == cabinet_id,
                    appointment_notifications.c.delivery_status == DeliveryStatus.PENDING.value,
                )
            )
            .order_by(appointment_notifications.c.created_at)
            .limit(limit)
        )

        async with persistence_errors("list_pending_notifications"):
            result = await self.db.execute(stmt)
            return [_to_message(row) for row in result.fetchall()]

    async def list_for_appointment(self, appointment_id: UUID) -> list[NotificationMessage]:
        """Every notification emitted for an appointment, oldest first."""
        stmt = (
            select(*_message_columns)
            .where(appointment_notifications.c.appointment_id == appointment_id)
            .order_by(appointment_notifications.c.created_at)
        )

        async with persistence_errors("list_appointment_notifications"):
            result = await self.db.execute(stmt)
            return [_to_message(row) for row in result.fetchall()]

    async def mark_delivered(self, notification_id: UUID) -> None:
        """Mark a notification as delivered."""
        stmt = (
            update(appointment_notifications)
            .where(appointment_notifications.c.id == notification_id)
            .values(
                delivery_status=DeliveryStatus.DELIVERED.value,
                delivered_at=utcnow(),
                failure_reason=None,
            )
        )

        async with persistence_errors("mark_notification_delivered"):
            await self.db.execute(stmt)

    async def record_failure(self, notification_id: UUID, reason: str, max_attempts: int) -> bool:
        """
        Count a failed delivery attempt.

        The notification stays pending for redelivery until `max_attempts` is
        reached, then it is marked failed.

        Returns:
            True if the notification is now permanently failed
        """
        attempts = appointment_notifications.c.delivery_attempts + 1
        stmt = (
            update(appointment_notifications)
            .where(appointment_notifications.c.id == notification_id)
            .values(
                delivery_attempts=attempts,
                failure_reason=reason,
                delivery_status=case(
                    (attempts >= max_attempts, DeliveryStatus.FAILED.value),
                    else_=DeliveryStatus.PENDING.value,
                ),
            )
            .returning(appointment_notifications.c.delivery_status)
        )

        async with persistence_errors("record_notification_failure"):
            result = await self.db.execute(stmt)
            status = result.scalar()

        return status == DeliveryStatus.FAILED.value
