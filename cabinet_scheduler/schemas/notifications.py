"""Notification schemas emitted by lifecycle changes and the reminder sweep."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field


class NotificationKind(str, Enum):
    """What happened to the appointment."""

    APPOINTMENT_CREATED = "appointment_created"
    STATUS_CHANGE = "status_change"
    RESCHEDULE = "reschedule"
    REMINDER = "reminder"
    CONFLICT = "conflict"


class NotificationType(str, Enum):
    """Display severity."""

    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class NotificationCategory(str, Enum):
    """Notification grouping for the manager inbox."""

    APPOINTMENT = "appointment"
    REMINDER = "reminder"
    CONFLICT = "conflict"


class NotificationPriority(str, Enum):
    """Notification priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class DeliveryStatus(str, Enum):
    """Outbox delivery status."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


class NotificationMessage(BaseModel):
    """Immutable notification handed to the delivery collaborator."""

    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: UUID = Field(default_factory=uuid4)
    idempotency_key: str
    kind: NotificationKind
    type: NotificationType
    category: NotificationCategory
    title: str
    message: str
    priority: NotificationPriority
    cabinet_id: str
    appointment_id: UUID | None = None
    patient_id: UUID | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    channels: list[str] = Field(default_factory=list)
    auto_remove: bool = False
    timestamp: datetime

    def to_payload(self) -> dict[str, str]:
        """Flatten to string values for push and pub/sub transports."""
        payload = {
            "id": str(self.id),
            "kind": self.kind.value,
            "type": self.type.value,
            "category": self.category.value,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "cabinet_id": self.cabinet_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.appointment_id:
            payload["appointment_id"] = str(self.appointment_id)
        return payload
