"""Notification outbox model for appointment events."""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from cabinet_scheduler.models.base import UTCDateTime, metadata

appointment_notifications = Table(
    "appointment_notifications",
    metadata,
    Column("id", Uuid, primary_key=True),
    # Stable key, e.g. "reminder:<appointment>:r<revision>:<threshold>"
    Column("idempotency_key", String(200), nullable=False, unique=True),
    Column("cabinet_id", String(64), ForeignKey("cabinets.id"), nullable=False),
    Column("appointment_id", Uuid, ForeignKey("appointments.id"), nullable=True),
    Column("patient_id", Uuid, nullable=True),
    Column("kind", String(32), nullable=False),
    Column("type", String(16), nullable=False),
    Column("category", String(16), nullable=False),
    Column("title", Text, nullable=False),
    Column("message", Text, nullable=False),
    Column("priority", String(10), nullable=False, server_default=text("'medium'")),
    Column("data", JSON, nullable=True),
    Column("channels", JSON, nullable=True),
    Column("auto_remove", Boolean, nullable=False, server_default=text("false")),
    # Delivery tracking
    Column("delivery_status", String(20), nullable=False, server_default=text("'pending'")),
    Column("delivery_attempts", Integer, nullable=False, server_default=text("0")),
    Column("failure_reason", Text, nullable=True),
    Column("created_at", UTCDateTime, nullable=False),
    Column("delivered_at", UTCDateTime, nullable=True),
    CheckConstraint(
        "kind IN ('appointment_created', 'status_change', 'reschedule', 'reminder', 'conflict')",
        name="appointment_notifications_kind_check",
    ),
    CheckConstraint(
        "priority IN ('low', 'medium', 'high', 'urgent')",
        name="appointment_notifications_priority_check",
    ),
    CheckConstraint(
        "delivery_status IN ('pending', 'delivered', 'failed')",
        name="appointment_notifications_status_check",
    ),
    Index("idx_appointment_notifications_cabinet_status", "cabinet_id", "delivery_status"),
    Index("idx_appointment_notifications_appointment", "appointment_id"),
)
