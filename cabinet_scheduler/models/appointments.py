"""Appointments table model using SQLAlchemy Core."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from cabinet_scheduler.models.base import UTCDateTime, metadata

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True),
    # Ownership / references
    Column("cabinet_id", String(64), ForeignKey("cabinets.id"), nullable=False),
    Column("patient_id", Uuid, ForeignKey("patients.id"), nullable=False),
    Column("practitioner_id", String(64), nullable=True),
    # Appointment details
    Column("title", Text, nullable=False),
    Column("service_type", String(32), nullable=False),
    Column("description", Text, nullable=True),
    Column("notes", Text, nullable=True),
    Column("price", Numeric(10, 2), nullable=True),
    # Slot; end_at is derived but stored so overlap queries stay indexable
    Column("scheduled_at", UTCDateTime, nullable=False),
    Column("end_at", UTCDateTime, nullable=False),
    Column("duration_minutes", Integer, nullable=False),
    Column("schedule_revision", Integer, nullable=False, server_default=text("0")),
    # Status management
    Column("status", String(20), nullable=False, server_default=text("'scheduled'")),
    # Audit fields
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    Column("cancelled_at", UTCDateTime, nullable=True),
    # Soft delete (healthcare compliance)
    Column("deleted_at", UTCDateTime, nullable=True),
    # Constraints
    CheckConstraint(
        "status IN ('scheduled', 'confirmed', 'in_progress', 'completed', 'cancelled', 'no_show')",
        name="appointments_status_check",
    ),
    CheckConstraint("duration_minutes > 0", name="appointments_duration_check"),
    CheckConstraint("price IS NULL OR price >= 0", name="appointments_price_check"),
    CheckConstraint("end_at > scheduled_at", name="appointments_time_order_check"),
    Index("idx_appointments_cabinet_scheduled", "cabinet_id", "scheduled_at"),
    Index(
        "idx_appointments_practitioner_slot",
        "cabinet_id",
        "practitioner_id",
        "scheduled_at",
    ),
    Index("idx_appointments_patient_id", "patient_id"),
    Index("idx_appointments_status", "status"),
)
