"""Patient table model using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    Index,
    String,
    Table,
    Text,
    Uuid,
    text,
)

from cabinet_scheduler.models.base import UTCDateTime, metadata

patients = Table(
    "patients",
    metadata,
    Column("id", Uuid, primary_key=True),
    # Tenant ownership
    Column("cabinet_id", String(64), ForeignKey("cabinets.id"), nullable=False),
    # Identity
    Column("first_name", Text, nullable=False),
    Column("last_name", Text, nullable=False),
    Column("email", Text, nullable=True),
    Column("phone", String(20), nullable=True),
    Column("date_of_birth", Date, nullable=True),
    # Communication preferences
    Column("preferred_channel", String(10), nullable=False, server_default=text("'email'")),
    Column("reminder_enabled", Boolean, nullable=False, server_default=text("true")),
    # Account state
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    # Audit fields
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    # Soft delete (healthcare compliance)
    Column("deleted_at", UTCDateTime, nullable=True),
    CheckConstraint(
        "preferred_channel IN ('email', 'sms', 'push')",
        name="patients_preferred_channel_check",
    ),
    Index("idx_patients_cabinet_id", "cabinet_id"),
)
