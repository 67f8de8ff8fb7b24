"""Cabinet (tenant) table model using SQLAlchemy Core."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    String,
    Table,
    Text,
    text,
)

from cabinet_scheduler.models.base import UTCDateTime, metadata

cabinets = Table(
    "cabinets",
    metadata,
    # Opaque tenant identifier, shared with the authentication service claims
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("slug", String(255), unique=True, nullable=False),
    Column("timezone", Text, nullable=False, server_default=text("'Europe/Paris'")),
    Column("status", String(20), nullable=False, server_default=text("'active'")),
    # Reminder sweep opt-in
    Column("reminders_enabled", Boolean, nullable=False, server_default=text("true")),
    # Audit fields
    Column("created_at", UTCDateTime, nullable=False),
    Column("updated_at", UTCDateTime, nullable=False),
    CheckConstraint(
        "status IN ('active', 'inactive', 'maintenance')",
        name="cabinets_status_check",
    ),
)
