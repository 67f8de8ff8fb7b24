"""Initial schema - cabinets, patients, appointments, outbox and access audit.

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TIMESTAMPTZ = postgresql.TIMESTAMP(timezone=True)


def upgrade() -> None:
    """Upgrade database schema."""
    # Needed for the practitioner overlap exclusion constraint
    op.execute('CREATE EXTENSION IF NOT EXISTS "btree_gist"')

    op.create_table(
        "cabinets",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("timezone", sa.Text(), server_default="Europe/Paris", nullable=False),
        sa.Column("status", sa.String(length=20), server_default="active", nullable=False),
        sa.Column("reminders_enabled", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.CheckConstraint(
            "status IN ('active', 'inactive', 'maintenance')",
            name="cabinets_status_check",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("slug"),
    )

    op.create_table(
        "patients",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("cabinet_id", sa.String(length=64), nullable=False),
        sa.Column("first_name", sa.Text(), nullable=False),
        sa.Column("last_name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("phone", sa.String(length=20), nullable=True),
        sa.Column("date_of_birth", sa.Date(), nullable=True),
        sa.Column("preferred_channel", sa.String(length=10), server_default="email", nullable=False),
        sa.Column("reminder_enabled", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("deleted_at", TIMESTAMPTZ, nullable=True),
        sa.CheckConstraint(
            "preferred_channel IN ('email', 'sms', 'push')",
            name="patients_preferred_channel_check",
        ),
        sa.ForeignKeyConstraint(["cabinet_id"], ["cabinets.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_patients_cabinet_id", "patients", ["cabinet_id"])

    op.create_table(
        "appointments",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("cabinet_id", sa.String(length=64), nullable=False),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("practitioner_id", sa.String(length=64), nullable=True),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("service_type", sa.String(length=32), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(10, 2), nullable=True),
        sa.Column("scheduled_at", TIMESTAMPTZ, nullable=False),
        sa.Column("end_at", TIMESTAMPTZ, nullable=False),
        sa.Column("duration_minutes", sa.Integer(), nullable=False),
        sa.Column("schedule_revision", sa.Integer(), server_default="0", nullable=False),
        sa.Column("status", sa.String(length=20), server_default="scheduled", nullable=False),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("cancelled_at", TIMESTAMPTZ, nullable=True),
        sa.Column("deleted_at", TIMESTAMPTZ, nullable=True),
        sa.CheckConstraint(
            "status IN ('scheduled', 'confirmed', 'in_progress', 'completed', 'cancelled', 'no_show')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint("duration_minutes > 0", name="appointments_duration_check"),
        sa.CheckConstraint("price IS NULL OR price >= 0", name="appointments_price_check"),
        sa.CheckConstraint("end_at > scheduled_at", name="appointments_time_order_check"),
        sa.ForeignKeyConstraint(["cabinet_id"], ["cabinets.id"]),
        sa.ForeignKeyConstraint(["patient_id"], ["patients.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_appointments_cabinet_scheduled", "appointments", ["cabinet_id", "scheduled_at"]
    )
    op.create_index(
        "idx_appointments_practitioner_slot",
        "appointments",
        ["cabinet_id", "practitioner_id", "scheduled_at"],
    )
    op.create_index("idx_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index("idx_appointments_status", "appointments", ["status"])

    # Last line of defence against double booking when two app instances race
    op.execute(
        """
        ALTER TABLE appointments
        ADD CONSTRAINT appointments_no_practitioner_overlap
        EXCLUDE USING gist (
            cabinet_id WITH =,
            practitioner_id WITH =,
            tstzrange(scheduled_at, end_at) WITH &&
        )
        WHERE (
            status <> 'cancelled'
            AND deleted_at IS NULL
            AND practitioner_id IS NOT NULL
        );
        """
    )

    op.create_table(
        "appointment_notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("idempotency_key", sa.String(length=200), nullable=False),
        sa.Column("cabinet_id", sa.String(length=64), nullable=False),
        sa.Column("appointment_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("kind", sa.String(length=32), nullable=False),
        sa.Column("type", sa.String(length=16), nullable=False),
        sa.Column("category", sa.String(length=16), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("priority", sa.String(length=10), server_default="medium", nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("channels", sa.JSON(), nullable=True),
        sa.Column("auto_remove", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("delivery_status", sa.String(length=20), server_default="pending", nullable=False),
        sa.Column("delivery_attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", TIMESTAMPTZ, server_default=sa.text("NOW()"), nullable=False),
        sa.Column("delivered_at", TIMESTAMPTZ, nullable=True),
        sa.CheckConstraint(
            "kind IN ('appointment_created', 'status_change', 'reschedule', 'reminder', 'conflict')",
            name="appointment_notifications_kind_check",
        ),
        sa.CheckConstraint(
            "priority IN ('low', 'medium', 'high', 'urgent')",
            name="appointment_notifications_priority_check",
        ),
        sa.CheckConstraint(
            "delivery_status IN ('pending', 'delivered', 'failed')",
            name="appointment_notifications_status_check",
        ),
        sa.ForeignKeyConstraint(["cabinet_id"], ["cabinets.id"]),
        sa.ForeignKeyConstraint(["appointment_id"], ["appointments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key"),
    )
    op.create_index(
        "idx_appointment_notifications_cabinet_status",
        "appointment_notifications",
        ["cabinet_id", "delivery_status"],
    )
    op.create_index(
        "idx_appointment_notifications_appointment",
        "appointment_notifications",
        ["appointment_id"],
    )

    op.create_table(
        "access_audit_log",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("occurred_at", TIMESTAMPTZ, nullable=False),
        sa.Column("actor_id", sa.String(length=64), nullable=False),
        sa.Column("role", sa.String(length=20), nullable=False),
        sa.Column("resource", sa.String(length=50), nullable=False),
        sa.Column("operation", sa.String(length=20), nullable=False),
        sa.Column("cabinet_id", sa.String(length=64), nullable=True),
        sa.Column("allowed", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_access_audit_cabinet", "access_audit_log", ["cabinet_id", "occurred_at"])
    op.create_index("idx_access_audit_actor", "access_audit_log", ["actor_id"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("idx_access_audit_actor", table_name="access_audit_log")
    op.drop_index("idx_access_audit_cabinet", table_name="access_audit_log")
    op.drop_table("access_audit_log")

    op.drop_index(
        "idx_appointment_notifications_appointment", table_name="appointment_notifications"
    )
    op.drop_index(
        "idx_appointment_notifications_cabinet_status", table_name="appointment_notifications"
    )
    op.drop_table("appointment_notifications")

    op.execute(
        "ALTER TABLE appointments DROP CONSTRAINT IF EXISTS appointments_no_practitioner_overlap"
    )
    op.drop_index("idx_appointments_status", table_name="appointments")
    op.drop_index("idx_appointments_patient_id", table_name="appointments")
    op.drop_index("idx_appointments_practitioner_slot", table_name="appointments")
    op.drop_index("idx_appointments_cabinet_scheduled", table_name="appointments")
    op.drop_table("appointments")

    op.drop_index("idx_patients_cabinet_id", table_name="patients")
    op.drop_table("patients")

    op.drop_table("cabinets")
