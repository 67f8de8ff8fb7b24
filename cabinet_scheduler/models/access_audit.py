"""Append-only access audit log."""

from sqlalchemy import Boolean, Column, Index, String, Table, Text, Uuid

from cabinet_scheduler.models.base import UTCDateTime, metadata

access_audit_log = Table(
    "access_audit_log",
    metadata,
    Column("id", Uuid, primary_key=True),
    Column("occurred_at", UTCDateTime, nullable=False),
    Column("actor_id", String(64), nullable=False),
    Column("role", String(20), nullable=False),
    Column("resource", String(50), nullable=False),
    Column("operation", String(20), nullable=False),
    Column("cabinet_id", String(64), nullable=True),
    Column("allowed", Boolean, nullable=False),
    Column("reason", Text, nullable=True),
    Index("idx_access_audit_cabinet", "cabinet_id", "occurred_at"),
    Index("idx_access_audit_actor", "actor_id"),
)
