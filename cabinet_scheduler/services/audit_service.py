"""Append-only access audit trail."""

from typing import Protocol
from uuid import uuid4

import structlog
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cabinet_scheduler.models.access_audit import access_audit_log
from cabinet_scheduler.repositories.errors import persistence_errors
from cabinet_scheduler.schemas.access import AuditEntry

logger = structlog.get_logger(__name__)


class AuditSink(Protocol):
    """Receives one entry per access decision."""

    async def record(self, entry: AuditEntry) -> None:
        """Persist an entry on its own, independent of any caller transaction."""
        ...

    async def record_within(self, db: AsyncSession, entry: AuditEntry) -> None:
        """Persist an entry as part of the caller's transaction."""
        ...


def _row_values(entry: AuditEntry) -> dict:
    return {
        "id": uuid4(),
        "occurred_at": entry.timestamp,
        "actor_id": entry.actor_id,
        "role": entry.role,
        "resource": entry.resource,
        "operation": entry.operation,
        "cabinet_id": entry.cabinet_id,
        "allowed": entry.allowed,
        "reason": entry.reason,
    }


class SqlAuditSink:
    """
    Audit sink writing to the `access_audit_log` table.

    `record` commits in a dedicated session so a denial stays on file even
    though the request that triggered it is rolled back.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        """Initialize sink with the session factory used for standalone writes."""
        self.session_factory = session_factory

    async def record(self, entry: AuditEntry) -> None:
        """Append an entry in its own transaction."""
        async with self.session_factory() as session:
            await self.record_within(session, entry)
            async with persistence_errors("commit_access_audit"):
                await session.commit()

    async def record_within(self, db: AsyncSession, entry: AuditEntry) -> None:
        """Append an entry in the caller's transaction."""
        async with persistence_errors("record_access_audit"):
            await db.execute(insert(access_audit_log).values(**_row_values(entry)))

        logger.info(
            "access_audit",
            actor_id=entry.actor_id,
            role=entry.role,
            resource=entry.resource,
            operation=entry.operation,
            cabinet_id=entry.cabinet_id,
            allowed=entry.allowed,
            reason=entry.reason,
        )
