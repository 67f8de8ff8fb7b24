"""Mutual exclusion around check-then-write sections."""

import asyncio
import hashlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


def advisory_lock_key(*parts: str) -> int:
    """Stable signed 64-bit key for PostgreSQL advisory locks."""
    digest = hashlib.blake2b(":".join(parts).encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


class SlotLockManager:
    """
    Per-(cabinet, practitioner) locks.

    One instance is shared by every request of a process. Inside the process an
    `asyncio.Lock` serializes callers; on PostgreSQL a transaction-scoped
    advisory lock extends the guarantee across worker processes and is released
    by the commit or rollback that ends the caller's transaction.
    """

    def __init__(self) -> None:
        """Initialize an empty lock registry."""
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    def _lock_for(self, cabinet_id: str, practitioner_id: str) -> asyncio.Lock:
        return self._locks.setdefault((cabinet_id, practitioner_id), asyncio.Lock())

    @asynccontextmanager
    async def hold(
        self,
        db: AsyncSession,
        cabinet_id: str,
        practitioner_id: str | None,
    ) -> AsyncIterator[None]:
        """
        Hold the slot lock of a practitioner for the duration of the block.

        Unassigned appointments never conflict, so no lock is taken for them.
        """
        if practitioner_id is None:
            yield
            return

        async with self._lock_for(cabinet_id, practitioner_id):
            if db.get_bind().dialect.name == "postgresql":
                await db.execute(
                    text("SELECT pg_advisory_xact_lock(:key)"),
                    {"key": advisory_lock_key("slot", cabinet_id, practitioner_id)},
                )
            yield


class CabinetSweepGuard:
    """Ensures at most one sweep runs per cabinet at a time."""

    def __init__(self) -> None:
        """Initialize an empty lock registry."""
        self._locks: dict[str, asyncio.Lock] = {}

    def lock_for(self, cabinet_id: str) -> asyncio.Lock:
        """Get the sweep lock of a cabinet."""
        return self._locks.setdefault(cabinet_id, asyncio.Lock())
