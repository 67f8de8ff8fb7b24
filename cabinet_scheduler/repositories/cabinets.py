"""Cabinet (tenant) persistence on SQLAlchemy Core."""

from typing import Any

from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.models.base import utcnow
from cabinet_scheduler.models.cabinets import cabinets
from cabinet_scheduler.repositories.errors import persistence_errors


class SqlCabinetRepository:
    """Cabinet lookups used by the sweep and operator scripts."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db

    async def get(self, cabinet_id: str) -> dict[str, Any] | None:
        """Get a cabinet by ID."""
        async with persistence_errors("get_cabinet"):
            result = await self.db.execute(select(cabinets).where(cabinets.c.id == cabinet_id))
            row = result.fetchone()

        return dict(row._mapping) if row else None

    async def list_active_ids(self) -> list[str]:
        """IDs of active cabinets, in a stable order."""
        stmt = select(cabinets.c.id).where(cabinets.c.status == "active").order_by(cabinets.c.id)

        async with persistence_errors("list_active_cabinets"):
            result = await self.db.execute(stmt)
            return [row.id for row in result.fetchall()]

    async def insert(
        self,
        cabinet_id: str,
        name: str,
        slug: str,
        timezone: str = "Europe/Paris",
        reminders_enabled: bool = True,
    ) -> dict[str, Any]:
        """Register a cabinet."""
        now = utcnow()
        values = {
            "id": cabinet_id,
            "name": name,
            "slug": slug,
            "timezone": timezone,
            "status": "active",
            "reminders_enabled": reminders_enabled,
            "created_at": now,
            "updated_at": now,
        }

        async with persistence_errors("insert_cabinet"):
            await self.db.execute(insert(cabinets).values(**values))

        return values
