"""Patient persistence on SQLAlchemy Core."""

from collections.abc import Collection
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.models.base import utcnow
from cabinet_scheduler.models.patients import patients
from cabinet_scheduler.repositories.errors import persistence_errors
from cabinet_scheduler.schemas.patients import PatientResponse


def _to_response(row: Any) -> PatientResponse:
    return PatientResponse.model_validate(dict(row._mapping))


class SqlPatientRepository:
    """Patient repository on an `AsyncSession`. The caller owns the transaction."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session."""
        self.db = db

    async def get(self, patient_id: UUID) -> PatientResponse | None:
        """Get a live patient by ID."""
        stmt = select(patients).where(
            and_(patients.c.id == patient_id, patients.c.deleted_at.is_(None))
        )

        async with persistence_errors("get_patient"):
            result = await self.db.execute(stmt)
            row = result.fetchone()

        return _to_response(row) if row else None

    async def insert(self, values: dict[str, Any]) -> PatientResponse:
        """Insert a patient. ID and audit timestamps are set here."""
        now = utcnow()
        patient_id = uuid4()

        async with persistence_errors("insert_patient"):
            await self.db.execute(
                insert(patients).values(
                    **values, id=patient_id, created_at=now, updated_at=now
                )
            )

        created = await self.get(patient_id)
        if created is None:
            raise RuntimeError(f"Inserted patient {patient_id} could not be read back")
        return created

    async def update_fields(self, patient_id: UUID, values: dict[str, Any]) -> PatientResponse | None:
        """Update columns of a live patient and return the new state."""
        stmt = (
            update(patients)
            .where(and_(patients.c.id == patient_id, patients.c.deleted_at.is_(None)))
            .values(**values, updated_at=utcnow())
        )

        async with persistence_errors("update_patient"):
            result = await self.db.execute(stmt)

        if result.rowcount == 0:
            return None
        return await self.get(patient_id)

    async def soft_delete(self, patient_id: UUID) -> bool:
        """Soft delete a patient. Returns False if it was already gone."""
        now = utcnow()
        stmt = (
            update(patients)
            .where(and_(patients.c.id == patient_id, patients.c.deleted_at.is_(None)))
            .values(deleted_at=now, updated_at=now, is_active=False)
        )

        async with persistence_errors("soft_delete_patient"):
            result = await self.db.execute(stmt)

        return result.rowcount == 1

    async def reminder_opt_outs(self, patient_ids: Collection[UUID]) -> set[UUID]:
        """Subset of `patient_ids` that disabled reminders."""
        if not patient_ids:
            return set()

        stmt = select(patients.c.id).where(
            and_(
                patients.c.id.in_(list(patient_ids)),
                patients.c.reminder_enabled.is_(False),
            )
        )

        async with persistence_errors("reminder_opt_outs"):
            result = await self.db.execute(stmt)
            return {row.id for row in result.fetchall()}

    async def names_by_id(self, patient_ids: Collection[UUID]) -> dict[UUID, str]:
        """Display names for a set of patients, soft deleted ones included."""
        if not patient_ids:
            return {}

        stmt = select(patients.c.id, patients.c.first_name, patients.c.last_name).where(
            patients.c.id.in_(list(patient_ids))
        )

        async with persistence_errors("patient_names"):
            result = await self.db.execute(stmt)
            return {row.id: f"{row.first_name} {row.last_name}" for row in result.fetchall()}

    async def list(
        self,
        cabinet_ids: frozenset[str] | None,
        search: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[int, list[PatientResponse]]:
        """
        List live patients of the given cabinets.

        Args:
            cabinet_ids: Cabinets to include, None for all (admin only)
            search: Optional case-insensitive match on names and email
            page: Page number, starting at 1
            page_size: Items per page

        Returns:
            Total count and the requested page, ordered by last name
        """
        conditions = [patients.c.deleted_at.is_(None)]

        if cabinet_ids is not None:
            conditions.append(patients.c.cabinet_id.in_(sorted(cabinet_ids)))
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(
                or_(
                    func.lower(patients.c.first_name).like(pattern),
                    func.lower(patients.c.last_name).like(pattern),
                    func.lower(patients.c.email).like(pattern),
                )
            )

        where_clause = and_(*conditions)
        count_stmt = select(func.count()).select_from(patients).where(where_clause)
        stmt = (
            select(patients)
            .where(where_clause)
            .order_by(patients.c.last_name, patients.c.first_name)
            .limit(page_size)
            .offset((page - 1) * page_size)
        )

        async with persistence_errors("list_patients"):
            total = (await self.db.execute(count_stmt)).scalar() or 0
            result = await self.db.execute(stmt)
            items = [_to_response(row) for row in result.fetchall()]

        return total, items
