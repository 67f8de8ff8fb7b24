"""Appointment persistence: repository interface and SQLAlchemy Core implementation."""

from collections.abc import Collection
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import UUID, uuid4

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.models.appointments import appointments
from cabinet_scheduler.models.base import utcnow
from cabinet_scheduler.repositories.errors import persistence_errors
from cabinet_scheduler.repositories.locks import SlotLockManager
from cabinet_scheduler.schemas.appointments import (
    AppointmentResponse,
    AppointmentStatus,
    ScopedAppointmentFilter,
)


class AppointmentRepository(Protocol):
    """Persistence collaborator for appointments."""

    async def load_appointments_in_window(
        self,
        cabinet_id: str,
        window_start: datetime,
        window_end: datetime,
        practitioner_id: str | None = None,
    ) -> list[AppointmentResponse]: ...

    async def get(self, appointment_id: UUID) -> AppointmentResponse | None: ...

    async def insert(self, values: dict[str, Any]) -> AppointmentResponse: ...

    async def update_fields(
        self, appointment_id: UUID, values: dict[str, Any]
    ) -> AppointmentResponse | None: ...

    async def compare_and_set_status(
        self,
        appointment_id: UUID,
        expected: AppointmentStatus,
        new: AppointmentStatus,
        extra: dict[str, Any] | None = None,
    ) -> AppointmentResponse | None: ...

    async def list(
        self, scope: ScopedAppointmentFilter
    ) -> tuple[int, list[AppointmentResponse]]: ...

    async def soft_delete(self, appointment_id: UUID) -> bool: ...

    def slot_lock(
        self, cabinet_id: str, practitioner_id: str | None
    ) -> AbstractAsyncContextManager[None]: ...


def _to_response(row: Any) -> AppointmentResponse:
    return AppointmentResponse.model_validate(dict(row._mapping))


class SqlAppointmentRepository:
    """Appointment repository on an `AsyncSession`. The caller owns the transaction."""

    def __init__(self, db: AsyncSession, locks: SlotLockManager):
        """Initialize repository with database session and the process lock manager."""
        self.db = db
        self.locks = locks

    def slot_lock(
        self, cabinet_id: str, practitioner_id: str | None
    ) -> AbstractAsyncContextManager[None]:
        """Serialize check-then-write sections for one practitioner of a cabinet."""
        return self.locks.hold(self.db, cabinet_id, practitioner_id)

    async def load_appointments_in_window(
        self,
        cabinet_id: str,
        window_start: datetime,
        window_end: datetime,
        practitioner_id: str | None = None,
    ) -> list[AppointmentResponse]:
        """
        Load live appointments of a cabinet starting within a window.

        Args:
            cabinet_id: Tenant to search
            window_start: Inclusive lower bound on `scheduled_at`
            window_end: Inclusive upper bound on `scheduled_at`
            practitioner_id: Optional practitioner restriction

        Returns:
            Appointments ordered by start time
        """
        conditions = [
            appointments.c.cabinet_id == cabinet_id,
            appointments.c.deleted_at.is_(None),
            appointments.c.scheduled_at >= window_start,
            appointments.c.scheduled_at <= window_end,
        ]
        if practitioner_id is not None:
            conditions.append(appointments.c.practitioner_id == practitioner_id)

        stmt = select(appointments).where(and_(*conditions)).order_by(appointments.c.scheduled_at)

        async with persistence_errors("load_appointments_in_window"):
            result = await self.db.execute(stmt)
            return [_to_response(row) for row in result.fetchall()]

    async def load_appointments_overlapping(
        self,
        cabinet_id: str,
        start: datetime,
        end: datetime,
        practitioner_id: str | None = None,
    ) -> list[AppointmentResponse]:
        """Live appointments of a cabinet running at any instant of `[start, end)`."""
        conditions = [
            appointments.c.cabinet_id == cabinet_id,
            appointments.c.deleted_at.is_(None),
            appointments.c.scheduled_at < end,
            appointments.c.end_at > start,
        ]
        if practitioner_id is not None:
            conditions.append(appointments.c.practitioner_id == practitioner_id)

        stmt = select(appointments).where(and_(*conditions)).order_by(appointments.c.scheduled_at)

        async with persistence_errors("load_appointments_overlapping"):
            result = await self.db.execute(stmt)
            return [_to_response(row) for row in result.fetchall()]

    async def get(self, appointment_id: UUID) -> AppointmentResponse | None:
        """Get a live appointment by ID."""
        stmt = select(appointments).where(
            and_(
                appointments.c.id == appointment_id,
                appointments.c.deleted_at.is_(None),
            )
        )

        async with persistence_errors("get_appointment"):
            result = await self.db.execute(stmt)
            row = result.fetchone()

        return _to_response(row) if row else None

    async def insert(self, values: dict[str, Any]) -> AppointmentResponse:
        """Insert an appointment. ID and audit timestamps are set here."""
        now = utcnow()
        appointment_id = values.get("id") or uuid4()
        row_values = {
            **values,
            "id": appointment_id,
            "schedule_revision": 0,
            "created_at": now,
            "updated_at": now,
        }

        async with persistence_errors("insert_appointment"):
            await self.db.execute(insert(appointments).values(**row_values))

        created = await self.get(appointment_id)
        if created is None:
            raise RuntimeError(f"Inserted appointment {appointment_id} could not be read back")
        return created

    async def update_fields(
        self, appointment_id: UUID, values: dict[str, Any]
    ) -> AppointmentResponse | None:
        """Update columns of a live appointment and return the new state."""
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.deleted_at.is_(None),
                )
            )
            .values(**values, updated_at=utcnow())
        )

        async with persistence_errors("update_appointment"):
            result = await self.db.execute(stmt)

        if result.rowcount == 0:
            return None
        return await self.get(appointment_id)

    async def compare_and_set_status(
        self,
        appointment_id: UUID,
        expected: AppointmentStatus,
        new: AppointmentStatus,
        extra: dict[str, Any] | None = None,
    ) -> AppointmentResponse | None:
        """
        Move an appointment from `expected` to `new` status.

        Returns None when the stored status is no longer `expected`, so two
        writers can never both apply the same transition.
        """
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.status == expected.value,
                    appointments.c.deleted_at.is_(None),
                )
            )
            .values(status=new.value, updated_at=utcnow(), **(extra or {}))
        )

        async with persistence_errors("compare_and_set_status"):
            result = await self.db.execute(stmt)

        if result.rowcount != 1:
            return None
        return await self.get(appointment_id)

    async def reschedule(
        self,
        appointment_id: UUID,
        expected_revision: int,
        allowed_statuses: Collection[AppointmentStatus],
        values: dict[str, Any],
    ) -> AppointmentResponse | None:
        """
        Move an appointment and bump its schedule revision.

        Returns None when the appointment changed since it was read (other
        revision or a status that can no longer be moved).
        """
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.schedule_revision == expected_revision,
                    appointments.c.status.in_(sorted(s.value for s in allowed_statuses)),
                    appointments.c.deleted_at.is_(None),
                )
            )
            .values(**values, schedule_revision=expected_revision + 1, updated_at=utcnow())
        )

        async with persistence_errors("reschedule_appointment"):
            result = await self.db.execute(stmt)

        if result.rowcount != 1:
            return None
        return await self.get(appointment_id)

    async def list_by_status_due(
        self,
        cabinet_id: str,
        status: AppointmentStatus,
        due_before: datetime,
    ) -> list[AppointmentResponse]:
        """Appointments of a cabinet in `status` whose start is at or before `due_before`."""
        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.cabinet_id == cabinet_id,
                    appointments.c.status == status.value,
                    appointments.c.scheduled_at <= due_before,
                    appointments.c.deleted_at.is_(None),
                )
            )
            .order_by(appointments.c.scheduled_at)
        )

        async with persistence_errors("list_due_appointments"):
            result = await self.db.execute(stmt)
            return [_to_response(row) for row in result.fetchall()]

    async def list_upcoming(
        self,
        cabinet_id: str,
        now: datetime,
        horizon: timedelta,
        statuses: Collection[AppointmentStatus],
    ) -> list[AppointmentResponse]:
        """Appointments of a cabinet starting in `(now, now + horizon]`."""
        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.cabinet_id == cabinet_id,
                    appointments.c.status.in_(sorted(s.value for s in statuses)),
                    appointments.c.scheduled_at > now,
                    appointments.c.scheduled_at <= now + horizon,
                    appointments.c.deleted_at.is_(None),
                )
            )
            .order_by(appointments.c.scheduled_at)
        )

        async with persistence_errors("list_upcoming_appointments"):
            result = await self.db.execute(stmt)
            return [_to_response(row) for row in result.fetchall()]

    async def soft_delete(self, appointment_id: UUID) -> bool:
        """Soft delete an appointment. Returns False if it was already gone."""
        now = utcnow()
        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == appointment_id,
                    appointments.c.deleted_at.is_(None),
                )
            )
            .values(deleted_at=now, updated_at=now)
        )

        async with persistence_errors("soft_delete_appointment"):
            result = await self.db.execute(stmt)

        return result.rowcount == 1

    async def list(self, scope: ScopedAppointmentFilter) -> tuple[int, list[AppointmentResponse]]:
        """
        List appointments matching a tenant-scoped filter.

        Returns:
            Total count and the requested page, ordered by start time
        """
        conditions = [appointments.c.deleted_at.is_(None)]

        if scope.cabinet_ids is not None:
            conditions.append(appointments.c.cabinet_id.in_(sorted(scope.cabinet_ids)))
        if scope.patient_id:
            conditions.append(appointments.c.patient_id == scope.patient_id)
        if scope.practitioner_id:
            conditions.append(appointments.c.practitioner_id == scope.practitioner_id)
        if scope.statuses:
            conditions.append(appointments.c.status.in_(sorted(s.value for s in scope.statuses)))
        if scope.service_type:
            conditions.append(appointments.c.service_type == scope.service_type.value)
        if scope.from_date:
            conditions.append(appointments.c.scheduled_at >= scope.from_date)
        if scope.to_date:
            conditions.append(appointments.c.scheduled_at <= scope.to_date)

        where_clause = and_(*conditions)
        count_stmt = select(func.count()).select_from(appointments).where(where_clause)

        offset = (scope.page - 1) * scope.page_size
        stmt = (
            select(appointments)
            .where(where_clause)
            .order_by(appointments.c.scheduled_at)
            .limit(scope.page_size)
            .offset(offset)
        )

        async with persistence_errors("list_appointments"):
            total = (await self.db.execute(count_stmt)).scalar() or 0
            result = await self.db.execute(stmt)
            items = [_to_response(row) for row in result.fetchall()]

        return total, items
