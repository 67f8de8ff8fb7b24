"""Patient service for tenant-scoped patient records."""

from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.core.exceptions import NotFoundException, ValidationException
from cabinet_scheduler.repositories.patients import SqlPatientRepository
from cabinet_scheduler.schemas.access import Operation, Resource, TenantActor
from cabinet_scheduler.schemas.patients import (
    PatientCreate,
    PatientListResponse,
    PatientResponse,
    PatientUpdate,
)
from cabinet_scheduler.services.access_guard import AccessGuard

logger = structlog.get_logger(__name__)

NOT_NULL_FIELDS = ("first_name", "last_name", "preferred_channel", "reminder_enabled", "is_active")


class PatientService:
    """Service for managing the patients of a cabinet."""

    def __init__(self, db: AsyncSession, guard: AccessGuard):
        """Initialize service with database session and access guard."""
        self.db = db
        self.guard = guard
        self.patients = SqlPatientRepository(db)

    async def _get_authorized(
        self, actor: TenantActor, patient_id: UUID, operation: Operation
    ) -> PatientResponse:
        missing = NotFoundException("Patient not found", patient_id)
        patient = await self.patients.get(patient_id)
        if patient is None:
            raise missing
        await self.guard.require_record(
            actor, patient.cabinet_id, operation, Resource.PATIENTS, missing
        )
        return patient

    async def create_patient(self, actor: TenantActor, data: PatientCreate) -> PatientResponse:
        """
        Register a patient in a cabinet.

        Raises:
            AccessDeniedException: If the actor may not create patients there
            ValidationException: If no cabinet can be inferred
        """
        cabinet_id = await self.guard.resolve_effective_cabinet(
            actor, data.cabinet_id, Operation.CREATE, Resource.PATIENTS
        )
        if cabinet_id is None:
            raise ValidationException(
                "cabinet_id is required when the user is assigned to several cabinets"
            )
        await self.guard.require(actor, cabinet_id, Operation.CREATE, Resource.PATIENTS)

        values = data.model_dump(exclude={"cabinet_id"})
        values["preferred_channel"] = data.preferred_channel.value
        values["cabinet_id"] = cabinet_id

        try:
            patient = await self.patients.insert(values)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "patient_created",
            patient_id=str(patient.id),
            cabinet_id=cabinet_id,
            actor_id=actor.user_id,
        )
        return patient

    async def get_patient(self, actor: TenantActor, patient_id: UUID) -> PatientResponse:
        """Get a patient of an accessible cabinet."""
        patient = await self._get_authorized(actor, patient_id, Operation.READ)
        return patient

    async def list_patients(
        self,
        actor: TenantActor,
        cabinet_id: str | None = None,
        search: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> PatientListResponse:
        """List patients of the cabinets the actor can read."""
        cabinet_ids = await self.guard.scope_cabinets(actor, cabinet_id, Resource.PATIENTS)
        total, items = await self.patients.list(cabinet_ids, search, page, page_size)

        return PatientListResponse(
            total=total,
            page=page,
            page_size=page_size,
            items=self.guard.filter_by_cabinet(actor, items),
        )

    async def update_patient(
        self, actor: TenantActor, patient_id: UUID, data: PatientUpdate
    ) -> PatientResponse:
        """Update a patient. The owning cabinet never changes."""
        patient = await self._get_authorized(actor, patient_id, Operation.UPDATE)

        update_data = data.model_dump(exclude_unset=True)
        # Explicit nulls only clear optional columns
        for column in NOT_NULL_FIELDS:
            if column in update_data and update_data[column] is None:
                update_data.pop(column)
        if not update_data:
            return patient
        if "preferred_channel" in update_data:
            update_data["preferred_channel"] = update_data["preferred_channel"].value

        try:
            updated = await self.patients.update_fields(patient_id, update_data)
            if updated is None:
                raise NotFoundException("Patient not found", patient_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "patient_updated",
            patient_id=str(patient_id),
            cabinet_id=patient.cabinet_id,
            fields=sorted(update_data),
            actor_id=actor.user_id,
        )
        return updated

    async def delete_patient(self, actor: TenantActor, patient_id: UUID) -> None:
        """Soft delete a patient. Needs an explicit `patients:delete` grant or admin."""
        patient = await self._get_authorized(actor, patient_id, Operation.DELETE)

        try:
            if not await self.patients.soft_delete(patient_id):
                raise NotFoundException("Patient not found", patient_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "patient_deleted",
            patient_id=str(patient_id),
            cabinet_id=patient.cabinet_id,
            actor_id=actor.user_id,
        )
