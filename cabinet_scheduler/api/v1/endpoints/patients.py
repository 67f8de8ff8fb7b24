"""Patient endpoints."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from cabinet_scheduler.dependencies import CurrentActor, Patients
from cabinet_scheduler.schemas.patients import (
    PatientCreate,
    PatientListResponse,
    PatientResponse,
    PatientUpdate,
)

router = APIRouter()


@router.post(
    "/",
    response_model=PatientResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a patient",
)
async def create_patient(
    data: PatientCreate,
    actor: CurrentActor,
    service: Patients,
) -> PatientResponse:
    """Register a patient in one of the actor's cabinets."""
    return await service.create_patient(actor, data)


@router.get(
    "/",
    response_model=PatientListResponse,
    status_code=status.HTTP_200_OK,
    summary="List patients",
)
async def list_patients(
    actor: CurrentActor,
    service: Patients,
    cabinet_id: str | None = Query(None),
    search: str | None = Query(None, min_length=1, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> PatientListResponse:
    """List patients of the actor's cabinets."""
    return await service.list_patients(
        actor, cabinet_id=cabinet_id, search=search, page=page, page_size=page_size
    )


@router.get(
    "/{patient_id}",
    response_model=PatientResponse,
    status_code=status.HTTP_200_OK,
    summary="Get patient by ID",
)
async def get_patient(
    patient_id: UUID,
    actor: CurrentActor,
    service: Patients,
) -> PatientResponse:
    """Get a specific patient by ID."""
    return await service.get_patient(actor, patient_id)


@router.put(
    "/{patient_id}",
    response_model=PatientResponse,
    status_code=status.HTTP_200_OK,
    summary="Update patient",
)
async def update_patient(
    patient_id: UUID,
    data: PatientUpdate,
    actor: CurrentActor,
    service: Patients,
) -> PatientResponse:
    """Update a patient's details and communication preferences."""
    return await service.update_patient(actor, patient_id, data)


@router.delete(
    "/{patient_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete patient",
)
async def delete_patient(
    patient_id: UUID,
    actor: CurrentActor,
    service: Patients,
) -> None:
    """Soft delete a patient."""
    await service.delete_patient(actor, patient_id)
