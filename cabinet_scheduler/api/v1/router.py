"""API v1 router configuration."""

from fastapi import APIRouter

from cabinet_scheduler.api.v1.endpoints import appointments, events, health, patients

api_router = APIRouter()

# Include routers
api_router.include_router(health.router, tags=["Health"])
api_router.include_router(appointments.router, prefix="/appointments", tags=["Appointments"])
api_router.include_router(patients.router, prefix="/patients", tags=["Patients"])
api_router.include_router(events.router, tags=["Events"])
