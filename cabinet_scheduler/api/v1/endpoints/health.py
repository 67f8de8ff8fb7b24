"""Liveness, readiness and dependency health of the scheduler service."""

from datetime import datetime
from enum import Enum

from fastapi import APIRouter, Request, Response, status
from pydantic import BaseModel

from cabinet_scheduler.config import settings
from cabinet_scheduler.core.redis_client import check_redis_connection
from cabinet_scheduler.database import check_database_connection

router = APIRouter()


class SchedulerState(str, Enum):
    """State of the periodic cabinet sweep."""

    RUNNING = "running"
    STOPPED = "stopped"
    DISABLED = "disabled"


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Health of every dependency the service relies on."""

    database: str
    redis: str
    scheduler: SchedulerState
    last_sweep_at: datetime | None = None


class ReadinessResponse(BaseModel):
    """Whether the instance can take traffic."""

    ready: bool
    database: str


def _component(healthy: bool) -> str:
    return "healthy" if healthy else "unhealthy"


def scheduler_state(request: Request) -> tuple[SchedulerState, datetime | None]:
    """Read the sweep scheduler registered by the application lifespan."""
    if not settings.scheduler_enabled:
        return SchedulerState.DISABLED, None

    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return SchedulerState.STOPPED, None

    state = SchedulerState.RUNNING if scheduler.running else SchedulerState.STOPPED
    return state, scheduler.last_sweep_at


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    """Process liveness. Never touches a dependency."""
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Detailed health check",
)
async def detailed_health_check(request: Request) -> DetailedHealthResponse:
    """
    Health of the database, Redis and the reminder sweep.

    Only a database failure makes the service `unhealthy`. Without Redis the
    realtime stream stops, and a stopped sweep stops reminders and automatic
    transitions; both report `degraded`.
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()
    sweep, last_sweep_at = scheduler_state(request)

    if not db_healthy:
        overall = "unhealthy"
    elif not redis_healthy or sweep == SchedulerState.STOPPED:
        overall = "degraded"
    else:
        overall = "healthy"

    return DetailedHealthResponse(
        status=overall,
        version=settings.app_version,
        environment=settings.environment,
        database=_component(db_healthy),
        redis=_component(redis_healthy),
        scheduler=sweep,
        last_sweep_at=last_sweep_at,
    )


@router.get(
    "/health/ready",
    response_model=ReadinessResponse,
    summary="Readiness check",
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ReadinessResponse}},
)
async def readiness_check(response: Response) -> ReadinessResponse:
    """Ready once the database answers; 503 otherwise so load balancers drain the instance."""
    db_healthy = await check_database_connection()
    if not db_healthy:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(ready=db_healthy, database=_component(db_healthy))
