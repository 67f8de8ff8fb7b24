"""Tests for health check endpoints."""

from datetime import UTC, datetime

import pytest
from httpx import AsyncClient

from cabinet_scheduler.config import settings
from cabinet_scheduler.main import app

HEALTH = "cabinet_scheduler.api.v1.endpoints.health"
SWEPT_AT = datetime(2030, 6, 3, 8, 0, tzinfo=UTC)


def stub_checks(monkeypatch, database: bool, redis: bool) -> None:
    async def check_database() -> bool:
        return database

    async def check_redis() -> bool:
        return redis

    monkeypatch.setattr(f"{HEALTH}.check_database_connection", check_database)
    monkeypatch.setattr(f"{HEALTH}.check_redis_connection", check_redis)


@pytest.mark.asyncio
async def test_health_check(client: AsyncClient) -> None:
    """Test basic health check endpoint."""
    response = await client.get("/api/v1/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["environment"] == "test"
    assert "version" in data


@pytest.mark.asyncio
@pytest.mark.parametrize("database,expected_status", [(True, 200), (False, 503)])
async def test_readiness_follows_database(
    client: AsyncClient, monkeypatch, database, expected_status
) -> None:
    """Test that readiness fails with 503 while the database is unreachable."""
    stub_checks(monkeypatch, database, redis=False)

    response = await client.get("/api/v1/health/ready")

    assert response.status_code == expected_status
    assert response.json() == {
        "ready": database,
        "database": "healthy" if database else "unhealthy",
    }


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "database,redis,expected",
    [
        (True, True, "healthy"),
        (True, False, "degraded"),
        (False, True, "unhealthy"),
    ],
)
async def test_detailed_health(
    client: AsyncClient, monkeypatch, database, redis, expected
) -> None:
    """Test the detailed health report."""
    stub_checks(monkeypatch, database, redis)

    response = await client.get("/api/v1/health/detailed")

    data = response.json()
    assert data["status"] == expected
    assert data["database"] == ("healthy" if database else "unhealthy")
    assert data["redis"] == ("healthy" if redis else "unhealthy")
    assert data["scheduler"] == "disabled"


@pytest.mark.asyncio
async def test_root(client: AsyncClient) -> None:
    """Test the root endpoint."""
    response = await client.get("/")

    assert response.status_code == 200


class SweepSchedulerStub:
    def __init__(self, running: bool, last_sweep_at: datetime | None = None):
        self.running = running
        self.last_sweep_at = last_sweep_at


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "scheduler,expected_state,expected_status",
    [
        (SweepSchedulerStub(running=True, last_sweep_at=SWEPT_AT), "running", "healthy"),
        (SweepSchedulerStub(running=False), "stopped", "degraded"),
        (None, "stopped", "degraded"),
    ],
)
async def test_detailed_health_reports_sweep_state(
    client: AsyncClient, monkeypatch, scheduler, expected_state, expected_status
) -> None:
    """Test that an enabled but stopped sweep degrades the service."""
    stub_checks(monkeypatch, database=True, redis=True)
    monkeypatch.setattr(settings, "scheduler_enabled", True)
    if scheduler is not None:
        monkeypatch.setattr(app.state, "scheduler", scheduler, raising=False)

    response = await client.get("/api/v1/health/detailed")

    data = response.json()
    assert data["scheduler"] == expected_state
    assert data["status"] == expected_status
    if expected_state == "running":
        assert datetime.fromisoformat(data["last_sweep_at"]) == SWEPT_AT
    else:
        assert data["last_sweep_at"] is None
