"""Tests for request logging."""

import logging

import pytest
from conftest import CABINET_A, bearer
from fastapi import Request
from httpx import AsyncClient

from cabinet_scheduler.middleware.logging import completion_level, request_cabinet_id


def make_request(path: str, query_string: bytes = b"") -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "scheme": "http",
            "server": ("test", 80),
            "path": path,
            "query_string": query_string,
            "headers": [],
        }
    )


@pytest.mark.parametrize(
    "path,query_string,expected",
    [
        ("/api/v1/cabinets/cab-a/events", b"", "cab-a"),
        ("/api/v1/appointments/", b"cabinet_id=cab-b&page=2", "cab-b"),
        ("/api/v1/appointments/", b"", None),
    ],
)
def test_request_cabinet_id(path, query_string, expected) -> None:
    """Test that the cabinet is read from the path first, then the query string."""
    assert request_cabinet_id(make_request(path, query_string)) == expected


@pytest.mark.parametrize(
    "status_code,path,expected",
    [
        (200, "/api/v1/appointments/", logging.INFO),
        (200, "/api/v1/health/detailed", logging.DEBUG),
        (404, "/api/v1/appointments/x", logging.WARNING),
        (503, "/api/v1/health/ready", logging.ERROR),
    ],
)
def test_completion_level(status_code, path, expected) -> None:
    """Test that failures are never hidden by the quiet health paths."""
    assert completion_level(status_code, path) == expected


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient) -> None:
    """Test that a caller supplied request id comes back on the response."""
    response = await client.get("/api/v1/health", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"
    assert float(response.headers["X-Process-Time"]) >= 0


@pytest.mark.asyncio
async def test_request_id_generated_when_missing(client: AsyncClient, cabinets) -> None:
    """Test that every response carries a fresh request id."""
    first = await client.get("/api/v1/patients/", params={"cabinet_id": CABINET_A}, headers=bearer())
    second = await client.get("/api/v1/health")

    assert len(first.headers["X-Request-ID"]) == 32
    assert first.headers["X-Request-ID"] != second.headers["X-Request-ID"]
