"""Logging middleware and configuration."""

import logging
import re
import sys
import time
import uuid
from collections.abc import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from cabinet_scheduler.config import settings

# Health checks and metric scrapes, logged at debug level
QUIET_PATH_PREFIXES = ("/api/v1/health", "/metrics")

CABINET_PATH = re.compile(r"/cabinets/(?P<cabinet_id>[^/]+)")

# Libraries whose own INFO lines repeat every sweep
NOISY_LOGGERS = ("apscheduler", "httpx")


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Arguments default to `LOG_LEVEL` and `LOG_FORMAT`; production always
    logs JSON.
    """
    if json_logs is None:
        json_logs = settings.log_format == "json" or settings.is_production
    level_name = (level or settings.log_level).upper()

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level_name),
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, logging.getLogger().level))


def request_cabinet_id(request: Request) -> str | None:
    """Cabinet named by the request, from the path or the `cabinet_id` query parameter."""
    match = CABINET_PATH.search(request.url.path)
    if match:
        return match.group("cabinet_id")
    return request.query_params.get("cabinet_id")


def completion_level(status_code: int, path: str) -> int:
    """Log level of the `request_completed` line."""
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path.startswith(QUIET_PATH_PREFIXES):
        return logging.DEBUG
    return logging.INFO


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs each request and tags every log line it produces with a request id and cabinet."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        logger = structlog.get_logger()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        path = request.url.path

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        cabinet_id = request_cabinet_id(request)
        if cabinet_id is not None:
            structlog.contextvars.bind_contextvars(cabinet_id=cabinet_id)

        start_time = time.perf_counter()
        logger.log(
            logging.DEBUG if path.startswith(QUIET_PATH_PREFIXES) else logging.INFO,
            "request_started",
            method=request.method,
            path=path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=path,
                error=str(e),
                duration=time.perf_counter() - start_time,
            )
            raise

        duration = time.perf_counter() - start_time
        logger.log(
            completion_level(response.status_code, path),
            "request_completed",
            method=request.method,
            path=path,
            status_code=response.status_code,
            duration=duration,
        )

        response.headers["X-Process-Time"] = str(duration)
        response.headers["X-Request-ID"] = request_id
        return response
