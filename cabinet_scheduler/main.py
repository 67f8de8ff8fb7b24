"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from cabinet_scheduler.api.v1.router import api_router
from cabinet_scheduler.config import settings
from cabinet_scheduler.core.exceptions import AppException
from cabinet_scheduler.core.firebase import initialize_firebase
from cabinet_scheduler.core.redis_client import (
    check_redis_connection,
    close_redis_connection,
    get_redis_client,
)
from cabinet_scheduler.database import AsyncSessionLocal, check_database_connection, engine
from cabinet_scheduler.middleware.error_handler import (
    app_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from cabinet_scheduler.middleware.logging import LoggingMiddleware, configure_logging
from cabinet_scheduler.repositories.locks import SlotLockManager
from cabinet_scheduler.services.audit_service import SqlAuditSink
from cabinet_scheduler.services.notification_service import NotificationDispatcher
from cabinet_scheduler.services.realtime_service import CabinetEventChannel
from cabinet_scheduler.services.reminder_scheduler import ReminderScheduler

# Configure logging
configure_logging()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events, including the periodic cabinet sweep.
    """
    # Startup
    logger.info("application_startup", environment=settings.environment)

    if settings.push_notifications_enabled:
        try:
            initialize_firebase(settings.firebase_credentials_path, settings.firebase_config_json)
        except Exception as e:
            logger.warning(
                "firebase_initialization_failed",
                error=str(e),
                note="Push delivery will fail until FIREBASE_CREDENTIALS_PATH is set.",
            )

    if await check_database_connection():
        logger.info("database_connected")
    else:
        logger.error("database_connection_failed")

    if await check_redis_connection():
        logger.info("redis_connected")
    else:
        logger.warning("redis_connection_failed", note="Realtime delivery is unavailable.")

    scheduler = ReminderScheduler(
        AsyncSessionLocal,
        app.state.dispatcher,
        app.state.audit_sink,
        app.state.slot_locks,
    )
    app.state.scheduler = scheduler
    if settings.scheduler_enabled:
        scheduler.start()

    yield

    # Shutdown
    logger.info("application_shutdown")

    await scheduler.shutdown()

    # Close database connections
    await engine.dispose()
    logger.info("database_connections_closed")

    # Close Redis connection
    close_redis_connection()
    logger.info("redis_connection_closed")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Multi-tenant appointment scheduling for dental cabinets",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Process-wide collaborators shared by requests and the sweep
app.state.slot_locks = SlotLockManager()
app.state.audit_sink = SqlAuditSink(AsyncSessionLocal)
app.state.dispatcher = NotificationDispatcher(
    realtime=(
        CabinetEventChannel(get_redis_client())
        if settings.realtime_notifications_enabled
        else None
    ),
    push_enabled=settings.push_notifications_enabled,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Add logging middleware
app.add_middleware(LoggingMiddleware)

# Add exception handlers
app.add_exception_handler(AppException, app_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
app.add_exception_handler(Exception, general_exception_handler)  # type: ignore[arg-type]

# Include API router
app.include_router(api_router, prefix=settings.api_v1_prefix)

# Setup Prometheus instrumentation
Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=False,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/docs", "/redoc", "/openapi.json", ".*/events"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """
    Root endpoint.

    Returns:
        Welcome message
    """
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "docs": "/docs",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cabinet_scheduler.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_level=settings.log_level.lower(),
    )
