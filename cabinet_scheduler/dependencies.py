"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.core.redis_client import get_redis_client
from cabinet_scheduler.core.security import decode_access_token
from cabinet_scheduler.database import get_db
from cabinet_scheduler.repositories.locks import SlotLockManager
from cabinet_scheduler.schemas.access import TenantActor
from cabinet_scheduler.services.access_guard import AccessGuard
from cabinet_scheduler.services.appointment_service import AppointmentService
from cabinet_scheduler.services.audit_service import AuditSink
from cabinet_scheduler.services.notification_service import NotificationDispatcher
from cabinet_scheduler.services.patient_service import PatientService
from cabinet_scheduler.services.realtime_service import CabinetEventChannel

# Security
security = HTTPBearer()


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> TenantActor:
    """
    Build the request's actor from bearer token claims.

    Claims: `sub` (user id), `role`, `cabinets` (assigned cabinet ids) and
    `permissions` (explicit `<resource>:<operation>` grants).

    Raises:
        HTTPException: If the token is invalid, expired or lacks tenant claims
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized()

    try:
        return TenantActor(
            user_id=payload.get("sub"),
            role=payload.get("role"),
            assigned_cabinets=frozenset(payload.get("cabinets") or ()),
            permissions=frozenset(payload.get("permissions") or ()),
        )
    except (ValidationError, TypeError):
        raise _unauthorized("Invalid tenant claims")


def get_slot_locks(request: Request) -> SlotLockManager:
    """Process-wide slot lock manager."""
    return request.app.state.slot_locks


def get_audit_sink(request: Request) -> AuditSink:
    """Access audit sink."""
    return request.app.state.audit_sink


def get_dispatcher(request: Request) -> NotificationDispatcher:
    """Notification delivery collaborator."""
    return request.app.state.dispatcher


def get_event_channel() -> CabinetEventChannel:
    """Realtime channel for event subscriptions."""
    return CabinetEventChannel(get_redis_client())


def get_access_guard(audit_sink: Annotated[AuditSink, Depends(get_audit_sink)]) -> AccessGuard:
    """Access guard recording to the audit sink."""
    return AccessGuard(audit_sink)


def get_appointment_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    guard: Annotated[AccessGuard, Depends(get_access_guard)],
    locks: Annotated[SlotLockManager, Depends(get_slot_locks)],
    dispatcher: Annotated[NotificationDispatcher, Depends(get_dispatcher)],
) -> AppointmentService:
    """Appointment service bound to the request session."""
    return AppointmentService(db, guard, locks, dispatcher)


def get_patient_service(
    db: Annotated[AsyncSession, Depends(get_db)],
    guard: Annotated[AccessGuard, Depends(get_access_guard)],
) -> PatientService:
    """Patient service bound to the request session."""
    return PatientService(db, guard)


# Type aliases for dependency injection
CurrentActor = Annotated[TenantActor, Depends(get_current_actor)]
Guard = Annotated[AccessGuard, Depends(get_access_guard)]
Appointments = Annotated[AppointmentService, Depends(get_appointment_service)]
Patients = Annotated[PatientService, Depends(get_patient_service)]
EventChannel = Annotated[CabinetEventChannel, Depends(get_event_channel)]
