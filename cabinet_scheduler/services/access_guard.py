"""Tenant isolation and role permissions for every read and mutation."""

from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Protocol, TypeVar

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from cabinet_scheduler.core.exceptions import AccessDeniedException, NotFoundException
from cabinet_scheduler.models.base import utcnow
from cabinet_scheduler.schemas.access import (
    SYSTEM_ACTOR_ID,
    SYSTEM_ROLE,
    AccessDecision,
    ActorRole,
    AuditEntry,
    Operation,
    Resource,
    TenantActor,
)
from cabinet_scheduler.schemas.appointments import AppointmentFilter, ScopedAppointmentFilter
from cabinet_scheduler.services.audit_service import AuditSink

logger = structlog.get_logger(__name__)


def _grants(resource: Resource, *operations: Operation) -> set[str]:
    return {f"{resource.value}:{operation.value}" for operation in operations}


# Default permissions per role; explicit grants from the token are added on top
ROLE_PERMISSIONS: dict[ActorRole, frozenset[str]] = {
    ActorRole.ADMIN: frozenset(),
    ActorRole.MANAGER: frozenset(
        _grants(
            Resource.APPOINTMENTS,
            Operation.CREATE,
            Operation.READ,
            Operation.UPDATE,
            Operation.DELETE,
        )
        | _grants(Resource.PATIENTS, Operation.CREATE, Operation.READ, Operation.UPDATE)
        | _grants(Resource.REPORTS, Operation.READ)
    ),
    ActorRole.PRACTITIONER: frozenset(
        _grants(Resource.APPOINTMENTS, Operation.CREATE, Operation.READ, Operation.UPDATE)
        | _grants(Resource.PATIENTS, Operation.READ, Operation.UPDATE)
    ),
    ActorRole.ASSISTANT: frozenset(
        _grants(Resource.APPOINTMENTS, Operation.CREATE, Operation.READ, Operation.UPDATE)
        | _grants(Resource.PATIENTS, Operation.READ)
    ),
}


class CabinetOwned(Protocol):
    """Anything tagged with the cabinet that owns it."""

    cabinet_id: str


T = TypeVar("T", bound=CabinetOwned)


class AccessGuard:
    """
    Gate for tenant access and role permissions.

    Admins pass every check. Other actors only reach their assigned cabinets
    and only with a permission from their role defaults or explicit grants.
    Every authorization decision is handed to the audit sink, and denials are
    logged before they are returned or raised.
    """

    def __init__(self, audit_sink: AuditSink, clock: Callable[[], datetime] = utcnow):
        """Initialize guard with the audit sink and a clock for entry timestamps."""
        self.audit_sink = audit_sink
        self.clock = clock

    def can_access_cabinet(self, actor: TenantActor, cabinet_id: str) -> AccessDecision:
        """Check tenant membership only."""
        if actor.is_admin or cabinet_id in actor.assigned_cabinets:
            return AccessDecision.allow()
        return AccessDecision.deny(
            f"User {actor.user_id} is not authorized to access cabinet {cabinet_id}"
        )

    def effective_permissions(self, actor: TenantActor) -> frozenset[str]:
        """Role defaults plus explicit grants."""
        return ROLE_PERMISSIONS.get(actor.role, frozenset()) | actor.permissions

    def has_permission(self, actor: TenantActor, resource: Resource, operation: Operation) -> bool:
        """Check a `<resource>:<operation>` permission."""
        if actor.is_admin:
            return True
        return f"{resource.value}:{operation.value}" in self.effective_permissions(actor)

    def evaluate(
        self,
        actor: TenantActor,
        cabinet_id: str | None,
        operation: Operation,
        resource: Resource = Resource.APPOINTMENTS,
    ) -> AccessDecision:
        """
        Decide without side effects.

        `cabinet_id=None` checks the permission alone; used when a query is
        already restricted to the actor's own cabinets.
        """
        if cabinet_id is not None:
            cabinet_access = self.can_access_cabinet(actor, cabinet_id)
            if not cabinet_access.allowed:
                return cabinet_access

        if self.has_permission(actor, resource, operation):
            return AccessDecision.allow()

        return AccessDecision.deny(
            f"User {actor.user_id} does not have permission for "
            f"{operation.value} operation on {resource.value}"
        )

    async def authorize(
        self,
        actor: TenantActor,
        cabinet_id: str | None,
        operation: Operation,
        resource: Resource = Resource.APPOINTMENTS,
    ) -> AccessDecision:
        """Decide and record the decision in the audit trail."""
        decision = self.evaluate(actor, cabinet_id, operation, resource)
        await self._audit(actor, cabinet_id, operation, resource, decision)
        return decision

    async def require(
        self,
        actor: TenantActor,
        cabinet_id: str | None,
        operation: Operation,
        resource: Resource = Resource.APPOINTMENTS,
    ) -> None:
        """
        Authorize or fail.

        Raises:
            AccessDeniedException: If the decision is a denial
        """
        decision = await self.authorize(actor, cabinet_id, operation, resource)
        if not decision.allowed:
            raise AccessDeniedException(decision.reason or "Access denied", cabinet_id)

    async def require_record(
        self,
        actor: TenantActor,
        cabinet_id: str,
        operation: Operation,
        resource: Resource,
        missing: NotFoundException,
    ) -> None:
        """
        Authorize access to a stored record looked up by ID.

        A record owned by a cabinet outside the actor's reach is reported as
        missing, so IDs of other tenants cannot be enumerated. The denial is still
        audited.

        Raises:
            NotFoundException: If the record's cabinet is not accessible
            AccessDeniedException: If the cabinet is accessible but the role lacks the permission
        """
        decision = await self.authorize(actor, cabinet_id, operation, resource)
        if decision.allowed:
            return
        if not self.can_access_cabinet(actor, cabinet_id).allowed:
            raise missing
        raise AccessDeniedException(decision.reason or "Access denied", cabinet_id)

    def accessible_cabinets(self, actor: TenantActor) -> frozenset[str] | None:
        """Cabinets the actor may touch; None means every cabinet (admin)."""
        if actor.is_admin:
            return None
        return actor.assigned_cabinets

    def filter_by_cabinet(self, actor: TenantActor, records: Iterable[T]) -> list[T]:
        """Drop records owned by cabinets outside the actor's reach."""
        allowed = self.accessible_cabinets(actor)
        if allowed is None:
            return list(records)
        return [record for record in records if record.cabinet_id in allowed]

    async def scope_cabinets(
        self,
        actor: TenantActor,
        requested_cabinet_id: str | None,
        resource: Resource = Resource.APPOINTMENTS,
    ) -> frozenset[str] | None:
        """
        Resolve the cabinets a read query may touch.

        A cabinet named outside the actor's assignment is denied, never
        silently narrowed.

        Raises:
            AccessDeniedException: If the actor may not read the requested scope
        """
        if requested_cabinet_id is not None:
            await self.require(actor, requested_cabinet_id, Operation.READ, resource)
            return frozenset({requested_cabinet_id})

        await self.require(actor, None, Operation.READ, resource)
        return self.accessible_cabinets(actor)

    async def sanitize_filter(
        self, actor: TenantActor, requested: AppointmentFilter
    ) -> ScopedAppointmentFilter:
        """
        Turn a caller filter into a tenant-scoped one.

        Raises:
            AccessDeniedException: If the filter names an inaccessible cabinet
        """
        cabinet_ids = await self.scope_cabinets(actor, requested.cabinet_id)
        return ScopedAppointmentFilter(
            cabinet_ids=cabinet_ids,
            **requested.model_dump(exclude={"cabinet_id"}),
        )

    async def resolve_effective_cabinet(
        self,
        actor: TenantActor,
        requested_cabinet_id: str | None = None,
        operation: Operation = Operation.READ,
        resource: Resource = Resource.APPOINTMENTS,
    ) -> str | None:
        """
        Pick the cabinet an operation applies to.

        A requested cabinet must be accessible. Without one, an actor with
        exactly one assigned cabinet gets that cabinet; everyone else gets None.

        Raises:
            AccessDeniedException: If the requested cabinet is not accessible
        """
        if requested_cabinet_id is not None:
            decision = self.can_access_cabinet(actor, requested_cabinet_id)
            if not decision.allowed:
                await self._audit(actor, requested_cabinet_id, operation, resource, decision)
                raise AccessDeniedException(
                    decision.reason or "Access denied", requested_cabinet_id
                )
            return requested_cabinet_id

        if not actor.is_admin and len(actor.assigned_cabinets) == 1:
            return next(iter(actor.assigned_cabinets))

        return None

    async def record_system_action(
        self,
        db: AsyncSession,
        cabinet_id: str,
        operation: Operation,
        resource: Resource = Resource.APPOINTMENTS,
        reason: str | None = None,
    ) -> None:
        """Audit an action taken by the scheduler, inside the caller's transaction."""
        entry = AuditEntry(
            timestamp=self.clock(),
            actor_id=SYSTEM_ACTOR_ID,
            role=SYSTEM_ROLE,
            resource=resource.value,
            operation=operation.value,
            cabinet_id=cabinet_id,
            allowed=True,
            reason=reason,
        )
        await self.audit_sink.record_within(db, entry)

    async def _audit(
        self,
        actor: TenantActor,
        cabinet_id: str | None,
        operation: Operation,
        resource: Resource,
        decision: AccessDecision,
    ) -> None:
        if not decision.allowed:
            logger.warning(
                "access_denied",
                actor_id=actor.user_id,
                role=actor.role.value,
                resource=resource.value,
                operation=operation.value,
                cabinet_id=cabinet_id,
                assigned_cabinets=sorted(actor.assigned_cabinets),
                reason=decision.reason,
            )

        await self.audit_sink.record(
            AuditEntry(
                timestamp=self.clock(),
                actor_id=actor.user_id,
                role=actor.role.value,
                resource=resource.value,
                operation=operation.value,
                cabinet_id=cabinet_id,
                allowed=decision.allowed,
                reason=decision.reason,
            )
        )
