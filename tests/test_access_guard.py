"""Tests for tenant isolation and role permissions."""

import pytest
from conftest import CABINET_A, CABINET_B, make_actor

from cabinet_scheduler.core.exceptions import AccessDeniedException, NotFoundException
from cabinet_scheduler.schemas.access import ActorRole, Operation, Resource
from cabinet_scheduler.schemas.appointments import AppointmentFilter


@pytest.mark.asyncio
async def test_admin_passes_every_check(guard, audit_sink) -> None:
    """Admins reach any cabinet without explicit permissions."""
    admin = make_actor(ActorRole.ADMIN, cabinets=())

    decision = await guard.authorize(admin, "anywhere", Operation.DELETE, Resource.PATIENTS)

    assert decision.allowed
    assert audit_sink.entries[-1].allowed


@pytest.mark.asyncio
async def test_foreign_cabinet_is_denied_and_audited(guard, audit_sink) -> None:
    """A manager of A cannot touch B; the denial is on file."""
    actor = make_actor(ActorRole.MANAGER, cabinets=(CABINET_A,))

    with pytest.raises(AccessDeniedException) as exc_info:
        await guard.require(actor, CABINET_B, Operation.READ)

    assert exc_info.value.status_code == 403
    assert exc_info.value.cabinet_id == CABINET_B
    assert exc_info.value.reason == f"User user-1 is not authorized to access cabinet {CABINET_B}"

    [denial] = audit_sink.denials
    assert denial.actor_id == "user-1"
    assert denial.role == "manager"
    assert denial.cabinet_id == CABINET_B
    assert denial.operation == "read"
    assert denial.resource == "appointments"


@pytest.mark.asyncio
async def test_role_defaults(guard) -> None:
    """Default grants per role."""
    assistant = make_actor(ActorRole.ASSISTANT)
    practitioner = make_actor(ActorRole.PRACTITIONER)
    manager = make_actor(ActorRole.MANAGER)

    assert guard.has_permission(assistant, Resource.APPOINTMENTS, Operation.UPDATE)
    assert not guard.has_permission(assistant, Resource.APPOINTMENTS, Operation.DELETE)
    assert not guard.has_permission(assistant, Resource.PATIENTS, Operation.UPDATE)
    assert guard.has_permission(practitioner, Resource.PATIENTS, Operation.UPDATE)
    assert not guard.has_permission(practitioner, Resource.PATIENTS, Operation.CREATE)
    assert guard.has_permission(manager, Resource.APPOINTMENTS, Operation.DELETE)
    assert guard.has_permission(manager, Resource.REPORTS, Operation.READ)
    assert not guard.has_permission(manager, Resource.PATIENTS, Operation.DELETE)


@pytest.mark.asyncio
async def test_explicit_grant_extends_role(guard) -> None:
    """Token grants are added on top of role defaults."""
    assistant = make_actor(ActorRole.ASSISTANT, permissions=("appointments:delete",))

    decision = await guard.authorize(assistant, CABINET_A, Operation.DELETE)

    assert decision.allowed


@pytest.mark.asyncio
async def test_missing_permission_reason(guard, audit_sink) -> None:
    """Cabinet access alone is not enough."""
    assistant = make_actor(ActorRole.ASSISTANT)

    decision = await guard.authorize(assistant, CABINET_A, Operation.DELETE)

    assert not decision.allowed
    assert decision.reason == (
        "User user-1 does not have permission for delete operation on appointments"
    )
    assert len(audit_sink.denials) == 1


@pytest.mark.asyncio
async def test_sanitize_filter_scopes_to_assignment(guard) -> None:
    """Without a cabinet filter a non-admin sees exactly their cabinets."""
    actor = make_actor(ActorRole.ASSISTANT, cabinets=(CABINET_A, CABINET_B))

    scope = await guard.sanitize_filter(actor, AppointmentFilter(page=2, page_size=10))

    assert scope.cabinet_ids == frozenset({CABINET_A, CABINET_B})
    assert scope.page == 2
    assert scope.page_size == 10


@pytest.mark.asyncio
async def test_sanitize_filter_denies_foreign_cabinet(guard, audit_sink) -> None:
    """An explicit foreign cabinet is refused, never narrowed to the assignment."""
    actor = make_actor(ActorRole.ASSISTANT, cabinets=(CABINET_A,))

    with pytest.raises(AccessDeniedException):
        await guard.sanitize_filter(actor, AppointmentFilter(cabinet_id=CABINET_B))

    assert audit_sink.denials[0].cabinet_id == CABINET_B


@pytest.mark.asyncio
async def test_sanitize_filter_admin_unscoped(guard) -> None:
    """Admins without a cabinet filter query every cabinet."""
    admin = make_actor(ActorRole.ADMIN, cabinets=())

    scope = await guard.sanitize_filter(admin, AppointmentFilter())

    assert scope.cabinet_ids is None


@pytest.mark.asyncio
async def test_resolve_effective_cabinet(guard) -> None:
    """Single assignment is inferred; several assignments need an explicit choice."""
    single = make_actor(cabinets=(CABINET_A,))
    several = make_actor(cabinets=(CABINET_A, CABINET_B))

    assert await guard.resolve_effective_cabinet(single) == CABINET_A
    assert await guard.resolve_effective_cabinet(several) is None
    assert await guard.resolve_effective_cabinet(several, CABINET_B) == CABINET_B

    with pytest.raises(AccessDeniedException):
        await guard.resolve_effective_cabinet(single, CABINET_B)


def test_filter_by_cabinet_drops_foreign_records(guard) -> None:
    """Post-filter keeps only records of accessible cabinets."""

    class Record:
        def __init__(self, cabinet_id: str) -> None:
            self.cabinet_id = cabinet_id

    actor = make_actor(cabinets=(CABINET_A,))
    records = [Record(CABINET_A), Record(CABINET_B), Record(CABINET_A)]

    kept = guard.filter_by_cabinet(actor, records)

    assert [record.cabinet_id for record in kept] == [CABINET_A, CABINET_A]
    assert guard.filter_by_cabinet(make_actor(ActorRole.ADMIN, cabinets=()), records) == records


@pytest.mark.asyncio
async def test_record_of_foreign_cabinet_reported_missing(guard, audit_sink) -> None:
    """Test that a stored record outside the actor's cabinets raises the not-found error."""
    actor = make_actor(ActorRole.MANAGER, cabinets=(CABINET_A,))
    missing = NotFoundException("Appointment not found", "apt-1")

    with pytest.raises(NotFoundException) as exc_info:
        await guard.require_record(actor, CABINET_B, Operation.READ, Resource.APPOINTMENTS, missing)

    assert exc_info.value is missing
    [denial] = audit_sink.denials
    assert denial.cabinet_id == CABINET_B
    assert denial.operation == "read"


@pytest.mark.asyncio
async def test_record_of_own_cabinet_without_permission_is_forbidden(guard, audit_sink) -> None:
    """Test that a missing role permission in an accessible cabinet stays a 403."""
    assistant = make_actor(ActorRole.ASSISTANT, cabinets=(CABINET_A,))
    missing = NotFoundException("Patient not found", "pat-1")

    with pytest.raises(AccessDeniedException):
        await guard.require_record(
            assistant, CABINET_A, Operation.DELETE, Resource.PATIENTS, missing
        )

    await guard.require_record(assistant, CABINET_A, Operation.READ, Resource.PATIENTS, missing)
    assert [entry.allowed for entry in audit_sink.entries] == [False, True]
