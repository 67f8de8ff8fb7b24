"""Tests for booking, rescheduling and tenant-scoped appointment access."""

import asyncio
from datetime import date, timedelta
from uuid import uuid4

import pytest
from conftest import CABINET_A, CABINET_B, T0, book, insert_patient, make_actor
from sqlalchemy.exc import IntegrityError

from cabinet_scheduler.core.exceptions import (
    AccessDeniedException,
    ConflictException,
    NotFoundException,
    PersistenceUnavailableException,
    SlotConflictException,
    TenantMismatchException,
    ValidationException,
)
from cabinet_scheduler.repositories.notifications import SqlNotificationRepository
from cabinet_scheduler.schemas.access import ActorRole
from cabinet_scheduler.schemas.appointments import (
    AppointmentCreate,
    AppointmentFilter,
    AppointmentReschedule,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentUpdate,
    AvailabilityReason,
)
from cabinet_scheduler.schemas.notifications import NotificationKind, NotificationPriority


@pytest.mark.asyncio
async def test_create_appointment(
    appointment_service, manager_a, patient_a, dispatcher, db_session
) -> None:
    """Booking infers the single assigned cabinet and emits a created notice."""
    created = await book(appointment_service, manager_a, patient_a)

    assert created.cabinet_id == CABINET_A
    assert created.patient_id == patient_a.id
    assert created.status == AppointmentStatus.SCHEDULED
    assert created.scheduled_at == T0
    assert created.end_at == T0 + timedelta(minutes=30)
    assert created.schedule_revision == 0

    [message] = await SqlNotificationRepository(db_session).list_for_appointment(created.id)
    assert message.kind == NotificationKind.APPOINTMENT_CREATED
    assert dispatcher.of_kind("appointment_created")[0].id == message.id


@pytest.mark.asyncio
async def test_default_duration(appointment_service, manager_a, patient_a) -> None:
    """Test that a booking without duration gets the default length and no practitioner."""
    created = await appointment_service.create_appointment(
        manager_a,
        AppointmentCreate(patient_id=patient_a.id, title="Checkup", scheduled_at=T0),
    )

    assert created.duration_minutes == 30
    assert created.practitioner_id is None


@pytest.mark.asyncio
async def test_overlap_rejected_and_back_to_back_accepted(
    appointment_service, manager_a, patient_a, dispatcher
) -> None:
    """10:00-10:30 exists: 10:15-10:45 is refused, 10:30-11:00 is booked."""
    first = await book(appointment_service, manager_a, patient_a)

    with pytest.raises(SlotConflictException) as exc_info:
        await book(appointment_service, manager_a, patient_a, start=T0 + timedelta(minutes=15))

    assert exc_info.value.status_code == 409
    assert exc_info.value.conflicting_appointment_id == first.id
    assert exc_info.value.details["cabinet_id"] == CABINET_A
    [alert] = dispatcher.of_kind("conflict")
    assert alert.priority == NotificationPriority.URGENT
    assert not alert.auto_remove

    second = await book(appointment_service, manager_a, patient_a, start=T0 + timedelta(minutes=30))
    assert second.scheduled_at == T0 + timedelta(minutes=30)


@pytest.mark.asyncio
async def test_other_practitioner_same_time(appointment_service, manager_a, patient_a) -> None:
    """Test that two practitioners can be booked in the same window."""
    await book(appointment_service, manager_a, patient_a)

    other = await book(appointment_service, manager_a, patient_a, practitioner_id="dr-kim")

    assert other.practitioner_id == "dr-kim"


@pytest.mark.asyncio
async def test_cancelled_appointment_frees_slot(
    appointment_service, manager_a, patient_a
) -> None:
    """Test that a cancelled appointment no longer blocks its slot."""
    first = await book(appointment_service, manager_a, patient_a)
    await appointment_service.lifecycle.apply_manual(
        manager_a, first.id, AppointmentStatus.CANCELLED
    )

    rebooked = await book(appointment_service, manager_a, patient_a)

    assert rebooked.id != first.id


@pytest.mark.asyncio
async def test_concurrent_bookings_never_overlap(
    session_factory, service_factory, manager_a, patient_a
) -> None:
    """Two simultaneous requests for overlapping windows: exactly one wins."""
    async with session_factory() as first_session, session_factory() as second_session:
        results = await asyncio.gather(
            book(service_factory(first_session), manager_a, patient_a),
            book(
                service_factory(second_session),
                manager_a,
                patient_a,
                start=T0 + timedelta(minutes=10),
            ),
            return_exceptions=True,
        )

    booked = [r for r in results if isinstance(r, AppointmentResponse)]
    refused = [r for r in results if isinstance(r, SlotConflictException)]
    assert len(booked) == 1
    assert len(refused) == 1
    assert refused[0].conflicting_appointment_id == booked[0].id


@pytest.mark.asyncio
async def test_patient_of_other_cabinet_is_refused(
    appointment_service, patient_a, patient_b
) -> None:
    """The appointment cabinet must be the patient's cabinet."""
    manager = make_actor(cabinets=(CABINET_A, CABINET_B))

    with pytest.raises(TenantMismatchException):
        await appointment_service.create_appointment(
            manager,
            AppointmentCreate(
                cabinet_id=CABINET_A,
                patient_id=patient_b.id,
                title="Checkup",
                scheduled_at=T0,
            ),
        )


@pytest.mark.asyncio
async def test_booking_in_foreign_cabinet_denied(
    appointment_service, manager_a, patient_b, audit_sink
) -> None:
    """Test that booking in an unassigned cabinet is denied and audited."""
    with pytest.raises(AccessDeniedException):
        await appointment_service.create_appointment(
            manager_a,
            AppointmentCreate(
                cabinet_id=CABINET_B,
                patient_id=patient_b.id,
                title="Checkup",
                scheduled_at=T0,
            ),
        )

    assert audit_sink.denials[-1].cabinet_id == CABINET_B
    assert audit_sink.denials[-1].operation == "create"


@pytest.mark.asyncio
async def test_cabinet_required_for_multi_cabinet_actor(
    appointment_service, patient_a
) -> None:
    """Test that an actor of several cabinets must name one."""
    manager = make_actor(cabinets=(CABINET_A, CABINET_B))

    with pytest.raises(ValidationException):
        await book(appointment_service, manager, patient_a)


@pytest.mark.asyncio
async def test_duration_limit(appointment_service, manager_a, patient_a) -> None:
    """Test that durations beyond the configured maximum are rejected."""
    with pytest.raises(ValidationException):
        await book(appointment_service, manager_a, patient_a, duration_minutes=600)


@pytest.mark.asyncio
async def test_storage_failure_refuses_booking(
    appointment_service, manager_a, patient_a, monkeypatch
) -> None:
    """A conflict check that cannot run never lets a booking through."""

    async def unreachable(*args, **kwargs):
        raise PersistenceUnavailableException()

    monkeypatch.setattr(
        appointment_service.appointments, "load_appointments_in_window", unreachable
    )

    with pytest.raises(PersistenceUnavailableException):
        await book(appointment_service, manager_a, patient_a)


@pytest.mark.asyncio
async def test_reschedule_frees_old_slot(
    appointment_service, manager_a, patient_a, db_session
) -> None:
    """10:00 -> 11:00 bumps the revision and 10:00 is bookable right away."""
    created = await book(appointment_service, manager_a, patient_a)

    moved = await appointment_service.reschedule_appointment(
        manager_a, created.id, AppointmentReschedule(scheduled_at=T0 + timedelta(hours=1))
    )

    assert moved.scheduled_at == T0 + timedelta(hours=1)
    assert moved.end_at == T0 + timedelta(hours=1, minutes=30)
    assert moved.schedule_revision == 1

    messages = await SqlNotificationRepository(db_session).list_for_appointment(created.id)
    [notice] = [m for m in messages if m.kind == NotificationKind.RESCHEDULE]
    assert notice.data["old_scheduled_at"] == T0.isoformat()
    assert notice.idempotency_key == f"reschedule:{created.id}:r1"

    replacement = await book(appointment_service, manager_a, patient_a)
    assert replacement.scheduled_at == T0


@pytest.mark.asyncio
async def test_reschedule_into_conflict_changes_nothing(
    appointment_service, manager_a, patient_a
) -> None:
    """Test that a conflicting reschedule leaves the appointment untouched."""
    first = await book(appointment_service, manager_a, patient_a)
    second = await book(appointment_service, manager_a, patient_a, start=T0 + timedelta(hours=1))

    with pytest.raises(SlotConflictException) as exc_info:
        await appointment_service.reschedule_appointment(
            manager_a, second.id, AppointmentReschedule(scheduled_at=T0 + timedelta(minutes=20))
        )

    assert exc_info.value.conflicting_appointment_id == first.id
    unchanged = await appointment_service.appointments.get(second.id)
    assert unchanged.scheduled_at == second.scheduled_at
    assert unchanged.schedule_revision == 0


@pytest.mark.asyncio
async def test_reschedule_extending_over_itself(
    appointment_service, manager_a, patient_a
) -> None:
    """An appointment never conflicts with its own previous window."""
    created = await book(appointment_service, manager_a, patient_a)

    longer = await appointment_service.reschedule_appointment(
        manager_a, created.id, AppointmentReschedule(duration_minutes=60)
    )

    assert longer.duration_minutes == 60
    assert longer.end_at == T0 + timedelta(hours=1)


@pytest.mark.asyncio
async def test_reschedule_to_other_practitioner_and_unassign(
    appointment_service, manager_a, patient_a
) -> None:
    """Test moving an appointment to another practitioner and back to none."""
    created = await book(appointment_service, manager_a, patient_a)

    moved = await appointment_service.reschedule_appointment(
        manager_a, created.id, AppointmentReschedule(practitioner_id="dr-kim")
    )
    assert moved.practitioner_id == "dr-kim"

    unassigned = await appointment_service.reschedule_appointment(
        manager_a, created.id, AppointmentReschedule(practitioner_id=None)
    )
    assert unassigned.practitioner_id is None
    assert unassigned.schedule_revision == 2


@pytest.mark.asyncio
async def test_reschedule_same_slot_is_noop(appointment_service, manager_a, patient_a) -> None:
    """Test that rescheduling to the current slot does not conflict with itself."""
    created = await book(appointment_service, manager_a, patient_a)

    same = await appointment_service.reschedule_appointment(
        manager_a, created.id, AppointmentReschedule(scheduled_at=T0)
    )

    assert same.schedule_revision == 0


@pytest.mark.asyncio
async def test_reschedule_terminal_appointment_refused(
    appointment_service, manager_a, patient_a
) -> None:
    """Test that a cancelled appointment cannot be moved."""
    created = await book(appointment_service, manager_a, patient_a)
    await appointment_service.lifecycle.apply_manual(
        manager_a, created.id, AppointmentStatus.CANCELLED
    )

    with pytest.raises(ValidationException):
        await appointment_service.reschedule_appointment(
            manager_a, created.id, AppointmentReschedule(scheduled_at=T0 + timedelta(hours=2))
        )


@pytest.mark.asyncio
async def test_stale_reschedule_detected(
    appointment_service, manager_a, patient_a, monkeypatch
) -> None:
    """A revision bumped by another writer makes the move fail instead of overwrite."""
    created = await book(appointment_service, manager_a, patient_a)
    stale = created.model_copy(update={"schedule_revision": 7})

    async def stale_get(actor, appointment_id, operation):
        return stale

    monkeypatch.setattr(appointment_service, "_get_authorized", stale_get)

    with pytest.raises(ConflictException):
        await appointment_service.reschedule_appointment(
            manager_a, created.id, AppointmentReschedule(scheduled_at=T0 + timedelta(hours=3))
        )


@pytest.mark.asyncio
async def test_update_descriptive_fields(appointment_service, manager_a, patient_a) -> None:
    """Test that a null title is ignored while notes are updated."""
    created = await book(appointment_service, manager_a, patient_a)

    updated = await appointment_service.update_appointment(
        manager_a, created.id, AppointmentUpdate(notes="Bring x-rays", title=None)
    )

    assert updated.notes == "Bring x-rays"
    assert updated.title == created.title


@pytest.mark.asyncio
async def test_list_is_tenant_scoped(
    appointment_service, manager_a, patient_a, patient_b
) -> None:
    """An actor of A never sees B; naming B is refused."""
    await book(appointment_service, manager_a, patient_a)
    manager_b = make_actor(cabinets=(CABINET_B,), user_id="user-b")
    await book(appointment_service, manager_b, patient_b)

    listing = await appointment_service.list_appointments(manager_a, AppointmentFilter())
    assert listing.total == 1
    assert {item.cabinet_id for item in listing.items} == {CABINET_A}

    admin = make_actor(ActorRole.ADMIN, cabinets=())
    everything = await appointment_service.list_appointments(admin, AppointmentFilter())
    assert everything.total == 2

    assistant = make_actor(ActorRole.ASSISTANT, cabinets=(CABINET_A,))
    with pytest.raises(AccessDeniedException):
        await appointment_service.list_appointments(
            assistant, AppointmentFilter(cabinet_id=CABINET_B)
        )


@pytest.mark.asyncio
async def test_list_filters(appointment_service, manager_a, patient_a) -> None:
    """Test listing by status and start date."""
    first = await book(appointment_service, manager_a, patient_a)
    await book(appointment_service, manager_a, patient_a, start=T0 + timedelta(days=1))
    await appointment_service.lifecycle.apply_manual(
        manager_a, first.id, AppointmentStatus.CONFIRMED
    )

    confirmed = await appointment_service.list_appointments(
        manager_a, AppointmentFilter(statuses=frozenset({AppointmentStatus.CONFIRMED}))
    )
    later = await appointment_service.list_appointments(
        manager_a, AppointmentFilter(from_date=T0 + timedelta(hours=1))
    )

    assert [item.id for item in confirmed.items] == [first.id]
    assert later.total == 1


@pytest.mark.asyncio
async def test_foreign_appointment_looks_missing(
    appointment_service, manager_a, patient_b, audit_sink
) -> None:
    """Test that another tenant's appointment is indistinguishable from an unknown ID."""
    manager_b = make_actor(cabinets=(CABINET_B,), user_id="user-b")
    foreign = await book(appointment_service, manager_b, patient_b)

    with pytest.raises(NotFoundException) as foreign_exc:
        await appointment_service.get_appointment(manager_a, foreign.id)
    with pytest.raises(NotFoundException) as unknown_exc:
        await appointment_service.get_appointment(manager_a, uuid4())

    assert foreign_exc.value.status_code == unknown_exc.value.status_code == 404
    assert foreign_exc.value.message == unknown_exc.value.message
    assert audit_sink.denials[-1].cabinet_id == CABINET_B

    for attempt in (
        appointment_service.update_appointment(
            manager_a, foreign.id, AppointmentUpdate(title="Mine now")
        ),
        appointment_service.reschedule_appointment(
            manager_a, foreign.id, AppointmentReschedule(scheduled_at=T0 + timedelta(days=1))
        ),
        appointment_service.delete_appointment(manager_a, foreign.id),
    ):
        with pytest.raises(NotFoundException):
            await attempt

    assert (await appointment_service.appointments.get(foreign.id)).title == foreign.title


@pytest.mark.asyncio
async def test_delete_needs_permission_and_frees_slot(
    appointment_service, manager_a, patient_a
) -> None:
    """Test that deletion needs the delete permission and releases the slot."""
    created = await book(appointment_service, manager_a, patient_a)
    assistant = make_actor(ActorRole.ASSISTANT)

    with pytest.raises(AccessDeniedException):
        await appointment_service.delete_appointment(assistant, created.id)

    await appointment_service.delete_appointment(manager_a, created.id)

    with pytest.raises(NotFoundException):
        await appointment_service.get_appointment(manager_a, created.id)
    assert (await book(appointment_service, manager_a, patient_a)).scheduled_at == T0


@pytest.mark.asyncio
async def test_check_availability(appointment_service, manager_a, patient_a) -> None:
    """Test that a taken slot conflicts unless the appointment itself is excluded."""
    created = await book(appointment_service, manager_a, patient_a)

    taken = await appointment_service.check_availability(manager_a, T0, 30, "dr-lee")
    own = await appointment_service.check_availability(
        manager_a, T0, 30, "dr-lee", exclude_appointment_id=created.id
    )

    assert taken.reason == AvailabilityReason.CONFLICT
    assert own.available


@pytest.mark.asyncio
async def test_day_slots_and_calendar(appointment_service, manager_a, patient_a) -> None:
    """Test day slot generation and calendar events for one cabinet."""
    created = await book(appointment_service, manager_a, patient_a)

    slots = await appointment_service.list_day_slots(manager_a, "dr-lee", date(2030, 6, 3))
    events = await appointment_service.get_calendar_events(
        manager_a, T0 - timedelta(hours=1), T0 + timedelta(hours=1)
    )

    assert any(not slot.available and slot.conflicting_appointment_id == created.id for slot in slots)
    [event] = events
    assert event.id == created.id
    assert event.patient_name == "Jeanne Martin"
    assert event.background_color == "#DBEAFE"

    with pytest.raises(ValidationException):
        await appointment_service.get_calendar_events(manager_a, T0, T0 - timedelta(hours=1))


@pytest.mark.asyncio
async def test_patient_change_must_stay_in_cabinet(
    appointment_service, manager_a, patient_a, patient_b, session_factory
) -> None:
    """Test that the new patient must belong to the appointment's cabinet."""
    created = await book(appointment_service, manager_a, patient_a)
    sibling = await insert_patient(session_factory, CABINET_A, first_name="Luc")

    moved = await appointment_service.update_appointment(
        manager_a, created.id, AppointmentUpdate(patient_id=sibling.id)
    )
    assert moved.patient_id == sibling.id

    with pytest.raises(NotFoundException):
        await appointment_service.update_appointment(
            manager_a, created.id, AppointmentUpdate(patient_id=patient_b.id)
        )

    both = make_actor(cabinets=(CABINET_A, CABINET_B), user_id="user-ab")
    with pytest.raises(TenantMismatchException):
        await appointment_service.update_appointment(
            both, created.id, AppointmentUpdate(patient_id=patient_b.id)
        )


@pytest.mark.asyncio
async def test_calendar_includes_appointment_started_before_window(
    appointment_service, manager_a, patient_a
) -> None:
    """Test that an appointment still running at the window start is shown."""
    created = await book(appointment_service, manager_a, patient_a, duration_minutes=120)

    events = await appointment_service.get_calendar_events(
        manager_a, T0 + timedelta(minutes=30), T0 + timedelta(hours=3)
    )
    after = await appointment_service.get_calendar_events(
        manager_a, T0 + timedelta(hours=2), T0 + timedelta(hours=3)
    )

    assert [event.id for event in events] == [created.id]
    assert after == []


def integrity_error(message: str) -> IntegrityError:
    return IntegrityError("INSERT INTO appointments ...", {}, Exception(message))


@pytest.mark.asyncio
async def test_overlap_constraint_violation_reported_as_conflict(
    appointment_service, manager_a, patient_a, monkeypatch
) -> None:
    """Test that the storage overlap constraint surfaces as a slot conflict."""

    async def rejected_by_constraint(values):
        raise integrity_error(
            'conflicting key value violates exclusion constraint "appointments_no_practitioner_overlap"'
        )

    monkeypatch.setattr(appointment_service.appointments, "insert", rejected_by_constraint)

    with pytest.raises(SlotConflictException) as exc_info:
        await book(appointment_service, manager_a, patient_a)

    assert exc_info.value.conflicting_appointment_id is None


@pytest.mark.asyncio
async def test_other_integrity_errors_propagate(
    appointment_service, manager_a, patient_a, monkeypatch
) -> None:
    """Test that foreign key and check violations are not disguised as conflicts."""

    async def rejected_by_check(values):
        raise integrity_error('new row violates check constraint "appointments_status_check"')

    monkeypatch.setattr(appointment_service.appointments, "insert", rejected_by_check)

    with pytest.raises(IntegrityError):
        await book(appointment_service, manager_a, patient_a)
