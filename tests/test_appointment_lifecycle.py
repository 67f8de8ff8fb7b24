"""Tests for the appointment status state machine."""

from datetime import timedelta

import pytest
from conftest import CABINET_B, T0, book, make_actor

from cabinet_scheduler.core.exceptions import (
    ConfirmationRequiredException,
    InvalidTransitionException,
    NotFoundException,
)
from cabinet_scheduler.repositories.notifications import SqlNotificationRepository
from cabinet_scheduler.schemas.access import ActorRole
from cabinet_scheduler.schemas.appointments import AppointmentStatus
from cabinet_scheduler.schemas.notifications import (
    NotificationKind,
    NotificationPriority,
    NotificationType,
)
from cabinet_scheduler.services.appointment_lifecycle import (
    TRANSITIONS,
    Trigger,
    validate_manual_transition,
)

S = AppointmentStatus


async def status_notifications(db_session, appointment_id):
    messages = await SqlNotificationRepository(db_session).list_for_appointment(appointment_id)
    return [m for m in messages if m.kind == NotificationKind.STATUS_CHANGE]


@pytest.mark.parametrize(
    "current,target",
    [
        (S.SCHEDULED, S.COMPLETED),
        (S.SCHEDULED, S.IN_PROGRESS),
        (S.CONFIRMED, S.SCHEDULED),
        (S.CANCELLED, S.CONFIRMED),
        (S.COMPLETED, S.CANCELLED),
        (S.NO_SHOW, S.SCHEDULED),
        (S.IN_PROGRESS, S.CANCELLED),
    ],
)
def test_edges_outside_table_are_invalid(current, target) -> None:
    """Any pair missing from the table is rejected."""
    with pytest.raises(InvalidTransitionException) as exc_info:
        validate_manual_transition(current, target, confirm=True)

    assert exc_info.value.details == {"from": current.value, "to": target.value}


def test_time_based_edges_cannot_be_requested_manually() -> None:
    """Only the sweep applies time-based edges."""
    time_based = [edge for edge, trigger in TRANSITIONS.items() if trigger == Trigger.TIME_BASED]

    assert set(time_based) == {(S.CONFIRMED, S.IN_PROGRESS), (S.SCHEDULED, S.NO_SHOW)}
    for current, target in time_based:
        with pytest.raises(InvalidTransitionException):
            validate_manual_transition(current, target, confirm=True)


@pytest.mark.asyncio
async def test_confirm_emits_one_success_notification(
    appointment_service, manager_a, patient_a, db_session, dispatcher
) -> None:
    """scheduled -> confirmed writes one auto-removed success notice."""
    created = await book(appointment_service, manager_a, patient_a)

    confirmed = await appointment_service.lifecycle.apply_manual(
        manager_a, created.id, S.CONFIRMED
    )

    assert confirmed.status == S.CONFIRMED
    [message] = await status_notifications(db_session, created.id)
    assert message.type == NotificationType.SUCCESS
    assert message.priority == NotificationPriority.LOW
    assert message.auto_remove
    assert message.data["old_status"] == "scheduled"
    assert message.data["new_status"] == "confirmed"
    assert dispatcher.of_kind("status_change")[0].id == message.id


@pytest.mark.asyncio
async def test_invalid_transition_leaves_status(
    appointment_service, manager_a, patient_a, db_session
) -> None:
    """Test that a refused transition keeps the stored status."""
    created = await book(appointment_service, manager_a, patient_a)

    with pytest.raises(InvalidTransitionException):
        await appointment_service.lifecycle.apply_manual(manager_a, created.id, S.COMPLETED)

    current = await appointment_service.appointments.get(created.id)
    assert current.status == S.SCHEDULED
    assert await status_notifications(db_session, created.id) == []


@pytest.mark.asyncio
async def test_completion_requires_confirmation(
    appointment_service, manager_a, patient_a
) -> None:
    """in_progress -> completed needs confirm=True."""
    created = await book(appointment_service, manager_a, patient_a)
    lifecycle = appointment_service.lifecycle
    await lifecycle.apply_manual(manager_a, created.id, S.CONFIRMED)
    batch = await lifecycle.apply_due_transitions(created.cabinet_id, T0)
    assert [a.status for a in batch.applied] == [S.IN_PROGRESS]

    with pytest.raises(ConfirmationRequiredException):
        await lifecycle.apply_manual(manager_a, created.id, S.COMPLETED)
    assert (await appointment_service.appointments.get(created.id)).status == S.IN_PROGRESS

    completed = await lifecycle.apply_manual(manager_a, created.id, S.COMPLETED, confirm=True)
    assert completed.status == S.COMPLETED


@pytest.mark.asyncio
async def test_cancel_sets_cancelled_at(appointment_service, manager_a, patient_a) -> None:
    """Test that cancelling stamps cancelled_at and records the notes."""
    created = await book(appointment_service, manager_a, patient_a)

    cancelled = await appointment_service.lifecycle.apply_manual(
        manager_a, created.id, S.CANCELLED, notes="Patient called"
    )

    assert cancelled.status == S.CANCELLED
    assert cancelled.cancelled_at is not None
    assert cancelled.notes == "Patient called"

    with pytest.raises(InvalidTransitionException):
        await appointment_service.lifecycle.apply_manual(manager_a, created.id, S.CONFIRMED)


@pytest.mark.asyncio
async def test_manual_transition_checks_access(
    appointment_service, manager_a, patient_a, audit_sink
) -> None:
    """An actor of another cabinet sees the appointment as missing and cannot move it."""
    created = await book(appointment_service, manager_a, patient_a)
    outsider = make_actor(ActorRole.ASSISTANT, cabinets=(CABINET_B,), user_id="user-2")

    with pytest.raises(NotFoundException):
        await appointment_service.lifecycle.apply_manual(outsider, created.id, S.CONFIRMED)

    assert (await appointment_service.appointments.get(created.id)).status == S.SCHEDULED
    assert audit_sink.denials[-1].actor_id == "user-2"
    assert audit_sink.denials[-1].cabinet_id == created.cabinet_id


@pytest.mark.asyncio
async def test_no_show_after_grace_only(
    appointment_service, manager_a, patient_a, db_session, audit_sink
) -> None:
    """scheduled becomes no_show once now reaches start + grace."""
    created = await book(appointment_service, manager_a, patient_a)
    lifecycle = appointment_service.lifecycle

    early = await lifecycle.apply_due_transitions(created.cabinet_id, T0 + timedelta(minutes=14))
    assert early.applied == []

    due = await lifecycle.apply_due_transitions(created.cabinet_id, T0 + timedelta(minutes=15))
    assert [a.status for a in due.applied] == [S.NO_SHOW]

    [message] = await status_notifications(db_session, created.id)
    assert message.priority == NotificationPriority.HIGH
    assert message.type == NotificationType.WARNING
    assert message.data["automatic"] is True

    system_entries = [e for e in audit_sink.entries if e.actor_id == "system"]
    assert len(system_entries) == 1
    assert system_entries[0].reason == "scheduled -> no_show"

    again = await lifecycle.apply_due_transitions(created.cabinet_id, T0 + timedelta(minutes=30))
    assert again.applied == []
    assert len(await status_notifications(db_session, created.id)) == 1
