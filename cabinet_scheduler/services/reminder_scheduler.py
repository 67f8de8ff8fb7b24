"""Periodic per-cabinet sweep: time-based transitions, reminders and redelivery."""

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cabinet_scheduler.config import settings
from cabinet_scheduler.models.base import utcnow
from cabinet_scheduler.repositories.appointments import SqlAppointmentRepository
from cabinet_scheduler.repositories.cabinets import SqlCabinetRepository
from cabinet_scheduler.repositories.locks import CabinetSweepGuard, SlotLockManager
from cabinet_scheduler.repositories.patients import SqlPatientRepository
from cabinet_scheduler.schemas.appointments import RESCHEDULABLE_STATUSES
from cabinet_scheduler.services.access_guard import AccessGuard
from cabinet_scheduler.services.appointment_lifecycle import AppointmentLifecycle
from cabinet_scheduler.services.audit_service import AuditSink
from cabinet_scheduler.services.notification_service import (
    NotificationBuilder,
    NotificationDispatcher,
    NotificationService,
)

logger = structlog.get_logger(__name__)

SWEEP_JOB_ID = "cabinet_sweep"


def tightest_crossed_threshold(remaining: timedelta, thresholds: Sequence[int]) -> int | None:
    """Smallest threshold (minutes) that `remaining` has already reached."""
    crossed = [t for t in thresholds if remaining <= timedelta(minutes=t)]
    return min(crossed) if crossed else None


@dataclass
class SweepReport:
    """Outcome of one cabinet sweep."""

    cabinet_id: str
    transitions: int = 0
    reminders: int = 0
    redelivered: int = 0
    errors: int = 0
    skipped: bool = False


class ReminderScheduler:
    """
    Server-side sweep over cabinets.

    Sweeps of the same cabinet never overlap: a sweep that finds one already
    running is skipped. Each transition and each reminder claim commits on its
    own, and reminder idempotency keys make a re-run emit nothing twice.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        audit_sink: AuditSink,
        locks: SlotLockManager,
        thresholds: Sequence[int] | None = None,
        grace_minutes: int | None = None,
        interval_seconds: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize scheduler with its collaborators. Settings fill unset options."""
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.guard = AccessGuard(audit_sink, clock=clock)
        self.locks = locks
        self.thresholds = sorted(
            thresholds if thresholds is not None else settings.reminder_thresholds_minutes,
            reverse=True,
        )
        self.grace_minutes = grace_minutes
        self.interval_seconds = interval_seconds or settings.sweep_interval_seconds
        self.clock = clock
        self.sweep_guard = CabinetSweepGuard()
        self._batch_lock = asyncio.Lock()
        self._scheduler: AsyncIOScheduler | None = None
        self.last_sweep_at: datetime | None = None

    async def sweep_cabinet(self, cabinet_id: str, now: datetime | None = None) -> SweepReport:
        """
        Sweep one cabinet.

        Applies due time-based transitions, emits reminders when the cabinet
        has them enabled, then redelivers pending notifications.
        """
        now = now or self.clock()
        report = SweepReport(cabinet_id=cabinet_id)

        lock = self.sweep_guard.lock_for(cabinet_id)
        if lock.locked():
            logger.info("sweep_skipped", cabinet_id=cabinet_id, reason="already_running")
            report.skipped = True
            return report

        async with lock, self.session_factory() as db:
            cabinet = await SqlCabinetRepository(db).get(cabinet_id)
            if cabinet is None or cabinet["status"] != "active":
                report.skipped = True
                return report

            appointments = SqlAppointmentRepository(db, self.locks)
            notifications = NotificationService(
                db, self.dispatcher, NotificationBuilder(clock=self.clock)
            )
            lifecycle = AppointmentLifecycle(
                db,
                appointments,
                self.guard,
                notifications,
                grace_minutes=self.grace_minutes,
                clock=self.clock,
            )

            batch = await lifecycle.apply_due_transitions(cabinet_id, now)
            report.transitions = len(batch.applied)
            report.errors += batch.errors

            if cabinet["reminders_enabled"] and self.thresholds:
                report.reminders = await self._emit_reminders(
                    db, appointments, notifications, cabinet_id, now
                )

            report.redelivered = await notifications.deliver_pending(cabinet_id)

        logger.info(
            "cabinet_swept",
            cabinet_id=cabinet_id,
            transitions=report.transitions,
            reminders=report.reminders,
            redelivered=report.redelivered,
            errors=report.errors,
        )
        return report

    async def _emit_reminders(
        self,
        db: AsyncSession,
        appointments: SqlAppointmentRepository,
        notifications: NotificationService,
        cabinet_id: str,
        now: datetime,
    ) -> int:
        horizon = timedelta(minutes=self.thresholds[0])
        upcoming = await appointments.list_upcoming(cabinet_id, now, horizon, RESCHEDULABLE_STATUSES)
        opted_out = await SqlPatientRepository(db).reminder_opt_outs(
            {appointment.patient_id for appointment in upcoming}
        )

        emitted = []
        for appointment in upcoming:
            if appointment.patient_id in opted_out:
                continue

            threshold = tightest_crossed_threshold(appointment.scheduled_at - now, self.thresholds)
            if threshold is None:
                continue

            message = notifications.builder.reminder(appointment, threshold)
            try:
                await notifications.emit(message)
                await db.commit()
            except IntegrityError:
                # Already emitted for this revision and threshold
                await db.rollback()
                continue
            except Exception:
                await db.rollback()
                raise

            logger.info(
                "reminder_emitted",
                appointment_id=str(appointment.id),
                cabinet_id=cabinet_id,
                threshold_minutes=threshold,
                schedule_revision=appointment.schedule_revision,
            )
            emitted.append(message)

        await notifications.deliver(emitted)
        return len(emitted)

    async def sweep_all(self, now: datetime | None = None) -> list[SweepReport]:
        """Sweep every active cabinet in turn. A failing cabinet does not stop the others."""
        async with self._batch_lock:
            now = now or self.clock()

            async with self.session_factory() as db:
                cabinet_ids = await SqlCabinetRepository(db).list_active_ids()

            reports = []
            for cabinet_id in cabinet_ids:
                try:
                    reports.append(await self.sweep_cabinet(cabinet_id, now))
                except Exception as e:
                    logger.error("sweep_failed", cabinet_id=cabinet_id, error=str(e))
                    reports.append(SweepReport(cabinet_id=cabinet_id, errors=1))

            logger.info(
                "sweep_completed",
                cabinets=len(reports),
                transitions=sum(r.transitions for r in reports),
                reminders=sum(r.reminders for r in reports),
                redelivered=sum(r.redelivered for r in reports),
                errors=sum(r.errors for r in reports),
            )
            self.last_sweep_at = now
            return reports

    @property
    def running(self) -> bool:
        """Whether the interval job is scheduled."""
        return self._scheduler is not None and self._scheduler.running

    async def _tick(self) -> None:
        await self.sweep_all()

    def start(self) -> None:
        """Run `sweep_all` on a fixed interval in the running event loop."""
        if self.running:
            return

        self._scheduler = AsyncIOScheduler(timezone="UTC")
        self._scheduler.add_job(
            self._tick,
            IntervalTrigger(seconds=self.interval_seconds),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
            misfire_grace_time=self.interval_seconds,
        )
        self._scheduler.start()
        logger.info("sweep_scheduler_started", interval_seconds=self.interval_seconds)

    async def shutdown(self) -> None:
        """Stop scheduling new sweeps and wait for a running one to finish."""
        if self.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None

        async with self._batch_lock:
            logger.info("sweep_scheduler_stopped")
