#!/usr/bin/env python3
"""
Run one cabinet sweep outside the API process (cron, one-off catch-up).

Usage:
    python scripts/run_reminder_sweep.py
    python scripts/run_reminder_sweep.py --cabinet cab-paris

Applies due time-based transitions, emits reminders and redelivers pending
notifications, then prints a per-cabinet summary. Exits non-zero when any
cabinet reported errors.
"""

import argparse
import asyncio
import sys

import dotenv

dotenv.load_dotenv()

from cabinet_scheduler.config import settings  # noqa: E402
from cabinet_scheduler.core.firebase import initialize_firebase  # noqa: E402
from cabinet_scheduler.core.redis_client import (  # noqa: E402
    close_redis_connection,
    get_redis_client,
)
from cabinet_scheduler.database import AsyncSessionLocal, engine  # noqa: E402
from cabinet_scheduler.middleware.logging import configure_logging  # noqa: E402
from cabinet_scheduler.repositories.locks import SlotLockManager  # noqa: E402
from cabinet_scheduler.services.audit_service import SqlAuditSink  # noqa: E402
from cabinet_scheduler.services.notification_service import NotificationDispatcher  # noqa: E402
from cabinet_scheduler.services.realtime_service import CabinetEventChannel  # noqa: E402
from cabinet_scheduler.services.reminder_scheduler import (  # noqa: E402
    ReminderScheduler,
    SweepReport,
)


async def run(cabinet_id: str | None) -> list[SweepReport]:
    """Sweep one cabinet or all active ones."""
    if settings.push_notifications_enabled:
        initialize_firebase(settings.firebase_credentials_path, settings.firebase_config_json)

    dispatcher = NotificationDispatcher(
        realtime=(
            CabinetEventChannel(get_redis_client())
            if settings.realtime_notifications_enabled
            else None
        ),
        push_enabled=settings.push_notifications_enabled,
    )
    scheduler = ReminderScheduler(
        AsyncSessionLocal, dispatcher, SqlAuditSink(AsyncSessionLocal), SlotLockManager()
    )

    try:
        if cabinet_id:
            return [await scheduler.sweep_cabinet(cabinet_id)]
        return await scheduler.sweep_all()
    finally:
        await engine.dispose()
        close_redis_connection()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run one reminder and no-show sweep")
    parser.add_argument("--cabinet", help="Sweep only this cabinet")
    args = parser.parse_args()

    configure_logging()
    reports = asyncio.run(run(args.cabinet))

    for report in reports:
        state = "skipped" if report.skipped else "swept"
        print(
            f"{report.cabinet_id}: {state}, transitions={report.transitions} "
            f"reminders={report.reminders} redelivered={report.redelivered} "
            f"errors={report.errors}"
        )

    sys.exit(1 if any(report.errors for report in reports) else 0)
