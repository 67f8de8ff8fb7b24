import os
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("REALTIME_NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("PUSH_NOTIFICATIONS_ENABLED", "false")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from cabinet_scheduler.core.security import create_access_token
from cabinet_scheduler.database import build_session_factory, get_db
from cabinet_scheduler.dependencies import get_audit_sink, get_dispatcher, get_slot_locks
from cabinet_scheduler.main import app
from cabinet_scheduler.models import metadata
from cabinet_scheduler.repositories.cabinets import SqlCabinetRepository
from cabinet_scheduler.repositories.locks import SlotLockManager
from cabinet_scheduler.repositories.patients import SqlPatientRepository
from cabinet_scheduler.schemas.access import ActorRole, AuditEntry, TenantActor
from cabinet_scheduler.schemas.appointments import AppointmentCreate, AppointmentResponse
from cabinet_scheduler.schemas.notifications import NotificationMessage
from cabinet_scheduler.schemas.patients import PatientResponse
from cabinet_scheduler.services.access_guard import AccessGuard
from cabinet_scheduler.services.appointment_service import AppointmentService
from cabinet_scheduler.services.notification_service import NotificationDispatcher

CABINET_A = "cab-a"
CABINET_B = "cab-b"

# Far enough ahead that nothing is due unless a test moves the clock
T0 = datetime(2030, 6, 3, 10, 0, tzinfo=UTC)


class RecordingAuditSink:
    """Audit sink keeping entries in memory."""

    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self.entries.append(entry)

    async def record_within(self, db: AsyncSession, entry: AuditEntry) -> None:
        self.entries.append(entry)

    @property
    def denials(self) -> list[AuditEntry]:
        return [entry for entry in self.entries if not entry.allowed]


class RecordingDispatcher(NotificationDispatcher):
    """Dispatcher capturing delivered notifications; can be switched to fail."""

    def __init__(self) -> None:
        super().__init__(realtime=None, push_enabled=False)
        self.delivered: list[NotificationMessage] = []
        self.fail = False

    async def deliver(self, message: NotificationMessage) -> None:
        if self.fail:
            raise ConnectionError("channel unavailable")
        self.delivered.append(message)

    def of_kind(self, kind: str) -> list[NotificationMessage]:
        return [message for message in self.delivered if message.kind.value == kind]


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """SQLite file database with the full schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'scheduler.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def audit_sink() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def slot_locks() -> SlotLockManager:
    return SlotLockManager()


@pytest.fixture
def guard(audit_sink: RecordingAuditSink) -> AccessGuard:
    return AccessGuard(audit_sink)


@pytest_asyncio.fixture
async def cabinets(session_factory: async_sessionmaker[AsyncSession]) -> list[str]:
    """Two active cabinets with reminders enabled."""
    async with session_factory() as session:
        repo = SqlCabinetRepository(session)
        await repo.insert(CABINET_A, "Cabinet A", "cabinet-a")
        await repo.insert(CABINET_B, "Cabinet B", "cabinet-b", timezone="UTC")
        await session.commit()
    return [CABINET_A, CABINET_B]


async def insert_patient(
    session_factory: async_sessionmaker[AsyncSession],
    cabinet_id: str,
    first_name: str = "Jeanne",
    last_name: str = "Martin",
    reminder_enabled: bool = True,
) -> PatientResponse:
    async with session_factory() as session:
        patient = await SqlPatientRepository(session).insert(
            {
                "cabinet_id": cabinet_id,
                "first_name": first_name,
                "last_name": last_name,
                "email": f"{first_name.lower()}@example.com",
                "preferred_channel": "email",
                "reminder_enabled": reminder_enabled,
            }
        )
        await session.commit()
    return patient


@pytest_asyncio.fixture
async def patient_a(session_factory, cabinets) -> PatientResponse:
    return await insert_patient(session_factory, CABINET_A)


@pytest_asyncio.fixture
async def patient_b(session_factory, cabinets) -> PatientResponse:
    return await insert_patient(session_factory, CABINET_B, first_name="Paul", last_name="Durand")


def make_actor(
    role: ActorRole = ActorRole.MANAGER,
    cabinets: tuple[str, ...] = (CABINET_A,),
    permissions: tuple[str, ...] = (),
    user_id: str = "user-1",
) -> TenantActor:
    return TenantActor(
        user_id=user_id,
        role=role,
        assigned_cabinets=frozenset(cabinets),
        permissions=frozenset(permissions),
    )


@pytest.fixture
def manager_a() -> TenantActor:
    return make_actor()


@pytest.fixture
def service_factory(
    guard: AccessGuard,
    slot_locks: SlotLockManager,
    dispatcher: RecordingDispatcher,
) -> Callable[[AsyncSession], AppointmentService]:
    """Build appointment services on caller-provided sessions sharing one lock manager."""

    def build(session: AsyncSession) -> AppointmentService:
        return AppointmentService(session, guard, slot_locks, dispatcher)

    return build


@pytest_asyncio.fixture
async def appointment_service(
    db_session: AsyncSession, service_factory
) -> AppointmentService:
    return service_factory(db_session)


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    audit_sink: RecordingAuditSink,
    dispatcher: RecordingDispatcher,
    slot_locks: SlotLockManager,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_audit_sink] = lambda: audit_sink
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_slot_locks] = lambda: slot_locks

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


def bearer(
    role: str = "manager",
    cabinets: tuple[str, ...] = (CABINET_A,),
    permissions: tuple[str, ...] = (),
    user_id: str = "user-1",
) -> dict[str, str]:
    """Authentication headers for an actor."""
    token = create_access_token(
        user_id,
        role,
        cabinets=cabinets,
        permissions=permissions,
        expires_delta=timedelta(minutes=30),
    )
    return {"Authorization": f"Bearer {token}"}


async def book(
    service: AppointmentService,
    actor: TenantActor,
    patient: PatientResponse,
    start: datetime = T0,
    duration_minutes: int = 30,
    practitioner_id: str | None = "dr-lee",
) -> AppointmentResponse:
    """Book an appointment through the service."""
    return await service.create_appointment(
        actor,
        AppointmentCreate(
            patient_id=patient.id,
            practitioner_id=practitioner_id,
            title="Checkup",
            scheduled_at=start,
            duration_minutes=duration_minutes,
        ),
    )
