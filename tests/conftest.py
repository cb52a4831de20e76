import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio

# Settings require these; the app engine is never used because get_db is overridden
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("REDIS_PORT", "6379")

from httpx import ASGITransport, AsyncClient
from sqlalchemy import insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from app.core.exceptions import UpstreamFailureException
from app.core.link_providers import JitsiLinkProvider, MeetingContext, MeetLink
from app.core.payment_gateway import GatewayRefund
from app.core.redis_client import CacheManager
from app.core.timeutils import to_clinic_local
from app.database import get_db
from app.dependencies import (
    get_cache_manager,
    get_link_scheduler,
    get_notifier,
    get_payment_gateway,
)
from app.main import app
from app.models import appointments, doctors, metadata
from app.services.notification_service import AppointmentNotice, QueueAlert
from app.services.scheduler_service import MeetLinkScheduler


class FakeLinkProvider:
    """Link provider that records calls and can be told to fail."""

    def __init__(self, name: str = "google-meet", fail: bool = False):
        self.name = name
        self.fail = fail
        self.calls: list[MeetingContext] = []

    async def generate_link(self, context: MeetingContext) -> MeetLink:
        self.calls.append(context)
        if self.fail:
            raise UpstreamFailureException("Provider unavailable")
        return MeetLink(
            link=f"https://meet.example.com/{context.appointment_id.hex[:10]}",
            provider_id=self.name,
        )


class RecordingNotifier:
    """Notifier that records deliveries; roles in ``fail_roles`` fail, "queue" fails alerts."""

    def __init__(self, fail_roles: set[str] | None = None):
        self.fail_roles = fail_roles or set()
        self.sent: list[tuple[UUID, str]] = []
        self.alerts: list[QueueAlert] = []

    async def notify(self, recipient_id: UUID, notice: AppointmentNotice, role: str) -> bool:
        if role in self.fail_roles:
            return False
        self.sent.append((recipient_id, role))
        return True

    async def alert_queue(self, recipient_id: UUID, alert: QueueAlert) -> bool:
        if "queue" in self.fail_roles:
            return False
        self.alerts.append(alert)
        return True


class FakeGateway:
    """Payment gateway double."""

    def __init__(self, status: str = "processed", fail: bool = False):
        self.status = status
        self.fail = fail
        self.calls: list[tuple[str, Decimal]] = []

    async def refund(self, transaction_id: str, amount: Decimal) -> GatewayRefund:
        self.calls.append((transaction_id, amount))
        if self.fail:
            raise UpstreamFailureException("Gateway timeout")
        return GatewayRefund(refund_id=f"rfnd_{len(self.calls)}", status=self.status)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Per-test SQLite database."""
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis() -> MagicMock:
    """Redis double that always misses."""
    redis_client = MagicMock()
    redis_client.get.return_value = None
    return redis_client


@pytest.fixture
def cache(mock_redis: MagicMock) -> CacheManager:
    return CacheManager(redis_client=mock_redis)


@pytest.fixture
def link_provider() -> FakeLinkProvider:
    return FakeLinkProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    link_provider: FakeLinkProvider,
    notifier: RecordingNotifier,
) -> AsyncGenerator[MeetLinkScheduler, None]:
    """Meet-link scheduler with a Jitsi fallback."""
    link_scheduler = MeetLinkScheduler(
        session_factory,
        primary=link_provider,
        fallback=JitsiLinkProvider("https://meet.jit.si"),
        notifier=notifier,
    )
    yield link_scheduler
    await link_scheduler.shutdown()


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    scheduler: MeetLinkScheduler,
    notifier: RecordingNotifier,
    gateway: FakeGateway,
    cache: CacheManager,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_link_scheduler] = lambda: scheduler
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_cache_manager] = lambda: cache

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def doctor(db_session: AsyncSession) -> UUID:
    """A cardiologist with the default consultation length."""
    doctor_id = uuid4()
    await db_session.execute(
        insert(doctors).values(
            id=doctor_id,
            full_name="Dr. Asha Menon",
            specialization="Cardiology",
            consultation_duration_minutes=15,
        )
    )
    await db_session.commit()
    return doctor_id


AppointmentFactory = Callable[..., Awaitable[UUID]]


@pytest.fixture
def make_appointment(db_session: AsyncSession, doctor: UUID) -> AppointmentFactory:
    """Insert an appointment starting at ``starts_at`` straight into the store."""

    async def _make(starts_at: datetime, **overrides: Any) -> UUID:
        local = to_clinic_local(starts_at)
        values = {
            "id": uuid4(),
            "patient_id": uuid4(),
            "doctor_id": doctor,
            "appointment_date": local.date(),
            "appointment_time": local.time().replace(second=0, microsecond=0),
            "starts_at": starts_at,
            "consultation_type": "in_person",
            "status": "confirmed",
            "queue_status": "waiting",
            "amount_paid": Decimal("600"),
            "payment_status": "completed",
            "payment_transaction_id": "pay_test_001",
        }
        values.update(overrides)
        await db_session.execute(insert(appointments).values(**values))
        await db_session.commit()
        return values["id"]

    return _make


@pytest.fixture
def future_slot() -> Callable[[int], dict[str, str]]:
    """Booking date/time ``days`` ahead at 10:30 clinic time."""

    def _slot(days: int = 2) -> dict[str, str]:
        day = to_clinic_local(datetime.now(UTC) + timedelta(days=days)).date()
        return {"appointment_date": day.isoformat(), "appointment_time": "10:30"}

    return _slot
