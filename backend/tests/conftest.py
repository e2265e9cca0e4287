import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("TESTING", "true")
os.environ.setdefault("PAYMENT_MODE", "fake")
os.environ.setdefault("BOOKING_STORE_BACKEND", "memory")
os.environ.setdefault("NOTIFICATION_MODE", "off")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace import TracerProvider
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from spotbook.domain.bookings import db_models as booking_db_models  # noqa: F401
from spotbook.domain.bookings.schemas import BookingTerms, GuestIdentity
from spotbook.domain.bookings.service import BookingEngine
from spotbook.domain.bookings.store import InMemoryBookingStore, SqlBookingStore
from spotbook.infra.db import Base
from spotbook.infra.metrics import configure_metrics
from spotbook.infra.payments import FakePaymentGateway
from spotbook.settings import settings
from spotbook.shared.clock import FrozenClock

START_OF_TEST = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict]] = []

    async def notify(self, user_id: str, notification_type: str, payload: dict) -> bool:
        self.sent.append((user_id, notification_type, payload))
        return True

    async def drain(self) -> None:
        return None

    def types(self) -> list[str]:
        return [notification_type for _, notification_type, _ in self.sent]

    def recipients(self, notification_type: str) -> list[str]:
        return [user_id for user_id, kind, _ in self.sent if kind == notification_type]


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def restore_settings():
    original_metrics = settings.metrics_enabled
    original_metrics_token = settings.metrics_token
    original_app_env = settings.app_env
    yield
    settings.metrics_enabled = original_metrics
    settings.metrics_token = original_metrics_token
    settings.app_env = original_app_env


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(START_OF_TEST)


@pytest.fixture()
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


@pytest.fixture()
def engine(store, gateway, notifier, clock) -> BookingEngine:
    return BookingEngine(store, gateway, notifier, clock=clock, app_settings=settings)


@pytest.fixture()
def make_terms(clock):
    """Four hour booking starting two hours from now at 10.00/h."""

    def _make(**overrides) -> BookingTerms:
        start_at = overrides.pop("start_at", clock() + timedelta(hours=2))
        values = {
            "spot_id": "spot-1",
            "host_id": "host-1",
            "renter_id": "renter-1",
            "instant_book": False,
            "hourly_rate_cents": 1000,
            "start_at": start_at,
            "end_at": start_at + timedelta(hours=4),
            "payer_ref": "cus_123:pm_456",
        }
        values.update(overrides)
        return BookingTerms(**values)

    return _make


@pytest.fixture()
def guest_identity() -> GuestIdentity:
    return GuestIdentity(
        name="Sam Driver",
        email="sam@example.com",
        phone="+1 555 010 0000",
        vehicle_description="Blue hatchback",
    )


@pytest.fixture()
async def sql_store():
    db_engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SqlBookingStore(async_sessionmaker(db_engine, expire_on_commit=False))
    await db_engine.dispose()


@pytest.fixture()
def app_client(store, gateway, notifier, clock):
    from spotbook.main import create_app
    from spotbook.services import build_app_services

    metrics_client = configure_metrics(True)
    services = build_app_services(
        settings,
        metrics=metrics_client,
        store=store,
        payment_gateway=gateway,
        notifier=notifier,
        clock=clock,
    )
    app = create_app(settings, tracer_provider=TracerProvider(), services=services)
    with TestClient(app, raise_server_exceptions=False) as client:
        yield client
