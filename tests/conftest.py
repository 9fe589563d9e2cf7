"""
Test configuration and fixtures for the booking engine.

Every test gets its own file-backed SQLite database, a controllable clock,
a fake M-Pesa gateway and a notifier that records outbound messages.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.config import Settings
from studio_booking.core.container import init_models
from studio_booking.core.database import build_engine, build_session_factory
from studio_booking.core.exceptions import ExternalServiceError
from studio_booking.models import Booking, ServicePackage
from studio_booking.models.enums import BookingStatus
from studio_booking.services.booking_lifecycle import BookingLifecycle
from studio_booking.services.mpesa_client import PaymentGateway, PaymentStatusResult
from studio_booking.services.notifier import Notifier
from studio_booking.services.reminder_service import ReminderScheduler
from studio_booking.services.time_normalizer import TimeNormalizer

# Monday 1 December 2025, 09:00 in Nairobi
BASE_NOW = datetime(2025, 12, 1, 6, 0, tzinfo=timezone.utc)
NAIROBI = timezone(timedelta(hours=3))


def nairobi(year, month, day, hour, minute=0) -> datetime:
    """A Nairobi wall-clock time as an aware UTC datetime."""
    return datetime(year, month, day, hour, minute, tzinfo=NAIROBI).astimezone(timezone.utc)


class FakeClock:
    """
    Deterministic clock. Each read moves forward by one microsecond so rows
    written in sequence keep their order.
    """

    def __init__(self, start: datetime = BASE_NOW):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(microseconds=1)
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class FakeGateway(PaymentGateway):
    """In-memory stand-in for the Daraja API."""

    def __init__(self):
        self.pushes: list[dict] = []
        self.fail_next = False
        self.verify_result = True
        self.statuses: dict[str, PaymentStatusResult] = {}
        self.status_queries = 0

    async def initiate(self, phone: str, amount: int, reference: str) -> str:
        if self.fail_next:
            self.fail_next = False
            raise ExternalServiceError("M-Pesa is unavailable right now.")
        correlation_id = f"ws_CO_{len(self.pushes) + 1:04d}"
        self.pushes.append({"phone": phone, "amount": amount, "reference": reference, "id": correlation_id})
        return correlation_id

    async def verify(self, correlation_id: str, receipt: str) -> bool:
        return self.verify_result

    async def query_status(self, correlation_id: str) -> PaymentStatusResult:
        self.status_queries += 1
        return self.statuses.get(correlation_id, PaymentStatusResult(state="pending"))


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []

    async def send_text(self, customer_id: str, text: str) -> None:
        self.sent.append((customer_id, text))

    def texts_for(self, customer_id: str) -> list[str]:
        return [text for recipient, text in self.sent if recipient == customer_id]


# ============================================================================
# Core fixtures
# ============================================================================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/test.db",
        OPENAI_API_KEY="",
        PAYMENT_POLL_ATTEMPTS=2,
        PAYMENT_POLL_INTERVAL_SECONDS=0.01,
    )


@pytest.fixture
def normalizer(settings, clock):
    return TimeNormalizer(settings.BUSINESS_TIMEZONE, clock)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def engine(settings):
    engine = build_engine(settings.DATABASE_URL)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def packages(db):
    """Catalog used across tests. Gold is a 30-minute package."""
    rows = [
        ServicePackage(name="Gold Package", duration="30 mins", price=5000, deposit=1000),
        ServicePackage(name="Silver Package", duration="1 hr", price=3000, deposit=500),
        ServicePackage(name="Platinum Package", duration="2 hrs 30 mins", price=12000, deposit=3000),
    ]
    db.add_all(rows)
    await db.commit()
    return rows


@pytest.fixture
async def reminders(session_factory, notifier, settings, clock):
    scheduler = ReminderScheduler(session_factory, notifier, settings.BUSINESS_TIMEZONE, clock)
    yield scheduler
    await scheduler.shutdown()


@pytest.fixture
def lifecycle(db, settings, normalizer, gateway, notifier, reminders, clock, packages):
    return BookingLifecycle(
        db,
        settings,
        normalizer,
        gateway,
        notifier,
        reminders=reminders,
        clock=clock,
    )


@pytest.fixture
def add_confirmed_booking(db, clock):
    """Insert a confirmed booking directly, bypassing availability checks."""

    async def _add(start_at: datetime, duration_minutes: int = 60, service_name: str = "Silver Package") -> Booking:
        now = clock()
        booking = Booking(
            customer_id=f"existing-{start_at.isoformat()}",
            service_name=service_name,
            start_at=start_at,
            duration_minutes=duration_minutes,
            status=BookingStatus.CONFIRMED,
            confirmed_at=now,
            created_at=now,
            updated_at=now,
        )
        db.add(booking)
        await db.commit()
        return booking

    return _add
