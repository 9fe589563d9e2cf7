import logging
from datetime import datetime
from typing import Callable

import httpx
from fastapi import Request
from openai import AsyncOpenAI
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from studio_booking.core.config import Settings
from studio_booking.core.database import Base, build_engine, build_session_factory, utcnow
from studio_booking.models import ScheduleGuard
from studio_booking.services.booking_lifecycle import BookingLifecycle
from studio_booking.services.booking_service import SCHEDULE_GUARD_ID
from studio_booking.services.chat_service import ChatService
from studio_booking.services.llm import ExtractionClient
from studio_booking.services.mpesa_client import MpesaClient, PaymentGateway
from studio_booking.services.notifier import LoggingNotifier, Notifier
from studio_booking.services.payment_poller import PaymentStatusPoller
from studio_booking.services.payment_service import PaymentService
from studio_booking.services.reminder_service import ReminderScheduler
from studio_booking.services.stale_draft_collector import StaleDraftCollector
from studio_booking.services.time_normalizer import TimeNormalizer

logger = logging.getLogger(__name__)


async def init_models(engine: AsyncEngine) -> None:
    """Create tables and seed the schedule guard row."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = build_session_factory(engine)
    async with factory() as db:
        result = await db.execute(select(ScheduleGuard).where(ScheduleGuard.id == SCHEDULE_GUARD_ID))
        if result.scalar_one_or_none() is None:
            db.add(ScheduleGuard(id=SCHEDULE_GUARD_ID, version=0))
            await db.commit()


class Container:
    """
    Owns every long-lived collaborator: engine, HTTP and OpenAI clients,
    background schedulers. Request-scoped services are built from it per
    session.
    """

    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine | None = None,
        http_client: httpx.AsyncClient | None = None,
        openai_client: AsyncOpenAI | None = None,
        notifier: Notifier | None = None,
        gateway: PaymentGateway | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.clock = clock
        self.engine = engine or build_engine(settings.DATABASE_URL, settings.DATABASE_ECHO)
        self.session_factory = build_session_factory(self.engine)
        self.normalizer = TimeNormalizer(settings.BUSINESS_TIMEZONE, clock)
        self.notifier = notifier or LoggingNotifier()

        self.http_client = http_client
        if gateway is None:
            self.http_client = http_client or httpx.AsyncClient(
                base_url=settings.MPESA_BASE_URL,
                timeout=settings.MPESA_TIMEOUT_SECONDS,
            )
            gateway = MpesaClient(self.http_client, settings, clock)
        self.gateway = gateway

        if openai_client is None and settings.OPENAI_API_KEY:
            openai_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.openai_client = openai_client
        self.extractor = (
            ExtractionClient(openai_client, settings.OPENAI_MODEL, self.normalizer)
            if openai_client is not None
            else None
        )

        self.reminders = ReminderScheduler(self.session_factory, self.notifier, settings.BUSINESS_TIMEZONE, clock)
        self.poller = PaymentStatusPoller(
            self.session_factory,
            self.gateway,
            self.payment_service,
            self.notifier,
            attempts=settings.PAYMENT_POLL_ATTEMPTS,
            interval_seconds=settings.PAYMENT_POLL_INTERVAL_SECONDS,
        )
        self.collector = StaleDraftCollector(
            self.session_factory,
            self.payment_service,
            interval_seconds=settings.STALE_SWEEP_INTERVAL_SECONDS,
        )

    # ============== Request-scoped services ==============

    def lifecycle(self, db: AsyncSession) -> BookingLifecycle:
        return BookingLifecycle(
            db,
            self.settings,
            self.normalizer,
            self.gateway,
            self.notifier,
            reminders=self.reminders,
            poller=self.poller,
            clock=self.clock,
        )

    def payment_service(self, db: AsyncSession) -> PaymentService:
        return self.lifecycle(db).payments

    def chat_service(self, db: AsyncSession) -> ChatService:
        return ChatService(self.lifecycle(db), self.extractor)

    # ============== Lifecycle ==============

    async def startup(self) -> None:
        if self.settings.AUTO_CREATE_TABLES:
            await init_models(self.engine)
        armed = await self.reminders.rehydrate()
        self.collector.start()
        logger.info("Booking engine started", extra={"reason": f"reminders_armed={armed}"})

    async def shutdown(self) -> None:
        await self.collector.stop()
        await self.poller.shutdown()
        await self.reminders.shutdown()
        if self.http_client is not None:
            await self.http_client.aclose()
        if self.openai_client is not None:
            await self.openai_client.close()
        await self.engine.dispose()


def get_container(request: Request) -> Container:
    return request.app.state.container
