import asyncio
import logging
from typing import Callable, TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_booking.models import BookingDraft

if TYPE_CHECKING:
    from studio_booking.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


class StaleDraftCollector:
    """Periodic sweep that removes abandoned drafts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        payment_service_factory: Callable[[AsyncSession], "PaymentService"],
        interval_seconds: float = 900.0,
    ):
        self.session_factory = session_factory
        self.payment_service_factory = payment_service_factory
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    async def sweep(self) -> int:
        """Run the staleness check for every draft. Returns how many were removed."""
        async with self.session_factory() as db:
            result = await db.execute(select(BookingDraft.customer_id))
            customer_ids = list(result.scalars().all())

            payments = self.payment_service_factory(db)
            removed = 0
            for customer_id in customer_ids:
                if await payments.cleanup_if_stale(customer_id):
                    removed += 1

        if removed:
            logger.info("Stale draft sweep finished", extra={"reason": f"removed={removed}"})
        return removed

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.sweep()
            except SQLAlchemyError:
                logger.exception("Stale draft sweep failed")
