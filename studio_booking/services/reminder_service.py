import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio_booking.core.database import utcnow
from studio_booking.models import Booking, BookingReminder
from studio_booking.models.enums import ReminderStatus
from studio_booking.services.booking_messages import reminder_message
from studio_booking.services.notifier import Notifier

logger = logging.getLogger(__name__)

REMINDER_OFFSETS_DAYS = (2, 1)


class ReminderScheduler:
    """
    Persisted T-2-day / T-1-day reminders with in-process timers.

    Rows are the source of truth (unique per booking and offset); timers are
    armed after the owning transaction commits and re-armed on startup.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        timezone_name: str,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.notifier = notifier
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}

    async def schedule(self, db: AsyncSession, booking: Booking) -> list[BookingReminder]:
        """
        Add reminder rows for a confirmed booking inside the caller's transaction.

        Offsets whose fire time has passed are skipped; offsets that already
        have a row are left alone.
        """
        now = self.clock()
        result = await db.execute(
            select(BookingReminder.days_before).where(BookingReminder.booking_id == booking.id)
        )
        existing = set(result.scalars().all())

        reminders = []
        for days_before in REMINDER_OFFSETS_DAYS:
            fire_at = booking.start_at - timedelta(days=days_before)
            if fire_at <= now:
                logger.info(
                    "Skipping reminder in the past",
                    extra={"booking_id": str(booking.id), "reason": f"T-{days_before}d"},
                )
                continue
            if days_before in existing:
                continue
            reminder = BookingReminder(
                booking_id=booking.id,
                customer_id=booking.customer_id,
                days_before=days_before,
                fire_at=fire_at,
                status=ReminderStatus.SCHEDULED,
            )
            db.add(reminder)
            reminders.append(reminder)

        return reminders

    def arm(self, reminders: list[BookingReminder]) -> None:
        """Start timers for committed reminder rows."""
        for reminder in reminders:
            if reminder.id in self._tasks:
                continue
            task = asyncio.create_task(self._fire_later(reminder.id, reminder.fire_at))
            self._tasks[reminder.id] = task
            task.add_done_callback(lambda _task, key=reminder.id: self._tasks.pop(key, None))

    async def cancel_for_booking(self, db: AsyncSession, booking_id: uuid.UUID) -> int:
        """Mark a booking's scheduled reminders cancelled and stop their timers."""
        result = await db.execute(
            select(BookingReminder.id).where(
                BookingReminder.booking_id == booking_id,
                BookingReminder.status == ReminderStatus.SCHEDULED,
            )
        )
        reminder_ids = list(result.scalars().all())
        if not reminder_ids:
            return 0

        await db.execute(
            update(BookingReminder)
            .where(BookingReminder.id.in_(reminder_ids))
            .values(status=ReminderStatus.CANCELLED)
        )
        for reminder_id in reminder_ids:
            task = self._tasks.pop(reminder_id, None)
            if task:
                task.cancel()
        return len(reminder_ids)

    async def reschedule(self, db: AsyncSession, booking: Booking) -> list[BookingReminder]:
        """Drop a booking's reminders and schedule fresh ones for its new start."""
        await self.cancel_for_booking(db, booking.id)
        await db.execute(delete(BookingReminder).where(BookingReminder.booking_id == booking.id))
        return await self.schedule(db, booking)

    async def rehydrate(self) -> int:
        """Re-arm every scheduled reminder, e.g. after a restart."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(BookingReminder).where(BookingReminder.status == ReminderStatus.SCHEDULED)
            )
            reminders = list(result.scalars().all())
        self.arm(reminders)
        return len(reminders)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def _fire_later(self, reminder_id: uuid.UUID, fire_at: datetime) -> None:
        delay = (fire_at - self.clock()).total_seconds()
        if delay > 0:
            await asyncio.sleep(delay)
        await self.fire(reminder_id)

    async def fire(self, reminder_id: uuid.UUID) -> bool:
        """Send one reminder if it is still scheduled. Safe to call repeatedly."""
        async with self.session_factory() as db:
            result = await db.execute(
                update(BookingReminder)
                .where(
                    BookingReminder.id == reminder_id,
                    BookingReminder.status == ReminderStatus.SCHEDULED,
                )
                .values(status=ReminderStatus.SENT)
            )
            if result.rowcount != 1:
                await db.rollback()
                return False

            reminder = await db.get(BookingReminder, reminder_id)
            booking = await db.get(Booking, reminder.booking_id)
            await db.commit()

        if booking is None:
            return False

        try:
            await self.notifier.send_text(
                reminder.customer_id,
                reminder_message(booking, reminder.days_before, self.tz),
            )
        except Exception:
            logger.exception("Reminder delivery failed", extra={"booking_id": str(booking.id)})
            return False
        return True
