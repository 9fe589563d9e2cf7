import uuid
import logging
from datetime import datetime, timedelta
from typing import Callable
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update

from studio_booking.core.config import Settings
from studio_booking.core.database import utcnow
from studio_booking.core.exceptions import (
    ConflictError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from studio_booking.models import Booking, ScheduleGuard
from studio_booking.models.enums import BookingStatus
from studio_booking.services.availability_service import AvailabilityService
from studio_booking.services.reminder_service import ReminderScheduler

logger = logging.getLogger(__name__)

SCHEDULE_GUARD_ID = 1

ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PROVISIONAL: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.CANCELLED},
    BookingStatus.CANCELLED: set(),
}

SLOT_TAKEN_MESSAGE = "Sorry, that time was just booked by someone else. Here are the closest free times."


def ensure_transition(current: BookingStatus, target: BookingStatus) -> None:
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValidationError(
            f"A {current.value} booking cannot become {target.value}.",
            fields=["status"],
        )


class BookingService:
    """
    Service for creating and managing bookings.

    Every write that can make a booking confirmed goes through
    `lock_schedule` first, so its conflict re-check and the write commit
    as one serialized unit.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        availability: AvailabilityService,
        reminders: ReminderScheduler | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.availability = availability
        self.catalog = availability.catalog
        self.reminders = reminders
        self.clock = clock

    async def get_booking(self, booking_id: uuid.UUID) -> Booking:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError(f"Booking not found: {booking_id}")
        return booking

    async def lock_schedule(self) -> None:
        """
        Take the schedule write lock for the current transaction.

        The guard row is seeded by init_models; the insert here only covers
        a database created without it.
        """
        result = await self.db.execute(
            update(ScheduleGuard)
            .where(ScheduleGuard.id == SCHEDULE_GUARD_ID)
            .values(version=ScheduleGuard.version + 1)
        )
        if result.rowcount == 0:
            self.db.add(ScheduleGuard(id=SCHEDULE_GUARD_ID, version=1))
            await self.db.flush()

    async def create_booking(
        self,
        customer_id: str,
        service_name: str,
        start_at: datetime,
        recipient_name: str | None = None,
        recipient_phone: str | None = None,
    ) -> Booking:
        """
        Create a provisional booking. Promotion to confirmed happens later
        through `confirm_booking`.

        Raises:
            ValidationError: Unknown package
            ConflictError: The slot overlaps a confirmed booking
        """
        package = await self.catalog.find_package(service_name)
        duration = self.catalog.duration_of(package)

        if await self.availability.has_conflict(start_at, duration):
            suggestions = await self.availability.suggest_for(start_at, package.name)
            raise ConflictError(SLOT_TAKEN_MESSAGE, suggestions=suggestions)

        now = self.clock()
        booking = Booking(
            customer_id=customer_id,
            service_name=package.name,
            start_at=start_at,
            duration_minutes=duration,
            status=BookingStatus.PROVISIONAL,
            recipient_name=recipient_name,
            recipient_phone=recipient_phone,
            created_at=now,
            updated_at=now,
        )
        self.db.add(booking)
        await self.db.commit()

        logger.info("Provisional booking created", extra={"booking_id": str(booking.id), "customer_id": customer_id})
        return booking

    async def confirm_booking(self, booking_id: uuid.UUID) -> Booking:
        """Promote a provisional booking, re-checking for conflicts under the schedule lock."""
        await self.lock_schedule()
        booking = await self.get_booking(booking_id)

        if booking.status == BookingStatus.CONFIRMED:
            await self.db.commit()
            return booking
        ensure_transition(booking.status, BookingStatus.CONFIRMED)

        start_at, service_name = booking.start_at, booking.service_name
        if await self.availability.has_conflict(start_at, booking.duration_minutes, exclude_booking_id=booking.id):
            await self.db.rollback()
            suggestions = await self.availability.suggest_for(start_at, service_name)
            logger.info("Confirmation lost slot race", extra={"booking_id": str(booking_id), "outcome": "conflict"})
            raise ConflictError(SLOT_TAKEN_MESSAGE, suggestions=suggestions)

        now = self.clock()
        booking.status = BookingStatus.CONFIRMED
        booking.confirmed_at = now
        booking.updated_at = now

        reminders = []
        if self.reminders:
            reminders = await self.reminders.schedule(self.db, booking)
        await self.db.commit()
        if self.reminders:
            self.reminders.arm(reminders)

        logger.info("Booking confirmed", extra={"booking_id": str(booking.id), "outcome": "confirmed"})
        return booking

    async def insert_confirmed(
        self,
        customer_id: str,
        service_name: str,
        start_at: datetime,
        duration_minutes: int,
        recipient_name: str | None,
        recipient_phone: str | None,
        payment_id: uuid.UUID | None = None,
    ) -> Booking | None:
        """
        Add a confirmed booking inside the caller's transaction.

        Returns None if the slot is already taken; the caller decides
        whether to commit or roll back.
        """
        await self.lock_schedule()
        if await self.availability.has_conflict(start_at, duration_minutes):
            return None

        now = self.clock()
        booking = Booking(
            customer_id=customer_id,
            service_name=service_name,
            start_at=start_at,
            duration_minutes=duration_minutes,
            status=BookingStatus.CONFIRMED,
            recipient_name=recipient_name,
            recipient_phone=recipient_phone,
            payment_id=payment_id,
            confirmed_at=now,
            created_at=now,
            updated_at=now,
        )
        self.db.add(booking)
        await self.db.flush()
        return booking

    async def cancel_booking(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.get_booking(booking_id)
        ensure_transition(booking.status, BookingStatus.CANCELLED)
        if booking.status == BookingStatus.CONFIRMED:
            self._enforce_change_window(booking)

        now = self.clock()
        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = now
        booking.updated_at = now
        if self.reminders:
            await self.reminders.cancel_for_booking(self.db, booking.id)
        await self.db.commit()

        logger.info("Booking cancelled", extra={"booking_id": str(booking.id), "outcome": "cancelled"})
        return booking

    async def reschedule_booking(
        self,
        booking_id: uuid.UUID,
        start_at: datetime | None = None,
        service_name: str | None = None,
    ) -> Booking:
        """
        Move a booking and/or change its package.

        Confirmed bookings are subject to the change window and are re-checked
        for conflicts (excluding themselves) under the schedule lock.
        """
        if start_at is None and service_name is None:
            raise ValidationError("Tell us the new time or package for this booking.", fields=["date", "time", "service"])

        booking = await self.get_booking(booking_id)
        if booking.status == BookingStatus.CANCELLED:
            raise ValidationError("A cancelled booking cannot be changed.", fields=["status"])
        if booking.status == BookingStatus.CONFIRMED:
            self._enforce_change_window(booking)

        new_service = booking.service_name
        new_duration = booking.duration_minutes
        if service_name:
            package = await self.catalog.find_package(service_name)
            new_service = package.name
            new_duration = self.catalog.duration_of(package)
        new_start = start_at or booking.start_at

        await self.lock_schedule()
        booking = await self.get_booking(booking_id)
        if await self.availability.has_conflict(new_start, new_duration, exclude_booking_id=booking.id):
            await self.db.rollback()
            suggestions = await self.availability.suggest_for(new_start, new_service)
            raise ConflictError(SLOT_TAKEN_MESSAGE, suggestions=suggestions)

        booking.start_at = new_start
        booking.service_name = new_service
        booking.duration_minutes = new_duration
        booking.updated_at = self.clock()

        reminders = []
        if self.reminders and booking.status == BookingStatus.CONFIRMED:
            reminders = await self.reminders.reschedule(self.db, booking)
        await self.db.commit()
        if self.reminders:
            self.reminders.arm(reminders)

        logger.info("Booking rescheduled", extra={"booking_id": str(booking.id)})
        return booking

    # ============== Helpers ==============

    def _enforce_change_window(self, booking: Booking) -> None:
        hours_until = (booking.start_at - self.clock()) / timedelta(hours=1)
        if hours_until < self.settings.POLICY_WINDOW_HOURS:
            raise PolicyViolationError(
                f"Changes cannot be made within {self.settings.POLICY_WINDOW_HOURS} hours of the appointment. "
                "Please contact the studio directly."
            )

