import uuid
import logging
from datetime import date, datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from studio_booking.core.config import Settings
from studio_booking.models import Booking
from studio_booking.models.enums import BookingStatus
from studio_booking.schemas.booking import AvailabilityResult, DaySlots, SlotSuggestion
from studio_booking.services.catalog_service import CatalogService
from studio_booking.services.time_normalizer import TimeNormalizer

logger = logging.getLogger(__name__)

# Bookings never span more than a day, so a day on either side of the
# business window catches everything that can overlap it.
RANGE_MARGIN = timedelta(hours=24)


def intervals_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open overlap: [a_start, a_end) and [b_start, b_end) share time."""
    return a_start < b_end and b_start < a_end


class AvailabilityService:
    """
    Slot availability against confirmed bookings.

    Handles:
    - Checking a requested instant for a package
    - Ranking alternative slots on the same day by closeness
    - Looking ahead over the next days when a day is full
    - The strict overlap test used by every booking write
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        normalizer: TimeNormalizer,
        catalog: CatalogService | None = None,
    ):
        self.db = db
        self.settings = settings
        self.normalizer = normalizer
        self.catalog = catalog or CatalogService(db, settings.DEFAULT_DURATION_MINUTES)

    async def check_availability(self, instant: datetime, service_name: str | None) -> AvailabilityResult:
        """
        Check whether a package can start at `instant`.

        Args:
            instant: Requested start (timezone-aware)
            service_name: Package name; unknown names use the default duration

        Returns:
            AvailabilityResult with ranked same-day suggestions when the slot is taken
        """

        # Step 1: Resolve duration and the business day around the instant
        duration = await self.catalog.resolve_duration(service_name)
        local_day = self.normalizer.local_date_of(instant)
        day_start, day_end = self._day_window(local_day)

        # Step 2: One range query for everything that can touch the day
        occupied = await self._occupied_intervals(
            min(day_start, instant) - RANGE_MARGIN,
            max(day_end, instant) + RANGE_MARGIN,
        )

        # Step 3: Test the requested interval
        requested_end = instant + timedelta(minutes=duration)
        if not any(intervals_overlap(instant, requested_end, start, end) for start, end in occupied):
            return AvailabilityResult(available=True, duration_minutes=duration)

        # Step 4: Rank the free candidates by distance from the request
        free = self._free_slots(day_start, day_end, duration, occupied)
        free.sort(key=lambda slot: (abs((slot - instant).total_seconds()), -slot.timestamp()))
        suggestions = [self._suggestion(slot, duration) for slot in free[: self.settings.MAX_SUGGESTIONS]]

        logger.info(
            "Requested slot unavailable",
            extra={"reason": f"{instant.isoformat()} free={len(free)}"},
        )
        return AvailabilityResult(
            available=False,
            duration_minutes=duration,
            suggestions=suggestions,
            day_fully_booked=not free,
        )

    async def get_available_slots(self, target_date: date, duration_minutes: int) -> list[SlotSuggestion]:
        """All free slots on a studio-local day, in chronological order."""
        day_start, day_end = self._day_window(target_date)
        occupied = await self._occupied_intervals(day_start - RANGE_MARGIN, day_end + RANGE_MARGIN)
        return [
            self._suggestion(slot, duration_minutes)
            for slot in self._free_slots(day_start, day_end, duration_minutes, occupied)
        ]

    async def find_available_slots_across_days(
        self,
        start_date: date,
        service_name: str | None,
    ) -> list[DaySlots]:
        """
        Look ahead from `start_date` for days with free slots.

        Stops after LOOKAHEAD_MAX_DAYS_WITH_SLOTS days with availability or
        LOOKAHEAD_DAYS days in total, keeping LOOKAHEAD_SLOTS_PER_DAY slots per day.
        """
        duration = await self.catalog.resolve_duration(service_name)
        days: list[DaySlots] = []

        for offset in range(self.settings.LOOKAHEAD_DAYS + 1):
            target = start_date + timedelta(days=offset)
            slots = await self.get_available_slots(target, duration)
            if slots:
                days.append(DaySlots(
                    date=target.isoformat(),
                    slots=slots[: self.settings.LOOKAHEAD_SLOTS_PER_DAY],
                ))
            if len(days) >= self.settings.LOOKAHEAD_MAX_DAYS_WITH_SLOTS:
                break

        return days

    async def has_conflict(
        self,
        start: datetime,
        duration_minutes: int,
        exclude_booking_id: uuid.UUID | None = None,
    ) -> bool:
        """True if [start, start+duration) overlaps any confirmed booking."""
        end = start + timedelta(minutes=duration_minutes)
        occupied = await self._occupied_intervals(
            start - RANGE_MARGIN,
            end + RANGE_MARGIN,
            exclude_booking_id=exclude_booking_id,
        )
        return any(intervals_overlap(start, end, b_start, b_end) for b_start, b_end in occupied)

    async def suggest_for(self, start: datetime, service_name: str | None) -> list[SlotSuggestion]:
        """Fresh alternatives for a slot lost at confirmation time."""
        result = await self.check_availability(start, service_name)
        return result.suggestions

    # ============== Helpers ==============

    def _day_window(self, target_date: date) -> tuple[datetime, datetime]:
        return self.normalizer.day_window(
            target_date,
            self.settings.OPENING_HOUR,
            self.settings.CLOSING_HOUR,
        )

    async def _occupied_intervals(
        self,
        window_start: datetime,
        window_end: datetime,
        exclude_booking_id: uuid.UUID | None = None,
    ) -> list[tuple[datetime, datetime]]:
        query = select(Booking).where(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.start_at >= window_start,
            Booking.start_at < window_end,
        )
        if exclude_booking_id is not None:
            query = query.where(Booking.id != exclude_booking_id)

        result = await self.db.execute(query)
        return [(booking.start_at, booking.end_at) for booking in result.scalars().all()]

    def _free_slots(
        self,
        day_start: datetime,
        day_end: datetime,
        duration_minutes: int,
        occupied: list[tuple[datetime, datetime]],
    ) -> list[datetime]:
        step = timedelta(minutes=self.settings.SLOT_GRANULARITY_MINUTES)
        length = timedelta(minutes=duration_minutes)
        free = []

        cursor = day_start
        while cursor + length <= day_end:
            slot_end = cursor + length
            if not any(intervals_overlap(cursor, slot_end, start, end) for start, end in occupied):
                free.append(cursor)
            cursor += step

        return free

    def _suggestion(self, start: datetime, duration_minutes: int) -> SlotSuggestion:
        local = self.normalizer.from_utc(start)
        return SlotSuggestion(
            start=local.utc,
            end=local.utc + timedelta(minutes=duration_minutes),
            local_date=local.local_date,
            local_time=local.local_time,
        )
