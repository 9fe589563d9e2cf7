import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Callable
from zoneinfo import ZoneInfo

import dateparser

from studio_booking.core.database import utcnow

logger = logging.getLogger(__name__)

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
CLOCK_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass(frozen=True)
class NormalizedInstant:
    """A studio-local wall-clock time resolved to UTC."""
    utc: datetime
    local_date: str
    local_time: str

    @property
    def iso(self) -> str:
        return self.utc.isoformat()


class TimeNormalizer:
    """
    Turns loose date/time text ("tomorrow", "next Friday", "2pm") into a
    canonical instant in the studio's timezone.

    Canonical pairs (YYYY-MM-DD, HH:MM) are parsed directly so that
    re-normalizing a normalized value is a fixed point; anything else
    goes through dateparser relative to the injected clock.
    """

    def __init__(self, timezone_name: str, clock: Callable[[], datetime] = utcnow):
        self.tz = ZoneInfo(timezone_name)
        self.timezone_name = timezone_name
        self.clock = clock

    def normalize(self, date_text: str | None, time_text: str | None) -> NormalizedInstant | None:
        """
        Resolve a date and time pair to a NormalizedInstant.

        Returns None when either part is missing or cannot be understood;
        callers treat that as "ask again", not as an error.
        """
        if not date_text or not time_text:
            return None

        local = self._parse_canonical(date_text.strip(), time_text.strip())
        if local is None:
            local = self._parse_loose(date_text.strip(), time_text.strip())

        if local is None:
            logger.info(
                "Could not normalize date/time",
                extra={"reason": f"date={date_text!r} time={time_text!r}"},
            )
            return None

        return self.from_local(local)

    def from_local(self, local: datetime) -> NormalizedInstant:
        """Build an instant from a naive studio-local datetime."""
        aware = local.replace(tzinfo=self.tz, second=0, microsecond=0)
        return NormalizedInstant(
            utc=aware.astimezone(timezone.utc),
            local_date=aware.strftime("%Y-%m-%d"),
            local_time=aware.strftime("%H:%M"),
        )

    def from_utc(self, instant: datetime) -> NormalizedInstant:
        local = self.to_local(instant)
        return NormalizedInstant(
            utc=local.astimezone(timezone.utc),
            local_date=local.strftime("%Y-%m-%d"),
            local_time=local.strftime("%H:%M"),
        )

    def to_local(self, instant: datetime) -> datetime:
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        return instant.astimezone(self.tz)

    def local_date_of(self, instant: datetime) -> date:
        return self.to_local(instant).date()

    def day_window(self, day: date, opening_hour: int, closing_hour: int) -> tuple[datetime, datetime]:
        """UTC bounds of the studio's business hours on a local calendar day."""
        start = datetime.combine(day, time(hour=opening_hour), tzinfo=self.tz)
        end = datetime.combine(day, time(hour=closing_hour), tzinfo=self.tz)
        return start.astimezone(timezone.utc), end.astimezone(timezone.utc)

    def today(self) -> date:
        return self.local_date_of(self.clock())

    # ============== Parsing ==============

    def _parse_canonical(self, date_text: str, time_text: str) -> datetime | None:
        if not ISO_DATE_PATTERN.match(date_text):
            return None
        match = CLOCK_TIME_PATTERN.match(time_text)
        if not match:
            return None
        hour, minute = int(match.group(1)), int(match.group(2))
        try:
            day = date.fromisoformat(date_text)
            return datetime.combine(day, time(hour=hour, minute=minute))
        except ValueError:
            return None

    def _parse_loose(self, date_text: str, time_text: str) -> datetime | None:
        relative_base = self.to_local(self.clock()).replace(tzinfo=None)
        parsed = dateparser.parse(
            f"{date_text} {time_text}",
            settings={
                "TIMEZONE": self.timezone_name,
                "TO_TIMEZONE": self.timezone_name,
                "RETURN_AS_TIMEZONE_AWARE": False,
                "PREFER_DATES_FROM": "future",
                "RELATIVE_BASE": relative_base,
            },
        )
        return parsed
