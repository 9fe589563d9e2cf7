import logging
import re

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.exceptions import ValidationError
from studio_booking.models import ServicePackage

logger = logging.getLogger(__name__)

HOURS_PATTERN = re.compile(r"(\d+)\s*(?:hr|hour)", re.IGNORECASE)
MINUTES_PATTERN = re.compile(r"(\d+)\s*min", re.IGNORECASE)


def parse_duration_to_minutes(text: str | None) -> int | None:
    """Parse duration text such as "2 hrs 30 mins" or "45 minutes" into minutes."""
    if not text:
        return None
    hours = HOURS_PATTERN.search(text)
    minutes = MINUTES_PATTERN.search(text)
    if not hours and not minutes:
        return None
    total = 0
    if hours:
        total += int(hours.group(1)) * 60
    if minutes:
        total += int(minutes.group(1))
    return total or None


class CatalogService:
    """Read-only lookup over the studio's packages."""

    def __init__(self, db: AsyncSession, default_duration_minutes: int = 60):
        self.db = db
        self.default_duration_minutes = default_duration_minutes

    async def list_packages(self) -> list[ServicePackage]:
        result = await self.db.execute(
            select(ServicePackage)
            .where(ServicePackage.is_active == True)
            .order_by(ServicePackage.name)
        )
        return list(result.scalars().all())

    async def find_package(self, name: str | None) -> ServicePackage:
        """
        Find a package by name, tolerating case, whitespace and a missing
        "Package" suffix.

        Args:
            name: Package name as the customer wrote it

        Returns:
            The matching ServicePackage

        Raises:
            ValidationError: No package matches; the message lists valid names
        """
        packages = await self.list_packages()
        wanted = " ".join((name or "").split()).lower()

        if wanted:
            # Step 1: exact, case-insensitive
            for package in packages:
                if package.name.strip().lower() == wanted:
                    return package

            # Step 2: customer said "Gold", catalog says "Gold Package"
            for package in packages:
                if package.name.strip().lower() == f"{wanted} package":
                    return package

            # Step 3: substring either way
            for package in packages:
                candidate = package.name.strip().lower()
                if wanted in candidate or candidate in wanted:
                    return package

        available = ", ".join(package.name for package in packages) or "none configured"
        raise ValidationError(
            f"Sorry, we don't have a package called '{name}'. Available packages: {available}.",
            fields=["service"],
        )

    async def resolve_duration(self, name: str | None) -> int:
        """Duration in minutes for a package, falling back to the default for unknown names."""
        try:
            package = await self.find_package(name)
        except ValidationError:
            logger.info("Unknown package, using default duration", extra={"reason": name})
            return self.default_duration_minutes
        return self.duration_of(package)

    def duration_of(self, package: ServicePackage) -> int:
        return (
            package.duration_minutes
            or parse_duration_to_minutes(package.duration)
            or self.default_duration_minutes
        )
