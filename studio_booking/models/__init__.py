# studio_booking/models/__init__.py

from studio_booking.core.database import Base

from studio_booking.models.service import ServicePackage
from studio_booking.models.draft import BookingDraft
from studio_booking.models.payment import Payment
from studio_booking.models.booking import Booking

# Bookkeeping tables used by the reconciler and scheduler
from studio_booking.models.other_models import (
    BookingReminder,
    ReceiptVerificationAttempt,
    ScheduleGuard,
)

__all__ = [
    "Base",
    "ServicePackage",
    "BookingDraft",
    "Payment",
    "Booking",
    "BookingReminder",
    "ReceiptVerificationAttempt",
    "ScheduleGuard",
]
