from studio_booking.schemas.extraction import ExtractionRecord
from studio_booking.schemas.booking import (
    SlotSuggestion,
    DaySlots,
    AvailabilityResult,
    LookaheadResponse,
    TurnOutcome,
    BookingCreate,
    BookingReschedule,
    BookingResponse,
)
from studio_booking.schemas.payment import (
    MpesaCallbackPayload,
    StkCallback,
    ResendRequest,
    ReceiptVerifyRequest,
)
from studio_booking.schemas.chat import (
    ChatMessageRequest,
    TurnRequest,
)

__all__ = [
    "ExtractionRecord",
    "SlotSuggestion",
    "DaySlots",
    "AvailabilityResult",
    "LookaheadResponse",
    "TurnOutcome",
    "BookingCreate",
    "BookingReschedule",
    "BookingResponse",
    "MpesaCallbackPayload",
    "StkCallback",
    "ResendRequest",
    "ReceiptVerifyRequest",
    "ChatMessageRequest",
    "TurnRequest",
]
