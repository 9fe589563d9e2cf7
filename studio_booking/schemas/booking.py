from pydantic import BaseModel, Field
from datetime import datetime
from uuid import UUID

from studio_booking.models.enums import BookingStatus, Outcome


# ============== Slot Schemas ==============

class SlotSuggestion(BaseModel):
    """A free slot, in UTC with its studio-local rendering."""
    start: datetime
    end: datetime
    local_date: str
    local_time: str


class DaySlots(BaseModel):
    """Free slots for one studio-local day."""
    date: str
    slots: list[SlotSuggestion]


class AvailabilityResult(BaseModel):
    available: bool
    duration_minutes: int
    suggestions: list[SlotSuggestion] = Field(default_factory=list)
    day_fully_booked: bool = False


class LookaheadResponse(BaseModel):
    service: str | None
    days: list[DaySlots]


# ============== Turn Outcome ==============

class TurnOutcome(BaseModel):
    """What the orchestration layer should do or say after a turn."""
    outcome: Outcome
    message: str | None = None
    missing_fields: list[str] = Field(default_factory=list)
    suggestions: list[SlotSuggestion] = Field(default_factory=list)
    next_available_days: list[DaySlots] = Field(default_factory=list)
    correlation_id: str | None = None
    booking_id: UUID | None = None
    error_kind: str | None = None
    retry_after_minutes: int | None = None


# ============== Booking Schemas ==============

class BookingCreate(BaseModel):
    customer_id: str = Field(..., min_length=1, max_length=64)
    service_name: str = Field(..., min_length=1, max_length=200)
    start_at: datetime
    recipient_name: str | None = Field(None, max_length=120)
    recipient_phone: str | None = Field(None, max_length=20)


class BookingReschedule(BaseModel):
    start_at: datetime | None = None
    service_name: str | None = Field(None, max_length=200)


class BookingResponse(BaseModel):
    id: UUID
    customer_id: str
    service_name: str
    start_at: datetime
    duration_minutes: int
    status: BookingStatus
    recipient_name: str | None = None
    recipient_phone: str | None = None

    class Config:
        from_attributes = True
