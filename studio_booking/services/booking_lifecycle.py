import logging
from datetime import datetime
from typing import Callable
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.config import Settings
from studio_booking.core.database import utcnow
from studio_booking.core.exceptions import (
    BookingEngineError,
    ConflictError,
    RateLimitError,
    ValidationError,
)
from studio_booking.models import BookingDraft
from studio_booking.models.enums import DraftStep, Outcome, PaymentStatus, SubIntent
from studio_booking.schemas.booking import DaySlots, TurnOutcome
from studio_booking.schemas.extraction import ExtractionRecord
from studio_booking.services import booking_messages
from studio_booking.services.availability_service import AvailabilityService
from studio_booking.services.booking_service import BookingService
from studio_booking.services.catalog_service import CatalogService
from studio_booking.services.draft_service import DraftService
from studio_booking.services.mpesa_client import PaymentGateway
from studio_booking.services.notifier import Notifier
from studio_booking.services.payment_poller import PaymentStatusPoller
from studio_booking.services.payment_service import PaymentService
from studio_booking.services.reminder_service import ReminderScheduler
from studio_booking.services.time_normalizer import TimeNormalizer

logger = logging.getLogger(__name__)

FIELD_PROMPTS = {
    "service": "Which package would you like to book?",
    "date": "What date would you like to come in?",
    "time": "What time works for you?",
    "name": "May I have your name for the booking?",
    "recipient_name": "Who is the session for?",
    "recipient_phone": "What's the phone number of the person the session is for?",
}

# Validation errors on these fields ask the customer again instead of failing the turn
CORRECTABLE_FIELDS = {"date", "time", "name", "recipient_name", "recipient_phone"}


class BookingLifecycle:
    """
    Turns one conversational turn into a booking outcome.

    Every public method returns a TurnOutcome; domain errors are converted
    here so the channel layer only ever sees outcome tags.
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        normalizer: TimeNormalizer,
        gateway: PaymentGateway,
        notifier: Notifier,
        reminders: ReminderScheduler | None = None,
        poller: PaymentStatusPoller | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.normalizer = normalizer
        self.catalog = CatalogService(db, settings.DEFAULT_DURATION_MINUTES)
        self.availability = AvailabilityService(db, settings, normalizer, self.catalog)
        self.drafts = DraftService(db, normalizer, clock)
        self.bookings = BookingService(db, settings, self.availability, reminders, clock)
        self.payments = PaymentService(
            db,
            settings,
            gateway,
            self.drafts,
            self.bookings,
            notifier,
            reminders=reminders,
            poller=poller,
            clock=clock,
        )

    # ============== Exposed operations ==============

    async def merge_draft(
        self,
        customer_id: str,
        record: ExtractionRecord,
        customer_phone: str | None = None,
    ) -> TurnOutcome:
        try:
            draft = await self.drafts.merge(customer_id, record, customer_phone)
            return await self._completeness_outcome(draft)
        except BookingEngineError as e:
            return self._outcome_for_error(e)

    async def missing_fields(self, customer_id: str) -> TurnOutcome:
        try:
            draft = await self.drafts.get(customer_id)
            if draft is None:
                return TurnOutcome(
                    outcome=Outcome.INCOMPLETE,
                    missing_fields=["service", "date", "time", "name"],
                    message=FIELD_PROMPTS["service"],
                )
            return await self._completeness_outcome(draft)
        except BookingEngineError as e:
            return self._outcome_for_error(e)

    async def check_availability(
        self,
        date_text: str | None,
        time_text: str | None,
        service_name: str | None,
    ) -> TurnOutcome:
        """Availability for a loose date/time pair, with lookahead when the day is full."""
        normalized = self.normalizer.normalize(date_text, time_text)
        if normalized is None:
            return TurnOutcome(
                outcome=Outcome.INCOMPLETE,
                missing_fields=["date", "time"],
                message="Sorry, I couldn't understand that date and time. Could you rephrase it, e.g. 'Friday 2pm'?",
            )
        return await self._availability_outcome(normalized.utc, service_name)

    async def lookahead(self, date_text: str | None, service_name: str | None) -> list[DaySlots]:
        start = self.normalizer.today()
        if date_text:
            normalized = self.normalizer.normalize(date_text, "00:00")
            if normalized:
                start = self.normalizer.local_date_of(normalized.utc)
        return await self.availability.find_available_slots_across_days(start, service_name)

    async def initiate_payment(self, customer_id: str, phone: str | None = None) -> TurnOutcome:
        try:
            draft = await self.drafts.get(customer_id)
            if draft is None:
                return self._no_draft_outcome()
            package = await self.catalog.find_package(draft.service)
            return await self._initiate(draft, package.deposit, phone)
        except BookingEngineError as e:
            return self._outcome_for_error(e)

    async def handle_callback(
        self,
        correlation_id: str,
        result_code: int | str,
        metadata: dict | None = None,
        result_desc: str | None = None,
    ) -> TurnOutcome:
        try:
            return await self.payments.handle_callback(correlation_id, result_code, metadata, result_desc)
        except BookingEngineError as e:
            return self._outcome_for_error(e)

    async def resend_payment(self, customer_id: str, new_phone: str | None = None) -> TurnOutcome:
        try:
            outcome = await self.payments.resend(customer_id, new_phone)
        except BookingEngineError as e:
            return self._outcome_for_error(e)
        if outcome.outcome == Outcome.DEPOSIT_INITIATED:
            await self._set_step(customer_id, DraftStep.AWAITING_PAYMENT)
        return outcome

    async def verify_by_receipt(self, customer_id: str, receipt_text: str) -> TurnOutcome:
        try:
            return await self.payments.verify_by_receipt(customer_id, receipt_text)
        except BookingEngineError as e:
            return self._outcome_for_error(e)

    async def payment_status(self, customer_id: str) -> TurnOutcome:
        try:
            return await self.payments.status_for_customer(customer_id)
        except BookingEngineError as e:
            return self._outcome_for_error(e)

    async def cleanup_if_stale(self, customer_id: str) -> TurnOutcome:
        removed = await self.payments.cleanup_if_stale(customer_id)
        if removed:
            return TurnOutcome(outcome=Outcome.CANCELLED, message="Your unfinished booking request has expired.")
        return TurnOutcome(outcome=Outcome.READY)

    async def cancel_draft(self, customer_id: str) -> TurnOutcome:
        await self.drafts.delete(customer_id)
        return TurnOutcome(
            outcome=Outcome.CANCELLED,
            message="No problem, I've cancelled that booking request. Message us any time to start again.",
        )

    # ============== Turn ==============

    async def process_turn(
        self,
        customer_id: str,
        record: ExtractionRecord,
        customer_phone: str | None = None,
    ) -> TurnOutcome:
        """
        Run one booking turn end to end.

        Args:
            customer_id: Channel identity of the customer
            record: Validated extraction for this turn
            customer_phone: Phone supplied by the channel, if any

        Returns:
            TurnOutcome tagged incomplete, unavailable, deposit_initiated,
            paid, conflict, cancelled or failed
        """
        # Step 1: Explicit cancel wins over everything else
        if record.sub_intent == SubIntent.CANCEL:
            return await self.cancel_draft(customer_id)

        try:
            # Step 2: Merge and check completeness
            draft = await self.drafts.merge(customer_id, record, customer_phone)
            incomplete = await self._completeness_outcome(draft)
            if incomplete.outcome != Outcome.READY:
                first_missing = incomplete.missing_fields[0] if incomplete.missing_fields else None
                if first_missing in FIELD_PROMPTS:
                    draft = await self.drafts.update_fields(draft, step=f"collect_{first_missing}")
                return incomplete

            # Step 3: The package must exist before we quote or charge
            package = await self.catalog.find_package(draft.service)

            # Step 4: A deposit that already won but lost its slot books the new time
            latest = await self.payments.latest_payment(draft.id)
            if latest and latest.status == PaymentStatus.SUCCESS:
                availability = await self._availability_outcome(draft.date_time_utc, package.name)
                if availability.outcome != Outcome.READY:
                    return availability
                return await self.payments.confirm_paid_draft(draft, latest)

            # Step 5: Re-check the slot
            availability = await self._availability_outcome(draft.date_time_utc, package.name)
            if availability.outcome != Outcome.READY:
                return availability

            # Step 6: Hand off to payment
            draft = await self.drafts.update_fields(draft, step=DraftStep.CONFIRM.value)
            return await self._initiate(draft, package.deposit)
        except BookingEngineError as e:
            return self._outcome_for_error(e)

    # ============== Helpers ==============

    async def _completeness_outcome(self, draft: BookingDraft) -> TurnOutcome:
        missing = await self.drafts.missing_fields(draft)
        if missing:
            return TurnOutcome(
                outcome=Outcome.INCOMPLETE,
                missing_fields=missing,
                message=FIELD_PROMPTS.get(missing[0]),
            )
        if draft.date_time_utc is None:
            return TurnOutcome(
                outcome=Outcome.INCOMPLETE,
                missing_fields=["date", "time"],
                message="Sorry, I couldn't understand that date and time. Could you rephrase it, e.g. 'Friday 2pm'?",
            )
        return TurnOutcome(outcome=Outcome.READY)

    async def _availability_outcome(self, instant: datetime, service_name: str | None) -> TurnOutcome:
        result = await self.availability.check_availability(instant, service_name)
        if result.available:
            return TurnOutcome(outcome=Outcome.READY)

        next_days: list[DaySlots] = []
        if result.day_fully_booked:
            next_day = self.normalizer.local_date_of(instant)
            next_days = await self.availability.find_available_slots_across_days(next_day, service_name)

        message = "Sorry, that time is already booked."
        if result.suggestions:
            message += " Here are the closest free times that day."
        elif next_days:
            message += " That day is fully booked, but these days have openings."
        return TurnOutcome(
            outcome=Outcome.UNAVAILABLE,
            message=message,
            suggestions=result.suggestions,
            next_available_days=next_days,
        )

    async def _initiate(self, draft: BookingDraft, amount: int, phone: str | None = None) -> TurnOutcome:
        phone = phone or draft.recipient_phone or draft.customer_phone
        if not phone:
            return TurnOutcome(
                outcome=Outcome.INCOMPLETE,
                missing_fields=["recipient_phone"],
                message="Which M-Pesa number should we send the deposit request to?",
            )

        customer_id = draft.customer_id
        result = await self.payments.initiate(draft.id, phone, amount)
        await self._set_step(customer_id, DraftStep.AWAITING_PAYMENT)

        if result.reused:
            message = booking_messages.already_pending_message(result.phone)
        else:
            message = booking_messages.deposit_prompt_message(result.amount, result.phone)
        return TurnOutcome(
            outcome=Outcome.DEPOSIT_INITIATED,
            message=message,
            correlation_id=result.correlation_id,
        )

    async def _set_step(self, customer_id: str, step: DraftStep) -> None:
        draft = await self.drafts.get(customer_id)
        if draft is not None:
            await self.drafts.update_fields(draft, step=step.value)

    def _no_draft_outcome(self) -> TurnOutcome:
        return TurnOutcome(
            outcome=Outcome.FAILED,
            error_kind="not_found",
            message="We couldn't find a booking in progress. Tell us which package you'd like to book.",
        )

    def _outcome_for_error(self, error: BookingEngineError) -> TurnOutcome:
        logger.info("Turn ended with error", extra={"outcome": error.kind, "reason": error.message})

        if isinstance(error, ConflictError):
            return TurnOutcome(
                outcome=Outcome.CONFLICT,
                message=error.message,
                suggestions=error.suggestions,
                error_kind=error.kind,
            )
        if isinstance(error, ValidationError) and error.fields and set(error.fields) <= CORRECTABLE_FIELDS:
            return TurnOutcome(
                outcome=Outcome.INCOMPLETE,
                message=error.message,
                missing_fields=error.fields,
                error_kind=error.kind,
            )
        return TurnOutcome(
            outcome=Outcome.FAILED,
            message=error.message,
            error_kind=error.kind,
            retry_after_minutes=error.retry_after_minutes if isinstance(error, RateLimitError) else None,
        )
