import logging

from studio_booking.core.exceptions import ExternalServiceError
from studio_booking.models.enums import Outcome
from studio_booking.schemas.booking import TurnOutcome
from studio_booking.schemas.extraction import ExtractionRecord
from studio_booking.services.booking_lifecycle import BookingLifecycle
from studio_booking.services.llm import ExtractionClient
from studio_booking.services.turn_graph import turn_graph

logger = logging.getLogger(__name__)


class ChatService:
    """
    Service that connects the turn graph to the booking lifecycle.
    Free-text messages are run through extraction first; pre-extracted
    turns go straight to the graph.
    """

    def __init__(self, lifecycle: BookingLifecycle, extractor: ExtractionClient | None = None):
        self.lifecycle = lifecycle
        self.extractor = extractor

    async def handle_message(
        self,
        customer_id: str,
        message: str,
        customer_phone: str | None = None,
    ) -> TurnOutcome:
        """Extract booking fields from free text and run the turn."""
        if self.extractor is None:
            logger.error("Extraction is not configured", extra={"customer_id": customer_id})
            return TurnOutcome(
                outcome=Outcome.FAILED,
                error_kind="external",
                message="Sorry, I can't read messages right now. Please try again shortly.",
            )

        packages = await self.lifecycle.catalog.list_packages()
        try:
            raw = await self.extractor.extract(message, [package.name for package in packages])
        except ExternalServiceError as e:
            logger.warning("Extraction failed", extra={"customer_id": customer_id, "reason": str(e.__cause__ or e)})
            return TurnOutcome(outcome=Outcome.FAILED, error_kind=e.kind, message=e.message)
        record = ExtractionRecord.from_untrusted(raw)
        if record.invalid_fields:
            logger.info(
                "Dropped invalid extracted fields",
                extra={"customer_id": customer_id, "reason": ",".join(record.invalid_fields)},
            )

        return await self.handle_turn(customer_id, record, message, customer_phone)

    async def handle_turn(
        self,
        customer_id: str,
        record: ExtractionRecord,
        message: str | None = None,
        customer_phone: str | None = None,
    ) -> TurnOutcome:
        state = await turn_graph.ainvoke(
            {
                "customer_id": customer_id,
                "customer_phone": customer_phone,
                "message": message or "",
                "record": record,
            },
            config={"configurable": {"lifecycle": self.lifecycle}},
        )
        return state["outcome"]
