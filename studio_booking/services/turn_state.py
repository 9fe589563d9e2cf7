from typing import TypedDict

from studio_booking.models.enums import TurnIntent
from studio_booking.schemas.booking import TurnOutcome
from studio_booking.schemas.extraction import ExtractionRecord


class TurnState(TypedDict, total=False):
    """
    State for one conversational turn.
    LangGraph passes this state between nodes, and each node can read/update it.
    """

    # === Turn input ===
    customer_id: str
    customer_phone: str | None
    message: str
    record: ExtractionRecord

    # === Classification ===
    intent: TurnIntent
    receipt: str | None

    # === Result ===
    outcome: TurnOutcome
