import re
import logging

from langchain_core.runnables import RunnableConfig

from studio_booking.models.enums import SubIntent, TurnIntent
from studio_booking.schemas.extraction import ExtractionRecord
from studio_booking.services.booking_lifecycle import BookingLifecycle
from studio_booking.services.turn_state import TurnState

logger = logging.getLogger(__name__)

# Ten characters, letters and digits mixed, like QJK1X2Y3Z4. Pure digits are phone numbers.
RECEIPT_TOKEN = re.compile(r"\b(?=[A-Z0-9]*\d)(?=[A-Z0-9]*[A-Z])[A-Z0-9]{10}\b")
RESEND_WORDS = re.compile(r"\b(resend|re-send|send (it )?again|try again|retry|new prompt|another prompt)\b", re.IGNORECASE)
STATUS_WORDS = re.compile(
    r"\b(status|did you (get|receive)|have you (got|received)|(is it|am i) (paid|confirmed)|payment went through)\b",
    re.IGNORECASE,
)

BOOKING_SUB_INTENTS = {SubIntent.START, SubIntent.PROVIDE, SubIntent.CONFIRM}
# A turn that names any of these is a booking turn, even if it says "try again"
SCHEDULING_FIELDS = ("service", "date", "time")


def classify_turn(message: str | None, record: ExtractionRecord) -> tuple[TurnIntent, str | None]:
    """
    Decide what a turn is about. Returns the intent and, for receipt turns,
    the receipt token found in the message.
    """
    text = message or ""

    receipt = RECEIPT_TOKEN.search(text.upper())
    if receipt:
        return TurnIntent.VERIFY_RECEIPT, receipt.group(0)
    scheduling = any(getattr(record, field) is not None for field in SCHEDULING_FIELDS)
    if RESEND_WORDS.search(text) and not scheduling:
        return TurnIntent.RESEND_PAYMENT, None
    if STATUS_WORDS.search(text):
        return TurnIntent.PAYMENT_STATUS, None
    if record.sub_intent == SubIntent.CANCEL:
        return TurnIntent.CANCEL, None
    if record.has_booking_fields() or record.sub_intent in BOOKING_SUB_INTENTS:
        return TurnIntent.BOOK, None
    return TurnIntent.UNKNOWN, None


def _lifecycle(config: RunnableConfig) -> BookingLifecycle:
    return config["configurable"]["lifecycle"]


# ============== NODE 1: Classify ==============

async def classify_node(state: TurnState) -> TurnState:
    intent, receipt = classify_turn(state.get("message"), state["record"])
    logger.info(
        "Turn classified",
        extra={"customer_id": state["customer_id"], "outcome": intent.value},
    )
    return {"intent": intent, "receipt": receipt}


# ============== Routing ==============

TURN_ROUTES: dict[TurnIntent, str] = {
    TurnIntent.CANCEL: "cancel_node",
    TurnIntent.BOOK: "book_node",
    TurnIntent.RESEND_PAYMENT: "resend_node",
    TurnIntent.VERIFY_RECEIPT: "verify_receipt_node",
    TurnIntent.PAYMENT_STATUS: "payment_status_node",
    TurnIntent.UNKNOWN: "unknown_node",
}


def route_after_classify(state: TurnState) -> str:
    return TURN_ROUTES[state["intent"]]


# ============== Handler nodes ==============

async def cancel_node(state: TurnState, config: RunnableConfig) -> TurnState:
    outcome = await _lifecycle(config).cancel_draft(state["customer_id"])
    return {"outcome": outcome}


async def book_node(state: TurnState, config: RunnableConfig) -> TurnState:
    outcome = await _lifecycle(config).process_turn(
        state["customer_id"],
        state["record"],
        state.get("customer_phone"),
    )
    return {"outcome": outcome}


async def resend_node(state: TurnState, config: RunnableConfig) -> TurnState:
    outcome = await _lifecycle(config).resend_payment(
        state["customer_id"],
        state["record"].recipient_phone,
    )
    return {"outcome": outcome}


async def verify_receipt_node(state: TurnState, config: RunnableConfig) -> TurnState:
    outcome = await _lifecycle(config).verify_by_receipt(state["customer_id"], state["receipt"] or "")
    return {"outcome": outcome}


async def payment_status_node(state: TurnState, config: RunnableConfig) -> TurnState:
    outcome = await _lifecycle(config).payment_status(state["customer_id"])
    return {"outcome": outcome}


async def unknown_node(state: TurnState, config: RunnableConfig) -> TurnState:
    # Nothing actionable: re-prompt for whatever the draft still needs
    outcome = await _lifecycle(config).missing_fields(state["customer_id"])
    return {"outcome": outcome}
