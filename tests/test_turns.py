"""
Tests for turn classification, the turn graph and end-to-end booking turns.
"""

from unittest.mock import AsyncMock

import pytest

from studio_booking.core.exceptions import ExternalServiceError
from studio_booking.models.enums import DraftStep, Outcome, SubIntent, TurnIntent
from studio_booking.schemas.extraction import ExtractionRecord
from studio_booking.services.chat_service import ChatService
from studio_booking.services.turn_graph import HANDLER_NODES
from studio_booking.services.turn_nodes import TURN_ROUTES, classify_turn
from tests.conftest import nairobi

COMPLETE = dict(service="Gold", date="2025-12-10", time="14:00", name="Amina")


# ============================================================================
# Classification
# ============================================================================

class TestClassifyTurn:
    """Intent detection for a single turn"""

    @pytest.mark.parametrize("message,intent", [
        ("resend please", TurnIntent.RESEND_PAYMENT),
        ("Can you send it again?", TurnIntent.RESEND_PAYMENT),
        ("did you receive my payment?", TurnIntent.PAYMENT_STATUS),
        ("what's the status", TurnIntent.PAYMENT_STATUS),
        ("hello there", TurnIntent.UNKNOWN),
    ])
    def test_message_keywords(self, message, intent):
        assert classify_turn(message, ExtractionRecord())[0] == intent

    def test_receipt_token_wins(self):
        intent, receipt = classify_turn("paid, code qjk1x2y3z4, please resend", ExtractionRecord())

        assert intent == TurnIntent.VERIFY_RECEIPT
        assert receipt == "QJK1X2Y3Z4"

    def test_phone_number_is_not_a_receipt(self):
        intent, receipt = classify_turn("my number is 0712345678", ExtractionRecord(service="Gold"))

        assert intent == TurnIntent.BOOK
        assert receipt is None

    def test_try_again_with_a_new_time_is_booking(self):
        record = ExtractionRecord(date="next Friday", time="3pm")

        assert classify_turn("let's try again next Friday at 3pm", record)[0] == TurnIntent.BOOK

    def test_retry_with_a_new_phone_is_resend(self):
        record = ExtractionRecord(recipient_phone="0722000111")

        assert classify_turn("retry on 0722000111", record)[0] == TurnIntent.RESEND_PAYMENT

    def test_cancel_sub_intent(self):
        record = ExtractionRecord(service="Gold", sub_intent=SubIntent.CANCEL)
        assert classify_turn("forget it", record)[0] == TurnIntent.CANCEL

    @pytest.mark.parametrize("sub_intent", [SubIntent.START, SubIntent.PROVIDE, SubIntent.CONFIRM])
    def test_booking_sub_intents_without_fields(self, sub_intent):
        record = ExtractionRecord(sub_intent=sub_intent)
        assert classify_turn("yes", record)[0] == TurnIntent.BOOK

    def test_every_intent_has_a_handler(self):
        assert set(TURN_ROUTES) == set(TurnIntent)
        assert set(TURN_ROUTES.values()) == set(HANDLER_NODES)


# ============================================================================
# process_turn
# ============================================================================

class TestProcessTurn:
    """End-to-end booking turns through the lifecycle"""

    async def test_incomplete_then_deposit_initiated(self, lifecycle, gateway):
        first = await lifecycle.process_turn("c1", ExtractionRecord(service="Gold", date="2025-12-10", time="14:00"))

        assert first.outcome == Outcome.INCOMPLETE
        assert first.missing_fields == ["name"]
        assert (await lifecycle.drafts.get("c1")).step == "collect_name"

        second = await lifecycle.process_turn("c1", ExtractionRecord(name="Amina"), customer_phone="0712345678")

        assert second.outcome == Outcome.DEPOSIT_INITIATED
        assert second.correlation_id == "ws_CO_0001"
        assert gateway.pushes[0]["amount"] == 1000
        assert gateway.pushes[0]["phone"] == "254712345678"
        assert (await lifecycle.drafts.get("c1")).step == DraftStep.AWAITING_PAYMENT.value

    async def test_repeat_turn_reuses_pending_push(self, lifecycle, gateway):
        record = ExtractionRecord(**COMPLETE)
        await lifecycle.process_turn("c1", record, customer_phone="0712345678")

        again = await lifecycle.process_turn("c1", record, customer_phone="0712345678")

        assert again.outcome == Outcome.DEPOSIT_INITIATED
        assert again.correlation_id == "ws_CO_0001"
        assert len(gateway.pushes) == 1

    async def test_taken_slot_returns_suggestions(self, lifecycle, gateway, add_confirmed_booking):
        await add_confirmed_booking(nairobi(2025, 12, 10, 14), duration_minutes=60)

        outcome = await lifecycle.process_turn("c1", ExtractionRecord(**COMPLETE), customer_phone="0712345678")

        assert outcome.outcome == Outcome.UNAVAILABLE
        assert outcome.suggestions[0].local_time == "13:30"
        assert gateway.pushes == []

    async def test_full_day_offers_next_days(self, lifecycle, add_confirmed_booking):
        for hour in range(9, 17):
            await add_confirmed_booking(nairobi(2025, 12, 10, hour), duration_minutes=60)

        outcome = await lifecycle.process_turn("c1", ExtractionRecord(**COMPLETE), customer_phone="0712345678")

        assert outcome.outcome == Outcome.UNAVAILABLE
        assert outcome.suggestions == []
        assert outcome.next_available_days[0].date == "2025-12-11"

    async def test_no_phone_asks_for_one(self, lifecycle, gateway):
        outcome = await lifecycle.process_turn("c1", ExtractionRecord(**COMPLETE))

        assert outcome.outcome == Outcome.INCOMPLETE
        assert outcome.missing_fields == ["recipient_phone"]
        assert gateway.pushes == []

    async def test_unknown_package_fails_turn(self, lifecycle):
        outcome = await lifecycle.process_turn(
            "c1",
            ExtractionRecord(service="Diamond", date="2025-12-10", time="14:00", name="Amina"),
            customer_phone="0712345678",
        )

        assert outcome.outcome == Outcome.FAILED
        assert outcome.error_kind == "validation"
        assert "Gold Package" in outcome.message

    async def test_gateway_failure_fails_turn(self, lifecycle, gateway):
        gateway.fail_next = True

        outcome = await lifecycle.process_turn("c1", ExtractionRecord(**COMPLETE), customer_phone="0712345678")

        assert outcome.outcome == Outcome.FAILED
        assert outcome.error_kind == "external"

    async def test_cancel_deletes_draft(self, lifecycle):
        await lifecycle.process_turn("c1", ExtractionRecord(service="Gold"))

        outcome = await lifecycle.process_turn("c1", ExtractionRecord(sub_intent=SubIntent.CANCEL))

        assert outcome.outcome == Outcome.CANCELLED
        assert await lifecycle.drafts.get("c1") is None

    async def test_unparseable_time_asks_again(self, lifecycle):
        outcome = await lifecycle.process_turn(
            "c1",
            ExtractionRecord(service="Gold", date="someday", time="soonish", name="Amina"),
        )

        assert outcome.outcome == Outcome.INCOMPLETE
        assert outcome.missing_fields == ["date", "time"]


# ============================================================================
# ChatService and the turn graph
# ============================================================================

class TestChatService:
    """Free-text and pre-extracted turns through the graph"""

    async def test_free_text_books(self, lifecycle, gateway):
        extractor = AsyncMock()
        extractor.extract.return_value = {
            "service": "Gold Package",
            "date": "2025-12-10",
            "time": "14:00",
            "name": "Amina",
            "subIntent": "start",
        }
        chat = ChatService(lifecycle, extractor)

        outcome = await chat.handle_message("c1", "Gold on the 10th at 2pm, I'm Amina", customer_phone="0712345678")

        assert outcome.outcome == Outcome.DEPOSIT_INITIATED
        package_names = extractor.extract.await_args.args[1]
        assert "Gold Package" in package_names

    async def test_extraction_outage(self, lifecycle):
        extractor = AsyncMock()
        extractor.extract.side_effect = ExternalServiceError("Sorry, try again shortly.")

        outcome = await ChatService(lifecycle, extractor).handle_message("c1", "hi")

        assert outcome.outcome == Outcome.FAILED
        assert outcome.error_kind == "external"

    async def test_no_extractor_configured(self, lifecycle):
        outcome = await ChatService(lifecycle).handle_message("c1", "hi")
        assert outcome.outcome == Outcome.FAILED

    async def test_status_turn(self, lifecycle):
        chat = ChatService(lifecycle)
        await chat.handle_turn("c1", ExtractionRecord(**COMPLETE), customer_phone="0712345678")

        outcome = await chat.handle_turn("c1", ExtractionRecord(), "did you receive my payment?")

        assert outcome.outcome == Outcome.DEPOSIT_INITIATED
        assert outcome.correlation_id == "ws_CO_0001"

    async def test_status_without_payment(self, lifecycle):
        outcome = await ChatService(lifecycle).handle_turn("c1", ExtractionRecord(), "status?")

        assert outcome.outcome == Outcome.FAILED
        assert outcome.error_kind == "not_found"

    async def test_unknown_turn_reprompts(self, lifecycle):
        chat = ChatService(lifecycle)
        await chat.handle_turn("c1", ExtractionRecord(service="Gold"))

        outcome = await chat.handle_turn("c1", ExtractionRecord(), "hmm")

        assert outcome.outcome == Outcome.INCOMPLETE
        assert outcome.missing_fields[0] == "date"

    async def test_receipt_turn_confirms(self, lifecycle, gateway, notifier):
        chat = ChatService(lifecycle)
        await chat.handle_turn("c1", ExtractionRecord(**COMPLETE), customer_phone="0712345678")

        outcome = await chat.handle_turn("c1", ExtractionRecord(), "My code is QJK1X2Y3Z4")

        assert outcome.outcome == Outcome.PAID
        assert outcome.booking_id is not None
        assert any("confirmed" in text for text in notifier.texts_for("c1"))

    async def test_resend_turn(self, lifecycle, gateway):
        chat = ChatService(lifecycle)
        await chat.handle_turn("c1", ExtractionRecord(**COMPLETE), customer_phone="0712345678")
        await lifecycle.handle_callback("ws_CO_0001", 1032, result_desc="Request cancelled by user")

        outcome = await chat.handle_turn("c1", ExtractionRecord(), "please resend")

        assert outcome.outcome == Outcome.DEPOSIT_INITIATED
        assert outcome.correlation_id == "ws_CO_0002"
