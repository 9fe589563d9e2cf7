"""
Tests for deposit reconciliation: initiate, callback, resend, receipt
verification and staleness.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from studio_booking.core.exceptions import (
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from studio_booking.models import Booking, BookingDraft, Payment
from studio_booking.models.enums import BookingStatus, Outcome, PaymentStatus
from studio_booking.schemas.extraction import ExtractionRecord
from studio_booking.services.booking_lifecycle import BookingLifecycle
from studio_booking.services.payment_service import draft_staleness, normalize_phone
from tests.conftest import FakeGateway, nairobi


@pytest.fixture
def payments(lifecycle):
    return lifecycle.payments


@pytest.fixture
def ready_draft(lifecycle):
    """A complete draft for Gold on 10 December at 14:00."""

    async def _make(customer_id: str = "c1", time: str = "14:00"):
        return await lifecycle.drafts.merge(customer_id, ExtractionRecord(
            service="Gold",
            date="2025-12-10",
            time=time,
            name="Amina",
            recipient_phone="0712345678",
        ))

    return _make


async def count(db, model, *criteria) -> int:
    result = await db.execute(select(func.count()).select_from(model).where(*criteria))
    return result.scalar_one()


class HeldGateway(FakeGateway):
    """Holds every push open until the test releases it."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def initiate(self, phone: str, amount: int, reference: str) -> str:
        self.entered.set()
        await self.release.wait()
        return await super().initiate(phone, amount, reference)


@pytest.mark.parametrize("raw,expected", [
    ("0712345678", "254712345678"),
    ("+254 712 345 678", "254712345678"),
    ("712345678", "254712345678"),
    ("254712345678", "254712345678"),
])
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


# ============================================================================
# Initiate
# ============================================================================

class TestInitiate:
    """Deposit push idempotency"""

    async def test_initiate_twice_pushes_once(self, db, payments, gateway, ready_draft):
        draft = await ready_draft()

        first = await payments.initiate(draft.id, "0712345678", 1000)
        second = await payments.initiate(draft.id, "0712345678", 1000)

        assert first.correlation_id == second.correlation_id
        assert second.reused is True
        assert len(gateway.pushes) == 1
        assert gateway.pushes[0]["phone"] == "254712345678"
        assert await count(db, Payment, Payment.draft_id == draft.id) == 1

    async def test_snapshot_is_stored(self, db, payments, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)

        payment = await payments.latest_payment(draft.id)
        assert payment.draft_snapshot["service"] == "Gold"
        assert payment.draft_snapshot["date_time_utc"] == nairobi(2025, 12, 10, 14).isoformat()
        assert payment.initiated_at is not None

    async def test_gateway_failure_marks_failed(self, payments, gateway, ready_draft):
        draft = await ready_draft()
        gateway.fail_next = True

        with pytest.raises(ExternalServiceError):
            await payments.initiate(draft.id, "0712345678", 1000)

        payment = await payments.latest_payment(draft.id)
        assert payment.status == PaymentStatus.FAILED

    async def test_failed_payment_row_is_reused(self, db, payments, gateway, ready_draft):
        draft = await ready_draft()
        gateway.fail_next = True
        with pytest.raises(ExternalServiceError):
            await payments.initiate(draft.id, "0712345678", 1000)

        result = await payments.initiate(draft.id, "0712345678", 1000)

        assert result.reused is False
        assert await count(db, Payment, Payment.draft_id == draft.id) == 1
        assert (await payments.latest_payment(draft.id)).status == PaymentStatus.PENDING

    async def test_missing_draft(self, payments):
        with pytest.raises(NotFoundError):
            await payments.initiate(uuid.uuid4(), "0712345678", 1000)

    async def test_reuse_refreshes_snapshot(self, payments, gateway, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)
        draft = await ready_draft(time="16:00")

        again = await payments.initiate(draft.id, "0712345678", 1000)

        assert again.reused is True
        assert len(gateway.pushes) == 1
        payment = await payments.latest_payment(draft.id)
        assert payment.draft_snapshot["date_time_utc"] == nairobi(2025, 12, 10, 16).isoformat()

    async def test_changed_deposit_replaces_push(self, db, payments, gateway, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)

        again = await payments.initiate(draft.id, "0712345678", 500)

        assert again.reused is False
        assert again.correlation_id == "ws_CO_0002"
        assert [push["amount"] for push in gateway.pushes] == [1000, 500]
        assert await count(db, Payment, Payment.draft_id == draft.id) == 1
        payment = await payments.latest_payment(draft.id)
        assert payment.amount == 500
        assert payment.checkout_request_id == "ws_CO_0002"

    async def test_push_holds_no_transaction(
        self, db, session_factory, settings, normalizer, notifier, clock, ready_draft
    ):
        gateway = HeldGateway()
        draft = await ready_draft()
        payments = BookingLifecycle(db, settings, normalizer, gateway, notifier, clock=clock).payments

        push = asyncio.create_task(payments.initiate(draft.id, "0712345678", 1000))
        await asyncio.wait_for(gateway.entered.wait(), timeout=5)

        async with session_factory() as other:
            other_lifecycle = BookingLifecycle(other, settings, normalizer, gateway, notifier, clock=clock)
            merged = await asyncio.wait_for(
                other_lifecycle.drafts.merge("c2", ExtractionRecord(service="Silver")), timeout=2
            )
            claimed = await asyncio.wait_for(
                other_lifecycle.payments.initiate(draft.id, "0712345678", 1000), timeout=2
            )

        gateway.release.set()
        result = await push

        assert merged.service == "Silver"
        assert claimed.reused is True
        assert claimed.correlation_id is None
        assert result.correlation_id == "ws_CO_0001"
        assert len(gateway.pushes) == 1
        assert (await payments.latest_payment(draft.id)).checkout_request_id == "ws_CO_0001"

    async def test_abandoned_claim_is_taken_over(self, db, payments, gateway, clock, settings, ready_draft):
        draft = await ready_draft()
        db.add(Payment(
            draft_id=draft.id,
            customer_id="c1",
            amount=1000,
            phone="254712345678",
            status=PaymentStatus.PENDING,
            initiated_at=clock(),
            created_at=clock(),
            updated_at=clock(),
        ))
        await db.commit()
        clock.advance(seconds=settings.PAYMENT_PUSH_CLAIM_SECONDS + 1)

        result = await payments.initiate(draft.id, "0712345678", 1000)

        assert result.reused is False
        assert len(gateway.pushes) == 1
        assert await count(db, Payment, Payment.draft_id == draft.id) == 1


# ============================================================================
# Callback
# ============================================================================

class TestCallback:
    """Gateway results applied at most once"""

    async def test_success_callback_twice_books_once(self, db, payments, notifier, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        metadata = {"MpesaReceiptNumber": "QJK1X2Y3Z4", "Amount": 1000}

        first = await payments.handle_callback(pushed.correlation_id, 0, metadata)
        second = await payments.handle_callback(pushed.correlation_id, 0, metadata)

        assert first.outcome == Outcome.PAID
        assert second.outcome == Outcome.PAID
        assert second.booking_id == first.booking_id
        assert await count(db, Booking, Booking.status == BookingStatus.CONFIRMED) == 1
        assert await count(db, BookingDraft) == 0
        assert len([t for t in notifier.texts_for("c1") if "confirmed" in t]) == 1

    async def test_confirmed_booking_matches_draft(self, db, payments, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)

        outcome = await payments.handle_callback(pushed.correlation_id, "0", {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        booking = await db.get(Booking, outcome.booking_id)
        assert booking.start_at == nairobi(2025, 12, 10, 14)
        assert booking.duration_minutes == 30
        assert booking.service_name == "Gold Package"
        assert booking.recipient_name == "Amina"
        payment = await payments.get_by_correlation_id(pushed.correlation_id)
        assert payment.mpesa_receipt == "QJK1X2Y3Z4"
        assert booking.payment_id == payment.id

    async def test_time_changed_while_pending_is_booked(self, db, lifecycle, gateway):
        first = await lifecycle.process_turn("c1", ExtractionRecord(
            service="Gold", date="2025-12-10", time="14:00", name="Amina", recipient_phone="0712345678",
        ))
        second = await lifecycle.process_turn("c1", ExtractionRecord(time="16:00"))

        assert second.outcome == Outcome.DEPOSIT_INITIATED
        assert second.correlation_id == first.correlation_id
        assert len(gateway.pushes) == 1

        outcome = await lifecycle.handle_callback(first.correlation_id, 0, {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        assert outcome.outcome == Outcome.PAID
        booking = await db.get(Booking, outcome.booking_id)
        assert booking.start_at == nairobi(2025, 12, 10, 16)

    async def test_snapshot_books_when_draft_is_gone(self, db, payments, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await payments.drafts.delete("c1")

        outcome = await payments.handle_callback(pushed.correlation_id, 0, {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        assert outcome.outcome == Outcome.PAID
        booking = await db.get(Booking, outcome.booking_id)
        assert booking.start_at == nairobi(2025, 12, 10, 14)

    async def test_failed_callback_keeps_draft(self, db, payments, notifier, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)

        outcome = await payments.handle_callback(pushed.correlation_id, 1032, {}, "Request cancelled by user")

        assert outcome.outcome == Outcome.FAILED
        assert await count(db, BookingDraft) == 1
        assert (await payments.latest_payment(draft.id)).status == PaymentStatus.FAILED
        assert "cancelled on your phone" in notifier.texts_for("c1")[-1]

    async def test_failure_after_success_is_ignored(self, db, payments, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await payments.handle_callback(pushed.correlation_id, 0, {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        outcome = await payments.handle_callback(pushed.correlation_id, 1, {})

        assert outcome.outcome == Outcome.PAID
        assert (await payments.get_by_correlation_id(pushed.correlation_id)).status == PaymentStatus.SUCCESS

    async def test_unknown_correlation_id(self, payments):
        outcome = await payments.handle_callback("ws_CO_missing", 0, {})
        assert outcome.outcome == Outcome.FAILED
        assert outcome.error_kind == "not_found"

    async def test_slot_lost_keeps_payment_and_draft(self, db, payments, ready_draft, add_confirmed_booking):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await add_confirmed_booking(nairobi(2025, 12, 10, 14), duration_minutes=60)

        outcome = await payments.handle_callback(pushed.correlation_id, 0, {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        assert outcome.outcome == Outcome.CONFLICT
        assert [s.local_time for s in outcome.suggestions[:2]] == ["13:30", "15:00"]
        assert await count(db, BookingDraft) == 1
        assert (await payments.latest_payment(draft.id)).status == PaymentStatus.SUCCESS

    async def test_reminders_scheduled_on_confirmation(self, payments, reminders, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)

        await payments.handle_callback(pushed.correlation_id, 0, {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        assert reminders.pending_count == 2


# ============================================================================
# Resend
# ============================================================================

class TestResend:
    """Customer-driven retries"""

    async def test_resend_after_failure(self, payments, gateway, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await payments.handle_callback(pushed.correlation_id, 1037, {})

        outcome = await payments.resend("c1")

        assert outcome.outcome == Outcome.DEPOSIT_INITIATED
        assert len(gateway.pushes) == 2
        assert outcome.correlation_id == gateway.pushes[-1]["id"]

    async def test_resend_prunes_pending_and_pushes_fresh(self, db, payments, gateway, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)

        await payments.resend("c1")

        assert len(gateway.pushes) == 2
        assert await count(db, Payment, Payment.draft_id == draft.id) == 1

    async def test_resend_with_new_phone(self, payments, gateway, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)

        await payments.resend("c1", "0799000111")

        assert gateway.pushes[-1]["phone"] == "254799000111"
        assert (await payments.drafts.get("c1")).recipient_phone == "254799000111"

    async def test_resend_after_draft_deleted(self, db, payments, gateway, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await payments.handle_callback(pushed.correlation_id, 1032, {})
        await payments.drafts.delete("c1")

        outcome = await payments.resend("c1")

        assert outcome.outcome == Outcome.DEPOSIT_INITIATED
        restored = await payments.drafts.get("c1")
        assert restored.id == draft.id
        assert restored.service == "Gold"
        assert restored.date_time_utc == nairobi(2025, 12, 10, 14)
        assert len(gateway.pushes) == 2

    async def test_resend_without_anything(self, payments):
        with pytest.raises(NotFoundError):
            await payments.resend("nobody")

    async def test_resend_when_paid(self, payments, gateway, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await payments.handle_callback(pushed.correlation_id, 0, {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        outcome = await payments.resend("c1")

        assert outcome.outcome == Outcome.PAID
        assert len(gateway.pushes) == 1


# ============================================================================
# Receipt verification
# ============================================================================

class TestVerifyByReceipt:
    """Manual confirmation from a typed receipt code"""

    async def test_valid_receipt_confirms(self, db, payments, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)

        outcome = await payments.verify_by_receipt("c1", " qjk1x2y3z4 ")

        assert outcome.outcome == Outcome.PAID
        assert await count(db, Booking) == 1

    async def test_malformed_receipt(self, payments, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)

        with pytest.raises(ValidationError):
            await payments.verify_by_receipt("c1", "ABC-123")

    async def test_receipt_reused_on_other_draft(self, payments, ready_draft):
        first = await ready_draft("c1", "10:00")
        pushed = await payments.initiate(first.id, "0712345678", 1000)
        await payments.handle_callback(pushed.correlation_id, 0, {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        second = await ready_draft("c2", "12:00")
        await payments.initiate(second.id, "0722000000", 1000)

        with pytest.raises(ValidationError) as exc_info:
            await payments.verify_by_receipt("c2", "QJK1X2Y3Z4")
        assert "already been used" in exc_info.value.message

    async def test_same_customer_replay_is_settled(self, payments, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await payments.handle_callback(pushed.correlation_id, 0, {"MpesaReceiptNumber": "QJK1X2Y3Z4"})

        outcome = await payments.verify_by_receipt("c1", "QJK1X2Y3Z4")
        assert outcome.outcome == Outcome.PAID

    async def test_mismatch_leaves_payment_pending(self, payments, gateway, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)
        gateway.verify_result = False

        with pytest.raises(ValidationError):
            await payments.verify_by_receipt("c1", "QJK1X2Y3Z4")

        assert (await payments.latest_payment(draft.id)).status == PaymentStatus.PENDING

    async def test_expired_request(self, payments, clock, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)
        clock.advance(hours=25)

        with pytest.raises(ValidationError) as exc_info:
            await payments.verify_by_receipt("c1", "QJK1X2Y3Z4")
        assert "expired" in exc_info.value.message

    async def test_no_pending_payment(self, payments, ready_draft):
        await ready_draft()
        with pytest.raises(NotFoundError):
            await payments.verify_by_receipt("c1", "QJK1X2Y3Z4")

    async def test_rate_limit_trips_on_sixth_attempt(self, payments, gateway, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)
        gateway.verify_result = False

        for _ in range(5):
            with pytest.raises(ValidationError):
                await payments.verify_by_receipt("c1", "QJK1X2Y3Z4")

        with pytest.raises(RateLimitError) as exc_info:
            await payments.verify_by_receipt("c1", "QJK1X2Y3Z4")
        assert 1 <= exc_info.value.retry_after_minutes <= 5

    async def test_rate_limit_window_rolls(self, payments, gateway, clock, ready_draft):
        draft = await ready_draft()
        await payments.initiate(draft.id, "0712345678", 1000)
        gateway.verify_result = False
        for _ in range(5):
            with pytest.raises(ValidationError):
                await payments.verify_by_receipt("c1", "QJK1X2Y3Z4")

        clock.advance(minutes=6)

        with pytest.raises(ValidationError):
            await payments.verify_by_receipt("c1", "QJK1X2Y3Z4")


# ============================================================================
# Staleness
# ============================================================================

class TestStaleness:
    """Garbage-collection rules for abandoned drafts"""

    async def test_failed_only_is_stale_after_grace(self, db, payments, clock, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await payments.handle_callback(pushed.correlation_id, 1, {})
        clock.advance(hours=2)

        assert await payments.is_stale(await payments.drafts.get("c1")) == "failed_payment"

    async def test_pending_payment_is_never_stale(self, db, payments, clock, ready_draft):
        draft = await ready_draft()
        failed = Payment(
            draft_id=draft.id, customer_id="c1", amount=1000, phone="254712345678",
            status=PaymentStatus.FAILED, created_at=clock(), updated_at=clock(),
        )
        pending = Payment(
            draft_id=draft.id, customer_id="c1", amount=1000, phone="254712345678",
            status=PaymentStatus.PENDING, created_at=clock(), updated_at=clock(),
        )
        db.add_all([failed, pending])
        await db.commit()
        clock.advance(days=30)

        assert await payments.is_stale(draft) is None
        assert await payments.cleanup_if_stale("c1") is False

    async def test_unpaid_draft_stale_after_48_hours(self, payments, clock, ready_draft):
        draft = await ready_draft()

        clock.advance(hours=47)
        assert await payments.is_stale(draft) is None

        clock.advance(hours=2)
        assert await payments.is_stale(draft) == "never_paid"

    async def test_cleanup_removes_draft_but_keeps_payments(self, db, payments, clock, ready_draft):
        draft = await ready_draft()
        pushed = await payments.initiate(draft.id, "0712345678", 1000)
        await payments.handle_callback(pushed.correlation_id, 1, {})
        clock.advance(hours=2)

        assert await payments.cleanup_if_stale("c1") is True
        assert await count(db, BookingDraft) == 0
        assert await count(db, Payment) == 1

    def test_hard_ceiling(self, settings, clock):
        now = clock()
        draft = BookingDraft(customer_id="c1", created_at=now - timedelta(days=8), updated_at=now)
        assert draft_staleness(draft, [], now, settings) == "hard_ceiling"
