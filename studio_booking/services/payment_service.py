import re
import math
import uuid
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, TYPE_CHECKING
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import delete, func, select, update

from studio_booking.core.config import Settings
from studio_booking.core.database import as_utc, utcnow
from studio_booking.core.exceptions import (
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    ValidationError,
)
from studio_booking.models import Booking, BookingDraft, Payment, ReceiptVerificationAttempt
from studio_booking.models.enums import Outcome, PaymentStatus
from studio_booking.schemas.booking import TurnOutcome
from studio_booking.services import booking_messages
from studio_booking.services.booking_service import BookingService
from studio_booking.services.draft_service import DraftService
from studio_booking.services.mpesa_client import PaymentGateway
from studio_booking.services.notifier import Notifier
from studio_booking.services.reminder_service import ReminderScheduler

if TYPE_CHECKING:
    from studio_booking.services.payment_poller import PaymentStatusPoller

logger = logging.getLogger(__name__)

RECEIPT_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
SUCCESS_RESULT_CODE = "0"


def normalize_phone(phone: str) -> str:
    """Format a Kenyan number the way Daraja expects it: 2547XXXXXXXX."""
    digits = re.sub(r"\D", "", phone or "")
    if not digits:
        raise ValidationError("Please share the M-Pesa phone number to send the deposit request to.", fields=["recipient_phone"])
    if digits.startswith("254"):
        return digits
    return "254" + digits.lstrip("0")


def draft_staleness(
    draft: BookingDraft,
    payments: list[Payment],
    now: datetime,
    settings: Settings,
) -> str | None:
    """
    Reason a draft may be silently removed, or None if it must be kept.

    A draft with a pending payment is always kept.
    """
    if any(payment.status == PaymentStatus.PENDING for payment in payments):
        return None

    age = now - as_utc(draft.created_at)
    idle = now - as_utc(draft.updated_at)

    if age > timedelta(days=settings.STALE_HARD_CEILING_DAYS):
        return "hard_ceiling"
    if payments and all(payment.status == PaymentStatus.FAILED for payment in payments):
        if idle > timedelta(minutes=settings.STALE_FAILED_GRACE_MINUTES):
            return "failed_payment"
    if not payments and idle > timedelta(hours=settings.STALE_UNPAID_HOURS):
        return "never_paid"
    return None


@dataclass(frozen=True)
class InitiationResult:
    payment_id: uuid.UUID
    correlation_id: str | None
    phone: str
    amount: int
    reused: bool


class PaymentService:
    """
    Deposit reconciliation for booking drafts.

    Handles:
    - Sending (or re-using) the STK push for a draft
    - Gateway callbacks and polled results, at most once per payment
    - Customer-driven resend and receipt verification
    - Staleness checks for abandoned drafts
    """

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        gateway: PaymentGateway,
        drafts: DraftService,
        bookings: BookingService,
        notifier: Notifier,
        reminders: ReminderScheduler | None = None,
        poller: "PaymentStatusPoller | None" = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.drafts = drafts
        self.bookings = bookings
        self.catalog = bookings.catalog
        self.availability = bookings.availability
        self.notifier = notifier
        self.reminders = reminders
        self.poller = poller
        self.clock = clock

    # ============== Lookups ==============

    async def latest_payment(self, draft_id: uuid.UUID) -> Payment | None:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.draft_id == draft_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def latest_payment_for_customer(self, customer_id: str) -> Payment | None:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.customer_id == customer_id)
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def payments_for_draft(self, draft_id: uuid.UUID) -> list[Payment]:
        result = await self.db.execute(
            select(Payment).where(Payment.draft_id == draft_id).order_by(Payment.created_at)
        )
        return list(result.scalars().all())

    async def get_by_correlation_id(self, correlation_id: str) -> Payment | None:
        result = await self.db.execute(
            select(Payment)
            .where(Payment.checkout_request_id == correlation_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def booking_for_payment(self, payment_id: uuid.UUID) -> Booking | None:
        result = await self.db.execute(select(Booking).where(Booking.payment_id == payment_id))
        return result.scalar_one_or_none()

    # ============== Initiate ==============

    async def initiate(self, draft_id: uuid.UUID, phone: str, amount: int) -> InitiationResult:
        """
        Send the deposit push for a draft, at most once per live attempt.

        The attempt is claimed and committed before the gateway is called, so
        no transaction stays open while the push is in flight.

        Args:
            draft_id: Draft being paid for
            phone: Customer phone in any local format
            amount: Deposit in whole shillings

        Returns:
            InitiationResult; `reused` is True when an outstanding push was returned

        Raises:
            ValidationError: The draft is already paid or the phone is unusable
            NotFoundError: The draft no longer exists
            ExternalServiceError: The gateway rejected or failed the push
        """
        normalized_phone = normalize_phone(phone)

        # Step 1: Row-lock the draft so concurrent claims queue behind us
        locked = await self.db.execute(
            update(BookingDraft)
            .where(BookingDraft.id == draft_id)
            .values(version=BookingDraft.version)
            .execution_options(synchronize_session=False)
        )
        if locked.rowcount != 1:
            await self.db.rollback()
            raise NotFoundError("We couldn't find your booking request. Let's start a new one.")

        draft = await self.drafts.get_by_id(draft_id)
        latest = await self.latest_payment(draft_id)
        now = self.clock()

        # Step 2: Idempotency rules
        if latest and latest.status == PaymentStatus.SUCCESS:
            await self.db.rollback()
            raise ValidationError("The deposit for this booking has already been paid.", fields=[])

        superseded = None
        if latest and latest.status == PaymentStatus.PENDING and self._push_outstanding(latest, now):
            if latest.amount == amount or not latest.checkout_request_id:
                # Same prompt, but the booking follows the draft as it is now
                latest.draft_snapshot = draft.snapshot()
                latest.updated_at = now
                result = InitiationResult(latest.id, latest.checkout_request_id, latest.phone, latest.amount, reused=True)
                await self.db.commit()
                logger.info(
                    "Reusing in-flight payment",
                    extra={"customer_id": draft.customer_id, "correlation_id": result.correlation_id},
                )
                return result
            superseded = latest.checkout_request_id

        if latest and latest.status in (PaymentStatus.FAILED, PaymentStatus.PENDING):
            payment = latest
            payment.status = PaymentStatus.PENDING
            payment.checkout_request_id = None
            payment.mpesa_receipt = None
            payment.result_code = None
            payment.result_desc = None
        else:
            payment = Payment(
                draft_id=draft_id,
                customer_id=draft.customer_id,
                created_at=now,
            )
            self.db.add(payment)

        payment.amount = amount
        payment.phone = normalized_phone
        payment.draft_snapshot = draft.snapshot()
        payment.initiated_at = now
        payment.updated_at = now
        await self.db.flush()
        payment_id, customer_id = payment.id, payment.customer_id
        await self.db.commit()

        if superseded:
            logger.info(
                "Deposit amount changed, replacing pending push",
                extra={"customer_id": customer_id, "correlation_id": superseded},
            )
            if self.poller:
                self.poller.cancel(superseded)

        # Step 3: Push; any failure leaves the row failed, never dangling
        try:
            correlation_id = await self.gateway.initiate(normalized_phone, amount, f"BK{draft_id.hex[:8].upper()}")
        except ExternalServiceError as e:
            await self._mark_push_failed(payment_id, customer_id, draft_id, str(e))
            raise
        except Exception as e:
            await self._mark_push_failed(payment_id, customer_id, draft_id, str(e))
            raise ExternalServiceError("We couldn't send the M-Pesa prompt right now. Please reply 'resend' to try again.") from e

        # Step 4: Record the checkout id against our claim
        recorded = await self.db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status == PaymentStatus.PENDING,
                Payment.checkout_request_id.is_(None),
            )
            .values(checkout_request_id=correlation_id, updated_at=self.clock())
        )
        await self.db.commit()

        if recorded.rowcount != 1:
            logger.warning(
                "Payment claim was replaced during the push",
                extra={"customer_id": customer_id, "draft_id": str(draft_id), "correlation_id": correlation_id},
            )
        else:
            logger.info(
                "Deposit push initiated",
                extra={"customer_id": customer_id, "draft_id": str(draft_id), "correlation_id": correlation_id},
            )
            if self.poller:
                self.poller.watch(correlation_id, customer_id)
        return InitiationResult(payment_id, correlation_id, normalized_phone, amount, reused=False)

    def _push_outstanding(self, payment: Payment, now: datetime) -> bool:
        if payment.checkout_request_id:
            return True
        claimed_at = as_utc(payment.initiated_at or payment.created_at)
        return now - claimed_at < timedelta(seconds=self.settings.PAYMENT_PUSH_CLAIM_SECONDS)

    async def _mark_push_failed(self, payment_id: uuid.UUID, customer_id: str, draft_id: uuid.UUID, reason: str) -> None:
        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(status=PaymentStatus.FAILED, result_desc=reason[:255], updated_at=self.clock())
        )
        await self.db.commit()
        logger.warning(
            "Deposit push failed",
            extra={"customer_id": customer_id, "draft_id": str(draft_id), "reason": reason},
        )

    # ============== Callback ==============

    async def handle_callback(
        self,
        correlation_id: str,
        result_code: int | str,
        metadata: dict[str, Any] | None = None,
        result_desc: str | None = None,
    ) -> TurnOutcome:
        """
        Apply a gateway result to the payment it belongs to.

        Unknown correlation ids are ignored. Repeated deliveries of the same
        result are no-ops.
        """
        metadata = metadata or {}
        payment = await self.get_by_correlation_id(correlation_id)
        if payment is None:
            logger.warning("Callback for unknown payment ignored", extra={"correlation_id": correlation_id})
            return TurnOutcome(outcome=Outcome.FAILED, error_kind="not_found", correlation_id=correlation_id)

        code = str(result_code)
        if code == SUCCESS_RESULT_CODE:
            receipt = metadata.get("MpesaReceiptNumber")
            return await self.confirm_payment(payment, str(receipt) if receipt else None, code, result_desc)
        return await self.fail_payment(payment, code, result_desc)

    async def fail_payment(self, payment: Payment, result_code: str, result_desc: str | None) -> TurnOutcome:
        payment_id, customer_id = payment.id, payment.customer_id
        correlation_id = payment.checkout_request_id

        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(
                status=PaymentStatus.FAILED,
                result_code=result_code,
                result_desc=(result_desc or "")[:255] or None,
                updated_at=self.clock(),
            )
        )
        if result.rowcount != 1:
            await self.db.rollback()
            return await self._settled_outcome(payment_id)
        await self.db.commit()

        message = booking_messages.payment_failure_message(result_code, result_desc)
        logger.info(
            "Deposit payment failed",
            extra={"customer_id": customer_id, "correlation_id": correlation_id, "reason": result_code},
        )
        if self.poller and correlation_id:
            self.poller.cancel(correlation_id)
        await self.notifier.send_text(customer_id, message)
        return TurnOutcome(
            outcome=Outcome.FAILED,
            message=message,
            correlation_id=correlation_id,
            error_kind="payment_failed",
        )

    async def confirm_payment(
        self,
        payment: Payment,
        receipt: str | None,
        result_code: str = SUCCESS_RESULT_CODE,
        result_desc: str | None = None,
    ) -> TurnOutcome:
        """
        Mark a pending payment successful and book its draft, in one transaction.

        Only the caller whose conditional update moves the row out of
        pending proceeds; everyone else gets the settled outcome.
        """
        payment_id = payment.id
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
            .values(
                status=PaymentStatus.SUCCESS,
                mpesa_receipt=receipt.upper() if receipt else None,
                result_code=result_code,
                result_desc=(result_desc or "")[:255] or None,
                updated_at=self.clock(),
            )
        )
        if result.rowcount != 1:
            await self.db.rollback()
            logger.info("Payment already settled, ignoring", extra={"correlation_id": payment.checkout_request_id})
            return await self._settled_outcome(payment_id)

        # Details may have changed while the prompt was pending; the snapshot
        # only stands in once the draft is gone or unbookable
        snapshot = dict(payment.draft_snapshot or {})
        draft = await self.drafts.get_by_id(payment.draft_id)
        if draft is not None and draft.date_time_utc and draft.service:
            snapshot = draft.snapshot()
            await self.db.execute(
                update(Payment).where(Payment.id == payment_id).values(draft_snapshot=snapshot)
            )

        return await self._finalize(
            payment_id=payment_id,
            customer_id=payment.customer_id,
            draft_id=payment.draft_id,
            snapshot=snapshot,
            fallback_phone=payment.phone,
            receipt=receipt,
            correlation_id=payment.checkout_request_id,
        )

    async def confirm_paid_draft(self, draft: BookingDraft, payment: Payment) -> TurnOutcome:
        """
        Book a draft whose deposit already succeeded but whose slot was lost,
        using the draft's current time.
        """
        existing = await self.booking_for_payment(payment.id)
        if existing:
            return TurnOutcome(outcome=Outcome.PAID, booking_id=existing.id, message="Your booking is already confirmed.")

        snapshot = draft.snapshot()
        payment.draft_snapshot = snapshot
        return await self._finalize(
            payment_id=payment.id,
            customer_id=draft.customer_id,
            draft_id=draft.id,
            snapshot=snapshot,
            fallback_phone=payment.phone,
            receipt=payment.mpesa_receipt,
            correlation_id=payment.checkout_request_id,
        )

    async def _finalize(
        self,
        payment_id: uuid.UUID,
        customer_id: str,
        draft_id: uuid.UUID,
        snapshot: dict[str, Any],
        fallback_phone: str | None,
        receipt: str | None,
        correlation_id: str | None,
    ) -> TurnOutcome:
        start_at = self._snapshot_instant(snapshot)
        service_name = snapshot.get("service")
        if start_at is None or not service_name:
            # The payment stays successful; staff have to place this one by hand
            await self.db.commit()
            logger.error(
                "Paid draft has no bookable slot",
                extra={"customer_id": customer_id, "correlation_id": correlation_id},
            )
            return TurnOutcome(
                outcome=Outcome.INCOMPLETE,
                missing_fields=["date", "time"] if start_at is None else ["service"],
                message="We received your deposit. Please tell us the date and time you'd like.",
                correlation_id=correlation_id,
            )

        try:
            package = await self.catalog.find_package(service_name)
            service_name, duration = package.name, self.catalog.duration_of(package)
        except ValidationError:
            duration = self.catalog.default_duration_minutes

        booking = await self.bookings.insert_confirmed(
            customer_id=customer_id,
            service_name=service_name,
            start_at=start_at,
            duration_minutes=duration,
            recipient_name=snapshot.get("recipient_name") or snapshot.get("name"),
            recipient_phone=snapshot.get("recipient_phone") or snapshot.get("customer_phone") or fallback_phone,
            payment_id=payment_id,
        )

        if booking is None:
            # Money is in, slot is gone: keep the payment and the draft
            await self.db.commit()
            suggestions = await self.availability.suggest_for(start_at, service_name)
            message = booking_messages.slot_lost_message()
            logger.warning(
                "Paid slot lost at confirmation",
                extra={"customer_id": customer_id, "correlation_id": correlation_id, "outcome": "conflict"},
            )
            if self.poller and correlation_id:
                self.poller.cancel(correlation_id)
            await self.notifier.send_text(customer_id, message)
            return TurnOutcome(
                outcome=Outcome.CONFLICT,
                message=message,
                suggestions=suggestions,
                correlation_id=correlation_id,
                error_kind="conflict",
            )

        await self.db.execute(delete(BookingDraft).where(BookingDraft.id == draft_id))
        reminders = []
        if self.reminders:
            reminders = await self.reminders.schedule(self.db, booking)
        await self.db.commit()

        if self.reminders:
            self.reminders.arm(reminders)
        if self.poller and correlation_id:
            self.poller.cancel(correlation_id)

        message = booking_messages.confirmation_message(
            booking,
            receipt,
            self.drafts.normalizer.tz,
            reminder_count=len(reminders),
        )
        logger.info(
            "Booking confirmed from payment",
            extra={"customer_id": customer_id, "booking_id": str(booking.id), "correlation_id": correlation_id},
        )
        await self.notifier.send_text(customer_id, message)
        return TurnOutcome(
            outcome=Outcome.PAID,
            message=message,
            booking_id=booking.id,
            correlation_id=correlation_id,
        )

    async def _settled_outcome(self, payment_id: uuid.UUID) -> TurnOutcome:
        result = await self.db.execute(
            select(Payment).where(Payment.id == payment_id).execution_options(populate_existing=True)
        )
        payment = result.scalar_one_or_none()
        if payment is None:
            return TurnOutcome(outcome=Outcome.FAILED, error_kind="not_found")

        if payment.status == PaymentStatus.SUCCESS:
            booking = await self.booking_for_payment(payment.id)
            return TurnOutcome(
                outcome=Outcome.PAID,
                message="Your deposit is already confirmed.",
                booking_id=booking.id if booking else None,
                correlation_id=payment.checkout_request_id,
            )
        if payment.status == PaymentStatus.FAILED:
            return TurnOutcome(
                outcome=Outcome.FAILED,
                message=booking_messages.payment_failure_message(payment.result_code),
                correlation_id=payment.checkout_request_id,
                error_kind="payment_failed",
            )
        return TurnOutcome(
            outcome=Outcome.DEPOSIT_INITIATED,
            message=booking_messages.already_pending_message(payment.phone),
            correlation_id=payment.checkout_request_id,
        )

    def _snapshot_instant(self, snapshot: dict[str, Any]) -> datetime | None:
        if snapshot.get("date_time_utc"):
            return as_utc(datetime.fromisoformat(snapshot["date_time_utc"]))
        normalized = self.drafts.normalizer.normalize(snapshot.get("date"), snapshot.get("time"))
        return normalized.utc if normalized else None

    # ============== Resend ==============

    async def resend(self, customer_id: str, new_phone: str | None = None) -> TurnOutcome:
        """
        Send a fresh deposit prompt, rebuilding the draft from the last
        payment's snapshot when it has been cleaned up.
        """
        draft = await self.drafts.get(customer_id)
        latest = await self.latest_payment_for_customer(customer_id)

        if latest and (draft is None or latest.draft_id == draft.id):
            if latest.status == PaymentStatus.SUCCESS:
                return await self._settled_outcome(latest.id)
            if latest.draft_snapshot:
                draft = await self.drafts.restore(customer_id, latest.draft_id, latest.draft_snapshot)

        if draft is None:
            raise NotFoundError("We couldn't find a booking in progress. Tell us which package you'd like to book.")

        missing = await self.drafts.missing_fields(draft)
        if missing:
            raise ValidationError(
                "We still need a few details before we can send the payment prompt.",
                fields=missing,
            )
        if draft.date_time_utc is None:
            raise ValidationError("Please confirm the date and time for your booking.", fields=["date", "time"])

        phone = new_phone or draft.recipient_phone or draft.customer_phone or (latest.phone if latest else None)
        if not phone:
            raise ValidationError("Please share the M-Pesa phone number to send the deposit request to.", fields=["recipient_phone"])
        normalized_phone = normalize_phone(phone)

        package = await self.catalog.find_package(draft.service)

        # Prune abandoned attempts before the fresh push
        pruned = await self.db.execute(
            delete(Payment).where(
                Payment.draft_id == draft.id,
                Payment.status == PaymentStatus.PENDING,
            )
        )
        await self.db.commit()
        if pruned.rowcount:
            logger.info("Pruned pending payments", extra={"customer_id": customer_id, "reason": f"count={pruned.rowcount}"})

        if new_phone:
            draft = await self.drafts.update_fields(draft, recipient_phone=normalized_phone)

        result = await self.initiate(draft.id, normalized_phone, package.deposit)
        return TurnOutcome(
            outcome=Outcome.DEPOSIT_INITIATED,
            message=booking_messages.deposit_prompt_message(result.amount, result.phone),
            correlation_id=result.correlation_id,
        )

    # ============== Receipt verification ==============

    async def verify_by_receipt(self, customer_id: str, receipt_text: str) -> TurnOutcome:
        """
        Confirm a payment from a receipt code the customer typed.

        Stages: rate limit, format, anti-replay, freshness, gateway match.
        Each stage can reject on its own.
        """
        now = self.clock()

        # (a) Rate limit
        await self._check_rate_limit(customer_id, now)
        self.db.add(ReceiptVerificationAttempt(
            customer_id=customer_id,
            receipt=(receipt_text or "")[:64],
            created_at=now,
        ))
        await self.db.commit()

        # (b) Format
        receipt = (receipt_text or "").strip().upper()
        if not RECEIPT_PATTERN.match(receipt):
            raise ValidationError(
                "That doesn't look like an M-Pesa receipt code. It should be 10 letters and numbers, e.g. QJK1X2Y3Z4.",
                fields=["receipt"],
            )

        draft = await self.drafts.get(customer_id)

        # (c) Anti-replay
        result = await self.db.execute(
            select(Payment).where(
                Payment.mpesa_receipt == receipt,
                Payment.status == PaymentStatus.SUCCESS,
            )
        )
        used = result.scalars().first()
        if used:
            same_draft = draft.id == used.draft_id if draft else used.customer_id == customer_id
            if same_draft:
                return await self._settled_outcome(used.id)
            logger.warning("Receipt replay rejected", extra={"customer_id": customer_id, "reason": receipt})
            raise ValidationError("This receipt has already been used for another booking.", fields=["receipt"])

        if draft is None:
            raise NotFoundError("We couldn't find a booking in progress. Tell us which package you'd like to book.")

        result = await self.db.execute(
            select(Payment)
            .where(Payment.draft_id == draft.id, Payment.status == PaymentStatus.PENDING)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )
        pending = result.scalar_one_or_none()
        if pending is None or not pending.checkout_request_id:
            raise NotFoundError("There's no payment waiting for confirmation. Reply 'resend' to get a new M-Pesa prompt.")

        # (d) Freshness
        initiated_at = as_utc(pending.initiated_at or pending.created_at)
        if now - initiated_at > timedelta(hours=self.settings.RECEIPT_MAX_AGE_HOURS):
            raise ValidationError(
                "That payment request has expired. Reply 'resend' to get a new M-Pesa prompt.",
                fields=["receipt"],
            )

        # (e) Authoritative match
        matches = await self.gateway.verify(pending.checkout_request_id, receipt)
        if not matches:
            logger.info(
                "Receipt did not match pending payment",
                extra={"customer_id": customer_id, "correlation_id": pending.checkout_request_id},
            )
            raise ValidationError(
                "We couldn't match that receipt to your deposit request. Please check the code and try again.",
                fields=["receipt"],
            )

        return await self.confirm_payment(pending, receipt)

    async def _check_rate_limit(self, customer_id: str, now: datetime) -> None:
        window = timedelta(minutes=self.settings.RECEIPT_ATTEMPT_WINDOW_MINUTES)
        result = await self.db.execute(
            select(func.count(ReceiptVerificationAttempt.id), func.min(ReceiptVerificationAttempt.created_at))
            .where(
                ReceiptVerificationAttempt.customer_id == customer_id,
                ReceiptVerificationAttempt.created_at >= now - window,
            )
        )
        count, oldest = result.one()
        if count < self.settings.RECEIPT_ATTEMPT_LIMIT:
            return

        oldest = as_utc(oldest) if isinstance(oldest, datetime) else now
        wait_minutes = max(1, math.ceil((oldest + window - now).total_seconds() / 60))
        logger.info("Receipt verification rate limited", extra={"customer_id": customer_id})
        raise RateLimitError(
            f"Too many attempts. Please wait {wait_minutes} minute(s) and try again.",
            retry_after_minutes=wait_minutes,
        )

    # ============== Status & staleness ==============

    async def status_for_customer(self, customer_id: str) -> TurnOutcome:
        latest = await self.latest_payment_for_customer(customer_id)
        if latest is None:
            raise NotFoundError("We don't have a deposit request for you yet. Tell us which package you'd like to book.")
        return await self._settled_outcome(latest.id)

    async def is_stale(self, draft: BookingDraft) -> str | None:
        payments = await self.payments_for_draft(draft.id)
        return draft_staleness(draft, payments, self.clock(), self.settings)

    async def cleanup_if_stale(self, customer_id: str) -> bool:
        """Delete the customer's draft if it is stale. Payment rows are kept."""
        draft = await self.drafts.get(customer_id)
        if draft is None:
            return False

        reason = await self.is_stale(draft)
        if reason is None:
            return False

        result = await self.db.execute(
            delete(BookingDraft).where(
                BookingDraft.id == draft.id,
                BookingDraft.version == draft.version,
            )
        )
        await self.db.commit()
        if result.rowcount:
            logger.info("Stale draft removed", extra={"customer_id": customer_id, "reason": reason})
        return bool(result.rowcount)
