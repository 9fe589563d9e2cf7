from datetime import datetime
from zoneinfo import ZoneInfo

from studio_booking.models import Booking

RESEND_HINT = "Reply 'resend' to get a new payment prompt."

FAILURE_MESSAGES = {
    "1": "Your M-Pesa balance was not enough to pay the deposit. Please top up and reply 'resend'.",
    "11": (
        "Your phone already has an M-Pesa request waiting. Please complete or cancel it, "
        "then reply 'resend'."
    ),
    "1032": "The payment request was cancelled on your phone. Reply 'resend' whenever you're ready to try again.",
    "1037": (
        "We couldn't reach your phone in time. Make sure it's on and has signal, "
        "then reply 'resend'."
    ),
}


def format_local(instant: datetime, tz: ZoneInfo) -> str:
    return instant.astimezone(tz).strftime("%A, %d %B %Y at %I:%M %p")


def deposit_prompt_message(amount: int, phone: str) -> str:
    return (
        f"We've sent an M-Pesa prompt for the KES {amount:,} deposit to {phone}. "
        "Enter your PIN to confirm your booking."
    )


def already_pending_message(phone: str) -> str:
    return (
        f"A payment prompt was already sent to {phone}. Please complete it on your phone "
        "or share your M-Pesa receipt code. " + RESEND_HINT
    )


def payment_failure_message(result_code: str | None, result_desc: str | None = None) -> str:
    message = FAILURE_MESSAGES.get(str(result_code) if result_code is not None else "")
    if message:
        return message
    return f"Your deposit payment didn't go through. {RESEND_HINT}"


def stuck_payment_message() -> str:
    return (
        "We haven't received your deposit confirmation yet. If you've already paid, "
        "share your M-Pesa receipt code (e.g. QJK1X2Y3Z4). Otherwise reply 'resend' for a new prompt."
    )


def confirmation_message(booking: Booking, receipt: str | None, tz: ZoneInfo, reminder_count: int) -> str:
    lines = [
        "Your booking is confirmed! 🎉",
        f"Package: {booking.service_name}",
        f"When: {format_local(booking.start_at, tz)}",
    ]
    if booking.recipient_name:
        lines.append(f"For: {booking.recipient_name}")
    if receipt:
        lines.append(f"M-Pesa receipt: {receipt}")
    if reminder_count:
        lines.append("We'll send you a reminder before your session.")
    return "\n".join(lines)


def slot_lost_message() -> str:
    return (
        "Your deposit was received, but that time was taken just before we could confirm it. "
        "Please pick another time from the options below and we'll book it against your deposit."
    )


def reminder_message(booking: Booking, days_before: int, tz: ZoneInfo) -> str:
    when = "tomorrow" if days_before == 1 else f"in {days_before} days"
    return (
        f"Reminder: your {booking.service_name} session is {when}, "
        f"{format_local(booking.start_at, tz)}. See you soon!"
    )
