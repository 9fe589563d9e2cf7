import enum


class BookingStatus(str, enum.Enum):
    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class ReminderStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    CANCELLED = "cancelled"


class DraftStep(str, enum.Enum):
    COLLECT_SERVICE = "collect_service"
    COLLECT_DATE = "collect_date"
    COLLECT_TIME = "collect_time"
    COLLECT_NAME = "collect_name"
    COLLECT_RECIPIENT_NAME = "collect_recipient_name"
    COLLECT_RECIPIENT_PHONE = "collect_recipient_phone"
    CONFIRM = "confirm"
    AWAITING_PAYMENT = "awaiting_payment"


class SubIntent(str, enum.Enum):
    START = "start"
    PROVIDE = "provide"
    CONFIRM = "confirm"
    CANCEL = "cancel"
    UNKNOWN = "unknown"


class TurnIntent(str, enum.Enum):
    CANCEL = "cancel"
    BOOK = "book"
    RESEND_PAYMENT = "resend_payment"
    VERIFY_RECEIPT = "verify_receipt"
    PAYMENT_STATUS = "payment_status"
    UNKNOWN = "unknown"


class Outcome(str, enum.Enum):
    READY = "ready"
    INCOMPLETE = "incomplete"
    UNAVAILABLE = "unavailable"
    CONFLICT = "conflict"
    DEPOSIT_INITIATED = "deposit_initiated"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]
