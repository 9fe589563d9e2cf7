class BookingEngineError(Exception):
    """Base error for the booking engine. `message` is safe to show to the customer."""

    kind = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BookingEngineError):
    """Missing or malformed input the customer can correct."""

    kind = "validation"

    def __init__(self, message: str, fields: list[str] | None = None):
        super().__init__(message)
        self.fields = fields or []


class ConflictError(BookingEngineError):
    """A slot was taken between suggestion and confirmation."""

    kind = "conflict"

    def __init__(self, message: str, suggestions: list | None = None):
        super().__init__(message)
        self.suggestions = suggestions or []


class ExternalServiceError(BookingEngineError):
    """The payment gateway was unreachable or answered with a non-success code."""

    kind = "external"


class NotFoundError(BookingEngineError):
    kind = "not_found"


class RateLimitError(BookingEngineError):
    kind = "rate_limit"

    def __init__(self, message: str, retry_after_minutes: int):
        super().__init__(message)
        self.retry_after_minutes = retry_after_minutes


class PolicyViolationError(BookingEngineError):
    """Changes to a confirmed booking inside the protected window."""

    kind = "policy"
