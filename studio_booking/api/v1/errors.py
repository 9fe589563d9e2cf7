from fastapi import HTTPException, status

from studio_booking.core.exceptions import (
    BookingEngineError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    PolicyViolationError,
    RateLimitError,
    ValidationError,
)

STATUS_BY_ERROR: dict[type[BookingEngineError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConflictError: status.HTTP_409_CONFLICT,
    PolicyViolationError: status.HTTP_403_FORBIDDEN,
    RateLimitError: status.HTTP_429_TOO_MANY_REQUESTS,
    ExternalServiceError: status.HTTP_502_BAD_GATEWAY,
}


def http_error(error: BookingEngineError) -> HTTPException:
    """Translate a booking engine error into the HTTPException a router raises."""
    detail: dict = {"kind": error.kind, "message": error.message}
    headers = None

    if isinstance(error, ValidationError):
        detail["fields"] = error.fields
    elif isinstance(error, ConflictError):
        detail["suggestions"] = [
            suggestion.model_dump(mode="json") if hasattr(suggestion, "model_dump") else suggestion
            for suggestion in error.suggestions
        ]
    elif isinstance(error, RateLimitError):
        detail["retry_after_minutes"] = error.retry_after_minutes
        headers = {"Retry-After": str(error.retry_after_minutes * 60)}

    return HTTPException(
        status_code=STATUS_BY_ERROR.get(type(error), status.HTTP_400_BAD_REQUEST),
        detail=detail,
        headers=headers,
    )
