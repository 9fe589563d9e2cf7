import logging

from fastapi import APIRouter, Body, Depends
from pydantic import ValidationError as PayloadValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.api.v1.errors import http_error
from studio_booking.core.container import Container, get_container
from studio_booking.core.database import get_db
from studio_booking.core.exceptions import BookingEngineError
from studio_booking.schemas.booking import TurnOutcome
from studio_booking.schemas.payment import MpesaCallbackPayload, ReceiptVerifyRequest, ResendRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


# ==================== GATEWAY CALLBACK ====================

@router.post("/mpesa/callback")
async def mpesa_callback(
    payload: dict = Body(...),
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """
    STK push result from Daraja.

    Always acknowledged: Daraja retries anything else, and redeliveries
    are already no-ops.
    """
    try:
        callback = MpesaCallbackPayload.model_validate(payload).Body.stkCallback
    except PayloadValidationError:
        logger.warning("Malformed M-Pesa callback ignored", extra={"reason": str(payload)[:200]})
        return CALLBACK_ACK

    payments = container.payment_service(db)
    try:
        outcome = await payments.handle_callback(
            callback.CheckoutRequestID,
            callback.ResultCode,
            callback.metadata(),
            callback.ResultDesc,
        )
    except BookingEngineError as e:
        logger.warning(
            "M-Pesa callback not applied",
            extra={"correlation_id": callback.CheckoutRequestID, "reason": e.message},
        )
        return CALLBACK_ACK

    logger.info(
        "M-Pesa callback processed",
        extra={"correlation_id": callback.CheckoutRequestID, "outcome": outcome.outcome.value},
    )
    return CALLBACK_ACK


# ==================== CUSTOMER ACTIONS ====================

@router.post("/{customer_id}/resend", response_model=TurnOutcome)
async def resend_payment(
    customer_id: str,
    request: ResendRequest | None = None,
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Send a fresh deposit prompt, optionally to a corrected phone number."""
    try:
        payments = container.payment_service(db)
        return await payments.resend(customer_id, request.phone if request else None)
    except BookingEngineError as e:
        raise http_error(e)


@router.post("/{customer_id}/verify-receipt", response_model=TurnOutcome)
async def verify_receipt(
    customer_id: str,
    request: ReceiptVerifyRequest,
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Confirm a deposit from the M-Pesa receipt code the customer received."""
    try:
        payments = container.payment_service(db)
        return await payments.verify_by_receipt(customer_id, request.receipt)
    except BookingEngineError as e:
        raise http_error(e)
