from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.container import Container, get_container
from studio_booking.core.database import get_db
from studio_booking.schemas.booking import TurnOutcome
from studio_booking.schemas.chat import ChatMessageRequest, TurnRequest
from studio_booking.schemas.extraction import ExtractionRecord

router = APIRouter(tags=["Chat"])


# ==================== SEND MESSAGE ====================

@router.post("/chat/{customer_id}/messages", response_model=TurnOutcome)
async def send_message(
    customer_id: str,
    request: ChatMessageRequest,
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """
    Handle one free-text message from a customer.

    The message is run through extraction, then through the turn graph.
    The response is always a TurnOutcome; booking problems come back as
    outcome tags, not HTTP errors.

    Example:
        POST /api/v1/chat/254712345678/messages
        {"message": "Gold package tomorrow at 2pm please, I'm Amina"}

        Response:
        {"outcome": "deposit_initiated", "message": "We've sent an M-Pesa prompt...", ...}
    """
    chat_service = container.chat_service(db)
    return await chat_service.handle_message(
        customer_id,
        request.message,
        customer_phone=request.customer_phone,
    )


# ==================== PRE-EXTRACTED TURN ====================

@router.post("/turns/{customer_id}", response_model=TurnOutcome)
async def submit_turn(
    customer_id: str,
    request: TurnRequest,
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Run a turn whose booking fields were extracted by the caller."""
    record = ExtractionRecord.from_untrusted(request.extraction)
    chat_service = container.chat_service(db)
    return await chat_service.handle_turn(
        customer_id,
        record,
        message=request.message,
        customer_phone=request.customer_phone,
    )
