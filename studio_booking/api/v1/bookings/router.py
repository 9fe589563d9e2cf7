import uuid
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.api.v1.errors import http_error
from studio_booking.core.container import Container, get_container
from studio_booking.core.database import as_utc, get_db
from studio_booking.core.exceptions import BookingEngineError, ConflictError
from studio_booking.schemas.booking import BookingCreate, BookingReschedule, BookingResponse
from studio_booking.services.booking_service import SLOT_TAKEN_MESSAGE

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


async def promote_booking(container: Container, booking_id: uuid.UUID, customer_id: str) -> None:
    """Background promotion of a provisional booking to confirmed."""
    async with container.session_factory() as db:
        bookings = container.lifecycle(db).bookings
        try:
            await bookings.confirm_booking(booking_id)
        except ConflictError:
            logger.warning(
                "Provisional booking lost its slot",
                extra={"booking_id": str(booking_id), "customer_id": customer_id, "outcome": "conflict"},
            )
            await container.notifier.send_text(customer_id, SLOT_TAKEN_MESSAGE)
        except BookingEngineError as e:
            logger.warning(
                "Provisional booking not promoted",
                extra={"booking_id": str(booking_id), "reason": e.message},
            )


# ==================== CREATE ====================

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: BookingCreate,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """
    Create a provisional booking. Promotion to confirmed runs after the
    response is sent and re-checks the slot under the schedule lock.
    """
    try:
        bookings = container.lifecycle(db).bookings
        booking = await bookings.create_booking(
            customer_id=request.customer_id,
            service_name=request.service_name,
            start_at=as_utc(request.start_at),
            recipient_name=request.recipient_name,
            recipient_phone=request.recipient_phone,
        )
    except BookingEngineError as e:
        raise http_error(e)

    background_tasks.add_task(promote_booking, container, booking.id, booking.customer_id)
    return booking


# ==================== CANCEL ====================

@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Cancel a booking. Confirmed bookings inside the change window are refused with 403."""
    try:
        bookings = container.lifecycle(db).bookings
        return await bookings.cancel_booking(booking_id)
    except BookingEngineError as e:
        raise http_error(e)


# ==================== RESCHEDULE ====================

@router.patch("/{booking_id}", response_model=BookingResponse)
async def reschedule_booking(
    booking_id: uuid.UUID,
    request: BookingReschedule,
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Move a booking and/or change its package."""
    try:
        bookings = container.lifecycle(db).bookings
        return await bookings.reschedule_booking(
            booking_id,
            start_at=as_utc(request.start_at),
            service_name=request.service_name,
        )
    except BookingEngineError as e:
        raise http_error(e)
