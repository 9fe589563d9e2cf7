from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from studio_booking.core.container import Container, get_container
from studio_booking.core.database import get_db
from studio_booking.schemas.booking import LookaheadResponse, TurnOutcome

router = APIRouter(tags=["Availability"])


# ============== Endpoints ==============

@router.get("/availability", response_model=TurnOutcome)
async def check_availability(
    date: str = Query(..., description="Date, e.g. 2025-12-05 or 'next Friday'"),
    time: str = Query(..., description="Time, e.g. 14:00 or '2pm'"),
    service: str | None = Query(None, description="Package name"),
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """
    Check a slot. Outcome is `ready` when free, `unavailable` with ranked
    same-day suggestions (and the lookahead when the day is full), or
    `incomplete` when the date/time can't be understood.
    """
    lifecycle = container.lifecycle(db)
    return await lifecycle.check_availability(date, time, service)


@router.get("/availability/lookahead", response_model=LookaheadResponse)
async def lookahead(
    date: str | None = Query(None, description="First day to search; defaults to today"),
    service: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Next days with free slots for a package."""
    lifecycle = container.lifecycle(db)
    days = await lifecycle.lookahead(date, service)
    return LookaheadResponse(service=service, days=days)


@router.post("/drafts/{customer_id}/cleanup", response_model=TurnOutcome)
async def cleanup_draft(
    customer_id: str,
    db: AsyncSession = Depends(get_db),
    container: Container = Depends(get_container),
):
    """Remove the customer's draft if it is stale (`cancelled`), else `ready`."""
    lifecycle = container.lifecycle(db)
    return await lifecycle.cleanup_if_stale(customer_id)
