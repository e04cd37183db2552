"""
services/booking/router.py
Booking endpoints: intake, status transitions, proof gallery and the
activity timeline. Business rules live in services/booking/lifecycle.py.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking import lifecycle
from services.realtime.change_feed import ChangeFeed, get_change_feed
from shared.middleware.auth import Actor, get_actor
from shared.models.models import Booking, BookingStatus
from shared.schemas.schemas import (
    ActivityResponse,
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    ProofUploadRequest,
)
from shared.utils.exceptions import BadRequest

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def _enrich_booking(booking: Booking) -> BookingResponse:
    return BookingResponse.model_validate(booking)


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Create an unassigned booking. Total includes the platform service fee."""
    booking = await lifecycle.create_booking(
        db,
        feed,
        actor,
        service_id=data.service_id,
        beneficiary_id=data.beneficiary_id,
        scheduled_date=data.scheduled_date,
        special_requests=data.special_requests,
    )
    return _enrich_booking(booking)


@router.get("", response_model=list[BookingResponse])
async def list_bookings(
    status_filter: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Travelers see their own, providers their assignments, vendors their pool's, admins all."""
    booking_status = None
    if status_filter:
        try:
            booking_status = BookingStatus(status_filter)
        except ValueError:
            raise BadRequest(f"Invalid status: {status_filter}")

    bookings = await lifecycle.list_bookings(db, actor, booking_status, page, page_size)
    return [_enrich_booking(b) for b in bookings]


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await lifecycle.get_booking_for(db, booking_id, actor)
    return _enrich_booking(booking)


@router.post("/{booking_id}/status", response_model=BookingResponse)
async def update_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Advance the booking along the state graph (assigned provider or admin)."""
    booking = await lifecycle.update_status(db, feed, booking_id, BookingStatus(data.status), actor)
    return _enrich_booking(booking)


@router.post(
    "/{booking_id}/proofs",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_proof(
    booking_id: UUID,
    data: ProofUploadRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Record a proof photo/video already stored in the media bucket."""
    booking = await lifecycle.upload_proof(
        db, feed, booking_id, actor, str(data.url), data.description, data.media_type
    )
    return _enrich_booking(booking)


@router.delete("/{booking_id}/proofs/{proof_id}", response_model=BookingResponse)
async def delete_proof(
    booking_id: UUID,
    proof_id: str,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    booking = await lifecycle.delete_proof(db, feed, booking_id, proof_id, actor)
    return _enrich_booking(booking)


@router.get("/{booking_id}/activities", response_model=list[ActivityResponse])
async def list_activities(
    booking_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Booking timeline, oldest first."""
    entries = await lifecycle.list_activities(db, booking_id, actor)
    return [ActivityResponse.model_validate(e) for e in entries]
