"""
services/allocation/router.py
Dispatcher endpoints: allocation queue, provider roster, manual
assignment, auto-routing and unassignment.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.allocation import engine
from services.realtime.change_feed import ChangeFeed, get_change_feed
from shared.middleware.auth import Actor, get_actor, require_admin
from shared.models.models import ServiceType
from shared.schemas.schemas import (
    AllocationQueueItem,
    AllocationResponse,
    AllocationResultResponse,
    AssignRequest,
    BookingResponse,
    ProviderSummaryResponse,
)

router = APIRouter(prefix="/allocations", tags=["Allocations"])


def _result(booking, allocation) -> AllocationResultResponse:
    return AllocationResultResponse(
        booking=BookingResponse.model_validate(booking),
        allocation=AllocationResponse.model_validate(allocation),
    )


@router.get("/queue", response_model=list[AllocationQueueItem])
async def allocation_queue(
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Pending and accepted bookings with their current allocation."""
    rows = await engine.list_allocation_queue(db, actor)
    return [
        AllocationQueueItem(
            booking=BookingResponse.model_validate(booking),
            allocation=AllocationResponse.model_validate(allocation) if allocation else None,
        )
        for booking, allocation in rows
    ]


@router.get("/providers", response_model=list[ProviderSummaryResponse])
async def available_providers(
    service_type: Optional[ServiceType] = Query(None),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    """Eligible providers in routing order."""
    providers = await engine.list_available_providers(db, actor, service_type)
    return [ProviderSummaryResponse.model_validate(p) for p in providers]


@router.post("/bookings/{booking_id}/assign", response_model=AllocationResultResponse)
async def assign_booking(
    booking_id: UUID,
    data: AssignRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    booking, allocation = await engine.assign_to_provider(
        db, feed, booking_id, data.provider_id, actor, notes=data.notes
    )
    return _result(booking, allocation)


@router.post("/bookings/{booking_id}/auto-route", response_model=AllocationResultResponse)
async def auto_route(
    booking_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Assign the highest-rated eligible provider offering the booking's service type."""
    booking, allocation = await engine.auto_route_booking(db, feed, booking_id, actor)
    return _result(booking, allocation)


@router.delete("/bookings/{booking_id}/assignment", response_model=BookingResponse)
async def unassign(
    booking_id: UUID,
    actor: Actor = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    booking = await engine.unassign_booking(db, feed, booking_id, actor)
    return BookingResponse.model_validate(booking)
