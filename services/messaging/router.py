"""
services/messaging/router.py
Traveler ↔ provider conversation on a booking.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.messaging import channel
from services.realtime.change_feed import ChangeFeed, get_change_feed
from shared.middleware.auth import Actor, get_actor
from shared.schemas.schemas import (
    ChatMessageCreateRequest,
    ChatMessageResponse,
    MarkReadResponse,
)

router = APIRouter(prefix="/bookings", tags=["Messages"])


@router.get("/{booking_id}/messages", response_model=list[ChatMessageResponse])
async def list_messages(
    booking_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    messages = await channel.list_messages(db, booking_id, actor)
    return [ChatMessageResponse.model_validate(m) for m in messages]


@router.post(
    "/{booking_id}/messages",
    response_model=ChatMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    booking_id: UUID,
    data: ChatMessageCreateRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    message = await channel.send(db, feed, booking_id, actor, data.recipient_id, data.content)
    return ChatMessageResponse.model_validate(message)


@router.post("/{booking_id}/messages/read", response_model=MarkReadResponse)
async def mark_read(
    booking_id: UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    feed: ChangeFeed = Depends(get_change_feed),
):
    """Mark everything addressed to the caller as read."""
    updated = await channel.mark_read(db, feed, booking_id, actor)
    return MarkReadResponse(updated=updated)
