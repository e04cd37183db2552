"""
services/messaging/channel.py
Booking-scoped conversation between the traveler and the assigned provider.
"""

import logging
from typing import List, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from services.activity import ledger
from services.booking.store import get_booking, unit_of_work
from services.realtime.change_feed import ChangeFeed, ChangeType, record_change, snapshot
from shared.middleware.auth import Actor
from shared.models.models import ActivityAction, Booking, Message, Provider
from shared.utils.exceptions import Forbidden

logger = logging.getLogger(__name__)


async def booking_parties(db: AsyncSession, booking: Booking) -> Tuple[UUID, UUID]:
    """(traveler user id, provider user id). Forbidden while unassigned."""
    if booking.provider_id is None:
        raise Forbidden("Messaging is available once a provider is assigned")
    provider = await db.get(Provider, booking.provider_id)
    if provider is None:
        raise Forbidden("Messaging is available once a provider is assigned")
    return booking.traveler_id, provider.user_id


async def send(
    db: AsyncSession,
    feed: ChangeFeed,
    booking_id: UUID,
    sender: Actor,
    recipient_id: UUID,
    content: str,
) -> Message:
    async with unit_of_work(db, feed):
        booking = await get_booking(db, booking_id)
        parties = set(await booking_parties(db, booking))
        if sender.id not in parties or recipient_id not in parties or sender.id == recipient_id:
            raise Forbidden("Messages can only be exchanged between the traveler and the provider")

        message = Message(
            booking_id=booking.id,
            sender_id=sender.id,
            recipient_id=recipient_id,
            content=content,
            is_read=False,
        )
        db.add(message)
        await db.flush()

        record_change(db, Message.__tablename__, ChangeType.INSERT, new=snapshot(message))
        await ledger.append(
            db,
            booking.id,
            sender.id,
            ActivityAction.MESSAGE_SENT,
            {
                "message_id": str(message.id),
                "sender_id": str(sender.id),
                "recipient_id": str(recipient_id),
            },
        )

    logger.info(f"Message {message.id} sent on booking {booking_id}")
    return message


async def mark_read(db: AsyncSession, feed: ChangeFeed, booking_id: UUID, reader: Actor) -> int:
    """Mark every unread message addressed to `reader` in the booking. Returns the count."""
    async with unit_of_work(db, feed):
        await get_booking(db, booking_id)
        result = await db.execute(
            update(Message)
            .where(
                Message.booking_id == booking_id,
                Message.recipient_id == reader.id,
                Message.is_read.is_(False),
            )
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0

    if count:
        logger.info(f"{count} message(s) marked read on booking {booking_id}")
    return count


async def list_messages(db: AsyncSession, booking_id: UUID, actor: Actor) -> List[Message]:
    """Full conversation, oldest first."""
    booking = await get_booking(db, booking_id)
    if not actor.is_admin:
        parties = await booking_parties(db, booking)
        if actor.id not in parties:
            raise Forbidden("Not a party to this conversation")

    result = await db.execute(
        select(Message)
        .where(Message.booking_id == booking_id)
        .order_by(Message.created_at.asc(), Message.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())
