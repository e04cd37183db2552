"""
services/activity/ledger.py
Append-only activity ledger. Entries join the caller's transaction and
are never updated or deleted.
"""

import logging
from typing import List, Optional
from uuid import UUID

from pydantic_core import to_jsonable_python
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import ActivityAction, Booking, BookingActivity
from shared.utils.exceptions import NotFound

logger = logging.getLogger(__name__)


async def append(
    db: AsyncSession,
    booking_id: UUID,
    actor_id: Optional[UUID],
    action: ActivityAction,
    details: Optional[dict] = None,
) -> BookingActivity:
    """Insert one entry. actor_id is None for system entries."""
    exists = await db.scalar(select(Booking.id).where(Booking.id == booking_id))
    if exists is None:
        raise NotFound("Booking", booking_id)

    entry = BookingActivity(
        booking_id=booking_id,
        actor_id=actor_id,
        action=ActivityAction(action),
        details=to_jsonable_python(details or {}),
    )
    db.add(entry)
    await db.flush()
    logger.debug(f"Activity {entry.action.value} appended to booking {booking_id}")
    return entry


async def list_for(db: AsyncSession, booking_id: UUID) -> List[BookingActivity]:
    """Entries in insertion order: store timestamp, then ledger id."""
    result = await db.execute(
        select(BookingActivity)
        .where(BookingActivity.booking_id == booking_id)
        .order_by(BookingActivity.created_at.asc(), BookingActivity.id.asc())
    )
    return list(result.scalars().all())
